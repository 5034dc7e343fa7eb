"""Interactive questions asked before the kernel tree is touched.

Input is read through an :class:`InputProvider` so the same code path serves
a terminal, a CI run with pre-answered questions, and tests.  Invalid
answers re-prompt in place up to a fixed number of attempts.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from kforge.utils import console, print_error, print_info, print_step


class PromptAborted(Exception):
    """Raised when no valid answer was given within the attempt budget."""


class InputProvider(Protocol):
    """Anything that can answer a question with a line of text."""

    def ask(self, message: str) -> str: ...


class ConsoleInputProvider:
    """Reads answers from the terminal via the shared Rich console."""

    def ask(self, message: str) -> str:
        return console.input(f"[yellow]{message}[/yellow] ")


class ScriptedInputProvider:
    """Replays a fixed sequence of answers, then falls back to *fallback*.

    With no fallback an exhausted script raises :class:`PromptAborted`
    rather than blocking on a terminal that may not exist.
    """

    def __init__(self, answers: Iterable[str] = (), fallback: InputProvider | None = None):
        self._answers = list(answers)
        self.fallback = fallback
        self.asked: list[str] = []

    def ask(self, message: str) -> str:
        self.asked.append(message)
        if self._answers:
            return self._answers.pop(0)
        if self.fallback is not None:
            return self.fallback.ask(message)
        raise PromptAborted(f"No scripted answer for: {message}")


@dataclass(frozen=True)
class Choice:
    """Typed result of one prompt round: valid with a value, or invalid."""

    value: str | None
    raw: str = ""

    @property
    def valid(self) -> bool:
        return self.value is not None


def read_choice(provider: InputProvider, message: str, options: Iterable[str]) -> Choice:
    """Ask once and classify the answer against *options*."""
    raw = provider.ask(message).strip()
    allowed = set(options)
    return Choice(value=raw if raw in allowed else None, raw=raw)


def ask_choice(
    provider: InputProvider,
    message: str,
    options: dict[str, str],
    max_attempts: int = 3,
) -> str:
    """Show a numbered menu and return a valid key from *options*.

    Args:
        provider: Source of answers.
        message: Menu heading.
        options: ``{answer: description}`` in display order.
        max_attempts: Rounds allowed before giving up.

    Raises:
        PromptAborted: If every round produced an invalid answer.
    """
    keys = list(options)
    for attempt in range(1, max_attempts + 1):
        console.print(f"[yellow]{message}[/yellow]")
        for key, description in options.items():
            console.print(f"  {key}) {description}")
        choice = read_choice(provider, f"Enter choice ({' or '.join(keys)}):", keys)
        if choice.valid:
            return choice.value  # type: ignore[return-value]
        print_error(f"Invalid choice {choice.raw!r}. Use {' or '.join(keys)}")

    raise PromptAborted(f"No valid answer after {max_attempts} attempt(s): {message}")


@dataclass(frozen=True)
class SourceOptions:
    """The two per-run decisions consumed by source preparation."""

    source_clean: bool
    build_clean: bool


@dataclass(frozen=True)
class PresetAnswers:
    """Answers supplied up front (command line); ``None`` means ask."""

    source_clean: bool | None = None
    build_clean: bool | None = None
    release: str | None = None


def prompt_source_options(
    provider: InputProvider,
    out_dir_exists: bool,
    out_dir_label: str = "out",
    max_attempts: int = 3,
    presets: PresetAnswers | None = None,
) -> SourceOptions:
    """Ask how to prepare the kernel source and build directory.

    The build-directory question is only asked when the out dir exists;
    otherwise a clean build is implied.  Preset answers skip their question.
    """
    presets = presets or PresetAnswers()
    print_step("Build options")

    if presets.source_clean is not None:
        source_clean = presets.source_clean
    else:
        git_choice = ask_choice(
            provider,
            "Git source preparation:",
            {
                "1": "Clean (git clean + git reset + remove KernelSU) - Fresh code",
                "2": "Skip clean (keep modifications)",
            },
            max_attempts=max_attempts,
        )
        source_clean = git_choice == "1"

    if not out_dir_exists:
        print_info("No existing build directory")
        build_clean = True
    elif presets.build_clean is not None:
        build_clean = presets.build_clean
    else:
        print_step("Build directory cleanup")
        build_choice = ask_choice(
            provider,
            f"OUT_DIR exists: {out_dir_label}",
            {
                "1": "Clean (rm -rf out) - Full rebuild",
                "2": "Resume (keep out dir) - Continue from last build",
            },
            max_attempts=max_attempts,
        )
        build_clean = build_choice == "1"

    return SourceOptions(source_clean=source_clean, build_clean=build_clean)
