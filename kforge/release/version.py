"""Resolve the release token embedded in the archive name.

Strategies run in a fixed order and the first hit wins:

1. The ``-- KernelSU version: <n>`` marker in the compile log -> ``r<n>``.
2. The commit count of the KernelSU working copy -> ``r<count>``.
3. A token typed by the operator: letters, digits, ``_``, ``-`` and ``.``
   (never leading), so ``r22122`` and ``v1.0`` are both accepted.

Detection itself prints nothing; the chosen strategy is reported only once
a token has been resolved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from kforge.prompts import InputProvider, PromptAborted
from kforge.sources.repository import count_revisions
from kforge.utils import print_error, print_info, print_step

VERSION_MARKER = "-- KernelSU version:"
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")
DIGITS = re.compile(r"[0-9]+")


class VersionUnresolvable(Exception):
    """No strategy produced a usable release token."""


class VersionSource(str, Enum):
    """Which strategy produced a token."""

    BUILD_LOG = "build log"
    HISTORY = "git history"
    INTERACTIVE = "operator input"


@dataclass(frozen=True)
class VersionToken:
    """A resolved release identifier and where it came from."""

    value: str
    source: VersionSource

    def __str__(self) -> str:
        return self.value


def version_from_build_log(log_path: str | Path) -> str | None:
    """Return ``r<n>`` from the last version marker in *log_path*, if any."""
    path = Path(log_path)
    if not path.is_file():
        return None

    last: str | None = None
    with path.open("r", encoding="utf-8", errors="replace") as log_file:
        for line in log_file:
            if VERSION_MARKER in line:
                last = line
    if last is None:
        return None

    number = "".join(last.split(VERSION_MARKER, 1)[1].split())
    return f"r{number}" if DIGITS.fullmatch(number) else None


async def version_from_history(repo_path: str | Path) -> str | None:
    """Return ``r<count>`` for the commits reachable from HEAD in *repo_path*."""
    count = await count_revisions(repo_path)
    return f"r{count}" if count is not None and count >= 0 else None


def validate_token(raw: str) -> str:
    """Check an operator-supplied token.

    Raises:
        VersionUnresolvable: For an empty token or one with other characters.
    """
    token = raw.strip()
    if not token:
        raise VersionUnresolvable("Release number cannot be empty")
    if not TOKEN_PATTERN.match(token):
        raise VersionUnresolvable(
            f"Invalid release number {token!r}. Use only alphanumeric characters, dots, "
            "dashes, or underscores"
        )
    return token


class VersionResolver:
    """Derives the release token for a finished build.

    Args:
        build_log: Combined compile output of the build being packaged.
        feature_repo: KernelSU working copy used for the history strategy.
        input_provider: Operator input for the last-resort prompt. ``None``
            disables the prompt.
    """

    def __init__(
        self,
        build_log: str | Path,
        feature_repo: str | Path,
        input_provider: InputProvider | None = None,
    ) -> None:
        self.build_log = Path(build_log)
        self.feature_repo = Path(feature_repo)
        self.input_provider = input_provider

    async def detect(self) -> VersionToken | None:
        """Run the automated strategies silently."""
        from_log = version_from_build_log(self.build_log)
        if from_log:
            return VersionToken(from_log, VersionSource.BUILD_LOG)

        from_git = await version_from_history(self.feature_repo)
        if from_git:
            return VersionToken(from_git, VersionSource.HISTORY)

        return None

    def ask(self) -> VersionToken:
        """Prompt the operator once; an invalid answer is fatal.

        Raises:
            VersionUnresolvable: If there is no provider or the answer is invalid.
        """
        if self.input_provider is None:
            raise VersionUnresolvable("Version not detectable and no interactive input available")
        try:
            raw = self.input_provider.ask("Enter release number (e.g., r22122, v1.0):")
        except (PromptAborted, EOFError) as exc:
            raise VersionUnresolvable(f"No release number given: {exc}") from exc
        return VersionToken(validate_token(raw), VersionSource.INTERACTIVE)

    async def resolve(self) -> VersionToken:
        """Return the first token produced by the strategy chain.

        Raises:
            VersionUnresolvable: If every strategy fails.
        """
        token = await self.detect()
        if token is None:
            print_step("Could not auto-detect version")
            try:
                token = self.ask()
            except VersionUnresolvable as exc:
                print_error(str(exc))
                raise

        if token.source is VersionSource.INTERACTIVE:
            print_info(f"Using release number: {token}")
        else:
            print_info(f"Extracted KernelSU version from {token.source.value}: {token}")
        return token
