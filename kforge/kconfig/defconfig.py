"""Idempotent read/modify/write operations on a kernel defconfig.

A defconfig is kept as an ordered list of lines.  Each line is parsed into a
:class:`Directive` record when it looks like one (``KEY=value``,
``#KEY=value`` or ``# KEY is not set``) so mutations can address directives
by key while every unrelated line is written back untouched.

Two primitives drive every configuration stage:

* :meth:`ConfigFile.append_if_absent` adds a literal line unless an identical
  line is already present.
* :meth:`ConfigFile.set_toggle` removes every line for a key, commented or
  live, then appends exactly one canonical line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

_DIRECTIVE_RE = re.compile(r"^(?P<comment>#?)\s*(?P<key>[A-Za-z0-9_]+)=(?P<value>.*)$")
_NOT_SET_RE = re.compile(r"^#\s*(?P<key>[A-Za-z0-9_]+) is not set\s*$")


class ConfigWriteFailure(Exception):
    """Raised when the defconfig cannot be read or written back."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot write config file {path}: {reason}")


class DirectiveState(str, Enum):
    """What a directive line asks for."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    VALUED = "valued"


@dataclass(frozen=True)
class Directive:
    """A single ``KEY=value`` directive, possibly commented out."""

    key: str
    state: DirectiveState
    value: str = ""
    commented: bool = False

    @classmethod
    def from_value(cls, key: str, value: bool | str) -> "Directive":
        """Build the canonical live directive for *key*.

        ``True``/``"y"`` and ``False``/``"n"`` become toggles.  A value that
        is already quoted is kept verbatim; any other string is quoted.
        """
        if value is True or value == "y":
            return cls(key=key, state=DirectiveState.ENABLED, value="y")
        if value is False or value == "n":
            return cls(key=key, state=DirectiveState.DISABLED, value="n")
        text = str(value)
        if not _is_quoted(text):
            text = f'"{text}"'
        return cls(key=key, state=DirectiveState.VALUED, value=text)

    @property
    def live(self) -> bool:
        return not self.commented

    def render(self) -> str:
        """Serialise back to a defconfig line."""
        if self.commented and self.state is DirectiveState.DISABLED and not self.value:
            return f"# {self.key} is not set"
        prefix = "#" if self.commented else ""
        return f"{prefix}{self.key}={self.value}"


def _is_quoted(text: str) -> bool:
    return len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"')


def parse_directive(line: str) -> Directive | None:
    """Parse *line* into a :class:`Directive`, or ``None`` for other lines.

    Examples::

        parse_directive("CONFIG_KSU=y")            -> enabled, live
        parse_directive("#CONFIG_KSU=y")           -> enabled, commented
        parse_directive("# CONFIG_KSU is not set") -> disabled, commented
        parse_directive("# plain comment")         -> None
    """
    stripped = line.strip()
    match = _NOT_SET_RE.match(stripped)
    if match:
        return Directive(
            key=match.group("key"), state=DirectiveState.DISABLED, commented=True
        )

    match = _DIRECTIVE_RE.match(stripped)
    if not match:
        return None

    value = match.group("value").strip()
    if value == "y":
        state = DirectiveState.ENABLED
    elif value == "n":
        state = DirectiveState.DISABLED
    else:
        state = DirectiveState.VALUED
    return Directive(
        key=match.group("key"),
        state=state,
        value=value,
        commented=bool(match.group("comment")),
    )


@dataclass
class ConfigLine:
    """A raw line plus its parsed directive (if any)."""

    raw: str
    directive: Directive | None = None

    @classmethod
    def parse(cls, raw: str) -> "ConfigLine":
        return cls(raw=raw, directive=parse_directive(raw))


class ConfigFile:
    """An in-memory defconfig, mutated by key and saved back in place.

    Missing files load as empty and are created on :meth:`save`.
    """

    def __init__(self, path: Path | None = None, lines: Iterable[str] = ()) -> None:
        self.path = Path(path) if path is not None else None
        self._lines: list[ConfigLine] = [ConfigLine.parse(raw) for raw in lines]

    @classmethod
    def load(cls, path: str | Path) -> "ConfigFile":
        """Read *path* into a ``ConfigFile``.

        Raises:
            ConfigWriteFailure: If the file exists but cannot be read.
        """
        file_path = Path(path)
        if not file_path.exists():
            return cls(file_path)
        try:
            text = file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteFailure(file_path, str(exc)) from exc
        return cls(file_path, text.splitlines())

    @classmethod
    def from_text(cls, text: str, path: Path | None = None) -> "ConfigFile":
        return cls(path, text.splitlines())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def lines(self) -> list[str]:
        return [line.raw for line in self._lines]

    def directives(self, key: str) -> list[Directive]:
        """Every directive line for *key*, live or commented, in file order."""
        return [
            line.directive
            for line in self._lines
            if line.directive is not None and line.directive.key == key
        ]

    def get(self, key: str) -> Directive | None:
        """The last live directive for *key*, which is the one Kconfig honours."""
        live = [d for d in self.directives(key) if d.live]
        return live[-1] if live else None

    def contains_line(self, line: str) -> bool:
        target = line.rstrip("\r\n")
        return any(existing.raw == target for existing in self._lines)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_if_absent(self, line: str) -> bool:
        """Append *line* unless an identical line already exists.

        Returns:
            ``True`` if the line was appended.
        """
        target = line.rstrip("\r\n")
        if self.contains_line(target):
            return False
        self._lines.append(ConfigLine.parse(target))
        return True

    def set_toggle(self, key: str, value: bool | str) -> Directive:
        """Make *key* resolve to exactly one canonical live line.

        All prior lines for the key (``KEY=..``, ``#KEY=..``,
        ``# KEY is not set``) are dropped before the new line is appended.
        """
        self.remove_keys([key], include_commented=True)
        directive = Directive.from_value(key, value)
        self._lines.append(ConfigLine(raw=directive.render(), directive=directive))
        return directive

    def remove_keys(self, keys: Iterable[str], include_commented: bool = False) -> int:
        """Drop directive lines whose key is in *keys*.

        Args:
            keys: Directive keys to remove.
            include_commented: Also drop commented forms of those keys.

        Returns:
            Number of lines removed.
        """
        wanted = set(keys)
        kept: list[ConfigLine] = []
        for line in self._lines:
            d = line.directive
            if d is not None and d.key in wanted and (d.live or include_commented):
                continue
            kept.append(line)
        removed = len(self._lines) - len(kept)
        self._lines = kept
        return removed

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def render(self) -> str:
        if not self._lines:
            return ""
        return "\n".join(self.lines) + "\n"

    def save(self, path: str | Path | None = None) -> Path:
        """Write the file back.

        Raises:
            ConfigWriteFailure: If there is no target path or the write fails.
        """
        target = Path(path) if path is not None else self.path
        if target is None:
            raise ConfigWriteFailure(Path("<memory>"), "no path to save to")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self.render(), encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteFailure(target, str(exc)) from exc
        return target


# ---------------------------------------------------------------------------
# Path-level helpers used by the pipeline stages
# ---------------------------------------------------------------------------


def append_if_absent(path: str | Path, line: str) -> bool:
    """Load *path*, append *line* if missing, and save only when changed."""
    config = ConfigFile.load(path)
    appended = config.append_if_absent(line)
    if appended:
        config.save()
    return appended


def append_all(path: str | Path, lines: Iterable[str]) -> int:
    """Apply ``append_if_absent`` for every line with a single read/write.

    Returns:
        Number of lines actually appended.
    """
    config = ConfigFile.load(path)
    added = sum(1 for line in lines if config.append_if_absent(line))
    if added:
        config.save()
    return added


def set_toggle(path: str | Path, key: str, value: bool | str) -> Directive:
    """Load *path*, set *key* to *value* canonically, and save."""
    config = ConfigFile.load(path)
    directive = config.set_toggle(key, value)
    config.save()
    return directive


def select_exclusive(path: str | Path, choices: Iterable[str], selected: str) -> None:
    """Remove every live line among *choices* and enable *selected*.

    Used for mutually-exclusive option groups such as the LTO mode.
    """
    config = ConfigFile.load(path)
    config.remove_keys(choices)
    config.append_if_absent(f"{selected}=y")
    config.save()
