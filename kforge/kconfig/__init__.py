"""kforge defconfig module.

Key classes:
    ConfigFile   - Line-preserving defconfig with key-addressed mutations
    Directive    - One parsed ``KEY=value`` record
"""

from .defconfig import (
    ConfigFile,
    ConfigLine,
    ConfigWriteFailure,
    Directive,
    DirectiveState,
    append_all,
    append_if_absent,
    parse_directive,
    select_exclusive,
    set_toggle,
)

__all__ = [
    "ConfigFile",
    "ConfigLine",
    "ConfigWriteFailure",
    "Directive",
    "DirectiveState",
    "append_all",
    "append_if_absent",
    "parse_directive",
    "select_exclusive",
    "set_toggle",
]
