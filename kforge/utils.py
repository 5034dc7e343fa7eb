"""Shared utility functions for kforge.

Provides async command execution (captured and log-streamed), JSON output
and the Rich-based console reporting used by every
pipeline stage.  Labels follow the classic build-script convention:
``[INFO]``, ``[WARN]``, ``[ERROR]`` and ``==>`` for step markers.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.rule import Rule
from rich.table import Table

console = Console()


# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


def _merge_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    return {**os.environ, **env}


async def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: float = 600,
    env: dict[str, str] | None = None,
    stdin: str | None = None,
) -> tuple[int, str, str]:
    """Run a command asynchronously and capture its output.

    Args:
        cmd: Shell command string or list of arguments.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.
        stdin: Optional text fed to the child's standard input.

    Returns:
        A ``(returncode, stdout, stderr)`` tuple.  A missing executable is
        reported as return code 127, a timeout as -1.
    """
    stdin_pipe = asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL
    try:
        if isinstance(cmd, list):
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=stdin_pipe,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=_merge_env(env),
            )
        else:
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdin=stdin_pipe,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=_merge_env(env),
            )
    except FileNotFoundError as exc:
        return (127, "", str(exc))

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(stdin.encode("utf-8") if stdin is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return (
            -1,
            "",
            f"Command timed out after {timeout}s: {cmd if isinstance(cmd, str) else ' '.join(cmd)}",
        )

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
    return (process.returncode or 0, stdout_str, stderr_str)


async def run_command_logged(
    cmd: list[str],
    log_path: Path,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    on_line: Callable[[str], None] | None = None,
) -> int:
    """Run a long command, streaming its combined output into *log_path*.

    Stdout and stderr are merged (``2>&1 | tee``).  The log file is
    truncated first so it only ever holds the most recent run.

    Args:
        cmd: Argument list.
        log_path: File that receives every output line.
        cwd: Working directory.
        env: Optional extra environment variables.
        on_line: Optional callback invoked with each decoded line.

    Returns:
        The process exit code (127 if the executable is missing).
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("w", encoding="utf-8") as log_file:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd) if cwd else None,
                env=_merge_env(env),
            )
        except FileNotFoundError as exc:
            log_file.write(f"{exc}\n")
            return 127

        assert process.stdout is not None  # guaranteed by PIPE
        try:
            while True:
                line_bytes = await process.stdout.readline()
                if not line_bytes:
                    break
                line = line_bytes.decode("utf-8", errors="replace").rstrip("\n")
                log_file.write(line + "\n")
                if on_line is not None:
                    on_line(line)
        finally:
            if process.returncode is None:
                await process.wait()

    return process.returncode or 0


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


async def save_json(data: dict[str, Any] | list[Any], path: str | Path) -> None:
    """Write *data* as pretty-printed JSON, replacing *path* atomically.

    The document goes to a sibling ``.tmp`` file first and is renamed over
    *path*, so an interrupted run leaves the previous report intact.  Values
    JSON cannot encode (paths, datetimes) are written as strings.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n"
    tmp_path = file_path.with_name(file_path.name + ".tmp")

    def _write() -> None:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, file_path)

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _write)


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------

STAGE_NAMES: dict[int, str] = {
    1: "VALIDATE",
    2: "SYNC REPOS",
    3: "SETUP COMPILER",
    4: "PROMPT OPTIONS",
    5: "PREPARE SOURCE",
    6: "CONFIGURE DEVICE",
    7: "CONFIGURE LTO",
    8: "INSTALL FEATURE MODULES",
    9: "APPLY PATCHES",
    10: "TUNE CONFIG",
    11: "COMPILE",
    12: "RESOLVE VERSION",
    13: "PACKAGE",
}


def print_stage_header(stage: int, name: str) -> None:
    """Print a full-width rule announcing a pipeline stage."""
    console.print()
    console.print(
        Rule(
            f"[bold bright_blue] Stage {stage}: {name.upper()} [/bold bright_blue]",
            style="bright_blue",
        )
    )


def print_summary_table(
    data: dict[str, str | list[str]],
    title: str = "Summary",
    headers: tuple[str, str] = ("Item", "Value"),
) -> None:
    """Print a two-column table, one row per key.

    List values are joined with commas; an empty value renders as ``-``.
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column(headers[0], style="dim", no_wrap=True)
    table.add_column(headers[1])

    for key, value in data.items():
        text = ", ".join(value) if isinstance(value, list) else str(value)
        table.add_row(key, text or "-")

    console.print(table)
    console.print()


def print_step(message: str) -> None:
    """Print a blue ``==>`` step marker."""
    console.print(f"[bold blue]==>[/bold blue] {message}")


def print_info(message: str) -> None:
    """Print a green ``[INFO]`` line."""
    console.print(f"[bold green]\\[INFO][/bold green] {message}")


def print_success(message: str) -> None:
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red ``[ERROR]`` line."""
    console.print(f"[bold red]\\[ERROR][/bold red] {message}")


def print_warning(message: str) -> None:
    """Print a yellow ``[WARN]`` line."""
    console.print(f"[bold yellow]\\[WARN][/bold yellow] {message}")
