"""Workspace ownership and kernel source preparation."""

from __future__ import annotations

import fcntl
import os
import shutil
from pathlib import Path
from types import TracebackType
from typing import IO

from kforge.prompts import SourceOptions
from kforge.sources.repository import GitCommandError, run_git
from kforge.utils import print_info, print_warning


class WorkspaceLocked(Exception):
    """Another kforge run holds the workspace."""


class SourcePreparationError(Exception):
    """The kernel tree could not be brought into the requested state."""


class WorkspaceLock:
    """Exclusive, non-blocking ``flock`` on a lock file for one run.

    Usage::

        with WorkspaceLock(config.lock_path):
            ...

    Raises:
        WorkspaceLocked: On enter, if another process holds the lock.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: IO[str] | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            handle.close()
            raise WorkspaceLocked(
                f"Workspace is in use by another run (lock: {self.path})"
            ) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def __enter__(self) -> "WorkspaceLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


async def prepare_kernel_source(
    kernel_path: Path,
    out_path: Path,
    options: SourceOptions,
    reset_commit: str,
    feature_module_dir: Path = Path("KernelSU"),
) -> None:
    """Apply the operator's clean/keep choices to the kernel tree.

    Clean mode runs ``git clean -fdx`` (failure only warns) and hard-resets to
    *reset_commit* (failure is fatal).  Both modes drop the feature module
    tree so it is reinstalled from scratch.  The out dir always exists
    afterwards.

    Raises:
        SourcePreparationError: Missing kernel tree or failed reset.
    """
    if not kernel_path.is_dir():
        raise SourcePreparationError(f"Kernel directory not found: {kernel_path}")

    feature_tree = kernel_path / feature_module_dir
    if options.source_clean:
        print_info("Cleaning git source")
        try:
            await run_git("clean", "-fdx", cwd=kernel_path)
        except GitCommandError as exc:
            print_warning(f"git clean failed: {exc.stderr or exc}")
        try:
            await run_git("reset", "--hard", reset_commit, cwd=kernel_path)
        except GitCommandError as exc:
            raise SourcePreparationError(
                f"Failed reset to {reset_commit}: {exc.stderr or exc}"
            ) from exc
        shutil.rmtree(feature_tree, ignore_errors=True)
        print_info(f"Source cleaned and reset to {reset_commit}")
    else:
        print_info("Skipping source clean (keeping modifications)")
        shutil.rmtree(feature_tree, ignore_errors=True)
        print_info(f"Removed {feature_module_dir} only")

    if options.build_clean and out_path.exists():
        print_info("Cleaning build directory")
        shutil.rmtree(out_path)
    elif not options.build_clean:
        print_info("Resuming from existing build directory")

    out_path.mkdir(parents=True, exist_ok=True)
