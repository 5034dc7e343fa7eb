"""Clone-or-update synchronisation of remote source trees.

Every working copy the build depends on is pinned to the tip of a remote
branch.  An existing working copy is fetched and hard-reset to
``origin/<branch>`` (local divergence is discarded); anything else at the
path is replaced by a fresh, retried clone.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from kforge.config import RepositorySpec
from kforge.retry import RetryExecutor
from kforge.utils import console, print_info, print_warning


class GitCommandError(Exception):
    """Raised when a git command exits non-zero or times out."""

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class SyncFailure(Exception):
    """Raised when a required repository could not be synchronised."""

    def __init__(self, spec: RepositorySpec, reason: str = "") -> None:
        self.spec = spec
        detail = f": {reason}" if reason else ""
        super().__init__(f"Failed to sync {spec.name} ({spec.url} @ {spec.branch}){detail}")


async def run_git(
    *args: str,
    cwd: str | Path | None = None,
    timeout: float = 600.0,
) -> tuple[str, str]:
    """Run a git command asynchronously and return (stdout, stderr).

    Raises GitCommandError if the command exits with a non-zero code.
    """
    cmd = ["git"] + list(args)
    cmd_str = " ".join(cmd)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
    except FileNotFoundError as exc:
        raise GitCommandError(f"git not found: {exc}", command=cmd_str) from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        raise GitCommandError(
            f"Git command timed out after {timeout}s: {cmd_str}",
            command=cmd_str,
        )

    stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
    stderr = stderr_bytes.decode("utf-8", errors="replace").strip()

    if process.returncode != 0:
        raise GitCommandError(
            f"Git command failed (exit {process.returncode}): {cmd_str}\n{stderr}",
            command=cmd_str,
            stderr=stderr,
        )

    return stdout, stderr


def is_working_copy(path: Path) -> bool:
    """Return ``True`` if *path* is a managed git working copy."""
    return (path / ".git").exists()


class RepositorySynchronizer:
    """Brings working copies under a workspace root to their branch tips.

    Args:
        workspace: Directory that repository paths are resolved against.
        retry: Executor wrapping the network-bound clone.
    """

    def __init__(self, workspace: str | Path, retry: RetryExecutor | None = None):
        self.workspace = Path(workspace)
        self.retry = retry or RetryExecutor()

    def local_path(self, spec: RepositorySpec) -> Path:
        return self.workspace / spec.path

    async def sync(self, spec: RepositorySpec) -> bool:
        """Clone or update *spec* so its branch matches the remote tip.

        Returns:
            ``True`` on success, ``False`` if the clone exhausted its retries
            or any fetch/checkout/reset step failed.
        """
        path = self.local_path(spec)

        if is_working_copy(path):
            print_info(f"Updating {spec.name}")
            try:
                await self._update(path, spec.branch)
            except GitCommandError as exc:
                console.print(f"[red]  Update of {spec.name} failed:[/red] {exc}")
                return False
            return True

        if path.exists():
            print_warning(f"{path} exists without .git; removing")
            shutil.rmtree(path)

        print_info(
            f"Cloning {spec.name} "
            f"([cyan]{spec.branch}[/cyan], depth {spec.depth or 'full'})"
        )
        return await self.retry.run(
            lambda: self._clone_once(spec, path), description=f"git clone {spec.name}"
        )

    async def sync_or_raise(self, spec: RepositorySpec) -> None:
        """Like :meth:`sync` but raises :class:`SyncFailure` on failure."""
        if not await self.sync(spec):
            raise SyncFailure(spec)

    async def _update(self, path: Path, branch: str) -> None:
        await run_git("fetch", "--all", "--prune", cwd=path)
        await run_git("checkout", branch, cwd=path)
        await run_git("reset", "--hard", f"origin/{branch}", cwd=path)

    async def _clone_once(self, spec: RepositorySpec, path: Path) -> bool:
        # A failed attempt can leave a partial checkout behind.
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        path.parent.mkdir(parents=True, exist_ok=True)

        args = ["clone"]
        if spec.depth > 0:
            args += ["--depth", str(spec.depth)]
        args += ["-b", spec.branch, spec.url, str(path)]
        try:
            await run_git(*args)
        except GitCommandError as exc:
            console.print(f"[dim]{exc.stderr or exc}[/dim]")
            return False
        return True


async def count_revisions(path: str | Path) -> int | None:
    """Number of commits reachable from HEAD in *path*, or ``None``."""
    repo = Path(path)
    if not is_working_copy(repo):
        return None
    try:
        stdout, _ = await run_git("rev-list", "--count", "HEAD", cwd=repo)
    except GitCommandError:
        return None
    count = stdout.strip()
    return int(count) if count.isascii() and count.isdigit() else None
