"""Shared pytest fixtures for the kforge test suite.

Provides reusable fixtures for:
- Mock subprocess helpers
- Real git repositories (a bare remote plus a seeded branch)
- A minimal kernel tree with a defconfig and security/Kconfig
- A Config rooted in tmp_path
"""

from __future__ import annotations

import subprocess
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from kforge.config import BuildConfig, Config, ToolchainConfig


def _git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def _configure_identity(repo_dir: Path) -> None:
    _git("config", "user.email", "test@kforge.local", cwd=repo_dir)
    _git("config", "user.name", "kforge Test", cwd=repo_dir)
    _git("config", "commit.gpgsign", "false", cwd=repo_dir)


def commit_file(repo_dir: Path, name: str, content: str, message: str) -> None:
    """Write *name* in *repo_dir* and commit it."""
    target = repo_dir / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    _git("add", name, cwd=repo_dir)
    _git(
        "-c", "user.email=test@kforge.local",
        "-c", "user.name=kforge Test",
        "-c", "commit.gpgsign=false",
        "commit", "-m", message,
        cwd=repo_dir,
    )


# ---------------------------------------------------------------------------
# Mock Subprocess (generic)
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory


# ---------------------------------------------------------------------------
# Git repositories
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_git_repo(tmp_path: Path) -> Path:
    """Temporary git repository on branch ``main`` with one commit."""
    repo_dir = tmp_path / "seed"
    repo_dir.mkdir()
    _git("init", cwd=repo_dir)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo_dir)
    _configure_identity(repo_dir)
    commit_file(repo_dir, "README.md", "# Seed\n", "Initial commit")
    yield repo_dir


@pytest.fixture
def tmp_git_remote(tmp_path: Path, tmp_git_repo: Path) -> Path:
    """Bare repository cloned from ``tmp_git_repo``; acts as ``origin``."""
    remote = tmp_path / "remote.git"
    _git("clone", "--bare", str(tmp_git_repo), str(remote), cwd=tmp_path)
    _git("remote", "add", "origin", str(remote), cwd=tmp_git_repo)
    _git("fetch", "origin", cwd=tmp_git_repo)
    yield remote


# ---------------------------------------------------------------------------
# Kernel tree
# ---------------------------------------------------------------------------

SECURITY_KCONFIG = textwrap.dedent("""\
    menu "Security options"

    config SECURITY
    \tbool "Enable different security models"

    config LSM
    \tstring "Ordered list of enabled LSMs"
    \tdefault "landlock,lockdown,yama,loadpin,safesetid,selinux,smack,tomoyo,apparmor,bpf" if DEFAULT_SECURITY_SELINUX
    \tdefault "landlock,lockdown,yama,loadpin,safesetid,bpf"
    \thelp
    \t  A comma-separated list of LSMs, in initialization order.
    \t  landlock is listed first.

    config LSM_MMAP_MIN_ADDR
    \tint "Low address space for LSM to protect from user allocation"
    \tdefault "landlock"

    endmenu
""")


@pytest.fixture
def kernel_tree(tmp_path: Path) -> Path:
    """Minimal kernel top level: Makefile, security/Kconfig and a defconfig."""
    kernel = tmp_path / "workspace" / "common"
    (kernel / "security").mkdir(parents=True)
    (kernel / "Makefile").write_text("VERSION = 6\nPATCHLEVEL = 1\n", encoding="utf-8")
    (kernel / "security" / "Kconfig").write_text(SECURITY_KCONFIG, encoding="utf-8")
    defconfig = kernel / "arch" / "arm64" / "configs" / "gki_defconfig"
    defconfig.parent.mkdir(parents=True)
    defconfig.write_text(
        "CONFIG_LOCALVERSION_AUTO=y\n"
        "# CONFIG_LOCALVERSION is not set\n"
        "CONFIG_LTO_CLANG_FULL=y\n",
        encoding="utf-8",
    )
    yield kernel


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

def make_config(workspace: Path, **overrides) -> Config:
    """Config rooted at *workspace* with a fast retry policy."""
    fields = {
        "workspace": workspace,
        "toolchain": ToolchainConfig(
            clang_path=workspace / "clang" / "bin",
            ccache_dir=workspace / ".ccache",
            llvm_cache_path=workspace / ".llvm",
        ),
        "build": BuildConfig(threads=2, retry_attempts=2, retry_delay=0),
    }
    fields.update(overrides)
    return Config(**fields)


@pytest.fixture
def workspace_config(kernel_tree: Path) -> Config:
    """Config whose workspace contains ``kernel_tree`` as ``common``."""
    return make_config(kernel_tree.parent)


@pytest.fixture
def config_factory():
    """Factory fixture wrapping :func:`make_config`."""
    return make_config


@pytest.fixture
def git_commit():
    """Factory fixture wrapping :func:`commit_file`."""
    return commit_file
