"""Tests for workspace locking and kernel source preparation (kforge.workspace)."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from kforge.prompts import SourceOptions
from kforge.sources.repository import GitCommandError
from kforge.workspace import (
    SourcePreparationError,
    WorkspaceLock,
    WorkspaceLocked,
    prepare_kernel_source,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class TestWorkspaceLock:
    @pytest.mark.unit
    def test_second_holder_is_refused(self, tmp_path: Path):
        lock_path = tmp_path / ".kforge" / "workspace.lock"
        with WorkspaceLock(lock_path) as first:
            assert first.held
            with pytest.raises(WorkspaceLocked, match="in use"):
                WorkspaceLock(lock_path).acquire()

    @pytest.mark.unit
    def test_released_lock_can_be_retaken(self, tmp_path: Path):
        lock_path = tmp_path / "workspace.lock"
        with WorkspaceLock(lock_path):
            pass
        lock = WorkspaceLock(lock_path)
        lock.acquire()
        assert lock.held
        lock.release()
        assert not lock.held

    @pytest.mark.unit
    def test_records_pid(self, tmp_path: Path):
        lock_path = tmp_path / "workspace.lock"
        with WorkspaceLock(lock_path):
            assert lock_path.read_text(encoding="utf-8").strip() == str(os.getpid())

    @pytest.mark.unit
    def test_release_without_acquire_is_noop(self, tmp_path: Path):
        WorkspaceLock(tmp_path / "x.lock").release()


class TestPrepareKernelSource:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_kernel_dir_is_fatal(self, tmp_path: Path):
        with pytest.raises(SourcePreparationError, match="not found"):
            await prepare_kernel_source(
                tmp_path / "common", tmp_path / "common/out",
                SourceOptions(source_clean=False, build_clean=True), "HEAD",
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keep_mode_only_drops_feature_tree(self, kernel_tree: Path):
        (kernel_tree / "KernelSU" / "kernel").mkdir(parents=True)
        (kernel_tree / "local.patch").write_text("mine", encoding="utf-8")
        out = kernel_tree / "out"
        (out / "arch").mkdir(parents=True)

        with patch("kforge.workspace.run_git", new=AsyncMock()) as mock_git:
            await prepare_kernel_source(
                kernel_tree, out, SourceOptions(source_clean=False, build_clean=False), "HEAD"
            )

        mock_git.assert_not_awaited()
        assert not (kernel_tree / "KernelSU").exists()
        assert (kernel_tree / "local.patch").exists()
        assert (out / "arch").is_dir()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_clean_recreates_out_dir(self, kernel_tree: Path):
        out = kernel_tree / "out"
        (out / "stale.o").parent.mkdir(parents=True)
        (out / "stale.o").write_text("x", encoding="utf-8")

        await prepare_kernel_source(
            kernel_tree, out, SourceOptions(source_clean=False, build_clean=True), "HEAD"
        )

        assert out.is_dir()
        assert list(out.iterdir()) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_reset_is_fatal(self, kernel_tree: Path):
        mock_git = AsyncMock(side_effect=[("", ""), GitCommandError("reset failed", stderr="bad rev")])
        with patch("kforge.workspace.run_git", new=mock_git):
            with pytest.raises(SourcePreparationError, match="f090d4b08"):
                await prepare_kernel_source(
                    kernel_tree, kernel_tree / "out",
                    SourceOptions(source_clean=True, build_clean=True), "f090d4b08",
                )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_clean_only_warns(self, kernel_tree: Path):
        mock_git = AsyncMock(side_effect=[GitCommandError("clean failed"), ("", "")])
        with patch("kforge.workspace.run_git", new=mock_git):
            await prepare_kernel_source(
                kernel_tree, kernel_tree / "out",
                SourceOptions(source_clean=True, build_clean=True), "f090d4b08",
            )

        assert [call.args for call in mock_git.await_args_list] == [
            ("clean", "-fdx"),
            ("reset", "--hard", "f090d4b08"),
        ]

    @requires_git
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clean_mode_resets_real_tree(self, tmp_git_repo: Path, git_commit):
        base = tmp_git_repo
        first = (base / "README.md").read_text(encoding="utf-8")
        git_commit(base, "README.md", "changed\n", "Second")
        (base / "untracked.txt").write_text("junk", encoding="utf-8")
        (base / "KernelSU").mkdir()

        initial = subprocess.run(
            ["git", "rev-list", "--max-parents=0", "HEAD"],
            cwd=base, check=True, capture_output=True, text=True,
        ).stdout.strip()

        await prepare_kernel_source(
            base, base / "out", SourceOptions(source_clean=True, build_clean=True), initial
        )

        assert (base / "README.md").read_text(encoding="utf-8") == first
        assert not (base / "untracked.txt").exists()
        assert not (base / "KernelSU").exists()
        assert (base / "out").is_dir()
