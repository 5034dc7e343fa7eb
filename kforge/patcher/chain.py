"""The ordered patch chain applied to the kernel tree.

Overlay directories are copied in first (new source files the patches
expect), then every step's patch is staged into the kernel root and applied
from its target subtree.  Nothing here raises: each problem becomes a warning
and the chain moves on.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from kforge.config import PatchingConfig, PatchStep
from kforge.patcher.applier import PatchApplier, PatchOutcome, PatchSpec
from kforge.utils import print_info, print_warning


@dataclass
class ChainReport:
    """Per-outcome patch names for one chain run."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def record(self, name: str, outcome: PatchOutcome) -> None:
        {
            PatchOutcome.APPLIED: self.applied,
            PatchOutcome.SKIPPED: self.skipped,
            PatchOutcome.FAILED: self.failed,
        }[outcome].append(name)

    def as_dict(self) -> dict[str, list[str]]:
        return {"applied": self.applied, "skipped": self.skipped, "failed": self.failed}


class PatchChain:
    """Stages and applies :class:`PatchingConfig` against a kernel tree.

    Args:
        workspace: Root that overlay sources and patch paths are relative to.
        kernel_path: Kernel top level; targets and cleanup paths are relative to it.
        patching: The chain definition.
        applier: Patch runner (shared so tests can substitute it).
    """

    def __init__(
        self,
        workspace: str | Path,
        kernel_path: str | Path,
        patching: PatchingConfig,
        applier: PatchApplier | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.kernel_path = Path(kernel_path)
        self.patching = patching
        self.applier = applier or PatchApplier()

    def stage_overlays(self) -> int:
        """Copy overlay directories into the kernel tree.

        Returns:
            Number of files copied.
        """
        copied = 0
        for overlay in self.patching.overlays:
            source = self.workspace / overlay.source
            dest = self.kernel_path / overlay.dest
            if not source.is_dir():
                print_warning(f"Overlay source missing: {source}")
                continue
            for item in sorted(source.rglob("*")):
                if not item.is_file():
                    continue
                target = dest / item.relative_to(source)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(item, target)
                copied += 1
        return copied

    def stage_patch(self, step: PatchStep) -> Path | None:
        """Copy the step's patch into the kernel root and return its new path."""
        source = self.workspace / step.patch
        if not source.is_file():
            print_warning(f"Patch file missing: {source}")
            return None
        staged = self.kernel_path / source.name
        if staged.resolve() != source.resolve():
            shutil.copy2(source, staged)
        return staged

    def _cleanup(self, step: PatchStep) -> None:
        for relative in step.cleanup:
            leftover = self.kernel_path / relative
            if leftover.is_file():
                leftover.unlink()

    async def apply_step(self, step: PatchStep) -> PatchOutcome:
        staged = self.stage_patch(step)
        if staged is None:
            return PatchOutcome.SKIPPED if step.mode == "forward" else PatchOutcome.FAILED

        spec = PatchSpec(patch=staged, target=self.kernel_path / step.target)
        print_info(f"Applying {spec.name}")
        if step.mode == "forced":
            outcome = await self.applier.apply_forced(spec)
        else:
            outcome = await self.applier.apply(spec)
        self._cleanup(step)
        return outcome

    async def run(self) -> ChainReport:
        """Stage overlays, then apply every step in order."""
        report = ChainReport()
        copied = self.stage_overlays()
        print_info(f"Staged {copied} overlay file(s)")

        for step in self.patching.steps:
            outcome = await self.apply_step(step)
            report.record(step.patch.name, outcome)

        return report
