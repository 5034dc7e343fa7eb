"""Apply unified diffs to a source tree without tripping over re-runs.

A forward apply is always preceded by ``patch --dry-run --forward``.  When
the simulation fails the patch is reported as skipped: the usual cause is
that an earlier run already applied it.  Forced applies (``patch -f``) are
reserved for patches chained after a bulk feature patch that is expected to
have touched the same files.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from kforge.utils import console, print_info, print_warning, run_command


class PatchOutcome(str, Enum):
    """Result of one patch application."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class PatchSpec:
    """A patch file and the subtree it is applied from."""

    patch: Path
    target: Path
    strip: int = 1

    @property
    def name(self) -> str:
        return self.patch.name


class PatchConflict(Exception):
    """The dry-run simulation rejected the patch."""

    def __init__(self, spec: PatchSpec, detail: str = "") -> None:
        self.spec = spec
        self.detail = detail
        super().__init__(f"Patch does not apply cleanly: {spec.patch} in {spec.target}")


class PatchApplier:
    """Runs the ``patch`` tool against a target subtree.

    Args:
        patch_binary: Executable to invoke.
        timeout: Seconds allowed per ``patch`` invocation.
    """

    def __init__(self, patch_binary: str = "patch", timeout: float = 300.0) -> None:
        self.patch_binary = patch_binary
        self.timeout = timeout

    async def _run_patch(self, spec: PatchSpec, *flags: str) -> tuple[int, str, str]:
        cmd = [
            self.patch_binary,
            f"-p{spec.strip}",
            *flags,
            "-i",
            str(spec.patch.resolve()),
        ]
        return await run_command(cmd, cwd=spec.target, timeout=self.timeout)

    def _missing_input(self, spec: PatchSpec) -> str | None:
        if not spec.patch.is_file():
            return f"patch file not found: {spec.patch}"
        if not spec.target.is_dir():
            return f"target directory not found: {spec.target}"
        return None

    async def simulate(self, spec: PatchSpec) -> None:
        """Dry-run a forward apply.

        Raises:
            PatchConflict: If ``patch`` reports the diff would not apply.
        """
        returncode, stdout, stderr = await self._run_patch(spec, "--dry-run", "--forward")
        if returncode != 0:
            raise PatchConflict(spec, stdout or stderr)

    async def apply(self, spec: PatchSpec) -> PatchOutcome:
        """Forward-apply *spec* unless the dry run says it cannot.

        Returns:
            ``APPLIED`` on success, ``SKIPPED`` when the simulation fails or
            inputs are missing, ``FAILED`` if the real apply errors after a
            clean simulation.
        """
        problem = self._missing_input(spec)
        if problem:
            print_warning(f"Skipping {spec.name}: {problem}")
            return PatchOutcome.SKIPPED

        try:
            await self.simulate(spec)
        except PatchConflict as exc:
            print_warning(f"Patch likely already applied or context mismatch: {spec.name}")
            if exc.detail:
                console.print(f"[dim]{exc.detail}[/dim]")
            return PatchOutcome.SKIPPED

        returncode, stdout, stderr = await self._run_patch(spec, "-u")
        if returncode != 0:
            print_warning(
                f"{spec.name} passed the dry run but failed to "
                f"apply (exit {returncode})"
            )
            console.print(f"[dim]{stdout or stderr}[/dim]")
            return PatchOutcome.FAILED

        print_info(f"Applied patch: {spec.name}")
        return PatchOutcome.APPLIED

    async def apply_forced(self, spec: PatchSpec) -> PatchOutcome:
        """Apply *spec* with ``patch -f``, overwriting conflicting hunks.

        Failures are reported as ``FAILED`` and never raised.
        """
        problem = self._missing_input(spec)
        if problem:
            print_warning(f"{spec.name} not applied: {problem}")
            return PatchOutcome.FAILED

        returncode, stdout, stderr = await self._run_patch(spec, "-f", "-u")
        if returncode != 0:
            print_warning(f"{spec.name} encountered issues (exit {returncode}), continuing")
            console.print(f"[dim]{stdout or stderr}[/dim]")
            return PatchOutcome.FAILED

        print_info(f"Force-applied patch: {spec.name}")
        return PatchOutcome.APPLIED
