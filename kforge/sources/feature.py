"""Feature modules installed through remote setup scripts.

KernelSU and Baseband-guard are not plain clones: each ships a ``setup.sh``
that wires itself into the kernel tree.  The installer downloads the script
over HTTPS, pipes it into ``bash -s <args>`` from the kernel root, and wraps
the download+execute pair in the shared :class:`RetryExecutor`.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

import httpx

from kforge.config import FeatureModuleSpec
from kforge.kconfig.defconfig import append_if_absent
from kforge.retry import RetryExecutor
from kforge.utils import console, print_info, print_warning, run_command


class FeatureInstallError(Exception):
    """Raised when a feature module cannot be installed."""

    def __init__(self, module: str, reason: str) -> None:
        self.module = module
        super().__init__(f"{module} setup failed: {reason}")


class LsmUpdate(str, Enum):
    """Outcome of editing the default LSM list in ``security/Kconfig``."""

    ADDED = "added"
    PRESENT = "present"
    NOT_FOUND = "not_found"


def is_kernel_root(path: Path) -> bool:
    """A kernel top level has a ``Makefile`` and a ``security/`` directory."""
    return (path / "Makefile").is_file() and (path / "security").is_dir()


def add_lsm_default(kconfig_path: Path, lsm: str, after: str = "landlock") -> LsmUpdate:
    """Insert *lsm* after *after* in the ``default`` lines of ``config LSM``.

    Only ``default`` lines inside the ``config LSM`` block are touched; the
    block ends at its ``help`` text or the next ``config`` entry.  Running
    twice is a no-op.
    """
    lines = kconfig_path.read_text(encoding="utf-8").splitlines(keepends=True)
    word = re.compile(rf"\b{re.escape(after)}\b")

    in_block = False
    changed = False
    present = False
    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped == "config LSM":
            in_block = True
            continue
        if not in_block:
            continue
        if stripped == "help" or stripped.startswith(("config ", "menuconfig ", "endmenu")):
            in_block = False
            continue
        if not stripped.startswith("default"):
            continue
        if lsm in stripped:
            present = True
            continue
        updated = word.sub(f"{after},{lsm}", line, count=1)
        if updated != line:
            lines[index] = updated
            changed = True

    if changed:
        kconfig_path.write_text("".join(lines), encoding="utf-8")
        return LsmUpdate.ADDED
    return LsmUpdate.PRESENT if present else LsmUpdate.NOT_FOUND


class FeatureModuleInstaller:
    """Installs feature modules into a kernel tree.

    Args:
        kernel_path: Kernel top level; scripts run from here.
        defconfig_path: Defconfig that receives module directives.
        retry: Executor wrapping each download+execute attempt.
        timeout: Per-attempt seconds for the download and for the script.
    """

    def __init__(
        self,
        kernel_path: str | Path,
        defconfig_path: str | Path,
        retry: RetryExecutor | None = None,
        timeout: float = 300.0,
    ) -> None:
        self.kernel_path = Path(kernel_path)
        self.defconfig_path = Path(defconfig_path)
        self.retry = retry or RetryExecutor()
        self.timeout = timeout

    async def fetch_script(self, url: str) -> str:
        """Download a setup script.

        Raises:
            httpx.HTTPError: On connection failure or a non-2xx response.
        """
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=15.0),
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.text

    async def _attempt(self, module: FeatureModuleSpec) -> bool:
        try:
            script = await self.fetch_script(module.script_url)
        except httpx.HTTPError as exc:
            console.print(f"[dim]  download of {module.script_url} failed: {exc}[/dim]")
            return False

        returncode, stdout, stderr = await run_command(
            ["bash", "-s", *module.args],
            cwd=self.kernel_path,
            timeout=self.timeout,
            stdin=script,
        )
        if stdout:
            console.print(f"[dim]{stdout}[/dim]")
        if returncode != 0:
            console.print(f"[dim]  setup script exited {returncode}: {stderr}[/dim]")
            return False
        return True

    async def install(self, module: FeatureModuleSpec) -> None:
        """Run the module's setup script and apply its follow-up edits.

        Raises:
            FeatureInstallError: If the tree is not a kernel top level when
                one is required, or every attempt failed.
        """
        if module.requires_kernel_root and not is_kernel_root(self.kernel_path):
            raise FeatureInstallError(
                module.name, f"{self.kernel_path} is not a kernel top level"
            )

        ok = await self.retry.run(
            lambda: self._attempt(module), description=f"{module.name} setup"
        )
        if not ok:
            raise FeatureInstallError(
                module.name, f"script {module.script_url} did not succeed"
            )
        print_info(f"{module.name} installed")

        if module.directive:
            if append_if_absent(self.defconfig_path, module.directive):
                print_info(f"Enabled {module.directive} in {self.defconfig_path}")
            else:
                print_warning(f"{module.directive} already enabled")

        if module.lsm_name:
            self._register_lsm(module.lsm_name)

    def _register_lsm(self, lsm: str) -> None:
        kconfig = self.kernel_path / "security" / "Kconfig"
        if not kconfig.is_file():
            print_warning("security/Kconfig not found; skipping LSM default update")
            return

        result = add_lsm_default(kconfig, lsm)
        if result is LsmUpdate.ADDED:
            print_info(f"Added {lsm} to LSM default in {kconfig}")
        elif result is LsmUpdate.PRESENT:
            print_warning(f"{lsm} already present in LSM default")
        else:
            print_warning(f"No LSM default line to extend in {kconfig}")
