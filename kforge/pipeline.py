"""kforge Pipeline Orchestrator.

Implements the 13-stage kernel build pipeline:

Stage  1: VALIDATE                -- Host tools and clang installation.
Stage  2: SYNC REPOS              -- susfs4ksu, AnyKernel3, kernel_patches to branch tips.
Stage  3: SETUP COMPILER          -- Compile environment (PATH, ccache).
Stage  4: PROMPT OPTIONS          -- Source clean / build-dir clean choices.
Stage  5: PREPARE SOURCE          -- git clean/reset, out dir.
Stage  6: CONFIGURE DEVICE        -- Device profile directives.
Stage  7: CONFIGURE LTO           -- Exactly one LTO mode.
Stage  8: INSTALL FEATURE MODULES -- KernelSU, Baseband-guard setup scripts.
Stage  9: APPLY PATCHES           -- SUSFS patch chain (never fatal).
Stage 10: TUNE CONFIG             -- Localversion and feature toggles.
Stage 11: COMPILE                 -- External make build.
Stage 12: RESOLVE VERSION         -- Release token for the archive name.
Stage 13: PACKAGE                 -- Versioned AnyKernel3 zip.

Stages run strictly in order and every stage except APPLY PATCHES is
fail-fast.  Whatever happens, a single finalizer reports elapsed time.

Usage::

    kforge --workspace /mnt/build
    python -m kforge.pipeline --lto full --source-clean keep
"""

from __future__ import annotations

import argparse
import asyncio
import os
import shutil
import sys
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.panel import Panel

from kforge.compiler import (
    CompileFailure,
    KernelCompiler,
    ToolchainError,
    ToolchainInfo,
    build_environment,
    validate_toolchain,
)
from kforge.config import Config
from kforge.kconfig.defconfig import ConfigWriteFailure, append_all, select_exclusive, set_toggle
from kforge.kconfig.profiles import LTO_DIRECTIVES
from kforge.patcher.chain import PatchChain
from kforge.prompts import (
    ConsoleInputProvider,
    InputProvider,
    PresetAnswers,
    PromptAborted,
    ScriptedInputProvider,
    SourceOptions,
    prompt_source_options,
)
from kforge.release.packager import ArtifactPackager, PackagingFailure
from kforge.release.version import VersionResolver, VersionToken, VersionUnresolvable
from kforge.retry import RetryExecutor
from kforge.sources.feature import FeatureInstallError, FeatureModuleInstaller
from kforge.sources.repository import RepositorySynchronizer, SyncFailure
from kforge.utils import (
    STAGE_NAMES,
    console,
    format_duration,
    print_error,
    print_info,
    print_stage_header,
    print_step,
    print_success,
    print_summary_table,
    print_warning,
    save_json,
)
from kforge.workspace import (
    SourcePreparationError,
    WorkspaceLock,
    WorkspaceLocked,
    prepare_kernel_source,
)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Raised when a pipeline stage fails irrecoverably."""

    def __init__(self, stage: int, message: str) -> None:
        self.stage = stage
        super().__init__(f"Stage {stage} ({STAGE_NAMES.get(stage, '?')}): {message}")


# Expected failure kinds: reported with a labeled message, no traceback.
_STAGE_FAILURES: tuple[type[Exception], ...] = (
    ToolchainError,
    SyncFailure,
    PromptAborted,
    SourcePreparationError,
    ConfigWriteFailure,
    FeatureInstallError,
    CompileFailure,
    VersionUnresolvable,
    PackagingFailure,
)


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class Pipeline:
    """kforge Pipeline Orchestrator.

    Drives the thirteen build stages against one workspace.  The workspace
    is locked for the duration of the run; per-run choices live only in
    memory.

    Attributes:
        config: Global, immutable configuration.
        state: Accumulates per-stage results for the final summary.
        options: Source/build-dir choices made in stage 4.
    """

    _STAGE_METHODS: dict[int, str] = {
        1: "stage_validate",
        2: "stage_sync_repos",
        3: "stage_setup_compiler",
        4: "stage_prompt_options",
        5: "stage_prepare_source",
        6: "stage_configure_device",
        7: "stage_configure_lto",
        8: "stage_install_feature_modules",
        9: "stage_apply_patches",
        10: "stage_tune_config",
        11: "stage_compile",
        12: "stage_resolve_version",
        13: "stage_package",
    }

    def __init__(
        self,
        config: Config,
        input_provider: InputProvider | None = None,
        presets: PresetAnswers | None = None,
        retry: RetryExecutor | None = None,
    ) -> None:
        self.config = config
        self.input_provider = input_provider or ConsoleInputProvider()
        self.presets = presets or PresetAnswers()
        self.retry = retry or RetryExecutor(
            max_attempts=config.build.retry_attempts,
            delay=config.build.retry_delay,
        )
        self.state: dict[str, Any] = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "stages_completed": [],
            "stages_failed": [],
            "success": False,
        }

        self.synchronizer = RepositorySynchronizer(config.workspace, retry=self.retry)
        self.installer = FeatureModuleInstaller(
            config.kernel_path, config.defconfig_path, retry=self.retry
        )
        self.patch_chain = PatchChain(config.workspace, config.kernel_path, config.patching)
        self.packager = ArtifactPackager(
            config.anykernel_path, config.builds_path, config.packaging.zip_prefix
        )

        self.toolchain: ToolchainInfo | None = None
        self.compile_env: dict[str, str] = {}
        self.options: SourceOptions | None = None
        self.image_path: Path | None = None
        self.version: VersionToken | None = None
        self.artifact: Path | None = None
        self._lock_acquired = False

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> dict[str, Any]:
        """Execute every stage in order.

        Returns:
            The final state dictionary, including a top-level ``success``
            boolean.
        """
        async with self._finalizer():
            console.print(
                Panel(
                    f"[bold bright_cyan]kforge kernel build[/bold bright_cyan]\n"
                    f"Workspace : {self.config.workspace.resolve()}\n"
                    f"Kernel    : {self.config.kernel_path}\n"
                    f"Device    : {self.config.device.name if self.config.device.enabled else 'generic'}\n"
                    f"LTO       : {self.config.build.lto}",
                    title="[bold]Build Start[/bold]",
                    border_style="bright_cyan",
                )
            )
            try:
                with WorkspaceLock(self.config.lock_path):
                    self._lock_acquired = True
                    self.state["success"] = await self._run_stages()
            except WorkspaceLocked as exc:
                print_error(str(exc))
                self.state["error"] = str(exc)

        return self.state

    async def _run_stages(self) -> bool:
        for stage_num in sorted(self._STAGE_METHODS):
            stage_name = STAGE_NAMES[stage_num]
            print_stage_header(stage_num, stage_name)

            stage_start = time.monotonic()
            try:
                method = getattr(self, self._STAGE_METHODS[stage_num])
                result = await method()
            except (PipelineError, *_STAGE_FAILURES) as exc:
                self._record_failure(stage_num, str(exc))
                print_error(
                    f"Stage {stage_num} ({stage_name}) FAILED after "
                    f"{format_duration(time.monotonic() - stage_start)}: {exc}"
                )
                return False
            except Exception as exc:
                tb = traceback.format_exc()
                self._record_failure(stage_num, tb)
                print_error(
                    f"Stage {stage_num} ({stage_name}) FAILED after "
                    f"{format_duration(time.monotonic() - stage_start)}: {exc}"
                )
                console.print(f"[dim]{tb}[/dim]")
                return False

            self.state[f"stage{stage_num}"] = result
            self.state["stages_completed"].append(stage_num)
            print_success(
                f"Stage {stage_num} ({stage_name}) completed in "
                f"{format_duration(time.monotonic() - stage_start)}"
            )

        print_info("Build completed")
        return True

    def _record_failure(self, stage: int, detail: str) -> None:
        self.state["stages_failed"].append(stage)
        self.state[f"stage{stage}_error"] = detail

    @asynccontextmanager
    async def _finalizer(self) -> AsyncIterator[None]:
        """Report elapsed time and outcome on every exit path.

        Only reports; partial state left by a failed stage is not rolled back.
        """
        start = time.monotonic()
        try:
            yield
        finally:
            elapsed = time.monotonic() - start
            self.state["total_duration"] = format_duration(elapsed)
            self.state["finished_at"] = datetime.now(timezone.utc).isoformat()
            if not self.state["success"]:
                print_error(f"Exited with code 1 after {format_duration(elapsed)}")
            self._print_final_summary(elapsed)
            await self._save_report()

    async def _save_report(self) -> None:
        if not self._lock_acquired:
            # The report belongs to the run holding the lock.
            return
        try:
            await save_json(self.state, self.config.report_path)
        except OSError as exc:
            print_warning(f"Could not write run report: {exc}")

    # ------------------------------------------------------------------
    # Stage 1: VALIDATE
    # ------------------------------------------------------------------

    async def stage_validate(self) -> dict[str, Any]:
        """Check host tools and clang before any mutation."""
        print_step("Validating requirements")
        self.toolchain = await validate_toolchain(self.config)
        print_info(f"ccache: {self.toolchain.ccache_version}")
        return {
            "clang": self.toolchain.clang_version,
            "ccache": self.toolchain.ccache_version,
        }

    # ------------------------------------------------------------------
    # Stage 2: SYNC REPOS
    # ------------------------------------------------------------------

    async def stage_sync_repos(self) -> dict[str, Any]:
        """Bring every required repository to its branch tip."""
        print_step("Setting up repositories")
        synced: list[str] = []
        for spec in self.config.repositories:
            await self.synchronizer.sync_or_raise(spec)
            synced.append(spec.name)
        print_info("Repositories ready")
        return {"repositories": synced}

    # ------------------------------------------------------------------
    # Stage 3: SETUP COMPILER
    # ------------------------------------------------------------------

    async def stage_setup_compiler(self) -> dict[str, Any]:
        """Adopt the environment found by validation and confirm clang resolves in it."""
        print_step("Setting up compiler")
        if self.toolchain is not None and self.toolchain.env:
            self.compile_env = dict(self.toolchain.env)
        else:
            self.compile_env = build_environment(self.config)
        if shutil.which("clang", path=self.compile_env["PATH"]) is None:
            raise ToolchainError("clang not found in PATH")
        version = self.toolchain.clang_version if self.toolchain else "clang"
        print_info(f"Using {version}")
        return {"path": self.compile_env["PATH"].split(os.pathsep, 1)[0]}

    # ------------------------------------------------------------------
    # Stage 4: PROMPT OPTIONS
    # ------------------------------------------------------------------

    async def stage_prompt_options(self) -> dict[str, Any]:
        """Decide source-clean and build-dir-clean modes for this run."""
        self.options = prompt_source_options(
            self.input_provider,
            out_dir_exists=self.config.out_path.is_dir(),
            out_dir_label=str(self.config.out_path),
            max_attempts=self.config.build.prompt_attempts,
            presets=self.presets,
        )
        return {
            "source_clean": self.options.source_clean,
            "build_clean": self.options.build_clean,
        }

    # ------------------------------------------------------------------
    # Stage 5: PREPARE SOURCE
    # ------------------------------------------------------------------

    async def stage_prepare_source(self) -> dict[str, Any]:
        """Clean or keep the kernel tree as chosen in stage 4."""
        if self.options is None:
            raise PipelineError(5, "Build options were not decided")
        print_step("Preparing kernel source")
        await prepare_kernel_source(
            self.config.kernel_path,
            self.config.out_path,
            self.options,
            reset_commit=self.config.build.reset_commit,
            feature_module_dir=self.config.feature_module_dir,
        )
        return {"out_dir": str(self.config.out_path)}

    # ------------------------------------------------------------------
    # Stage 6: CONFIGURE DEVICE
    # ------------------------------------------------------------------

    async def stage_configure_device(self) -> dict[str, Any]:
        """Append the device profile to the defconfig."""
        device = self.config.device
        if not device.enabled:
            print_info(f"Skipping {device.name} config")
            return {"added": 0}
        print_step(f"Configuring {device.name}")
        added = append_all(self.config.defconfig_path, device.directives)
        print_info(f"{device.name} configuration done ({added} new directive(s))")
        return {"added": added}

    # ------------------------------------------------------------------
    # Stage 7: CONFIGURE LTO
    # ------------------------------------------------------------------

    async def stage_configure_lto(self) -> dict[str, Any]:
        """Leave exactly one LTO mode enabled."""
        lto = self.config.build.lto
        print_step(f"Configuring LTO: {lto}")
        select_exclusive(
            self.config.defconfig_path, LTO_DIRECTIVES.values(), LTO_DIRECTIVES[lto]
        )
        print_info("LTO set")
        return {"lto": lto}

    # ------------------------------------------------------------------
    # Stage 8: INSTALL FEATURE MODULES
    # ------------------------------------------------------------------

    async def stage_install_feature_modules(self) -> dict[str, Any]:
        """Run every feature module's setup script in the kernel tree."""
        installed: list[str] = []
        for module in self.config.feature_modules:
            print_step(f"Installing {module.name}")
            await self.installer.install(module)
            installed.append(module.name)
        return {"modules": installed}

    # ------------------------------------------------------------------
    # Stage 9: APPLY PATCHES
    # ------------------------------------------------------------------

    async def stage_apply_patches(self) -> dict[str, Any]:
        """Apply the patch chain; problems are warnings, never fatal."""
        print_step("Applying SUSFS patches")
        try:
            report = await self.patch_chain.run()
        except OSError as exc:
            print_warning(f"Patch chain interrupted: {exc}")
            return {"error": str(exc)}

        print_summary_table(
            {
                "Applied": report.applied,
                "Skipped": report.skipped,
                "Failed": report.failed,
            },
            title="Patch Chain",
            headers=("Outcome", "Patches"),
        )
        print_info("SUSFS patches synced")
        return report.as_dict()

    # ------------------------------------------------------------------
    # Stage 10: TUNE CONFIG
    # ------------------------------------------------------------------

    async def stage_tune_config(self) -> dict[str, Any]:
        """Final localversion toggles and feature directive blocks."""
        print_step("Tuning kernel config")
        kernel = self.config.kernel_path
        purged = 0
        for pattern in self.config.tuning.purge_globs:
            for match in kernel.glob(pattern):
                if not match.is_file():
                    print_warning(f"Not a file, left in place: {match}")
                    continue
                try:
                    match.unlink()
                except OSError as exc:
                    raise PipelineError(10, f"Cannot remove {match}: {exc}") from exc
                purged += 1

        defconfig = self.config.defconfig_path
        set_toggle(defconfig, "CONFIG_LOCALVERSION_AUTO", "n")
        set_toggle(defconfig, "CONFIG_LOCALVERSION", f'"{self.config.build.localversion}"')
        added = append_all(defconfig, self.config.tuning.directives)
        print_info("Kernel config updated")
        return {"purged": purged, "added": added}

    # ------------------------------------------------------------------
    # Stage 11: COMPILE
    # ------------------------------------------------------------------

    async def stage_compile(self) -> dict[str, Any]:
        """Run the external build and check for the image."""
        print_step("Compiling kernel")
        compiler = KernelCompiler(self.config, env=self.compile_env or None)
        self.image_path = await compiler.compile()
        return {"image": str(self.image_path), "log": str(self.config.build_log_path)}

    # ------------------------------------------------------------------
    # Stage 12: RESOLVE VERSION
    # ------------------------------------------------------------------

    async def stage_resolve_version(self) -> dict[str, Any]:
        """Pick the release token from log, history, or the operator."""
        provider: InputProvider = self.input_provider
        if self.presets.release:
            provider = ScriptedInputProvider([self.presets.release], fallback=provider)
        resolver = VersionResolver(
            self.config.build_log_path, self.config.feature_module_path, provider
        )
        self.version = await resolver.resolve()
        return {"version": self.version.value, "source": self.version.source.value}

    # ------------------------------------------------------------------
    # Stage 13: PACKAGE
    # ------------------------------------------------------------------

    async def stage_package(self) -> dict[str, Any]:
        """Zip the image with the AnyKernel3 template."""
        print_step("Packaging")
        if self.version is None:
            raise PipelineError(13, "No release version resolved")
        image = self.image_path or self.config.image_path
        self.artifact = self.packager.package(image, self.version)
        self.state["artifact"] = str(self.artifact)
        return {"artifact": str(self.artifact)}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _print_final_summary(self, total_elapsed: float) -> None:
        """Print the final pipeline summary panel."""
        stages_ok = self.state.get("stages_completed", [])
        stages_fail = self.state.get("stages_failed", [])

        if self.state.get("success"):
            border_style = "bold green"
            status_text = "[bold green]BUILD SUCCEEDED[/bold green]"
        else:
            border_style = "bold red"
            status_text = "[bold red]BUILD FAILED[/bold red]"

        detail_lines = [
            status_text,
            "",
            f"Duration  : {format_duration(total_elapsed)}",
            f"Completed : {', '.join(str(s) for s in stages_ok) or 'none'}",
        ]

        if stages_fail:
            failed = ", ".join(f"{s} ({STAGE_NAMES.get(s, '?')})" for s in stages_fail)
            detail_lines.append(f"Failed    : {failed}")

        if self.artifact is not None:
            detail_lines.extend(["", f"Artifact  : {self.artifact}"])

        console.print()
        console.print(
            Panel(
                "\n".join(detail_lines),
                title="[bold]Build Complete[/bold]",
                border_style=border_style,
            )
        )


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kforge",
        description="kforge -- reproducible GKI kernel build and packaging",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  kforge --workspace /mnt/build\n"
            "  kforge --lto full --source-clean keep --build-clean resume\n"
            "  kforge --non-interactive --source-clean clean --release r22122\n"
            "\n"
            "Environment overrides (LTO_TYPE, CLANG_PATH, ZIP_PREFIX, ...) are\n"
            "read first; command-line options win."
        ),
    )
    parser.add_argument(
        "--workspace", "-w", default=None,
        help="Workspace root (default: the saved config's, else .)",
    )
    parser.add_argument("--config", type=Path, default=None, help="Load a saved JSON config")
    parser.add_argument("--lto", choices=sorted(LTO_DIRECTIVES), default=None)
    parser.add_argument("--threads", type=_positive_int, default=None)
    parser.add_argument(
        "--no-device-config", action="store_true", help="Skip the device profile"
    )
    parser.add_argument("--source-clean", choices=["clean", "keep"], default=None)
    parser.add_argument("--build-clean", choices=["clean", "resume"], default=None)
    parser.add_argument("--release", default=None, help="Release token if auto-detection fails")
    parser.add_argument("--prompt-attempts", type=_positive_int, default=None)
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never read from the terminal; unanswered questions are fatal",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    """Assemble the run's single immutable ``Config``.

    A saved ``--config`` keeps its own workspace unless ``--workspace`` is
    given explicitly.
    """
    workspace = Path(args.workspace) if args.workspace is not None else None
    if args.config is not None:
        config = Config.load(args.config)
        if workspace is not None:
            config = config.model_copy(update={"workspace": workspace})
    else:
        config = Config.from_env(workspace=workspace or Path("."))

    build_updates: dict[str, Any] = {}
    if args.lto:
        build_updates["lto"] = args.lto
    if args.threads:
        build_updates["threads"] = args.threads
    if args.prompt_attempts:
        build_updates["prompt_attempts"] = args.prompt_attempts

    updates: dict[str, Any] = {}
    if build_updates:
        updates["build"] = config.build.model_copy(update=build_updates)
    if args.no_device_config:
        updates["device"] = config.device.model_copy(update={"enabled": False})
    return config.model_copy(update=updates) if updates else config


def presets_from_args(args: argparse.Namespace) -> PresetAnswers:
    return PresetAnswers(
        source_clean=None if args.source_clean is None else args.source_clean == "clean",
        build_clean=None if args.build_clean is None else args.build_clean == "clean",
        release=args.release,
    )


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``kforge`` / ``python -m kforge.pipeline``."""
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] Invalid configuration: {exc}")
        sys.exit(1)
    except OSError as exc:
        console.print(f"[bold red]Error:[/bold red] Cannot read configuration: {exc}")
        sys.exit(1)

    provider: InputProvider = (
        ScriptedInputProvider() if args.non_interactive else ConsoleInputProvider()
    )
    pipeline = Pipeline(config, input_provider=provider, presets=presets_from_args(args))

    try:
        result = asyncio.run(pipeline.run())
    except KeyboardInterrupt:
        console.print("[bold red]Interrupted.[/bold red]")
        sys.exit(1)

    if result.get("success"):
        console.print("[bold green]Build completed successfully![/bold green]")
    else:
        console.print("[bold red]Build failed.[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
