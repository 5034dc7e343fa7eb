"""kforge configuration.

Centralised, typed configuration for the whole build.  Every model is a
frozen Pydantic v2 model: the ``Config`` is assembled once at startup (from
defaults, the environment, or a saved JSON file) and then passed explicitly
to each component.  Nothing downstream mutates it.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from kforge.kconfig.profiles import (
    PIXEL8A_DIRECTIVES,
    PROTECTED_EXPORTS_GLOB,
    TUNING_DIRECTIVES,
)

LtoType = Literal["full", "thin", "none"]
PatchMode = Literal["forward", "forced"]

_FROZEN = ConfigDict(frozen=True)


class RepositorySpec(BaseModel):
    """A remote source tree pinned to a branch tip.

    ``path`` is relative to the workspace root.  ``depth`` 0 means a full
    (unshallow) clone.
    """

    model_config = _FROZEN

    name: str
    url: str
    branch: str
    path: Path
    depth: int = Field(default=1, ge=0)


class FeatureModuleSpec(BaseModel):
    """A feature module installed by running a remote setup script.

    The script is fetched from ``script_url`` and executed with ``bash -s``
    inside the kernel tree, receiving ``args``.
    """

    model_config = _FROZEN

    name: str
    script_url: str
    args: list[str] = Field(default_factory=list)
    requires_kernel_root: bool = False
    directive: str | None = Field(
        default=None, description="Directive enabled with append-if-absent after install"
    )
    lsm_name: str | None = Field(
        default=None, description="LSM appended to the default list in security/Kconfig"
    )


class ToolchainConfig(BaseModel):
    """Cross-toolchain locations and host tool requirements."""

    model_config = _FROZEN

    clang_path: Path = Field(default=Path("/mnt/Android/clang-22/bin"))
    arm64_prefix: str = Field(
        default=(
            "/mnt/Hawai/toolchains/arm-gnu-toolchain-14.3.rel1-x86_64-aarch64-none-linux-gnu"
            "/bin/aarch64-none-linux-gnu-"
        )
    )
    arm32_prefix: str = Field(
        default=(
            "/mnt/Hawai/toolchains/arm-gnu-toolchain-14.3.rel1-x86_64-arm-none-eabi"
            "/bin/arm-none-eabi-"
        )
    )
    arch: str = Field(default="arm64")
    clang_triple: str = Field(default="aarch64-linux-gnu-")
    use_ccache: bool = Field(default=True)
    ccache_dir: Path = Field(default=Path("/mnt/ccache/.ccache"))
    llvm_cache_path: Path = Field(default_factory=lambda: Path.home() / ".cache" / "llvm")
    required_tools: list[str] = Field(default=["git", "make", "patch", "bash"])


class BuildConfig(BaseModel):
    """Tuning knobs for the build itself."""

    model_config = _FROZEN

    threads: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    lto: LtoType = Field(default="thin")
    retry_attempts: int = Field(
        default=3, ge=1, description="Attempts for network operations (clone, script fetch)"
    )
    retry_delay: float = Field(
        default=1.0, ge=0, description="Backoff unit in seconds; attempt k waits k units"
    )
    prompt_attempts: int = Field(
        default=3, ge=1, description="Re-prompts allowed for an invalid interactive answer"
    )
    reset_commit: str = Field(default="f090d4b08")
    localversion: str = Field(default="-deepongi")
    make_targets: list[str] = Field(default=["gki_defconfig", "all"])


class DeviceConfig(BaseModel):
    """Device profile applied to the defconfig with append-if-absent."""

    model_config = _FROZEN

    enabled: bool = Field(default=True)
    name: str = Field(default="Pixel 8a (Tensor G3)")
    directives: list[str] = Field(default_factory=lambda: list(PIXEL8A_DIRECTIVES))


class OverlaySpec(BaseModel):
    """A directory whose files are copied into the kernel tree before patching."""

    model_config = _FROZEN

    source: Path
    dest: Path


class PatchStep(BaseModel):
    """One entry of the patch chain.

    ``patch`` is workspace-relative; ``target`` is the kernel-relative
    subtree the patch is applied from.  ``cleanup`` lists kernel-relative
    files removed after the step (reject and backup leftovers).
    """

    model_config = _FROZEN

    patch: Path
    target: Path = Field(default=Path("."))
    mode: PatchMode = Field(default="forward")
    cleanup: list[Path] = Field(default_factory=list)


def _default_overlays() -> list[OverlaySpec]:
    return [
        OverlaySpec(source=Path("susfs4ksu/kernel_patches/fs"), dest=Path("fs")),
        OverlaySpec(
            source=Path("susfs4ksu/kernel_patches/include/linux"),
            dest=Path("include/linux"),
        ),
    ]


def _default_patch_steps() -> list[PatchStep]:
    return [
        PatchStep(
            patch=Path("susfs4ksu/kernel_patches/50_add_susfs_in_gki-android14-6.1.patch"),
            mode="forced",
            cleanup=[Path("fs/proc/base.c.rej"), Path("fs/proc/base.c.orig")],
        ),
        PatchStep(patch=Path("fix_proc_base.patch")),
        PatchStep(
            patch=Path("10_enable_susfs_for_ksu.patch"),
            target=Path("KernelSU"),
            mode="forced",
        ),
        PatchStep(patch=Path("fix-clidr-uninitialized.patch")),
    ]


class PatchingConfig(BaseModel):
    """The patch chain: overlay copies followed by ordered patch steps."""

    model_config = _FROZEN

    overlays: list[OverlaySpec] = Field(default_factory=_default_overlays)
    steps: list[PatchStep] = Field(default_factory=_default_patch_steps)


class TuningConfig(BaseModel):
    """Final defconfig toggles applied after the patch chain."""

    model_config = _FROZEN

    directives: list[str] = Field(default_factory=lambda: list(TUNING_DIRECTIVES))
    purge_globs: list[str] = Field(default=[PROTECTED_EXPORTS_GLOB])


class PackagingConfig(BaseModel):
    """Where and how the flashable archive is produced."""

    model_config = _FROZEN

    zip_prefix: str = Field(default="AK3-A14-6.1.155-MKSU")
    anykernel_dir: Path = Field(default=Path("AnyKernel3-p8a"))
    builds_root: Path = Field(default=Path("builds"))
    release_line: str = Field(default="6.1.155")
    image_relpath: Path = Field(default=Path("arch/arm64/boot/Image"))


def default_repositories(
    *,
    depth: int = 1,
    susfs_url: str = "https://gitlab.com/simonpunk/susfs4ksu.git",
    susfs_branch: str = "gki-android14-6.1-dev",
    anykernel_dir: str = "AnyKernel3-p8a",
    anykernel_branch: str = "KernelSU",
    patches_url: str = "https://github.com/infectedmushi/kernel_patches",
    patches_branch: str = "main",
) -> list[RepositorySpec]:
    """Return the three source trees every build synchronises."""
    return [
        RepositorySpec(
            name="susfs4ksu", url=susfs_url, branch=susfs_branch,
            path=Path("susfs4ksu"), depth=depth,
        ),
        RepositorySpec(
            name=anykernel_dir,
            url=f"https://github.com/deepongi-labs/{anykernel_dir}",
            branch=anykernel_branch,
            path=Path(anykernel_dir),
            depth=depth,
        ),
        RepositorySpec(
            name="kernel_patches", url=patches_url, branch=patches_branch,
            path=Path("kernel_patches"), depth=depth,
        ),
    ]


def default_feature_modules(ksu_branch: str = "main") -> list[FeatureModuleSpec]:
    """Return KernelSU and Baseband-guard, installed in that order."""
    return [
        FeatureModuleSpec(
            name="KernelSU",
            script_url=(
                f"https://raw.githubusercontent.com/5ec1cff/KernelSU/refs/heads/"
                f"{ksu_branch}/kernel/setup.sh"
            ),
            args=[ksu_branch],
        ),
        FeatureModuleSpec(
            name="Baseband-guard",
            script_url="https://raw.githubusercontent.com/vc-teahouse/Baseband-guard/main/setup.sh",
            requires_kernel_root=True,
            directive="CONFIG_BBG=y",
            lsm_name="baseband_guard",
        ),
    ]


class Config(BaseModel):
    """Global kforge configuration.

    Holds every tuneable parameter and derived path used by the pipeline.
    Instances are created once by the CLI entry point and then passed
    through the rest of the system.
    """

    model_config = _FROZEN

    workspace: Path = Field(default=Path("."))
    kernel_dir: Path = Field(default=Path("common"))
    config_file: Path = Field(default=Path("arch/arm64/configs/gki_defconfig"))
    out_dir: Path = Field(default=Path("out"))
    state_dir: str = Field(default=".kforge")
    feature_module_dir: Path = Field(default=Path("KernelSU"))

    repositories: list[RepositorySpec] = Field(default_factory=default_repositories)
    feature_modules: list[FeatureModuleSpec] = Field(default_factory=default_feature_modules)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    patching: PatchingConfig = Field(default_factory=PatchingConfig)
    tuning: TuningConfig = Field(default_factory=TuningConfig)
    packaging: PackagingConfig = Field(default_factory=PackagingConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def kernel_path(self) -> Path:
        """Root of the kernel source tree."""
        return self.workspace / self.kernel_dir

    @property
    def defconfig_path(self) -> Path:
        """The defconfig mutated by every configuration stage."""
        return self.kernel_path / self.config_file

    @property
    def out_path(self) -> Path:
        """Kernel build output directory (``O=``)."""
        return self.kernel_path / self.out_dir

    @property
    def build_log_path(self) -> Path:
        """Combined compile output of the most recent build."""
        return self.out_path / ".build_log"

    @property
    def image_path(self) -> Path:
        """The compiled kernel image."""
        return self.out_path / self.packaging.image_relpath

    @property
    def feature_module_path(self) -> Path:
        """Working copy of the KernelSU feature module inside the kernel tree."""
        return self.kernel_path / self.feature_module_dir

    @property
    def anykernel_path(self) -> Path:
        """Packaging root (AnyKernel3 template)."""
        return self.workspace / self.packaging.anykernel_dir

    @property
    def builds_path(self) -> Path:
        """Release-keyed directory that receives finished archives."""
        return self.workspace / self.packaging.builds_root / self.packaging.release_line

    @property
    def state_path(self) -> Path:
        """Root of the ``.kforge/`` metadata directory."""
        return self.workspace / self.state_dir

    @property
    def lock_path(self) -> Path:
        """Lock file guarding the workspace against concurrent runs."""
        return self.state_path / "workspace.lock"

    @property
    def report_path(self) -> Path:
        """JSON summary written when a run finishes."""
        return self.state_path / "last-run.json"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<state_path>/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.state_path / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, **overrides: Any) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional) keep the names the build has
        always used:
            PIXEL8A, LTO_TYPE, ZIP_PREFIX, CLANG_PATH, ARM64_TOOLCHAIN,
            ARM32_TOOLCHAIN, KERNEL_DIR, CONFIG_FILE, OUT_DIR, RESET_COMMIT,
            THREADS, RETRY, REPO_DEPTH, KSUN_BRANCH, ANYKERNEL_DIR,
            ANYKERNEL_BRANCH, SUSFS_REPO, SUSFS_BRANCH, PATCHES_REPO,
            PATCHES_BRANCH, BUILDS_DIR, LOCALVERSION, USE_CCACHE, CCACHE_DIR,
            LLVM_CACHE_PATH.

        Keyword *overrides* are applied on top as top-level fields.
        """
        env = os.environ

        toolchain_kwargs: dict[str, Any] = {}
        if env.get("CLANG_PATH"):
            toolchain_kwargs["clang_path"] = Path(env["CLANG_PATH"])
        if env.get("ARM64_TOOLCHAIN"):
            toolchain_kwargs["arm64_prefix"] = env["ARM64_TOOLCHAIN"]
        if env.get("ARM32_TOOLCHAIN"):
            toolchain_kwargs["arm32_prefix"] = env["ARM32_TOOLCHAIN"]
        if env.get("USE_CCACHE"):
            toolchain_kwargs["use_ccache"] = env["USE_CCACHE"].strip() not in ("0", "n", "no", "false")
        if env.get("CCACHE_DIR"):
            toolchain_kwargs["ccache_dir"] = Path(env["CCACHE_DIR"])
        if env.get("LLVM_CACHE_PATH"):
            toolchain_kwargs["llvm_cache_path"] = Path(env["LLVM_CACHE_PATH"])

        build_kwargs: dict[str, Any] = {}
        if env.get("LTO_TYPE"):
            build_kwargs["lto"] = env["LTO_TYPE"]
        if env.get("THREADS"):
            build_kwargs["threads"] = int(env["THREADS"])
        if env.get("RETRY"):
            build_kwargs["retry_attempts"] = int(env["RETRY"])
        if env.get("RESET_COMMIT"):
            build_kwargs["reset_commit"] = env["RESET_COMMIT"]
        if env.get("LOCALVERSION"):
            build_kwargs["localversion"] = env["LOCALVERSION"]

        device_kwargs: dict[str, Any] = {}
        if env.get("PIXEL8A"):
            device_kwargs["enabled"] = env["PIXEL8A"].strip().lower() == "y"

        anykernel_dir = env.get("ANYKERNEL_DIR", "AnyKernel3-p8a")
        packaging_kwargs: dict[str, Any] = {"anykernel_dir": Path(anykernel_dir)}
        if env.get("ZIP_PREFIX"):
            packaging_kwargs["zip_prefix"] = env["ZIP_PREFIX"]
        if env.get("BUILDS_DIR"):
            builds_dir = Path(env["BUILDS_DIR"])
            packaging_kwargs["builds_root"] = builds_dir.parent
            packaging_kwargs["release_line"] = builds_dir.name

        repositories = default_repositories(
            depth=int(env.get("REPO_DEPTH", "1")),
            susfs_url=env.get("SUSFS_REPO", "https://gitlab.com/simonpunk/susfs4ksu.git"),
            susfs_branch=env.get("SUSFS_BRANCH", "gki-android14-6.1-dev"),
            anykernel_dir=anykernel_dir,
            anykernel_branch=env.get("ANYKERNEL_BRANCH", "KernelSU"),
            patches_url=env.get("PATCHES_REPO", "https://github.com/infectedmushi/kernel_patches"),
            patches_branch=env.get("PATCHES_BRANCH", "main"),
        )

        fields: dict[str, Any] = {
            "repositories": repositories,
            "feature_modules": default_feature_modules(env.get("KSUN_BRANCH", "main")),
            "toolchain": ToolchainConfig(**toolchain_kwargs),
            "build": BuildConfig(**build_kwargs),
            "device": DeviceConfig(**device_kwargs),
            "packaging": PackagingConfig(**packaging_kwargs),
        }
        if env.get("KERNEL_DIR"):
            fields["kernel_dir"] = Path(env["KERNEL_DIR"])
        if env.get("CONFIG_FILE"):
            fields["config_file"] = Path(env["CONFIG_FILE"])
        if env.get("OUT_DIR"):
            fields["out_dir"] = Path(env["OUT_DIR"])
        fields.update(overrides)

        return cls(**fields)
