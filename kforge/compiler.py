"""Toolchain checks and the external kernel build.

The compile itself is opaque: kforge assembles the ``make`` command line and
environment, streams the combined output into the build log, and then only
checks the exit status and whether the kernel image exists.
"""

from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from kforge.config import Config
from kforge.utils import console, format_duration, print_info, run_command, run_command_logged


class ToolchainError(Exception):
    """A required host tool or toolchain path is missing."""


class CompileFailure(Exception):
    """The build exited non-zero or did not produce the kernel image."""


@dataclass
class ToolchainInfo:
    """What validation found, plus the environment handed to ``make``."""

    clang_version: str
    ccache_version: str = ""
    env: dict[str, str] = field(default_factory=dict)


def compile_path(config: Config) -> str:
    """``PATH`` with the clang directory prepended."""
    return os.pathsep.join([str(config.toolchain.clang_path), os.environ.get("PATH", "")])


def build_environment(config: Config) -> dict[str, str]:
    """Environment overrides for the compile subprocess."""
    toolchain = config.toolchain
    env = {
        "PATH": compile_path(config),
        "LLVM_CACHE_PATH": str(toolchain.llvm_cache_path),
    }
    if toolchain.use_ccache:
        env["USE_CCACHE"] = "1"
        env["CCACHE_DIR"] = str(toolchain.ccache_dir)
    else:
        env["USE_CCACHE"] = "0"
    return env


def missing_tools(config: Config) -> list[str]:
    """Required tools that do not resolve on the compile ``PATH``."""
    search_path = compile_path(config)
    tools = list(config.toolchain.required_tools)
    if config.toolchain.use_ccache and "ccache" not in tools:
        tools.append("ccache")
    return [tool for tool in tools if shutil.which(tool, path=search_path) is None]


async def validate_toolchain(config: Config) -> ToolchainInfo:
    """Check host tools and the clang installation before anything is touched.

    Raises:
        ToolchainError: Listing every missing tool, a missing clang directory,
            or a clang that does not run.
    """
    missing = missing_tools(config)
    if missing:
        raise ToolchainError(f"Missing tools: {' '.join(missing)}")

    clang_dir = config.toolchain.clang_path
    if not clang_dir.is_dir():
        raise ToolchainError(f"Clang path not found: {clang_dir}")

    env = build_environment(config)
    returncode, stdout, stderr = await run_command(
        [str(clang_dir / "clang"), "--version"], timeout=30, env=env
    )
    if returncode != 0 or not stdout:
        raise ToolchainError(f"clang not runnable: {stderr or 'no output'}")

    ccache_version = "disabled"
    if config.toolchain.use_ccache:
        rc, ccache_out, _ = await run_command(["ccache", "-V"], timeout=30, env=env)
        if rc == 0 and ccache_out:
            ccache_version = ccache_out.splitlines()[0]

    return ToolchainInfo(
        clang_version=stdout.splitlines()[0],
        ccache_version=ccache_version,
        env=env,
    )


def make_command(config: Config) -> list[str]:
    """The full ``make`` invocation for a GKI build."""
    toolchain = config.toolchain
    cc = "ccache clang" if toolchain.use_ccache else "clang"
    return [
        "make",
        f"-j{config.build.threads}",
        "LLVM_IAS=1",
        "LLVM=1",
        f"ARCH={toolchain.arch}",
        f"CLANG_TRIPLE={toolchain.clang_triple}",
        f"CROSS_COMPILE_COMPAT={toolchain.arm32_prefix}",
        f"CROSS_COMPILE={toolchain.arm64_prefix}",
        f"CC={cc}",
        "LD=ld.lld",
        "HOSTLD=ld.lld",
        f"O={config.out_dir}",
        *config.build.make_targets,
    ]


class KernelCompiler:
    """Runs the kernel build and checks for the image.

    Args:
        config: Global configuration.
        env: Environment overrides (from :func:`build_environment`).
    """

    def __init__(self, config: Config, env: dict[str, str] | None = None) -> None:
        self.config = config
        self.env = env if env is not None else build_environment(config)

    def _echo(self, line: str) -> None:
        console.print(line, style="dim", markup=False, highlight=False)

    async def compile(self) -> Path:
        """Build the kernel.

        Returns:
            Path to the kernel image.

        Raises:
            CompileFailure: On a non-zero exit or a missing image.
        """
        cmd = make_command(self.config)
        log_path = self.config.build_log_path
        console.print(f"[dim]$ {' '.join(cmd)}[/dim]")

        start = time.monotonic()
        returncode = await run_command_logged(
            cmd,
            log_path,
            cwd=self.config.kernel_path,
            env=self.env,
            on_line=self._echo,
        )
        elapsed = time.monotonic() - start
        print_info(f"Compiled in {format_duration(elapsed)}")

        if returncode != 0:
            raise CompileFailure(f"make exited with code {returncode} (log: {log_path})")

        image = self.config.image_path
        if not image.is_file():
            raise CompileFailure(f"Image missing: {image}")
        return image
