"""Unit tests for the pipeline orchestrator (kforge.pipeline).

Tests cover:
- PipelineError exception
- Pipeline.__init__ and state initialization
- Pipeline.run stage order, fail-fast and the non-fatal patch stage
- Finalizer summary and run report
- Workspace lock contention
- Individual configuration stages against a real defconfig
- CLI argument handling (config_from_args / presets_from_args)
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kforge.compiler import CompileFailure, ToolchainError, ToolchainInfo
from kforge.config import Config, DeviceConfig
from kforge.kconfig.defconfig import ConfigFile
from kforge.patcher.chain import ChainReport
from kforge.pipeline import (
    Pipeline,
    PipelineError,
    build_parser,
    config_from_args,
    main,
    presets_from_args,
)
from kforge.prompts import PresetAnswers, ScriptedInputProvider, SourceOptions
from kforge.release.version import VersionSource, VersionToken
from kforge.workspace import WorkspaceLock


def _stub_stages(pipeline: Pipeline, calls: list[int], fail_at: dict[int, Exception] | None = None):
    """Replace every stage method with a recorder."""
    fail_at = fail_at or {}
    for number, name in Pipeline._STAGE_METHODS.items():
        async def _stage(number=number):
            calls.append(number)
            if number in fail_at:
                raise fail_at[number]
            return {"ok": number}

        setattr(pipeline, name, _stage)


# ---------------------------------------------------------------------------
# PipelineError
# ---------------------------------------------------------------------------


class TestPipelineError:
    @pytest.mark.unit
    def test_includes_stage_number_and_name(self):
        err = PipelineError(11, "make exploded")
        assert err.stage == 11
        assert "Stage 11 (COMPILE)" in str(err)
        assert "make exploded" in str(err)


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


class TestPipelineInit:
    @pytest.mark.unit
    def test_initial_state(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        assert pipeline.state["stages_completed"] == []
        assert pipeline.state["stages_failed"] == []
        assert pipeline.state["success"] is False
        assert sorted(pipeline._STAGE_METHODS) == list(range(1, 14))

    @pytest.mark.unit
    def test_retry_policy_from_config(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        assert pipeline.retry.max_attempts == workspace_config.build.retry_attempts
        assert pipeline.synchronizer.retry is pipeline.retry
        assert pipeline.installer.retry is pipeline.retry


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class TestPipelineRun:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stages_run_in_order(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        calls: list[int] = []
        _stub_stages(pipeline, calls)

        state = await pipeline.run()

        assert calls == list(range(1, 14))
        assert state["success"] is True
        assert state["stages_completed"] == list(range(1, 14))
        assert state["stage5"] == {"ok": 5}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_stops_later_stages(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        calls: list[int] = []
        _stub_stages(pipeline, calls, fail_at={11: CompileFailure("make exited with code 2")})

        state = await pipeline.run()

        assert calls == list(range(1, 12))
        assert state["success"] is False
        assert state["stages_failed"] == [11]
        assert "code 2" in state["stage11_error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        calls: list[int] = []
        _stub_stages(pipeline, calls, fail_at={2: RuntimeError("surprise")})

        state = await pipeline.run()

        assert calls == [1, 2]
        assert state["success"] is False
        assert "RuntimeError" in state["stage2_error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_report_written_on_exit(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        _stub_stages(pipeline, [], fail_at={1: ToolchainError("Missing tools: make")})

        await pipeline.run()

        report = json.loads(workspace_config.report_path.read_text(encoding="utf-8"))
        assert report["success"] is False
        assert report["stages_failed"] == [1]
        assert "total_duration" in report

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_final_summary_printed(self, workspace_config: Config, capsys):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        _stub_stages(pipeline, [], fail_at={3: ToolchainError("clang not found in PATH")})

        await pipeline.run()

        out = capsys.readouterr().out
        assert "BUILD FAILED" in out
        assert "Exited with code 1" in out

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_locked_workspace_runs_nothing(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        calls: list[int] = []
        _stub_stages(pipeline, calls)

        with WorkspaceLock(workspace_config.lock_path):
            state = await pipeline.run()

        assert calls == []
        assert state["success"] is False
        assert "in use" in state["error"]
        assert not workspace_config.report_path.exists()


# ---------------------------------------------------------------------------
# Individual stages
# ---------------------------------------------------------------------------


class TestConfigurationStages:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_device_profile_applied_once(self, workspace_config: Config):
        config = workspace_config.model_copy(
            update={"device": DeviceConfig(directives=["CONFIG_A=y", "CONFIG_B=y"])}
        )
        pipeline = Pipeline(config, input_provider=ScriptedInputProvider())

        assert await pipeline.stage_configure_device() == {"added": 2}
        assert await pipeline.stage_configure_device() == {"added": 0}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_device_profile_disabled(self, workspace_config: Config):
        config = workspace_config.model_copy(update={"device": DeviceConfig(enabled=False)})
        pipeline = Pipeline(config, input_provider=ScriptedInputProvider())
        before = config.defconfig_path.read_text(encoding="utf-8")

        assert await pipeline.stage_configure_device() == {"added": 0}
        assert config.defconfig_path.read_text(encoding="utf-8") == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lto_exclusive(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())

        await pipeline.stage_configure_lto()

        config = ConfigFile.load(workspace_config.defconfig_path)
        assert config.get("CONFIG_LTO_CLANG_THIN") is not None
        assert config.get("CONFIG_LTO_CLANG_FULL") is None
        assert config.get("CONFIG_LTO_NONE") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tune_config(self, workspace_config: Config):
        kernel = workspace_config.kernel_path
        (kernel / "android").mkdir()
        protected = kernel / "android" / "abi_gki_protected_exports_aarch64"
        protected.write_text("symbols", encoding="utf-8")
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())

        result = await pipeline.stage_tune_config()
        again = await pipeline.stage_tune_config()

        assert result["purged"] == 1
        assert again == {"purged": 0, "added": 0}
        assert not protected.exists()
        config = ConfigFile.load(workspace_config.defconfig_path)
        assert config.directives("CONFIG_LOCALVERSION_AUTO")[0].value == "n"
        assert len(config.directives("CONFIG_LOCALVERSION")) == 1
        assert config.get("CONFIG_LOCALVERSION").value == '"-deepongi"'
        assert config.get("CONFIG_KSU") is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tune_config_skips_directory_matches(self, workspace_config: Config):
        stray = workspace_config.kernel_path / "android" / "abi_gki_protected_exports_dir"
        stray.mkdir(parents=True)
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())

        result = await pipeline.stage_tune_config()

        assert result["purged"] == 0
        assert stray.is_dir()


class TestOtherStages:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_patch_stage_never_fails(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        pipeline.patch_chain.run = AsyncMock(side_effect=OSError("disk gone"))

        result = await pipeline.stage_apply_patches()

        assert result == {"error": "disk gone"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_patch_stage_reports_outcomes(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        report = ChainReport(applied=["a.patch"], failed=["b.patch"])
        pipeline.patch_chain.run = AsyncMock(return_value=report)

        assert await pipeline.stage_apply_patches() == report.as_dict()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_setup_compiler_requires_clang(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        with patch("kforge.pipeline.shutil.which", return_value=None):
            with pytest.raises(ToolchainError, match="clang not found"):
                await pipeline.stage_setup_compiler()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_setup_compiler_adopts_validated_environment(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        validated = {"PATH": "/opt/clang/bin", "USE_CCACHE": "0"}
        pipeline.toolchain = ToolchainInfo(clang_version="clang version 22.0.0", env=validated)

        with patch("kforge.pipeline.shutil.which", return_value="/opt/clang/bin/clang"):
            result = await pipeline.stage_setup_compiler()

        assert pipeline.compile_env == validated
        assert result == {"path": "/opt/clang/bin"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_prompt_options_use_presets(self, workspace_config: Config):
        provider = ScriptedInputProvider()
        pipeline = Pipeline(
            workspace_config,
            input_provider=provider,
            presets=PresetAnswers(source_clean=False, build_clean=True),
        )

        result = await pipeline.stage_prompt_options()

        assert result == {"source_clean": False, "build_clean": True}
        assert pipeline.options == SourceOptions(source_clean=False, build_clean=True)
        assert provider.asked == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_prepare_source_needs_options(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        with pytest.raises(PipelineError, match="Stage 5"):
            await pipeline.stage_prepare_source()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_preset_answers_version_prompt(self, workspace_config: Config):
        pipeline = Pipeline(
            workspace_config,
            input_provider=ScriptedInputProvider(),
            presets=PresetAnswers(release="v1.0"),
        )
        with patch("kforge.release.version.count_revisions", new=AsyncMock(return_value=None)):
            result = await pipeline.stage_resolve_version()

        assert result == {"version": "v1.0", "source": "operator input"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_package_uses_resolved_version(self, workspace_config: Config):
        pipeline = Pipeline(workspace_config, input_provider=ScriptedInputProvider())
        pipeline.version = VersionToken("r200", VersionSource.BUILD_LOG)
        pipeline.image_path = Path("/tmp/Image")
        pipeline.packager = MagicMock()
        pipeline.packager.package.return_value = Path("/builds/AK3-20250115-r200.zip")

        result = await pipeline.stage_package()

        pipeline.packager.package.assert_called_once_with(Path("/tmp/Image"), pipeline.version)
        assert result == {"artifact": "/builds/AK3-20250115-r200.zip"}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestCli:
    @pytest.mark.unit
    def test_overrides_applied(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("LTO_TYPE", raising=False)
        args = build_parser().parse_args(
            ["--workspace", str(tmp_path), "--lto", "full", "--threads", "4",
             "--no-device-config", "--prompt-attempts", "5"]
        )

        config = config_from_args(args)

        assert config.workspace == tmp_path
        assert config.build.lto == "full"
        assert config.build.threads == 4
        assert config.build.prompt_attempts == 5
        assert config.device.enabled is False

    @pytest.mark.unit
    def test_presets(self):
        args = build_parser().parse_args(
            ["--source-clean", "keep", "--build-clean", "clean", "--release", "r1"]
        )
        assert presets_from_args(args) == PresetAnswers(
            source_clean=False, build_clean=True, release="r1"
        )

    @pytest.mark.unit
    def test_no_presets_by_default(self):
        assert presets_from_args(build_parser().parse_args([])) == PresetAnswers()

    @pytest.mark.unit
    def test_invalid_lto_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--lto", "fat"])

    @pytest.mark.unit
    def test_saved_config_keeps_its_workspace(self, tmp_path: Path):
        saved = Config(workspace=tmp_path / "buildroot").save(tmp_path / "kforge.json")
        args = build_parser().parse_args(["--config", str(saved)])

        assert config_from_args(args).workspace == tmp_path / "buildroot"

    @pytest.mark.unit
    def test_explicit_workspace_overrides_saved_config(self, tmp_path: Path):
        saved = Config(workspace=tmp_path / "buildroot").save(tmp_path / "kforge.json")
        args = build_parser().parse_args(
            ["--config", str(saved), "--workspace", str(tmp_path / "other")]
        )

        assert config_from_args(args).workspace == tmp_path / "other"

    @pytest.mark.unit
    def test_missing_config_file_exits_with_message(self, tmp_path: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "absent.json")])

        assert exc_info.value.code == 1
        assert "Cannot read configuration" in capsys.readouterr().out
