"""Tests for the process-backed sandbox provider, including full builds on the host."""

import asyncio
import dataclasses
from pathlib import Path
import shlex
import time
from typing import Any

import pytest

from contract_builder.config import BuilderConfig
from contract_builder.errors import FailureReason, SandboxRuntimeError
from contract_builder.models.sandbox import SandboxLimits
from contract_builder.models.session import BuildRequest, SessionStatus
from contract_builder.models.volume import VolumeHandle
from contract_builder.orchestrator.service import BuildOrchestrator
from contract_builder.orchestrator.stages import Stage, normalize_stage
from contract_builder.providers.sandbox.local import LocalProvider
from contract_builder.providers.volume.directory import DirectoryVolumeManager
from fakes import make_request, running

LIMITS = SandboxLimits(memory_bytes=2 * 1024 ** 3, memory_swap_bytes=2 * 1024 ** 3, pids_limit=64)


@pytest.fixture
def volume(tmp_path: Path) -> VolumeHandle:
    return DirectoryVolumeManager(tmp_path / "volumes").provision(1024)


@pytest.fixture
def provider() -> LocalProvider:
    return LocalProvider()


def sh(script: str) -> list[str]:
    return ["/bin/sh", "-c", script]


class TestLocalProvider:
    def test_captures_output_and_exit_code(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        handle = provider.launch("out", "tok", volume, "unused", sh("echo hello; echo oops >&2; exit 3"), {}, LIMITS)

        outcome = provider.wait(handle)
        provider.remove(handle)

        assert outcome.exit_code == 3
        assert "hello" in outcome.output
        assert "oops" in outcome.output
        assert not outcome.terminated

    def test_runs_in_the_volume_root(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        handle = provider.launch("cwd", "tok", volume, "unused", sh("pwd"), {}, LIMITS)

        outcome = provider.wait(handle)
        provider.remove(handle)

        assert outcome.output.strip() == str(Path(volume.mount_path).resolve())

    def test_environment_holds_only_injected_values(
        self,
        provider: LocalProvider,
        volume: VolumeHandle,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("HOST_SECRET", "leak")
        handle = provider.launch(
            "env", "tok", volume, "unused", sh("env"), {"SOURCE_CODE_URL": "https://storage.test/a.zip"}, LIMITS
        )

        outcome = provider.wait(handle)
        provider.remove(handle)

        names = {line.split("=", 1)[0] for line in outcome.output.splitlines() if "=" in line}
        assert "SOURCE_CODE_URL=https://storage.test/a.zip" in outcome.output
        assert "HOST_SECRET" not in names
        assert names <= {"PATH", "HOME", "LANG", "PWD", "OLDPWD", "SHLVL", "_", "SOURCE_CODE_URL"}

    def test_refuses_unknown_environment(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        with pytest.raises(SandboxRuntimeError, match="AWS_SECRET_ACCESS_KEY"):
            provider.launch("env", "tok", volume, "unused", sh("true"), {"AWS_SECRET_ACCESS_KEY": "x"}, LIMITS)

    def test_terminate_kills_the_process_group(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        handle = provider.launch("slow", "tok", volume, "unused", sh("sleep 30 & sleep 30; wait"), {}, LIMITS)
        started = time.monotonic()

        provider.terminate(handle)
        outcome = provider.wait(handle)
        provider.remove(handle)

        assert outcome.exit_code == 137
        assert outcome.terminated
        assert not outcome.succeeded
        assert time.monotonic() - started < 5

    def test_output_beyond_the_limit_is_discarded(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        limits = dataclasses.replace(LIMITS, output_limit=1024)
        handle = provider.launch(
            "noisy", "tok", volume, "unused", sh("head -c 5000000 /dev/zero | tr '\\0' a"), {}, limits
        )

        outcome = provider.wait(handle)
        provider.remove(handle)

        assert outcome.exit_code == 0
        assert outcome.output == "a" * 1024

    def test_reads_files_with_a_cap(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        handle = provider.launch(
            "write", "tok", volume, "unused", sh("mkdir -p target && printf 0123456789 > target/blob"), {}, LIMITS
        )
        provider.wait(handle)

        entry = provider.stat_file(handle, f"{volume.mount_path}/target/blob")
        capped = provider.read_file(handle, "target/blob", 4)
        missing = provider.stat_file(handle, "target/nothing")
        provider.remove(handle)

        assert entry is not None and entry.size == 10
        assert capped == b"01234"
        assert missing is None

    def test_paths_cannot_escape_the_volume(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        handle = provider.launch("noop", "tok", volume, "unused", sh("true"), {}, LIMITS)
        provider.wait(handle)

        with pytest.raises(ValueError, match="escapes"):
            provider.read_file(handle, "../../etc/passwd", 10)
        provider.remove(handle)

    def test_remove_is_idempotent(self, provider: LocalProvider, volume: VolumeHandle) -> None:
        handle = provider.launch("noop", "tok", volume, "unused", sh("true"), {}, LIMITS)
        provider.wait(handle)

        provider.remove(handle)
        provider.remove(handle)
        provider.terminate(handle)


def scripted_pipeline(compile_script: str):
    def factory(config: BuilderConfig, request: BuildRequest) -> list[Stage]:
        return [
            Stage(
                name="unarchive",
                status=SessionStatus.UNARCHIVING,
                image_key="unarchive",
                script="mkdir -p source && echo '[package]' > source/Cargo.toml",
                failure_reason=FailureReason.UNPACK_FAILURE,
            ),
            Stage(
                name="compile",
                status=SessionStatus.BUILDING,
                image_key="build",
                script=compile_script,
                failure_reason=FailureReason.COMPILE_FAILURE,
            ),
            normalize_stage(),
        ]

    return factory


class TestHostBuilds:
    def orchestrator(
        self, tmp_path: Path, compile_script: str, budget: float, **overrides: Any
    ) -> BuildOrchestrator:
        config = BuilderConfig(
            images_path=tmp_path / "images",
            api_server_url="http://api.test",
            runtime="local",
            volume_backend="directory",
            max_build_duration=budget,
            memory_limit=2 * 1024 ** 3,
            memory_swap_limit=2 * 1024 ** 3,
            **overrides,
        )
        return BuildOrchestrator(
            config,
            LocalProvider(),
            DirectoryVolumeManager(config.images_path),
            pipeline=scripted_pipeline(compile_script),
        )

    @pytest.mark.asyncio
    async def test_successful_build_on_the_host(self, tmp_path: Path) -> None:
        compile_script = (
            "mkdir -p target/ink && printf wasm > target/ink/flipper.wasm"
            " && printf '{}' > target/ink/flipper.json"
        )
        async with running(self.orchestrator(tmp_path, compile_script, 30)) as orchestrator:
            session = await orchestrator.submit(make_request()).wait(20)
            log = orchestrator.read_log(session.ref)

        assert session.status is SessionStatus.SUCCEEDED
        assert Path(session.artifacts.wasm_path).read_bytes() == b"wasm"
        assert Path(session.artifacts.metadata_path).read_bytes() == b"{}"
        assert "==> normalize" in log
        assert list((tmp_path / "images").glob("vol-*")) == []

    @pytest.mark.asyncio
    async def test_hung_compile_is_killed_at_the_deadline(self, tmp_path: Path) -> None:
        async with running(self.orchestrator(tmp_path, "sleep 5", 1)) as orchestrator:
            started = time.monotonic()
            session = await orchestrator.submit(make_request()).wait(10)
            elapsed = time.monotonic() - started

        assert session.status is SessionStatus.TIMED_OUT
        assert session.failure_reason is FailureReason.TIMEOUT
        assert elapsed < 4
        assert session.artifacts is None
        assert list((tmp_path / "images").glob("vol-*")) == []
        assert not (tmp_path / "images" / "artifacts" / session.ref).exists()

    @pytest.mark.asyncio
    async def test_missing_output_fails_normalization(self, tmp_path: Path) -> None:
        async with running(self.orchestrator(tmp_path, "mkdir -p target/ink", 30)) as orchestrator:
            session = await asyncio.wait_for(orchestrator.submit(make_request()).wait(), 20)

        assert session.status is SessionStatus.FAILED
        assert session.failure_reason is FailureReason.ARTIFACT_MISSING
        assert [stage.exit_code for stage in session.stages] == [0, 0, 30]

    @pytest.mark.asyncio
    async def test_noisy_stage_keeps_only_the_log_cap(self, tmp_path: Path) -> None:
        compile_script = (
            "head -c 5000000 /dev/zero | tr '\\0' x"
            " && mkdir -p target/ink && printf wasm > target/ink/c.wasm && printf '{}' > target/ink/c.json"
        )
        orchestrator = self.orchestrator(tmp_path, compile_script, 30, max_log_bytes=4096)
        async with running(orchestrator):
            session = await orchestrator.submit(make_request()).wait(20)
            log = orchestrator.read_log(session.ref)

        assert session.status is SessionStatus.SUCCEEDED
        assert len(log.encode("utf-8")) <= 4096
        assert "[output truncated]" in log

    @pytest.mark.asyncio
    async def test_artifact_linked_to_the_host_is_missing(self, tmp_path: Path) -> None:
        outside = tmp_path / "host.wasm"
        outside.write_bytes(b"host file")
        compile_script = (
            f"mkdir -p target/ink && ln -s {shlex.quote(str(outside))} target/ink/c.wasm"
            " && printf '{}' > target/ink/c.json"
        )
        async with running(self.orchestrator(tmp_path, compile_script, 30)) as orchestrator:
            session = await orchestrator.submit(make_request()).wait(20)
            health = orchestrator.health()

        assert session.status is SessionStatus.FAILED
        assert session.failure_reason is FailureReason.ARTIFACT_MISSING
        assert health["status"] == "ok"
        assert health["alerts"] == []
