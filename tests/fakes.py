"""In-memory sandbox and volume backends plus orchestrator test helpers."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import itertools
from pathlib import Path
import threading
import time
from typing import Any, AsyncIterator, Callable, Optional

from contract_builder.errors import VolumeProvisionError, VolumeReleaseError
from contract_builder.models.sandbox import ExitOutcome, FileEntry, SandboxHandle, SandboxLimits
from contract_builder.models.session import BuildRequest
from contract_builder.models.volume import VolumeHandle
from contract_builder.orchestrator.service import BuildOrchestrator
from contract_builder.orchestrator.stages import METADATA_PATH, WASM_PATH


@dataclass
class FakeStage:
    """Scripted behaviour of one stage sandbox."""

    exit_code: int = 0
    output: str = ""
    oom_killed: bool = False
    block: bool = False
    delay: float = 0.0
    files: dict[str, int] = field(default_factory=dict)
    launch_error: Optional[Exception] = None


@dataclass
class _FakeSandbox:
    name: str
    volume: VolumeHandle
    stage: FakeStage
    env: dict[str, str]
    killed: threading.Event = field(default_factory=threading.Event)


class FakeSandboxProvider:
    """Sandbox provider that runs nothing and reports scripted outcomes.

    Stages are looked up by the suffix of the sandbox name, per session token
    first. The normalize stage produces both canonical artifacts unless
    scripted otherwise.
    """

    def __init__(self, stages: Optional[dict[str, FakeStage]] = None) -> None:
        self.stages = stages or {}
        self.overrides: dict[str, dict[str, FakeStage]] = {}
        self.files: dict[str, int] = {}
        self.launches: list[dict[str, Any]] = []
        self.live: set[str] = set()
        self.terminated: list[str] = []
        self.removed: list[str] = []
        self.recovered: list[tuple[str, str]] = []
        self.stray = 0
        self.sweeps = 0
        self.gate = threading.Event()
        self._sandboxes: dict[str, _FakeSandbox] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def behaviour(self, stage_name: str, session_token: str = "") -> FakeStage:
        per_session = self.overrides.get(session_token, {})
        if stage_name in per_session:
            return per_session[stage_name]
        if stage_name in self.stages:
            return self.stages[stage_name]
        if stage_name == "normalize":
            return FakeStage(files={WASM_PATH: 128, METADATA_PATH: 64})
        return FakeStage()

    @property
    def blocked(self) -> int:
        with self._lock:
            return sum(
                1
                for sandbox_id in self.live
                if self._sandboxes[sandbox_id].stage.block
                and not self._sandboxes[sandbox_id].killed.is_set()
            )

    def check(self) -> None:
        return None

    def launch(
        self,
        name: str,
        session_token: str,
        volume: VolumeHandle,
        image: str,
        command: Any,
        env: dict[str, str],
        limits: SandboxLimits,
    ) -> SandboxHandle:
        stage_name = name.rsplit("-", 1)[-1]
        stage = self.behaviour(stage_name, session_token)
        if stage.launch_error is not None:
            raise stage.launch_error
        sandbox_id = f"fake-{next(self._ids)}"
        with self._lock:
            self._sandboxes[sandbox_id] = _FakeSandbox(name, volume, stage, dict(env))
            self.live.add(sandbox_id)
            self.launches.append(
                {
                    "sandbox_id": sandbox_id,
                    "stage": stage_name,
                    "image": image,
                    "env": dict(env),
                    "limits": limits,
                }
            )
        return SandboxHandle(sandbox_id=sandbox_id, name=name, session_token=session_token)

    def wait(self, handle: SandboxHandle) -> ExitOutcome:
        sandbox = self._sandboxes[handle.sandbox_id]
        stage = sandbox.stage
        if stage.block:
            give_up = time.monotonic() + 10
            while not (sandbox.killed.is_set() or self.gate.is_set()):
                if time.monotonic() > give_up:
                    break
                sandbox.killed.wait(0.01)
        if stage.delay:
            # Finishes regardless of a kill, like a process that exits on its own.
            time.sleep(stage.delay)
        elif sandbox.killed.is_set():
            return ExitOutcome(exit_code=137, output=stage.output, duration_ms=0, terminated=True)
        if stage.exit_code == 0 and not stage.oom_killed:
            for relative, size in stage.files.items():
                self.files[f"{sandbox.volume.mount_path}/{relative}"] = size
        return ExitOutcome(
            exit_code=stage.exit_code,
            output=stage.output,
            duration_ms=5,
            oom_killed=stage.oom_killed,
        )

    def terminate(self, handle: SandboxHandle) -> None:
        sandbox = self._sandboxes.get(handle.sandbox_id)
        if sandbox is None:
            return
        sandbox.killed.set()
        with self._lock:
            self.terminated.append(handle.sandbox_id)

    def remove(self, handle: SandboxHandle) -> None:
        with self._lock:
            if handle.sandbox_id in self.live:
                self.live.discard(handle.sandbox_id)
                self.removed.append(handle.sandbox_id)

    def stat_file(self, handle: SandboxHandle, path: str) -> Optional[FileEntry]:
        if path not in self.files:
            return None
        return FileEntry(name=Path(path).name, size=self.files[path], mod_time=None)

    def read_file(self, handle: SandboxHandle, path: str, max_bytes: int) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return b"w" * min(self.files[path], max_bytes + 1)

    def recover(self, sandbox_id: str, session_token: str) -> None:
        self.recovered.append((sandbox_id, session_token))

    def sweep(self) -> int:
        self.sweeps += 1
        return self.stray


class FakeVolumeManager:
    def __init__(self) -> None:
        self.provisioned: list[VolumeHandle] = []
        self.released: list[str] = []
        self.release_calls = 0
        self.provision_error: Optional[str] = None
        self.release_error: Optional[str] = None
        self._ids = itertools.count(1)

    @property
    def live(self) -> set[str]:
        return {handle.volume_id for handle in self.provisioned} - set(self.released)

    def check(self) -> None:
        return None

    def provision(self, size_bytes: int) -> VolumeHandle:
        if self.provision_error:
            raise VolumeProvisionError(self.provision_error)
        number = next(self._ids)
        handle = VolumeHandle(
            volume_id=f"vol-{number}",
            size_bytes=size_bytes,
            backing_path=f"/images/vol-{number}.img",
            mount_path=f"/volumes/vol-{number}",
            device=f"/dev/loop{number}",
        )
        self.provisioned.append(handle)
        return handle

    def release(self, handle: VolumeHandle) -> None:
        self.release_calls += 1
        if self.release_error:
            raise VolumeReleaseError(handle.volume_id, self.release_error)
        if handle.volume_id not in self.released:
            self.released.append(handle.volume_id)


def make_request(token: str = "token-1", **overrides: Any) -> BuildRequest:
    values: dict[str, Any] = {
        "token": token,
        "source_url": f"https://storage.test/{token}.zip",
        "rustc_version": "1.76.0",
        "tool_version": "4.0.0",
    }
    values.update(overrides)
    return BuildRequest(**values)


@asynccontextmanager
async def running(orchestrator: BuildOrchestrator) -> AsyncIterator[BuildOrchestrator]:
    await orchestrator.start()
    try:
        yield orchestrator
    finally:
        await orchestrator.stop()


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    give_up = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > give_up:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
