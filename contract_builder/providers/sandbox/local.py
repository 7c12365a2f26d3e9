"""Local sandbox provider implementation.

Stages run as host processes, each in its own process group so that the whole
tree can be killed at once. Memory is capped with ``RLIMIT_AS``; swap and pid
ceilings are not enforced by this provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import resource
import signal
import subprocess
import threading
import time
from typing import Callable, Sequence

from contract_builder.errors import SandboxRuntimeError
from contract_builder.models.sandbox import ExitOutcome, FileEntry, SandboxHandle, SandboxLimits
from contract_builder.models.volume import VolumeHandle
from contract_builder.providers.sandbox.base import SANDBOX_ENV_KEYS, SandboxProvider, collect_output

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
TERMINATE_TIMEOUT_S = 10.0
_READ_CHUNK = 64 * 1024


@dataclass
class _SandboxRecord:
    sandbox_id: str
    root: Path
    process: subprocess.Popen
    started: float
    output_limit: int
    terminated: threading.Event = field(default_factory=threading.Event)


class LocalProvider(SandboxProvider):
    def __init__(self, search_path: str | None = None) -> None:
        self._search_path = search_path or DEFAULT_PATH
        self._sandboxes: dict[str, _SandboxRecord] = {}
        self._lock = threading.Lock()

    def check(self) -> None:
        if not Path("/bin/sh").exists():
            raise RuntimeError("/bin/sh is required by the local sandbox provider")

    def launch(
        self,
        name: str,
        session_token: str,
        volume: VolumeHandle,
        image: str,
        command: Sequence[str],
        env: dict[str, str],
        limits: SandboxLimits,
    ) -> SandboxHandle:
        root = Path(volume.mount_path).resolve()
        if not root.is_dir():
            raise SandboxRuntimeError(f"volume {volume.volume_id} is not mounted at {root}")
        try:
            process = subprocess.Popen(
                list(command),
                cwd=root,
                env=self._sandbox_env(env, root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                preexec_fn=self._limit_resources(limits),
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise SandboxRuntimeError(f"unable to start sandbox {name}: {exc}") from exc
        sandbox_id = f"local-{process.pid}"
        with self._lock:
            self._sandboxes[sandbox_id] = _SandboxRecord(
                sandbox_id=sandbox_id,
                root=root,
                process=process,
                started=time.monotonic(),
                output_limit=limits.output_limit,
            )
        logger.debug("started sandbox %s (%s) in %s", sandbox_id, name, root)
        return SandboxHandle(sandbox_id=sandbox_id, name=name, session_token=session_token)

    def wait(self, handle: SandboxHandle) -> ExitOutcome:
        record = self._get_record(handle.sandbox_id)
        stream = record.process.stdout
        raw = collect_output(iter(lambda: stream.read(_READ_CHUNK), b""), record.output_limit)
        returncode = record.process.wait()
        exit_code = returncode if returncode >= 0 else 128 - returncode
        duration_ms = int((time.monotonic() - record.started) * 1000)
        return ExitOutcome(
            exit_code=exit_code,
            output=raw.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
            terminated=record.terminated.is_set(),
        )

    def terminate(self, handle: SandboxHandle) -> None:
        with self._lock:
            record = self._sandboxes.get(handle.sandbox_id)
        if record is None:
            return
        record.terminated.set()
        self._kill_group(record.process.pid)
        deadline = time.monotonic() + TERMINATE_TIMEOUT_S
        while record.process.poll() is None:
            if time.monotonic() > deadline:
                raise SandboxRuntimeError(f"sandbox {handle.sandbox_id} did not exit after SIGKILL")
            time.sleep(0.02)

    def remove(self, handle: SandboxHandle) -> None:
        with self._lock:
            record = self._sandboxes.get(handle.sandbox_id)
        if record is None:
            return
        if record.process.poll() is None:
            self.terminate(handle)
        if record.process.stdout is not None:
            record.process.stdout.close()
        with self._lock:
            self._sandboxes.pop(handle.sandbox_id, None)

    def stat_file(self, handle: SandboxHandle, path: str) -> FileEntry | None:
        root = self._get_record(handle.sandbox_id).root
        target = self._resolve_path(root, path)
        if not target.is_file():
            return None
        stat_info = target.stat()
        return FileEntry(name=target.name, size=stat_info.st_size, mod_time=stat_info.st_mtime)

    def read_file(self, handle: SandboxHandle, path: str, max_bytes: int) -> bytes:
        root = self._get_record(handle.sandbox_id).root
        target = self._resolve_path(root, path)
        with target.open("rb") as stream:
            return stream.read(max_bytes + 1)

    def recover(self, sandbox_id: str, session_token: str) -> None:
        if not sandbox_id.startswith("local-"):
            return
        try:
            pid = int(sandbox_id[len("local-"):])
        except ValueError:
            return
        # Only kill the group if it still belongs to the orphaned session.
        marker = f"BUILD_SESSION_TOKEN={session_token}".encode()
        try:
            environ = Path(f"/proc/{pid}/environ").read_bytes()
        except OSError:
            return
        if marker in environ.split(b"\0"):
            logger.warning("killing orphaned sandbox %s", sandbox_id)
            self._kill_group(pid)

    def sweep(self) -> int:
        # Orphans from a previous process are only reachable through recover().
        return 0

    def _get_record(self, sandbox_id: str) -> _SandboxRecord:
        with self._lock:
            record = self._sandboxes.get(sandbox_id)
        if record is None:
            raise KeyError(f"Unknown sandbox id: {sandbox_id}")
        return record

    def _resolve_path(self, root: Path, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = root / candidate
        resolved = candidate.resolve()
        if root != resolved and root not in resolved.parents:
            raise ValueError(f"Path escapes sandbox: {path}")
        return resolved

    def _sandbox_env(self, env: dict[str, str], root: Path) -> dict[str, str]:
        unknown = sorted(set(env) - set(SANDBOX_ENV_KEYS))
        if unknown:
            raise SandboxRuntimeError(f"refusing to inject environment: {', '.join(unknown)}")
        merged = {"PATH": self._search_path, "HOME": str(root), "LANG": "C.UTF-8"}
        merged.update(env)
        return merged

    @staticmethod
    def _limit_resources(limits: SandboxLimits) -> Callable[[], None]:
        def apply() -> None:
            _, hard = resource.getrlimit(resource.RLIMIT_AS)
            ceiling = limits.memory_bytes
            if hard != resource.RLIM_INFINITY:
                ceiling = min(ceiling, hard)
            resource.setrlimit(resource.RLIMIT_AS, (ceiling, hard))

        return apply

    @staticmethod
    def _kill_group(pid: int) -> None:
        try:
            os.killpg(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
