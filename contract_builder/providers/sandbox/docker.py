"""Docker sandbox provider.

Every stage runs in a fresh container with all capabilities dropped except
``DAC_OVERRIDE``, ``no-new-privileges``, a pid ceiling and memory/swap limits
enforced by the daemon. The image is mounted read-only; the session volume's
loop device, mounted through the local volume driver, is the only writable
storage apart from a small /tmp tmpfs. The daemon keeps at most the output cap
of each container's log.
"""

from __future__ import annotations

import io
import logging
import tarfile
import threading
import time
from typing import Any, Sequence

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import DriverConfig, LogConfig, Mount

from contract_builder.errors import SandboxRuntimeError
from contract_builder.models.sandbox import ExitOutcome, FileEntry, SandboxHandle, SandboxLimits
from contract_builder.models.volume import VolumeHandle
from contract_builder.providers.sandbox.base import (
    SANDBOX_ENV_KEYS,
    SESSION_LABEL,
    SandboxProvider,
    collect_output,
)

logger = logging.getLogger(__name__)

# Slack on top of the requested file size for tar headers and padding.
_ARCHIVE_OVERHEAD = 64 * 1024

# Scratch space for tools that insist on /tmp; the root filesystem is read-only.
TMPFS_OPTIONS = "size=64m,noexec,nosuid,nodev"


class DockerProvider(SandboxProvider):
    def __init__(self, client: Any | None = None) -> None:
        if client is None:
            try:
                client = docker.from_env()
            except DockerException as exc:
                raise RuntimeError(f"unable to connect to docker: {exc}") from exc
        self._client = client
        self._terminated: set[str] = set()
        self._started: dict[str, float] = {}
        self._output_limits: dict[str, int] = {}
        self._lock = threading.Lock()

    def check(self) -> None:
        try:
            self._client.ping()
        except DockerException as exc:
            raise RuntimeError(f"docker daemon is not reachable: {exc}") from exc

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
        unknown = sorted(set(env) - set(SANDBOX_ENV_KEYS))
        if unknown:
            raise SandboxRuntimeError(f"refusing to inject environment: {', '.join(unknown)}")
        self._ensure_image(image)
        try:
            container = self._client.containers.create(
                image,
                command=list(command),
                name=name,
                environment={"HOME": volume.mount_path, **env},
                working_dir=volume.mount_path,
                labels={SESSION_LABEL: session_token},
                mounts=[self._volume_mount(volume)],
                read_only=True,
                tmpfs={"/tmp": TMPFS_OPTIONS},
                log_config=LogConfig(
                    type=LogConfig.types.JSON,
                    config={"max-size": str(limits.output_limit), "max-file": "1"},
                ),
                mem_limit=limits.memory_bytes,
                memswap_limit=limits.memory_swap_bytes,
                pids_limit=limits.pids_limit,
                cap_drop=["ALL"],
                cap_add=["DAC_OVERRIDE"],
                security_opt=["no-new-privileges"],
                network_mode="bridge",
                detach=True,
            )
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to create container {name}: {exc}") from exc
        try:
            container.start()
        except DockerException as exc:
            self._force_remove(container.id)
            raise SandboxRuntimeError(f"unable to start container {name}: {exc}") from exc
        with self._lock:
            self._started[container.id] = time.monotonic()
            self._output_limits[container.id] = limits.output_limit
        logger.debug("started container %s (%s) from %s", container.short_id, name, image)
        return SandboxHandle(sandbox_id=container.id, name=name, session_token=session_token)

    def wait(self, handle: SandboxHandle) -> ExitOutcome:
        try:
            container = self._client.containers.get(handle.sandbox_id)
            result = container.wait()
            container.reload()
            state = container.attrs.get("State", {})
            with self._lock:
                limit = self._output_limits.get(handle.sandbox_id, SandboxLimits.output_limit)
            raw = collect_output(container.logs(stdout=True, stderr=True, stream=True), limit)
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to wait for container {handle.name}: {exc}") from exc
        with self._lock:
            started = self._started.get(handle.sandbox_id, time.monotonic())
            terminated = handle.sandbox_id in self._terminated
        return ExitOutcome(
            exit_code=int(result.get("StatusCode", state.get("ExitCode", -1))),
            output=raw.decode("utf-8", errors="replace"),
            duration_ms=int((time.monotonic() - started) * 1000),
            oom_killed=bool(state.get("OOMKilled", False)),
            terminated=terminated,
        )

    def terminate(self, handle: SandboxHandle) -> None:
        with self._lock:
            self._terminated.add(handle.sandbox_id)
        try:
            container = self._client.containers.get(handle.sandbox_id)
        except NotFound:
            return
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to find container {handle.name}: {exc}") from exc
        try:
            container.kill(signal="SIGKILL")
        except NotFound:
            return
        except APIError as exc:
            # 409: the container is not running any more.
            if exc.status_code != 409:
                raise SandboxRuntimeError(f"unable to kill container {handle.name}: {exc}") from exc
        try:
            container.wait(condition="not-running")
        except NotFound:
            return
        except DockerException as exc:
            raise SandboxRuntimeError(f"container {handle.name} did not stop: {exc}") from exc

    def remove(self, handle: SandboxHandle) -> None:
        self._force_remove(handle.sandbox_id)
        with self._lock:
            self._started.pop(handle.sandbox_id, None)
            self._output_limits.pop(handle.sandbox_id, None)
            self._terminated.discard(handle.sandbox_id)

    def stat_file(self, handle: SandboxHandle, path: str) -> FileEntry | None:
        try:
            container = self._client.containers.get(handle.sandbox_id)
            stream, stat = container.get_archive(path)
        except NotFound:
            return None
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to inspect {path}: {exc}") from exc
        close = getattr(stream, "close", None)
        if close is not None:
            close()
        return FileEntry(name=stat.get("name", path), size=int(stat.get("size", 0)), mod_time=None)

    def read_file(self, handle: SandboxHandle, path: str, max_bytes: int) -> bytes:
        """Download ``path`` from the container, reading at most ``max_bytes + 1`` bytes."""
        try:
            container = self._client.containers.get(handle.sandbox_id)
            stream, _ = container.get_archive(path)
            buffer = io.BytesIO()
            for chunk in stream:
                buffer.write(chunk)
                if buffer.tell() > max_bytes + _ARCHIVE_OVERHEAD:
                    raise SandboxRuntimeError(f"{path} exceeds {max_bytes} bytes")
        except NotFound as exc:
            raise FileNotFoundError(path) from exc
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to download {path}: {exc}") from exc
        buffer.seek(0)
        try:
            with tarfile.open(fileobj=buffer, mode="r|") as archive:
                for member in archive:
                    if not member.isfile():
                        continue
                    extracted = archive.extractfile(member)
                    if extracted is None:
                        break
                    return extracted.read(max_bytes + 1)
        except tarfile.TarError as exc:
            raise SandboxRuntimeError(f"unable to unpack {path}: {exc}") from exc
        raise FileNotFoundError(path)

    def recover(self, sandbox_id: str, session_token: str) -> None:
        try:
            container = self._client.containers.get(sandbox_id)
        except NotFound:
            return
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to find container {sandbox_id}: {exc}") from exc
        if container.labels.get(SESSION_LABEL) != session_token:
            return
        logger.warning("removing orphaned container %s", container.short_id)
        self._force_remove(sandbox_id)

    def sweep(self) -> int:
        try:
            containers = self._client.containers.list(all=True, filters={"label": SESSION_LABEL})
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to list containers: {exc}") from exc
        for container in containers:
            logger.warning("removing leftover container %s", container.short_id)
            self._force_remove(container.id)
        return len(containers)

    def _ensure_image(self, image: str) -> None:
        try:
            self._client.images.get(image)
        except ImageNotFound:
            logger.info("downloading missing docker image %s", image)
            try:
                self._client.images.pull(image)
            except DockerException as exc:
                raise SandboxRuntimeError(f"unable to pull image {image}: {exc}") from exc
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to inspect image {image}: {exc}") from exc

    def _force_remove(self, container_id: str) -> None:
        try:
            self._client.containers.get(container_id).remove(force=True, v=True)
        except NotFound:
            return
        except DockerException as exc:
            raise SandboxRuntimeError(f"unable to remove container {container_id}: {exc}") from exc

    @staticmethod
    def _volume_mount(volume: VolumeHandle) -> Mount:
        if volume.device:
            return Mount(
                target=volume.mount_path,
                source=None,
                type="volume",
                driver_config=DriverConfig(
                    "local", options={"device": volume.device, "type": "ext4"}
                ),
            )
        return Mount(target=volume.mount_path, source=volume.backing_path, type="bind")
