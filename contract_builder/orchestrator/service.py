"""Build orchestrator facade: intake, status, cancellation and crash recovery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from contract_builder.config import BuilderConfig
from contract_builder.errors import (
    BuildCancelled,
    BuildFailure,
    ConfigError,
    FailureReason,
    SessionConflict,
    VolumeReleaseError,
)
from contract_builder.models.session import (
    BuildRequest,
    BuildSession,
    ResourceLimits,
    SessionStatus,
    token_fingerprint,
)
from contract_builder.orchestrator.alerts import AlertBook
from contract_builder.orchestrator.pool import WorkerPool
from contract_builder.orchestrator.runner import PipelineFactory, SessionRunner
from contract_builder.orchestrator.scheduler import Scheduler
from contract_builder.orchestrator.stages import build_pipeline
from contract_builder.orchestrator.store import SessionStore
from contract_builder.providers.sandbox import DockerProvider, LocalProvider, SandboxProvider
from contract_builder.providers.volume import DirectoryVolumeManager, LoopVolumeManager, VolumeManager

logger = logging.getLogger(__name__)


class SessionHandle:
    def __init__(self, orchestrator: "BuildOrchestrator", session_id: str) -> None:
        self._orchestrator = orchestrator
        self.session_id = session_id

    @property
    def session(self) -> BuildSession:
        return self._orchestrator.get(self.session_id)

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    async def wait(self, timeout: Optional[float] = None) -> BuildSession:
        return await self._orchestrator.wait_for(self.session_id, timeout)

    def cancel(self) -> BuildSession:
        return self._orchestrator.cancel(self.session_id)


class BuildOrchestrator:
    def __init__(
        self,
        config: BuilderConfig,
        sandbox_provider: SandboxProvider,
        volume_manager: VolumeManager,
        store: SessionStore | None = None,
        pipeline: PipelineFactory = build_pipeline,
    ) -> None:
        self._config = config
        self._provider = sandbox_provider
        self._volumes = volume_manager
        self._store = store or SessionStore(
            config.state_path, config.artifacts_path, config.max_log_bytes
        )
        self._sessions: dict[str, BuildSession] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._alerts = AlertBook(config.sandbox_failure_alert_threshold)
        self._pool = WorkerPool(config.worker_count)
        self._runner = SessionRunner(
            config,
            sandbox_provider,
            volume_manager,
            self._store,
            self._alerts,
            pipeline,
            on_finished=self._notify,
        )
        self._scheduler = Scheduler(
            self._pool,
            self._runner.run,
            admissions_open=lambda: not self._alerts.halted,
        )
        self._started = False

    @property
    def config(self) -> BuilderConfig:
        return self._config

    @property
    def alerts(self) -> AlertBook:
        return self._alerts

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    def check(self) -> None:
        """Verify the sandbox runtime and volume backend are usable."""
        self._provider.check()
        self._volumes.check()
        self._store.ensure()

    async def start(self) -> None:
        if self._started:
            return
        self._store.ensure()
        await self.recover()
        self._scheduler.start()
        self._started = True
        logger.info(
            "orchestrator started (%d workers, %.0fs build budget)",
            self._config.worker_count,
            self._config.max_build_duration,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        await self._scheduler.stop()
        self._started = False
        logger.info("orchestrator stopped")

    def submit(self, request: BuildRequest) -> SessionHandle:
        session_id = token_fingerprint(request.token)
        if session_id in self._sessions:
            raise SessionConflict(f"session {session_id} already exists")
        session = BuildSession(request=request, limits=self._limits())
        self._sessions[session_id] = session
        self._finished[session_id] = asyncio.Event()
        self._store.save(session)
        self._scheduler.submit(session)
        return SessionHandle(self, session_id)

    def get(self, session_id: str) -> BuildSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"unknown session: {session_id}") from None

    def read_log(self, session_id: str) -> str:
        self.get(session_id)
        return self._store.read_log(session_id)

    def cancel(self, session_id: str) -> BuildSession:
        session = self.get(session_id)
        if session.is_terminal:
            raise SessionConflict(f"session {session_id} is already {session.status.value}")
        if self._scheduler.remove(session_id):
            session.fail(FailureReason.CANCELLED, "cancelled before admission")
            self._store.save(session)
            self._notify(session)
        else:
            self._runner.abort(session_id, BuildCancelled("cancelled by operator"))
        return session

    async def wait_for(self, session_id: str, timeout: Optional[float] = None) -> BuildSession:
        session = self.get(session_id)
        if session.is_terminal:
            return session
        event = self._finished.setdefault(session_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout)
        return session

    def health(self) -> dict[str, Any]:
        alerts = self._alerts.alerts
        return {
            "status": "degraded" if alerts or self._alerts.halted else "ok",
            "admissions": "halted" if self._alerts.halted else "open",
            "alerts": [alert.to_dict() for alert in alerts],
            "workers": {
                "size": self._pool.size,
                "in_use": self._pool.in_use,
                "peak": self._pool.peak,
            },
            "queued": len(self._scheduler.queued),
            "running": len(self._scheduler.running),
        }

    async def recover(self) -> int:
        """Reclaim resources of sessions left behind by an unclean shutdown.

        Sessions that were admitted but never reached a terminal state are
        failed as ``Interrupted`` after their sandbox and volume are released.
        Sessions still queued are queued again in their original order.
        Returns the number of reclaimed sessions.
        """
        reclaimed = 0
        requeue = []
        for session in sorted(self._store.load_all(), key=lambda item: item.created_at):
            self._sessions[session.ref] = session
            if session.status is SessionStatus.QUEUED:
                requeue.append(session)
                continue
            if session.is_terminal and session.volume is None and session.sandbox_id is None:
                continue
            await self._reclaim(session)
            if not session.is_terminal:
                session.fail(
                    FailureReason.INTERRUPTED,
                    f"orchestrator restarted while the session was {session.status.value}",
                )
                reclaimed += 1
            self._store.save(session)
        swept = await asyncio.to_thread(self._provider.sweep)
        for session in requeue:
            self._finished.setdefault(session.ref, asyncio.Event())
            self._scheduler.submit(session)
        if reclaimed or swept or requeue:
            logger.warning(
                "recovery reclaimed %d sessions, removed %d stray sandboxes, requeued %d",
                reclaimed,
                swept,
                len(requeue),
            )
        return reclaimed

    async def _reclaim(self, session: BuildSession) -> None:
        if session.sandbox_id is not None:
            try:
                await asyncio.to_thread(self._provider.recover, session.sandbox_id, session.token)
            except BuildFailure as exc:
                logger.error("unable to remove sandbox of session %s: %s", session.ref, exc)
            else:
                session.sandbox_id = None
        if session.volume is not None:
            try:
                await asyncio.to_thread(self._volumes.release, session.volume)
            except VolumeReleaseError as exc:
                self._alerts.raise_alert("volume_release_failure", str(exc), fatal=True)
            else:
                session.volume = None

    def _limits(self) -> ResourceLimits:
        return ResourceLimits(
            memory_bytes=self._config.memory_limit,
            memory_swap_bytes=self._config.memory_swap_limit,
            volume_size_bytes=self._config.volume_size,
            max_build_duration=self._config.max_build_duration,
            wasm_size_limit=self._config.wasm_size_limit,
            metadata_size_limit=self._config.metadata_size_limit,
        )

    def _notify(self, session: BuildSession) -> None:
        event = self._finished.get(session.ref)
        if event is not None:
            event.set()


def create_orchestrator(config: BuilderConfig) -> BuildOrchestrator:
    provider: SandboxProvider
    volumes: VolumeManager
    if config.runtime == "docker":
        provider = DockerProvider()
        if config.volume_backend == "loop":
            volumes = LoopVolumeManager(config.images_path)
        else:
            volumes = DirectoryVolumeManager(config.images_path, mount_path="/contract")
    else:
        if config.volume_backend != "directory":
            raise ConfigError("the local runtime requires the directory volume backend")
        provider = LocalProvider()
        volumes = DirectoryVolumeManager(config.images_path)
    return BuildOrchestrator(config, provider, volumes)
