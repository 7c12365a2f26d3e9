"""Drives one build session from provisioning to a terminal state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import logging
from typing import Callable, Optional, Sequence

from contract_builder.config import BuilderConfig
from contract_builder.errors import (
    BuildCancelled,
    BuildFailure,
    BuildTimeout,
    FailureReason,
    SandboxRuntimeError,
    StageFailure,
    VolumeReleaseError,
)
from contract_builder.models.sandbox import SandboxHandle, SandboxLimits
from contract_builder.models.session import BuildArtifacts, BuildRequest, BuildSession, SessionStatus
from contract_builder.orchestrator.alerts import AlertBook
from contract_builder.orchestrator.stages import Stage, validate_pipeline
from contract_builder.orchestrator.store import SessionStore
from contract_builder.orchestrator.timeouts import TimeoutSupervisor
from contract_builder.orchestrator.validator import ArtifactPair, ArtifactValidator
from contract_builder.providers.sandbox.base import SandboxProvider
from contract_builder.providers.volume.base import VolumeManager

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[BuilderConfig, BuildRequest], Sequence[Stage]]


@dataclass
class _RunContext:
    session_id: str
    handle: Optional[SandboxHandle] = None
    abort: Optional[BuildFailure] = None
    kill: Optional[asyncio.Task] = None
    finished: bool = False


def code_hash(wasm: bytes) -> str:
    return hashlib.blake2b(wasm, digest_size=32).hexdigest()


class SessionRunner:
    """Runs the stage pipeline of admitted sessions.

    All session state is mutated on the event loop; blocking provider calls
    go through ``asyncio.to_thread`` so that a slow sandbox never stalls the
    admission loop or sibling sessions.

    Timeouts and operator cancellation interrupt a run the same way: the
    abort reason is recorded, the live sandbox is killed, and the run
    notices the abort after its current blocking call returns. Resources are
    always released before the terminal state is recorded.
    """

    def __init__(
        self,
        config: BuilderConfig,
        provider: SandboxProvider,
        volumes: VolumeManager,
        store: SessionStore,
        alerts: AlertBook,
        pipeline: PipelineFactory,
        supervisor: TimeoutSupervisor | None = None,
        on_finished: Callable[[BuildSession], None] | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._volumes = volumes
        self._store = store
        self._alerts = alerts
        self._pipeline = pipeline
        self._supervisor = supervisor or TimeoutSupervisor()
        self._on_finished = on_finished
        self._contexts: dict[str, _RunContext] = {}

    def abort(self, session_id: str, failure: BuildFailure) -> None:
        """Interrupt an admitted session; takes effect even before its run starts."""
        ctx = self._contexts.setdefault(session_id, _RunContext(session_id))
        self._interrupt(ctx, failure)

    async def run(self, session: BuildSession) -> None:
        ctx = self._contexts.setdefault(session.ref, _RunContext(session.ref))
        deadline = self._supervisor.watch(
            session.ref,
            session.limits.max_build_duration,
            lambda expired: self._interrupt(
                ctx,
                BuildTimeout(f"build exceeded {expired.budget:.0f}s wall-clock budget"),
            ),
        )
        failure: Optional[BuildFailure] = None
        artifacts: Optional[ArtifactPair] = None
        interrupted: Optional[asyncio.CancelledError] = None
        try:
            self._check_abort(ctx)
            session.advance(SessionStatus.PROVISIONING)
            self._store.save(session)
            artifacts = await self._execute(session, ctx)
        except BuildFailure as exc:
            failure = exc
        except asyncio.CancelledError as exc:
            interrupted = exc
            failure = BuildFailure(
                "orchestrator stopped while the session was running",
                FailureReason.INTERRUPTED,
            )
        except Exception as exc:
            logger.exception("session %s crashed", session.ref)
            failure = SandboxRuntimeError(f"unexpected orchestrator error: {exc}")

        if interrupted is None:
            if ctx.abort is not None:
                failure = ctx.abort
            elif deadline.expired():
                failure = BuildTimeout(
                    f"build exceeded {deadline.budget:.0f}s wall-clock budget"
                )
        ctx.finished = True
        self._supervisor.clear(session.ref)

        cleanup_failure = await self._teardown(session, ctx)
        if failure is None:
            failure = cleanup_failure
        if failure is None and artifacts is None:
            failure = SandboxRuntimeError("pipeline finished without artifacts")
        try:
            self._record(session, failure, artifacts)
        finally:
            self._contexts.pop(session.ref, None)
        if interrupted is not None:
            raise interrupted

    async def _execute(self, session: BuildSession, ctx: _RunContext) -> ArtifactPair:
        stages = list(self._pipeline(self._config, session.request))
        validate_pipeline(stages)

        volume = await asyncio.to_thread(self._volumes.provision, session.limits.volume_size_bytes)
        session.volume = volume
        self._store.save(session)
        self._check_abort(ctx)

        limits = SandboxLimits(
            memory_bytes=session.limits.memory_bytes,
            memory_swap_bytes=session.limits.memory_swap_bytes,
            pids_limit=self._config.pids_limit,
            output_limit=self._config.max_log_bytes,
        )
        injected = {
            "BUILD_SESSION_TOKEN": session.token,
            "SOURCE_CODE_URL": session.request.source_url,
            "API_SERVER_URL": self._config.api_server_url,
        }
        for stage in stages:
            await self._dispose_sandbox(session, ctx)
            self._check_abort(ctx)
            record = session.begin_stage(stage.name)
            session.advance(stage.status)
            self._store.save(session)

            handle = await asyncio.to_thread(
                self._provider.launch,
                f"build-{session.ref}-{stage.name}",
                session.token,
                volume,
                stage.image(self._config),
                stage.command(),
                {key: injected[key] for key in stage.env},
                limits,
            )
            ctx.handle = handle
            session.sandbox_id = handle.sandbox_id
            self._store.save(session)
            self._check_abort(ctx)

            try:
                outcome = await asyncio.to_thread(self._provider.wait, handle)
            except BuildFailure:
                session.finish_stage(record, None)
                self._check_abort(ctx)
                raise
            session.finish_stage(record, outcome.exit_code)
            self._store.append_log(session, stage.name, outcome.output)
            self._check_abort(ctx)

            reason = stage.classify(outcome)
            if reason is not None:
                raise StageFailure(
                    stage.name,
                    f"stage {stage.name} exited with status {outcome.exit_code}",
                    reason,
                    outcome.exit_code,
                )
            logger.info(
                "session %s: stage %s finished in %.2fs",
                session.ref,
                stage.name,
                outcome.duration_ms / 1000,
            )

        validator = ArtifactValidator(
            self._provider,
            session.limits.wasm_size_limit,
            session.limits.metadata_size_limit,
        )
        artifacts = await asyncio.to_thread(validator.collect, ctx.handle, volume)
        self._check_abort(ctx)
        return artifacts

    def _interrupt(self, ctx: _RunContext, failure: BuildFailure) -> None:
        if ctx.finished or ctx.abort is not None:
            return
        ctx.abort = failure
        logger.warning("session %s interrupted: %s", ctx.session_id, failure.message)
        if ctx.handle is not None and ctx.kill is None:
            ctx.kill = asyncio.get_running_loop().create_task(self._kill(ctx.handle))

    async def _kill(self, handle: SandboxHandle) -> None:
        try:
            await asyncio.to_thread(self._provider.terminate, handle)
        except BuildFailure as exc:
            logger.error("unable to terminate sandbox %s: %s", handle.name, exc)

    @staticmethod
    def _check_abort(ctx: _RunContext) -> None:
        if ctx.abort is not None:
            raise ctx.abort

    async def _dispose_sandbox(self, session: BuildSession, ctx: _RunContext) -> None:
        handle = ctx.handle
        if handle is None:
            return
        if ctx.kill is not None:
            await ctx.kill
            ctx.kill = None
        await asyncio.to_thread(self._provider.terminate, handle)
        await asyncio.to_thread(self._provider.remove, handle)
        ctx.handle = None
        session.sandbox_id = None
        self._store.save(session)

    async def _teardown(self, session: BuildSession, ctx: _RunContext) -> Optional[BuildFailure]:
        """Kill and remove the sandbox, then release the volume.

        Returns a failure if the sandbox could not be removed. A volume that
        cannot be released stops all admissions.
        """
        failure: Optional[BuildFailure] = None
        try:
            await self._dispose_sandbox(session, ctx)
        except BuildFailure as exc:
            logger.error("unable to remove sandbox of session %s: %s", session.ref, exc)
            failure = exc
        if session.volume is not None:
            try:
                await asyncio.to_thread(self._volumes.release, session.volume)
            except VolumeReleaseError as exc:
                self._alerts.raise_alert("volume_release_failure", str(exc), fatal=True)
            else:
                session.volume = None
        self._store.save(session)
        return failure

    def _record(
        self,
        session: BuildSession,
        failure: Optional[BuildFailure],
        artifacts: Optional[ArtifactPair],
    ) -> None:
        if failure is None and artifacts is not None:
            try:
                wasm_path, metadata_path = self._store.write_artifacts(
                    session, artifacts.wasm, artifacts.metadata
                )
            except OSError as exc:
                self._store.discard_artifacts(session)
                failure = SandboxRuntimeError(f"unable to store artifacts: {exc}")
            else:
                session.artifacts = BuildArtifacts(
                    wasm_path=str(wasm_path),
                    metadata_path=str(metadata_path),
                    code_hash=code_hash(artifacts.wasm),
                    wasm_size=len(artifacts.wasm),
                    metadata_size=len(artifacts.metadata),
                )
                session.advance(SessionStatus.SUCCEEDED)
        if failure is not None:
            session.fail(failure.reason, failure.message)
            logger.info(
                "session %s finished as %s: %s",
                session.ref,
                failure.reason.value,
                failure.message,
            )
        self._alerts.record_outcome(session.failure_reason, session.failure_message or "")
        self._store.save(session)
        if self._on_finished is not None:
            self._on_finished(session)
