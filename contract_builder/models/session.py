"""Build session record and its state machine.

A session moves strictly forward through the pipeline states. ``FAILED`` is
reachable from any non-terminal state and ``TIMED_OUT`` from any state that
is not already terminal. Nothing leaves a terminal state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import hashlib
import logging
from pathlib import PurePosixPath
import time
from typing import Any, Mapping, Optional

from contract_builder.errors import FailureReason
from contract_builder.models.volume import VolumeHandle

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    UNARCHIVING = "unarchiving"
    SEALING = "sealing"
    INSTALLING_TOOLCHAIN = "installing_toolchain"
    BUILDING = "building"
    NORMALIZING_OUTPUT = "normalizing_output"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_PIPELINE_ORDER = {
    SessionStatus.QUEUED: 0,
    SessionStatus.PROVISIONING: 1,
    SessionStatus.UNARCHIVING: 2,
    SessionStatus.SEALING: 3,
    SessionStatus.INSTALLING_TOOLCHAIN: 4,
    SessionStatus.BUILDING: 5,
    SessionStatus.NORMALIZING_OUTPUT: 6,
    SessionStatus.SUCCEEDED: 7,
}

_TERMINAL = frozenset(
    {SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.TIMED_OUT}
)

# A state may only be entered once its prerequisite has been visited.
_PREREQUISITES = {
    SessionStatus.BUILDING: SessionStatus.UNARCHIVING,
    SessionStatus.SUCCEEDED: SessionStatus.NORMALIZING_OUTPUT,
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: int
    memory_swap_bytes: int
    volume_size_bytes: int
    max_build_duration: float
    wasm_size_limit: int
    metadata_size_limit: int


@dataclass(frozen=True)
class BuildRequest:
    token: str
    source_url: str
    rustc_version: str
    tool_version: str
    project_directory: str = ""

    def __post_init__(self) -> None:
        if not self.token or not self.token.strip():
            raise ValueError("build request token must not be empty")
        if not self.source_url or not self.source_url.strip():
            raise ValueError("build request source_url must not be empty")
        parts = PurePosixPath(self.project_directory).parts
        if self.project_directory.startswith("/") or ".." in parts:
            raise ValueError("project_directory must be a relative path inside the archive")


@dataclass
class StageRecord:
    name: str
    started_at: float
    finished_at: Optional[float] = None
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class BuildArtifacts:
    wasm_path: str
    metadata_path: str
    code_hash: str
    wasm_size: int
    metadata_size: int


@dataclass
class BuildSession:
    request: BuildRequest
    limits: ResourceLimits
    status: SessionStatus = SessionStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    history: list[tuple[str, float]] = field(default_factory=list)
    stages: list[StageRecord] = field(default_factory=list)
    sandbox_id: Optional[str] = None
    volume: Optional[VolumeHandle] = None
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    artifacts: Optional[BuildArtifacts] = None

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.status.value, self.created_at))

    @property
    def token(self) -> str:
        return self.request.token

    @property
    def ref(self) -> str:
        return token_fingerprint(self.request.token)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def visited(self, status: SessionStatus) -> bool:
        return any(name == status.value for name, _ in self.history)

    def advance(self, status: SessionStatus) -> None:
        if self.is_terminal:
            raise InvalidTransition(
                f"session {self.ref} is {self.status.value}; cannot enter {status.value}"
            )
        if status not in _PIPELINE_ORDER:
            raise InvalidTransition(f"{status.value} is not a pipeline state")
        if _PIPELINE_ORDER[status] <= _PIPELINE_ORDER[self.status]:
            raise InvalidTransition(
                f"session {self.ref} cannot move from {self.status.value} back to {status.value}"
            )
        required = _PREREQUISITES.get(status)
        if required is not None and not self.visited(required):
            raise InvalidTransition(
                f"session {self.ref} cannot enter {status.value} before {required.value}"
            )
        if status is SessionStatus.SUCCEEDED and self.artifacts is None:
            raise InvalidTransition(f"session {self.ref} has no validated artifacts")
        self._enter(status)

    def fail(self, reason: FailureReason, message: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(
                f"session {self.ref} is already {self.status.value}"
            )
        self.failure_reason = reason
        self.failure_message = message
        if reason is FailureReason.TIMEOUT:
            self._enter(SessionStatus.TIMED_OUT)
        else:
            self._enter(SessionStatus.FAILED)

    def time_out(self, message: str) -> None:
        self.fail(FailureReason.TIMEOUT, message)

    def begin_stage(self, name: str) -> StageRecord:
        record = StageRecord(name=name, started_at=time.time())
        self.stages.append(record)
        return record

    def finish_stage(self, record: StageRecord, exit_code: Optional[int]) -> None:
        record.finished_at = time.time()
        record.exit_code = exit_code

    def _enter(self, status: SessionStatus) -> None:
        now = time.time()
        previous = self.status
        in_state = now - self.updated_at
        self.status = status
        self.updated_at = now
        self.history.append((status.value, now))
        stage = self.stages[-1].name if self.stages else "-"
        logger.info(
            "session %s: %s -> %s (stage=%s, in_state=%.2fs, elapsed=%.2fs)",
            self.ref,
            previous.value,
            status.value,
            stage,
            in_state,
            now - self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": {
                "token": self.request.token,
                "source_url": self.request.source_url,
                "rustc_version": self.request.rustc_version,
                "tool_version": self.request.tool_version,
                "project_directory": self.request.project_directory,
            },
            "limits": dict(self.limits.__dict__),
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "history": [list(item) for item in self.history],
            "stages": [dict(record.__dict__) for record in self.stages],
            "sandbox_id": self.sandbox_id,
            "volume": self.volume.to_dict() if self.volume else None,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_message": self.failure_message,
            "artifacts": dict(self.artifacts.__dict__) if self.artifacts else None,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BuildSession":
        reason = raw.get("failure_reason")
        artifacts = raw.get("artifacts")
        volume = raw.get("volume")
        return cls(
            request=BuildRequest(**raw["request"]),
            limits=ResourceLimits(**raw["limits"]),
            status=SessionStatus(raw["status"]),
            created_at=float(raw["created_at"]),
            updated_at=float(raw["updated_at"]),
            history=[(str(name), float(ts)) for name, ts in raw.get("history", [])],
            stages=[StageRecord(**record) for record in raw.get("stages", [])],
            sandbox_id=raw.get("sandbox_id"),
            volume=VolumeHandle.from_dict(volume) if volume else None,
            failure_reason=FailureReason(reason) if reason else None,
            failure_message=raw.get("failure_message"),
            artifacts=BuildArtifacts(**artifacts) if artifacts else None,
        )

    def view(self) -> dict[str, Any]:
        """Public, credential-free representation of the session."""
        return {
            "session_id": self.ref,
            "status": self.status.value,
            "reason": self.failure_reason.value if self.failure_reason else None,
            "message": self.failure_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "rustc_version": self.request.rustc_version,
            "tool_version": self.request.tool_version,
            "stages": [
                {
                    "name": record.name,
                    "started_at": _iso(record.started_at),
                    "finished_at": _iso(record.finished_at) if record.finished_at else None,
                    "exit_code": record.exit_code,
                }
                for record in self.stages
            ],
            "artifacts": (
                {
                    "code_hash": self.artifacts.code_hash,
                    "wasm_size": self.artifacts.wasm_size,
                    "metadata_size": self.artifacts.metadata_size,
                }
                if self.artifacts
                else None
            ),
        }


def token_fingerprint(token: str) -> str:
    """Stable, non-secret identifier for a session token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
