"""Build failure taxonomy and orchestrator exceptions."""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    DOWNLOAD_FAILURE = "DownloadFailure"
    UNPACK_FAILURE = "UnpackFailure"
    UPLOAD_FAILURE = "UploadFailure"
    SEAL_FAILURE = "SealFailure"
    TOOLCHAIN_INSTALL_FAILURE = "ToolchainInstallFailure"
    COMPILE_FAILURE = "CompileFailure"
    ARTIFACT_MISSING = "ArtifactMissing"
    ARTIFACT_TOO_LARGE = "ArtifactTooLarge"
    RESOURCE_EXCEEDED = "ResourceExceeded"
    VOLUME_PROVISION_FAILURE = "VolumeProvisionFailure"
    SANDBOX_RUNTIME_FAILURE = "SandboxRuntimeFailure"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    INTERRUPTED = "Interrupted"


class ConfigError(ValueError):
    pass


class BuildFailure(Exception):
    """A failure confined to a single build session."""

    reason = FailureReason.SANDBOX_RUNTIME_FAILURE

    def __init__(self, message: str, reason: FailureReason | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


class VolumeProvisionError(BuildFailure):
    reason = FailureReason.VOLUME_PROVISION_FAILURE


class SandboxRuntimeError(BuildFailure):
    reason = FailureReason.SANDBOX_RUNTIME_FAILURE


class StageFailure(BuildFailure):
    def __init__(
        self,
        stage: str,
        message: str,
        reason: FailureReason,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, reason)
        self.stage = stage
        self.exit_code = exit_code


class ArtifactError(BuildFailure):
    reason = FailureReason.ARTIFACT_MISSING


class BuildTimeout(BuildFailure):
    """The session's wall-clock budget elapsed."""

    reason = FailureReason.TIMEOUT


class BuildCancelled(BuildFailure):
    reason = FailureReason.CANCELLED


class VolumeReleaseError(RuntimeError):
    """A volume could not be released; the host needs operator attention."""

    def __init__(self, volume_id: str, detail: str) -> None:
        super().__init__(f"unable to release volume {volume_id}: {detail}")
        self.volume_id = volume_id
        self.detail = detail


class SessionConflict(RuntimeError):
    """The request conflicts with the current state of a session."""
