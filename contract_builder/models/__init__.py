"""Shared data models for the contract builder."""

from contract_builder.models.sandbox import ExitOutcome, FileEntry, SandboxHandle, SandboxLimits
from contract_builder.models.session import (
    BuildArtifacts,
    BuildRequest,
    BuildSession,
    InvalidTransition,
    ResourceLimits,
    SessionStatus,
    StageRecord,
)
from contract_builder.models.volume import VolumeHandle

__all__ = [
    "BuildArtifacts",
    "BuildRequest",
    "BuildSession",
    "ExitOutcome",
    "FileEntry",
    "InvalidTransition",
    "ResourceLimits",
    "SandboxHandle",
    "SandboxLimits",
    "SessionStatus",
    "StageRecord",
    "VolumeHandle",
]
