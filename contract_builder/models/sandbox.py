"""Data models for sandbox interactions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SandboxLimits:
    memory_bytes: int
    memory_swap_bytes: int
    pids_limit: int
    # Bytes of merged stdout/stderr kept per stage; the rest is discarded.
    output_limit: int = 1024 * 1024


@dataclass(frozen=True)
class SandboxHandle:
    sandbox_id: str
    name: str
    session_token: str


@dataclass(frozen=True)
class ExitOutcome:
    exit_code: int
    output: str
    duration_ms: int
    oom_killed: bool = False
    terminated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.oom_killed and not self.terminated


@dataclass(frozen=True)
class FileEntry:
    name: str
    size: int
    mod_time: Optional[float]
