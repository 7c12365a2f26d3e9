"""Sandbox provider interface."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from contract_builder.models.sandbox import ExitOutcome, FileEntry, SandboxHandle, SandboxLimits
from contract_builder.models.volume import VolumeHandle

# Environment variables a sandbox receives. Nothing else from the host is passed in.
SANDBOX_ENV_KEYS = (
    "BUILD_SESSION_TOKEN",
    "SOURCE_CODE_URL",
    "API_SERVER_URL",
)

SESSION_LABEL = "contract-builder.session"


def collect_output(chunks: Iterable[bytes], limit: int) -> bytes:
    """Keep the first ``limit`` bytes of a sandbox's output and drain the rest."""
    kept = bytearray()
    for chunk in chunks:
        room = limit - len(kept)
        if room > 0:
            kept += chunk[:room]
    return bytes(kept)


class SandboxProvider(Protocol):
    def check(self) -> None:
        ...

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
        ...

    def wait(self, handle: SandboxHandle) -> ExitOutcome:
        ...

    def terminate(self, handle: SandboxHandle) -> None:
        ...

    def remove(self, handle: SandboxHandle) -> None:
        ...

    def stat_file(self, handle: SandboxHandle, path: str) -> FileEntry | None:
        ...

    def read_file(self, handle: SandboxHandle, path: str, max_bytes: int) -> bytes:
        ...

    def recover(self, sandbox_id: str, session_token: str) -> None:
        ...

    def sweep(self) -> int:
        ...
