"""Volume manager interface."""

from __future__ import annotations

from typing import Protocol

from contract_builder.models.volume import VolumeHandle


class VolumeManager(Protocol):
    def check(self) -> None:
        ...

    def provision(self, size_bytes: int) -> VolumeHandle:
        ...

    def release(self, handle: VolumeHandle) -> None:
        ...
