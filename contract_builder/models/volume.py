"""Data models for build volumes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class VolumeHandle:
    volume_id: str
    size_bytes: int
    backing_path: str
    mount_path: str
    device: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "VolumeHandle":
        return cls(
            volume_id=str(raw["volume_id"]),
            size_bytes=int(raw["size_bytes"]),
            backing_path=str(raw["backing_path"]),
            mount_path=str(raw["mount_path"]),
            device=raw.get("device"),
        )
