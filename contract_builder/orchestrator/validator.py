"""Artifact validation."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from contract_builder.errors import ArtifactError, FailureReason
from contract_builder.models.sandbox import SandboxHandle
from contract_builder.models.volume import VolumeHandle
from contract_builder.orchestrator.stages import METADATA_PATH, WASM_PATH
from contract_builder.providers.sandbox.base import SandboxProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactPair:
    wasm: bytes
    metadata: bytes


class ArtifactValidator:
    def __init__(
        self,
        provider: SandboxProvider,
        wasm_size_limit: int,
        metadata_size_limit: int,
    ) -> None:
        self._provider = provider
        self._limits = {
            WASM_PATH: wasm_size_limit,
            METADATA_PATH: metadata_size_limit,
        }

    def collect(self, handle: SandboxHandle, volume: VolumeHandle) -> ArtifactPair:
        """Check both canonical artifacts and read them out of the sandbox.

        Presence of both files is checked before any size, so a session that
        produced neither reports ``ArtifactMissing``. An artifact that links
        outside the volume counts as missing.
        """
        paths = {name: _in_volume(volume, name) for name in self._limits}
        entries = {}
        for name, path in paths.items():
            try:
                entry = self._provider.stat_file(handle, path)
            except ValueError as exc:
                raise ArtifactError(f"{name} points outside the build volume") from exc
            if entry is None:
                raise ArtifactError(f"{name} was not produced", FailureReason.ARTIFACT_MISSING)
            entries[name] = entry
        for name, entry in entries.items():
            limit = self._limits[name]
            if entry.size > limit:
                raise ArtifactError(
                    f"{name} is {entry.size} bytes, limit is {limit}",
                    FailureReason.ARTIFACT_TOO_LARGE,
                )
        contents = {}
        for name, path in paths.items():
            limit = self._limits[name]
            try:
                data = self._provider.read_file(handle, path, limit)
            except FileNotFoundError as exc:
                raise ArtifactError(f"{name} disappeared before it could be read") from exc
            except ValueError as exc:
                raise ArtifactError(f"{name} points outside the build volume") from exc
            if len(data) > limit:
                raise ArtifactError(
                    f"{name} exceeds {limit} bytes",
                    FailureReason.ARTIFACT_TOO_LARGE,
                )
            contents[name] = data
        logger.debug(
            "collected artifacts from %s (wasm=%d bytes, metadata=%d bytes)",
            handle.name,
            len(contents[WASM_PATH]),
            len(contents[METADATA_PATH]),
        )
        return ArtifactPair(wasm=contents[WASM_PATH], metadata=contents[METADATA_PATH])


def _in_volume(volume: VolumeHandle, relative: str) -> str:
    return f"{volume.mount_path.rstrip('/')}/{relative}"
