"""Directory-backed volumes for local development.

The host does not enforce the volume capacity; the size is recorded on the
handle only.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
from uuid import uuid4

from contract_builder.errors import VolumeProvisionError, VolumeReleaseError
from contract_builder.models.volume import VolumeHandle
from contract_builder.providers.volume.base import VolumeManager

logger = logging.getLogger(__name__)


class DirectoryVolumeManager(VolumeManager):
    def __init__(self, images_path: str | Path, mount_path: str | None = None) -> None:
        self._images_path = Path(images_path).absolute()
        # None mounts the directory at its host path (local provider).
        self._mount_path = mount_path

    def check(self) -> None:
        self._images_path.mkdir(parents=True, exist_ok=True)
        if not os.access(self._images_path, os.W_OK):
            raise RuntimeError(f"images path is not writable: {self._images_path}")

    def provision(self, size_bytes: int) -> VolumeHandle:
        if size_bytes <= 0:
            raise VolumeProvisionError(f"invalid volume size: {size_bytes}")
        volume_id = f"vol-{uuid4().hex[:12]}"
        root = self._images_path / volume_id
        try:
            root.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise VolumeProvisionError(f"unable to create volume directory: {exc}") from exc
        logger.info("provisioned directory volume %s", volume_id)
        return VolumeHandle(
            volume_id=volume_id,
            size_bytes=size_bytes,
            backing_path=str(root),
            mount_path=self._mount_path or str(root),
        )

    def release(self, handle: VolumeHandle) -> None:
        root = Path(handle.backing_path)
        if not root.exists():
            return
        try:
            shutil.rmtree(root)
        except OSError as exc:
            raise VolumeReleaseError(handle.volume_id, str(exc)) from exc
        logger.info("released directory volume %s", handle.volume_id)
