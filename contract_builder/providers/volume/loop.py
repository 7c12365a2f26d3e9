"""Loop-device backed build volumes.

Each volume is a temporary file inside ``images_path`` that is resized with
``fallocate``, formatted as ext4 and attached as a loop device through
``udisksctl``. The device path is handed to the sandbox runtime, which mounts
it as the build's working directory.

Release detaches every loop device still backed by the file and then removes
the file, so calling it again (for example from the recovery sweep) finds
nothing left to do.
"""

from __future__ import annotations

import logging
from pathlib import Path
import shutil
import subprocess
from typing import Callable, Sequence
from uuid import uuid4

from contract_builder.errors import VolumeProvisionError, VolumeReleaseError
from contract_builder.models.volume import VolumeHandle
from contract_builder.providers.volume.base import VolumeManager

logger = logging.getLogger(__name__)

Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]

REQUIRED_BINARIES = ("fallocate", "mkfs.ext4", "udisksctl", "losetup")


def _run(command: Sequence[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        list(command),
        capture_output=True,
        text=True,
        check=False,
    )


class LoopVolumeManager(VolumeManager):
    def __init__(
        self,
        images_path: str | Path,
        mount_path: str = "/contract",
        runner: Runner | None = None,
    ) -> None:
        self._images_path = Path(images_path).absolute()
        self._mount_path = mount_path
        self._run = runner or _run

    def check(self) -> None:
        self._images_path.mkdir(parents=True, exist_ok=True)
        missing = [name for name in REQUIRED_BINARIES if shutil.which(name) is None]
        if missing:
            raise RuntimeError(f"missing volume tooling: {', '.join(missing)}")

    def provision(self, size_bytes: int) -> VolumeHandle:
        if size_bytes <= 0:
            raise VolumeProvisionError(f"invalid volume size: {size_bytes}")
        volume_id = f"vol-{uuid4().hex[:12]}"
        backing = self._images_path / f"{volume_id}.img"
        try:
            backing.touch(exist_ok=False)
        except OSError as exc:
            raise VolumeProvisionError(f"unable to create backing file: {exc}") from exc

        try:
            self._step(["fallocate", "-l", str(size_bytes), str(backing)], "fallocate")
            self._step(["mkfs.ext4", "-q", "-F", str(backing)], "mkfs.ext4")
            output = self._step(
                ["udisksctl", "loop-setup", "--no-user-interaction", "-f", str(backing)],
                "udisksctl loop-setup",
            )
            device = self._extract_loop_device(output)
            if device is None:
                raise VolumeProvisionError(
                    f"unable to read loop device from udisksctl output: {output.strip()!r}"
                )
        except VolumeProvisionError:
            self._discard(backing)
            raise

        handle = VolumeHandle(
            volume_id=volume_id,
            size_bytes=size_bytes,
            backing_path=str(backing),
            mount_path=self._mount_path,
            device=device,
        )
        logger.info("provisioned volume %s (%d bytes) on %s", volume_id, size_bytes, device)
        return handle

    def release(self, handle: VolumeHandle) -> None:
        backing = Path(handle.backing_path)
        if not backing.exists():
            return
        for device in self._attached_devices(handle):
            result = self._run(["udisksctl", "loop-delete", "--no-user-interaction", "-b", device])
            if result.returncode != 0:
                raise VolumeReleaseError(
                    handle.volume_id, f"loop-delete {device} failed: {result.stderr.strip()}"
                )
        try:
            backing.unlink(missing_ok=True)
        except OSError as exc:
            raise VolumeReleaseError(handle.volume_id, str(exc)) from exc
        logger.info("released volume %s", handle.volume_id)

    def _step(self, command: Sequence[str], label: str) -> str:
        try:
            result = self._run(command)
        except OSError as exc:
            raise VolumeProvisionError(f"unable to run {label}: {exc}") from exc
        if result.returncode != 0:
            raise VolumeProvisionError(
                f"{label} exited with status {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout

    def _attached_devices(self, handle: VolumeHandle) -> list[str]:
        try:
            result = self._run(["losetup", "-j", handle.backing_path])
        except OSError as exc:
            raise VolumeReleaseError(handle.volume_id, f"unable to run losetup: {exc}") from exc
        if result.returncode != 0:
            raise VolumeReleaseError(
                handle.volume_id, f"losetup -j failed: {result.stderr.strip()}"
            )
        devices = []
        for line in result.stdout.splitlines():
            device, _, _ = line.partition(":")
            if device.strip():
                devices.append(device.strip())
        return devices

    def _discard(self, backing: Path) -> None:
        partial = VolumeHandle(
            volume_id=backing.stem,
            size_bytes=0,
            backing_path=str(backing),
            mount_path=self._mount_path,
        )
        try:
            self.release(partial)
        except VolumeReleaseError:
            logger.exception("unable to discard partially provisioned volume %s", backing)

    @staticmethod
    def _extract_loop_device(output: str) -> str | None:
        # "Mapped file /var/lib/builder/vol-x.img as /dev/loop7."
        parts = output.split()
        if not parts:
            return None
        device = parts[-1]
        if not device.endswith("."):
            return None
        return device[:-1] or None
