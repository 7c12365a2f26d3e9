"""Provider package for sandbox runtimes and build volumes."""

from contract_builder.providers.sandbox import DockerProvider, LocalProvider, SandboxProvider
from contract_builder.providers.volume import DirectoryVolumeManager, LoopVolumeManager, VolumeManager

__all__ = [
    "DirectoryVolumeManager",
    "DockerProvider",
    "LocalProvider",
    "LoopVolumeManager",
    "SandboxProvider",
    "VolumeManager",
]
