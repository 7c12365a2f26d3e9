"""Build volume managers and interfaces."""

from contract_builder.providers.volume.base import VolumeManager
from contract_builder.providers.volume.directory import DirectoryVolumeManager
from contract_builder.providers.volume.loop import LoopVolumeManager

__all__ = ["DirectoryVolumeManager", "LoopVolumeManager", "VolumeManager"]
