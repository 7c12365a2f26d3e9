"""Sandbox provider implementations and interfaces."""

from contract_builder.providers.sandbox.base import SandboxProvider
from contract_builder.providers.sandbox.docker import DockerProvider
from contract_builder.providers.sandbox.local import LocalProvider

__all__ = ["DockerProvider", "LocalProvider", "SandboxProvider"]
