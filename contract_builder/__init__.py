"""Sandboxed build orchestrator for untrusted smart-contract sources."""

__version__ = "0.1.0"
