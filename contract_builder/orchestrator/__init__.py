"""Session scheduling, stage execution and crash recovery."""

from contract_builder.orchestrator.service import BuildOrchestrator, SessionHandle, create_orchestrator

__all__ = ["BuildOrchestrator", "SessionHandle", "create_orchestrator"]
