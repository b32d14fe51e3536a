"""
Flow engine error hierarchy.

Each category has a fixed handling policy:
  ConfigurationError      — authoring gap; substitute a default and continue
  TransientExternalError  — adapter call failed; route to failure / fallback text
  LimitExceededError      — attempt limit reached; fail closed before the adapter
  ContractViolation       — adapter/graph mismatch; fatal for the session
  UnreachableNodeError    — no outgoing edge; graceful end of flow
"""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for all flow engine errors."""

    def __init__(self, message: str, node_id: str = "", retryable: bool = False):
        self.node_id = node_id
        self.retryable = retryable
        super().__init__(message)


class ConfigurationError(FlowEngineError):
    pass


class TransientExternalError(FlowEngineError):
    def __init__(self, message: str, node_id: str = "", status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, node_id, retryable=True)


class LimitExceededError(FlowEngineError):
    def __init__(self, node_id: str = "", attempts: int = 0, limit: int = 0):
        self.attempts = attempts
        self.limit = limit
        super().__init__(
            f"Attempt limit reached ({attempts}/{limit}) for node '{node_id}'", node_id,
        )


class ContractViolation(FlowEngineError):
    def __init__(self, node_id: str, port: str, declared: tuple[str, ...] | list[str]):
        self.port = port
        self.declared = tuple(declared)
        super().__init__(
            f"Adapter returned undeclared port '{port}' for node '{node_id}' "
            f"(declared: {', '.join(self.declared)})",
            node_id,
        )


class UnreachableNodeError(FlowEngineError):
    def __init__(self, node_id: str, port: str | None = None):
        self.port = port
        super().__init__(f"No outgoing edge from '{node_id}' (port={port})", node_id)


class GraphValidationError(ValueError):
    def __init__(self, flow_id: str, errors: list[str]):
        self.flow_id = flow_id
        self.errors = errors
        super().__init__(f"Invalid flow graph '{flow_id}': {'; '.join(errors)}")
