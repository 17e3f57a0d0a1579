"""Exception hierarchy for the agent loop engine.

Specific exceptions for each failure mode. Provider failures carry an
ErrorKind so consumers can show the right remediation.
"""
from __future__ import annotations

from .models import ErrorKind


class AgentLoopError(Exception):
    """Base exception for all agent loop errors."""


class ProviderUnavailableError(AgentLoopError):
    """Provider failed its availability check before launch."""
    def __init__(
        self,
        provider_name: str,
        kind: ErrorKind,
        message: str,
        auth_instructions: str | None = None,
    ):
        self.provider_name = provider_name
        self.kind = kind
        self.message = message
        self.auth_instructions = auth_instructions
        super().__init__(message)


class ProviderRuntimeError(AgentLoopError):
    """Provider failed after its process was launched."""
    def __init__(self, process_id: str, kind: ErrorKind, message: str):
        self.process_id = process_id
        self.kind = kind
        self.message = message
        super().__init__(message)


class LaunchError(AgentLoopError):
    """The launcher could not start a command."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command}: {reason}")


class PersistenceError(AgentLoopError):
    """A durable store operation failed."""
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Failed to {operation}: {reason}")


class IterationError(AgentLoopError):
    """The iteration controller could not perform a transition."""
    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Iteration for task {task_id} failed: {reason}")
