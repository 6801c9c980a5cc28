"""
Exception taxonomy for the command-lifecycle engine.

Only ``TranslationError`` and ``DispatchError`` reach the caller
synchronously. The remaining failure causes arrive asynchronously and are
recorded on the ``CommandRecord`` (``error`` plus ``failure_kind``) rather
than raised; the classes exist so their messages are built in one place and
so tests can assert on them.
"""
from __future__ import annotations

from opsdeck_contracts import InvalidTransitionError


class OpsDeckError(Exception):
    """Base class for lifecycle errors."""


class TranslationError(OpsDeckError):
    """The translation collaborator could not produce a command."""


class DispatchError(OpsDeckError):
    """The transport rejected an outbound command."""

    def __init__(self, message: str, *, correlation_id: str | None = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class AgentUnavailableError(OpsDeckError):
    """Dispatch was attempted against an unknown or offline agent."""


class RemoteExecutionError(OpsDeckError):
    """The agent reported that the command failed."""


class CommandTimeoutError(OpsDeckError):
    """No completion arrived before the command's deadline."""

    def __init__(self, correlation_id: str, timeout_ms: int):
        super().__init__(f"Command {correlation_id} timed out after {timeout_ms} ms")
        self.correlation_id = correlation_id
        self.timeout_ms = timeout_ms


class UnknownCorrelationError(OpsDeckError, LookupError):
    """An event referenced a correlation id that is not in flight."""

    def __init__(self, correlation_id: str):
        super().__init__(f"Unknown correlation id: {correlation_id}")
        self.correlation_id = correlation_id


class DuplicateCorrelationError(OpsDeckError):
    """A correlation id was registered twice."""


class AgentDisconnectedError(OpsDeckError):
    """The target agent went offline while the command was in flight."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} disconnected")
        self.agent_id = agent_id


__all__ = [
    "OpsDeckError",
    "TranslationError",
    "DispatchError",
    "AgentUnavailableError",
    "RemoteExecutionError",
    "CommandTimeoutError",
    "UnknownCorrelationError",
    "DuplicateCorrelationError",
    "AgentDisconnectedError",
    "InvalidTransitionError",
]
