"""
This package defines the shared data contracts used by the OpsDeck operator
console and its command-lifecycle engine.

It is the single source of truth for the structures exchanged between the
engine, the transport, the translation collaborator and the relay channel.
The models are Pydantic-based, which gives validation and JSON
serialization at every boundary.
"""
from .agents import (
    Agent,
    AgentStatus,
    AgentStatusUpdate,
)
from .commands import (
    TERMINAL_STATUSES,
    CommandRecord,
    CommandRequest,
    CommandStatus,
    FailureKind,
    HistoryEntry,
    InvalidTransitionError,
    TranslationResult,
    can_transition,
)
from .messaging import (
    AGENT_STATUS_STREAM,
    COMPLETION_MESSAGE,
    CONSOLE_SENDER,
    DISPATCH_MESSAGE,
    EVENTS_STREAM,
    STATUS_MESSAGE,
    STREAM_PREFIX,
    CompletionEvent,
    DispatchMessage,
    MessageEnvelope,
    RelayMessage,
    TranslationRequest,
    agent_command_stream,
    status_envelope,
    stream_key,
    stream_name,
)

__all__ = [
    "Agent",
    "AgentStatus",
    "AgentStatusUpdate",
    "TERMINAL_STATUSES",
    "CommandRecord",
    "CommandRequest",
    "CommandStatus",
    "FailureKind",
    "HistoryEntry",
    "InvalidTransitionError",
    "TranslationResult",
    "can_transition",
    "AGENT_STATUS_STREAM",
    "COMPLETION_MESSAGE",
    "CONSOLE_SENDER",
    "DISPATCH_MESSAGE",
    "EVENTS_STREAM",
    "STATUS_MESSAGE",
    "STREAM_PREFIX",
    "CompletionEvent",
    "DispatchMessage",
    "MessageEnvelope",
    "RelayMessage",
    "TranslationRequest",
    "agent_command_stream",
    "status_envelope",
    "stream_key",
    "stream_name",
]

__version__ = "0.1.0"
