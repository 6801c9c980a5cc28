"""
This module defines the wire contracts exchanged between the command
lifecycle engine and its external collaborators, plus the Redis stream
envelope used by the stream transport.

Four payload shapes cross the subsystem boundary:

- ``DispatchMessage``: engine -> transport, one per successful dispatch.
- ``CompletionEvent``: transport -> engine, keyed by correlation id.
- ``TranslationRequest``: engine -> AI collaborator.
- ``RelayMessage``: engine -> notification collaborator.

``MessageEnvelope`` wraps any of them for a Redis stream entry. Stream keys
are namespaced with ``STREAM_PREFIX`` so several consoles can share a Redis
instance without colliding.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .agents import AgentStatus

STREAM_PREFIX = "od:stream/"
CONSOLE_SENDER = "console"
EVENTS_STREAM = "events"
AGENT_STATUS_STREAM = "agent-status"

DISPATCH_MESSAGE = "command_dispatch"
COMPLETION_MESSAGE = "command_completion"
STATUS_MESSAGE = "agent_status"


def _default_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class MessageEnvelope(BaseModel):
    """
    Defines the envelope for all messages passed through the Redis streams.

    Attributes:
        timestamp: The ISO-8601 formatted timestamp of when the message was created.
        sender: The ID of the component sending the message.
        recipient: The ID of the component intended to receive the message.
        message: A string identifier for the type of message being sent.
        payload: A JSON-serializable dictionary containing the message's data.
    """

    timestamp: str = Field(default_factory=_default_timestamp)
    sender: str
    recipient: str
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_stream_fields(self) -> Dict[str, str]:
        """
        Serializes the envelope to a flat dictionary of strings, the format
        required by ``XADD``. The payload is JSON-encoded.
        """

        return {
            "timestamp": self.timestamp,
            "sender": self.sender,
            "recipient": self.recipient,
            "message": self.message,
            "payload": json.dumps(self.payload, separators=(",", ":")),
        }

    @classmethod
    def from_stream_fields(cls, fields: Mapping[str, str]) -> "MessageEnvelope":
        """
        Deserializes a Redis stream entry back into a ``MessageEnvelope``.

        Malformed JSON payloads are kept under the ``_raw`` key instead of
        raising, so a single bad entry cannot stall a reader.
        """

        payload_raw = fields.get("payload", "{}")
        try:
            payload = json.loads(payload_raw) if payload_raw else {}
        except json.JSONDecodeError:
            payload = {"_raw": payload_raw}
        if not isinstance(payload, dict):
            payload = {"_raw": payload_raw}

        return cls(
            timestamp=fields.get("timestamp", _default_timestamp()),
            sender=fields.get("sender", "unknown"),
            recipient=fields.get("recipient", "unknown"),
            message=fields.get("message", ""),
            payload=payload,
        )


class DispatchMessage(BaseModel):
    """Outbound message handed to the transport for a single command."""

    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(..., min_length=1, alias="correlationId")
    agent_id: str = Field(..., min_length=1, alias="agentId")
    command: str = Field(..., min_length=1)
    command_type: str = Field(default="shell", alias="commandType")

    def to_envelope(self, sender: str = CONSOLE_SENDER) -> MessageEnvelope:
        return MessageEnvelope(
            sender=sender,
            recipient=self.agent_id,
            message=DISPATCH_MESSAGE,
            payload=self.model_dump(by_alias=True),
        )


class CompletionEvent(BaseModel):
    """
    Inbound completion or failure report for a dispatched command.

    Agents may also acknowledge a command with ``status="executing"`` before
    the final report; the reconciler treats that as the optional
    ``pending -> executing`` step.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    correlation_id: str = Field(..., min_length=1, alias="correlationId")
    status: Literal["executing", "completed", "failed"]
    output: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_envelope(cls, envelope: MessageEnvelope) -> "CompletionEvent":
        return cls.model_validate(envelope.payload)


class TranslationRequest(BaseModel):
    """Request body sent to the natural-language translation collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    raw_input: str = Field(..., min_length=1, alias="rawInput")
    agent_platform: str = Field(..., min_length=1, alias="agentPlatform")
    agent_system_info: Dict[str, Any] = Field(
        default_factory=dict, alias="agentSystemInfo"
    )


class RelayMessage(BaseModel):
    """Best-effort notification mirrored to a secondary channel."""

    model_config = ConfigDict(populate_by_name=True)

    agent_name: str = Field(..., alias="agentName")
    command: str
    status: str
    output: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = Field(default_factory=_default_timestamp)


def stream_key(name: str) -> str:
    """Returns the fully-qualified Redis stream key for ``name``."""
    return f"{STREAM_PREFIX}{name}"


def stream_name(key: str) -> str:
    """Strips the stream prefix from a fully-qualified key."""
    if key.startswith(STREAM_PREFIX):
        return key[len(STREAM_PREFIX) :]
    return key


def agent_command_stream(agent_id: str) -> str:
    """Returns the stream key an agent reads its commands from."""
    return stream_key(f"agent/{agent_id}")


def status_envelope(agent_id: str, status: AgentStatus, sender: str = CONSOLE_SENDER) -> MessageEnvelope:
    """Builds an agent status feed entry."""
    return MessageEnvelope(
        sender=sender,
        recipient=CONSOLE_SENDER,
        message=STATUS_MESSAGE,
        payload={"agent_id": agent_id, "status": status.value},
    )


__all__ = [
    "STREAM_PREFIX",
    "CONSOLE_SENDER",
    "EVENTS_STREAM",
    "AGENT_STATUS_STREAM",
    "DISPATCH_MESSAGE",
    "COMPLETION_MESSAGE",
    "STATUS_MESSAGE",
    "MessageEnvelope",
    "DispatchMessage",
    "CompletionEvent",
    "TranslationRequest",
    "RelayMessage",
    "stream_key",
    "stream_name",
    "agent_command_stream",
    "status_envelope",
]
