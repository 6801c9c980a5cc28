"""Tests for messaging module."""
import json

import pytest
from pydantic import ValidationError

from opsdeck_contracts.agents import Agent, AgentStatus, AgentStatusUpdate
from opsdeck_contracts.messaging import (
    DISPATCH_MESSAGE,
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


class TestStreamKeys:
    """Tests for stream key helpers."""

    def test_stream_key_prefix(self):
        """Keys are namespaced with the stream prefix."""
        assert stream_key("events") == f"{STREAM_PREFIX}events"

    def test_stream_name_strips_prefix(self):
        """Prefix is removed; raw names pass through."""
        assert stream_name("od:stream/events") == "events"
        assert stream_name("events") == "events"

    def test_agent_command_stream(self):
        """Each agent reads its own command stream."""
        assert agent_command_stream("a1") == "od:stream/agent/a1"


class TestMessageEnvelope:
    """Tests for MessageEnvelope model."""

    def test_to_stream_fields_serialization(self):
        """All fields are strings and the payload is JSON."""
        envelope = MessageEnvelope(
            sender="console",
            recipient="a1",
            message=DISPATCH_MESSAGE,
            payload={"command": "whoami"},
        )
        fields = envelope.to_stream_fields()

        assert all(isinstance(v, str) for v in fields.values())
        assert json.loads(fields["payload"]) == {"command": "whoami"}

    def test_from_stream_fields_handles_invalid_json(self):
        """Malformed payloads are kept under _raw."""
        envelope = MessageEnvelope.from_stream_fields({"payload": "not json {"})
        assert envelope.payload == {"_raw": "not json {"}
        assert envelope.sender == "unknown"

    def test_from_stream_fields_rejects_non_object_payload(self):
        """A JSON list payload is kept under _raw as well."""
        envelope = MessageEnvelope.from_stream_fields({"payload": "[1, 2]"})
        assert envelope.payload == {"_raw": "[1, 2]"}


class TestDispatchMessage:
    """Tests for DispatchMessage model."""

    def test_wire_format_uses_camel_case(self):
        """The wire payload uses the transport's field names."""
        message = DispatchMessage(
            correlation_id="cmd-1", agent_id="a1", command="whoami", command_type="bash"
        )
        assert message.model_dump(by_alias=True) == {
            "correlationId": "cmd-1",
            "agentId": "a1",
            "command": "whoami",
            "commandType": "bash",
        }

    def test_to_envelope_routes_to_agent(self):
        """The envelope recipient is the target agent."""
        message = DispatchMessage(correlation_id="cmd-1", agent_id="a1", command="whoami")
        envelope = message.to_envelope()
        assert envelope.recipient == "a1"
        assert envelope.message == DISPATCH_MESSAGE
        assert envelope.payload["correlationId"] == "cmd-1"


class TestCompletionEvent:
    """Tests for CompletionEvent model."""

    def test_accepts_wire_names(self):
        """Transport payloads validate by alias."""
        event = CompletionEvent.model_validate(
            {"correlationId": "cmd-1", "status": "completed", "output": "root"}
        )
        assert event.correlation_id == "cmd-1"
        assert event.output == "root"

    def test_accepts_field_names(self):
        """Python callers may use field names."""
        event = CompletionEvent(correlation_id="cmd-1", status="failed", error="boom")
        assert event.error == "boom"

    def test_rejects_unknown_status(self):
        """Only executing, completed and failed are valid."""
        with pytest.raises(ValidationError):
            CompletionEvent(correlation_id="cmd-1", status="timed_out")


class TestTranslationAndRelay:
    """Tests for collaborator payloads."""

    def test_translation_request_wire_format(self):
        """Translation requests carry the agent platform hint."""
        request = TranslationRequest(raw_input="show disk usage", agent_platform="linux")
        assert request.model_dump(by_alias=True) == {
            "rawInput": "show disk usage",
            "agentPlatform": "linux",
            "agentSystemInfo": {},
        }

    def test_relay_message_timestamp_default(self):
        """Relay messages are stamped on creation."""
        message = RelayMessage(agent_name="build-box", command="whoami", status="completed")
        assert message.timestamp


class TestAgents:
    """Tests for agent contracts."""

    def test_agent_defaults_offline(self):
        """Agents are offline until reported otherwise."""
        agent = Agent(agent_id="a1")
        assert agent.status == AgentStatus.OFFLINE
        assert not agent.is_online
        assert agent.label == "a1"

    def test_status_update_from_payload(self):
        """Status feed payloads validate from plain strings."""
        update = AgentStatusUpdate.model_validate({"agent_id": "a1", "status": "online"})
        assert update.status == AgentStatus.ONLINE
        assert update.reported_at.tzinfo is not None

    def test_status_envelope(self):
        """Status envelopes carry the agent id and status value."""
        envelope = status_envelope("a1", AgentStatus.OFFLINE)
        assert envelope.message == STATUS_MESSAGE
        assert envelope.payload == {"agent_id": "a1", "status": "offline"}
