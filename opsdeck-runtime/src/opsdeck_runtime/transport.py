"""
Transport adapters connecting the lifecycle engine to agents.

The engine only needs three primitives: ``send`` one dispatch message,
iterate inbound ``MessageEnvelope``s (completion events and agent status
updates), and ``close``. ``RedisStreamTransport`` implements them over Redis
streams: each agent reads ``od:stream/agent/<id>`` and reports back on the
shared events stream. ``LoopbackTransport`` keeps everything in process for
demos and tests.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Union

import redis
import redis.asyncio as aioredis

from opsdeck_contracts import (
    AGENT_STATUS_STREAM,
    COMPLETION_MESSAGE,
    CONSOLE_SENDER,
    EVENTS_STREAM,
    AgentStatusUpdate,
    CompletionEvent,
    DispatchMessage,
    MessageEnvelope,
    agent_command_stream,
    status_envelope,
    stream_key,
)

from .errors import DispatchError

LOGGER = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, message: DispatchMessage) -> None:
        ...

    def events(self) -> AsyncIterator[MessageEnvelope]:
        ...

    async def close(self) -> None:
        ...


def completion_envelope(
    event: Union[CompletionEvent, Mapping[str, Any]],
    *,
    sender: str = "agent",
) -> MessageEnvelope:
    payload = (
        event.model_dump(by_alias=True, exclude_none=True)
        if isinstance(event, CompletionEvent)
        else dict(event)
    )
    return MessageEnvelope(
        sender=sender,
        recipient=CONSOLE_SENDER,
        message=COMPLETION_MESSAGE,
        payload=payload,
    )


class LoopbackTransport:
    """In-process transport recording sends and replaying injected events."""

    def __init__(self) -> None:
        self.sent: List[DispatchMessage] = []
        self.reject_with: Optional[Exception] = None
        self._queue: "asyncio.Queue[Optional[MessageEnvelope]]" = asyncio.Queue()
        self._closed = False

    async def send(self, message: DispatchMessage) -> None:
        if self._closed:
            raise DispatchError("Transport is closed", correlation_id=message.correlation_id)
        if self.reject_with is not None:
            raise self.reject_with
        self.sent.append(message)

    def deliver(self, event: Union[CompletionEvent, Mapping[str, Any], MessageEnvelope]) -> None:
        envelope = event if isinstance(event, MessageEnvelope) else completion_envelope(event)
        self._queue.put_nowait(envelope)

    def deliver_status(self, update: AgentStatusUpdate) -> None:
        self._queue.put_nowait(status_envelope(update.agent_id, update.status, sender="tracker"))

    async def events(self) -> AsyncIterator[MessageEnvelope]:
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                return
            yield envelope

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)


class RedisStreamTransport:
    """
    Redis streams transport.

    Dispatches are appended with ``XADD`` to the agent's command stream.
    Inbound envelopes are read with blocking ``XREAD`` from the events and
    agent-status streams, starting at entries newer than the moment the
    iterator starts.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        events_stream: str = EVENTS_STREAM,
        status_stream: str = AGENT_STATUS_STREAM,
        sender: str = CONSOLE_SENDER,
        block_ms: int = 1000,
        batch_size: int = 10,
    ) -> None:
        self._client = client
        self._events_key = stream_key(events_stream)
        self._status_key = stream_key(status_stream)
        self._sender = sender
        self._block_ms = max(1, block_ms)
        self._batch_size = max(1, batch_size)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStreamTransport":
        client = aioredis.Redis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    async def send(self, message: DispatchMessage) -> None:
        envelope = message.to_envelope(self._sender)
        key = agent_command_stream(message.agent_id)
        try:
            entry_id = await self._client.xadd(key, envelope.to_stream_fields())
        except redis.RedisError as exc:
            raise DispatchError(
                f"Failed to publish command to {key}: {exc}",
                correlation_id=message.correlation_id,
            ) from exc
        LOGGER.debug("Published %s to %s as %s", message.correlation_id, key, entry_id)

    async def publish_event(self, event: Union[CompletionEvent, Mapping[str, Any]], *, sender: str = "agent") -> str:
        envelope = completion_envelope(event, sender=sender)
        return await self._client.xadd(self._events_key, envelope.to_stream_fields())

    async def publish_status(self, update: AgentStatusUpdate) -> str:
        envelope = status_envelope(update.agent_id, update.status, sender=self._sender)
        return await self._client.xadd(self._status_key, envelope.to_stream_fields())

    async def events(self) -> AsyncIterator[MessageEnvelope]:
        cursors: Dict[str, str] = {self._events_key: "$", self._status_key: "$"}
        while True:
            try:
                response = await self._client.xread(
                    cursors, count=self._batch_size, block=self._block_ms
                )
            except redis.RedisError as exc:
                LOGGER.warning("XREAD failed: %s; retrying", exc)
                await asyncio.sleep(self._block_ms / 1000)
                continue
            for stream, entries in response or []:
                for entry_id, fields in entries:
                    cursors[stream] = entry_id
                    yield MessageEnvelope.from_stream_fields(fields)

    async def close(self) -> None:
        await self._client.aclose()
