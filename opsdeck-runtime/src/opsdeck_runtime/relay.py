"""Best-effort mirroring of command outcomes to a secondary channel."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Set

import httpx

from opsdeck_contracts import CommandRecord, RelayMessage

LOGGER = logging.getLogger(__name__)

_STATUS_MARKERS = {
    "completed": "OK",
    "failed": "FAILED",
    "timed_out": "TIMEOUT",
}
MAX_RELAY_OUTPUT = 3500


@dataclass(slots=True)
class RelayConfig:
    """Relay channel settings, passed in at construction time."""

    enabled: bool = False
    endpoint: str = ""
    credentials: str = ""
    timeout_s: float = 10.0

    @property
    def usable(self) -> bool:
        return self.enabled and bool(self.endpoint)


class RelayChannel(Protocol):
    async def deliver(self, message: RelayMessage) -> None:
        ...


class HttpRelayChannel:
    """Posts relay messages as JSON to a webhook-style endpoint."""

    def __init__(self, config: RelayConfig, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    async def deliver(self, message: RelayMessage) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_s)
        headers = {}
        if self._config.credentials:
            headers["Authorization"] = f"Bearer {self._config.credentials}"
        body = message.model_dump(by_alias=True)
        body["text"] = RelayForwarder.format_text(message)
        response = await self._client.post(self._config.endpoint, json=body, headers=headers)
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class RelayForwarder:
    """
    Fire-and-forget observer of terminal command records.

    ``notify`` never raises and never blocks the caller: delivery runs in a
    background task and any failure is logged and counted, leaving the
    command record untouched.
    """

    def __init__(self, config: RelayConfig, channel: Optional[RelayChannel] = None) -> None:
        self._config = config
        self._channel = channel if channel is not None else (
            HttpRelayChannel(config) if config.usable else None
        )
        self._pending: Set[asyncio.Task[None]] = set()
        self.delivered = 0
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self._config.enabled and self._channel is not None

    def notify(self, record: CommandRecord, agent_name: Optional[str] = None) -> bool:
        """Schedules delivery for ``record``. Returns True if a task was started."""
        if not self.enabled:
            return False
        message = self.build_message(record, agent_name)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("Relay skipped for %s: no running event loop", record.correlation_id)
            return False
        task = loop.create_task(self._deliver(record.correlation_id, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    @staticmethod
    def build_message(record: CommandRecord, agent_name: Optional[str] = None) -> RelayMessage:
        output = record.output
        if output and len(output) > MAX_RELAY_OUTPUT:
            output = output[:MAX_RELAY_OUTPUT] + "..."
        return RelayMessage(
            agent_name=agent_name or record.agent_id,
            command=record.request.resolved_command,
            status=record.status.value,
            output=output,
            error=record.error,
            timestamp=(record.completed_at or record.request.submitted_at).isoformat(
                timespec="seconds"
            ),
        )

    @staticmethod
    def format_text(message: RelayMessage) -> str:
        marker = _STATUS_MARKERS.get(message.status, message.status.upper())
        lines = [
            f"[{marker}] {message.agent_name}",
            f"$ {message.command}",
        ]
        if message.output:
            lines.append(message.output)
        if message.error:
            lines.append(f"error: {message.error}")
        lines.append(message.timestamp)
        return "\n".join(lines)

    async def drain(self) -> None:
        """Waits for in-flight deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        closer = getattr(self._channel, "aclose", None)
        if closer is not None:
            await closer()

    async def _deliver(self, correlation_id: str, message: RelayMessage) -> None:
        try:
            await self._channel.deliver(message)  # type: ignore[union-attr]
        except Exception as exc:  # noqa: BLE001
            self.failures += 1
            LOGGER.warning("Relay delivery failed for %s: %s", correlation_id, exc)
            return
        self.delivered += 1
        LOGGER.debug("Relayed outcome of %s", correlation_id)
