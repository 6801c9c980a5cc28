"""
Builds and sends command requests.

The dispatcher is the only component that creates ``CommandRequest`` and
``CommandRecord`` objects. A dispatch registers the record and its history
entry before the transport is awaited, so an agent that answers while the
send is still in progress finds the record waiting. The deadline is armed
once the send has succeeded. A rejected or cancelled send fails the record
on the spot through the reconciler, so History and the relay see it like any
other terminal outcome, and never arms a timer.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from opsdeck_contracts import (
    CommandRecord,
    CommandRequest,
    DispatchMessage,
    FailureKind,
    HistoryEntry,
)

from .agents import AgentDirectory
from .correlation import CorrelationIdFactory, CorrelationRegistry
from .errors import DispatchError
from .history import HistoryLog
from .reconciler import CANCELLED_MESSAGE, ResponseReconciler
from .timeouts import TimeoutSupervisor
from .transport import Transport

LOGGER = logging.getLogger(__name__)


class CommandDispatcher:
    def __init__(
        self,
        *,
        directory: AgentDirectory,
        registry: CorrelationRegistry,
        supervisor: TimeoutSupervisor,
        history: HistoryLog,
        transport: Transport,
        reconciler: ResponseReconciler,
        ids: Optional[CorrelationIdFactory] = None,
    ) -> None:
        self._directory = directory
        self._registry = registry
        self._supervisor = supervisor
        self._history = history
        self._transport = transport
        self._reconciler = reconciler
        self._ids = ids or CorrelationIdFactory()

    @property
    def ids(self) -> CorrelationIdFactory:
        return self._ids

    async def dispatch(
        self,
        agent_id: str,
        resolved_command: str,
        command_type: str,
        timeout_ms: int,
        *,
        raw_input: Optional[str] = None,
        cause_id: Optional[str] = None,
        retry_count: int = 0,
        explanation: Optional[str] = None,
    ) -> str:
        """
        Sends one command to ``agent_id`` and starts tracking it.

        Args:
            agent_id: Target agent; must be known and online.
            resolved_command: The command text sent to the agent.
            command_type: Shell family or other executor hint.
            timeout_ms: Deadline in milliseconds; must be positive.
            raw_input: Operator input before translation (defaults to the
                resolved command).
            cause_id: Correlation id of the command this one retries.
            retry_count: Number of resubmissions leading to this request.
            explanation: Translation explanation shown alongside the entry.

        Returns:
            The newly minted correlation id.

        Raises:
            AgentUnavailableError: The agent is unknown or offline.
            ValueError: ``timeout_ms`` is not positive or the command is empty.
            DispatchError: The transport rejected the send; the record is
                already marked failed in History.
        """
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if not resolved_command or not resolved_command.strip():
            raise ValueError("resolved_command must not be empty")
        self._directory.require(agent_id)

        correlation_id = self._ids.mint()
        request = CommandRequest(
            correlation_id=correlation_id,
            agent_id=agent_id,
            raw_input=raw_input if raw_input is not None else resolved_command,
            resolved_command=resolved_command,
            command_type=command_type,
            timeout_ms=timeout_ms,
            cause_id=cause_id,
            retry_count=retry_count,
            explanation=explanation,
        )
        record = CommandRecord(request=request)
        self._registry.register(correlation_id, record)
        self._history.append(HistoryEntry.from_record(record))

        message = DispatchMessage(
            correlation_id=correlation_id,
            agent_id=agent_id,
            command=resolved_command,
            command_type=command_type,
        )
        try:
            await self._transport.send(message)
        except asyncio.CancelledError:
            self._fail_send(correlation_id, agent_id, CANCELLED_MESSAGE, FailureKind.CANCELLED)
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail_send(
                correlation_id, agent_id, str(exc) or type(exc).__name__, FailureKind.DISPATCH
            )
            if isinstance(exc, DispatchError):
                exc.correlation_id = exc.correlation_id or correlation_id
                raise
            raise DispatchError(str(exc) or type(exc).__name__, correlation_id=correlation_id) from exc

        if correlation_id in self._registry:
            self._supervisor.arm(correlation_id, timeout_ms / 1000, self._reconciler.expire)
        LOGGER.info(
            "Dispatched %s to %s (type=%s, timeout_ms=%d, retry=%d)",
            correlation_id,
            agent_id,
            command_type,
            timeout_ms,
            retry_count,
        )
        return correlation_id

    def _fail_send(
        self, correlation_id: str, agent_id: str, error: str, kind: FailureKind
    ) -> None:
        LOGGER.warning("Dispatch of %s to %s failed: %s", correlation_id, agent_id, error)
        if correlation_id not in self._registry:
            return
        self._reconciler.fail(correlation_id, error, kind)
