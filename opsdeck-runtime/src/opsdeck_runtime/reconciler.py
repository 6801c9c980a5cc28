"""
Applies inbound outcomes to in-flight command records.

Every terminal transition in the engine (remote completion, remote failure,
timeout, agent disconnect, operator cancel) goes through ``_finish`` so the
same sequence always runs: check the registry, disarm the timer, transition
the record, drop it from the registry, patch History, notify the relay.
Because the registry only holds non-terminal records, a second outcome for
the same id finds nothing and is dropped, which makes delivery idempotent
and resolves completion/timeout races in favour of whichever ran first.
"""
from __future__ import annotations

import logging
from typing import Optional

from opsdeck_contracts import CommandRecord, CommandStatus, CompletionEvent, FailureKind

from .agents import AgentDirectory
from .correlation import CorrelationRegistry
from .errors import (
    AgentDisconnectedError,
    CommandTimeoutError,
    RemoteExecutionError,
    UnknownCorrelationError,
)
from .history import HistoryLog
from .relay import RelayForwarder
from .timeouts import TimeoutSupervisor

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


class ResponseReconciler:
    def __init__(
        self,
        registry: CorrelationRegistry,
        supervisor: TimeoutSupervisor,
        history: HistoryLog,
        *,
        relay: Optional[RelayForwarder] = None,
        directory: Optional[AgentDirectory] = None,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._history = history
        self._relay = relay
        self._directory = directory
        self.dropped = 0

    def resolve(self, correlation_id: str, outcome: CompletionEvent) -> Optional[CommandRecord]:
        """
        Reconciles one completion event.

        Returns:
            The updated record, or None when the event was dropped (unknown,
            retired or already-terminal id).
        """
        if outcome.correlation_id != correlation_id:
            raise ValueError(
                f"Outcome for {outcome.correlation_id} resolved as {correlation_id}"
            )
        if outcome.status == "executing":
            return self.mark_executing(correlation_id)
        if outcome.status == "completed":
            return self._finish(
                correlation_id,
                CommandStatus.COMPLETED,
                output=outcome.output if outcome.output is not None else "",
            )
        error = outcome.error or str(RemoteExecutionError("Remote command failed"))
        return self._finish(
            correlation_id,
            CommandStatus.FAILED,
            output=outcome.output,
            error=error,
            kind=FailureKind.REMOTE,
        )

    def mark_executing(self, correlation_id: str) -> Optional[CommandRecord]:
        record = self._lookup(correlation_id)
        if record is None:
            return None
        if record.status != CommandStatus.PENDING:
            LOGGER.debug("Ignoring executing ack for %s in %s", correlation_id, record.status.value)
            return record
        record.transition(CommandStatus.EXECUTING)
        self._history.sync(record)
        return record

    def fail(self, correlation_id: str, error: str, kind: FailureKind) -> Optional[CommandRecord]:
        return self._finish(correlation_id, CommandStatus.FAILED, error=error, kind=kind)

    def cancel(self, correlation_id: str) -> Optional[CommandRecord]:
        return self.fail(correlation_id, CANCELLED_MESSAGE, FailureKind.CANCELLED)

    def expire(self, correlation_id: str) -> Optional[CommandRecord]:
        """Timeout handler: only fires the transition if the id is still in flight."""
        record = self._registry.get(correlation_id)
        if record is None:
            LOGGER.debug("Timeout for %s ignored; already reconciled", correlation_id)
            return None
        error = str(CommandTimeoutError(correlation_id, record.request.timeout_ms))
        return self._finish(
            correlation_id,
            CommandStatus.TIMED_OUT,
            error=error,
            kind=FailureKind.TIMEOUT,
        )

    def disconnect_agent(self, agent_id: str) -> list[CommandRecord]:
        """Force-fails every in-flight record for ``agent_id``."""
        error = str(AgentDisconnectedError(agent_id))
        failed = []
        for record in self._registry.pending_for_agent(agent_id):
            updated = self.fail(record.correlation_id, error, FailureKind.DISCONNECTED)
            if updated is not None:
                failed.append(updated)
        if failed:
            LOGGER.warning(
                "Agent %s disconnected; failed %d in-flight command(s)", agent_id, len(failed)
            )
        return failed

    def _lookup(self, correlation_id: str) -> Optional[CommandRecord]:
        try:
            record = self._registry.lookup(correlation_id)
        except UnknownCorrelationError as exc:
            self.dropped += 1
            if self._registry.was_retired(correlation_id):
                LOGGER.info("Dropping late event: %s (already terminal)", exc)
            else:
                LOGGER.warning("Dropping event: %s", exc)
            return None
        if record.is_terminal:
            # Registry holds only non-terminal records; treat as a duplicate.
            self.dropped += 1
            self._registry.remove(correlation_id)
            return None
        return record

    def _finish(
        self,
        correlation_id: str,
        target: CommandStatus,
        *,
        output: Optional[str] = None,
        error: Optional[str] = None,
        kind: Optional[FailureKind] = None,
    ) -> Optional[CommandRecord]:
        record = self._lookup(correlation_id)
        if record is None:
            return None
        self._supervisor.disarm(correlation_id)
        record.transition(target, output=output, error=error, failure_kind=kind)
        self._registry.remove(correlation_id)
        self._history.sync(record)
        LOGGER.info(
            "Command %s on %s finished: %s",
            correlation_id,
            record.agent_id,
            target.value,
        )
        if self._relay is not None:
            self._relay.notify(record, self._agent_name(record.agent_id))
        return record

    def _agent_name(self, agent_id: str) -> str:
        agent = self._directory.get(agent_id) if self._directory is not None else None
        return agent.label if agent is not None else agent_id
