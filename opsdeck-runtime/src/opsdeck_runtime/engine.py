"""
The command-lifecycle engine shared by every operator view.

``CommandLifecycle`` owns the registry, the timeout supervisor and the
history log, and exposes the operator-facing operations: submit raw shell
text, submit natural language through the translation adapter, retry,
cancel, and feed inbound events. Views never mutate lifecycle state; they
subscribe to ``history`` and render what it reports.

``create_lifecycle`` assembles an engine from ``RuntimeSettings`` and
``run_forever`` drives it against the configured transport.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from opsdeck_contracts import (
    COMPLETION_MESSAGE,
    STATUS_MESSAGE,
    Agent,
    AgentStatus,
    AgentStatusUpdate,
    CommandRecord,
    CompletionEvent,
    FailureKind,
    HistoryEntry,
    MessageEnvelope,
)

from .agents import AgentDirectory
from .config import RuntimeSettings
from .correlation import DEFAULT_RETAIN, CorrelationIdFactory, CorrelationRegistry
from .dispatcher import CommandDispatcher
from .errors import TranslationError
from .history import HistoryListener, HistoryLog
from .reconciler import ResponseReconciler
from .relay import RelayForwarder
from .timeouts import TimeoutSupervisor
from .translation import HttpTranslationAdapter, PassthroughTranslator, Translator
from .transport import RedisStreamTransport, Transport

LOGGER = logging.getLogger(__name__)


class CommandLifecycle:
    """
    Single owner of command state for one operator console.

    Attributes:
        directory: Known agents and their status.
        registry: In-flight records keyed by correlation id.
        supervisor: Per-command deadlines.
        history: Submission-ordered display log.
        reconciler: Terminal-transition path for all outcomes.
        dispatcher: Outbound path to the transport.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        directory: Optional[AgentDirectory] = None,
        translator: Optional[Translator] = None,
        raw_translator: Optional[Translator] = None,
        relay: Optional[RelayForwarder] = None,
        history_capacity: Optional[int] = None,
        ids: Optional[CorrelationIdFactory] = None,
    ) -> None:
        self.transport = transport
        self.directory = directory or AgentDirectory()
        retain = history_capacity or DEFAULT_RETAIN
        self.registry = CorrelationRegistry(retain=retain)
        self.supervisor = TimeoutSupervisor(retain=retain)
        self.history = HistoryLog(capacity=history_capacity)
        self.relay = relay
        self.reconciler = ResponseReconciler(
            self.registry,
            self.supervisor,
            self.history,
            relay=relay,
            directory=self.directory,
        )
        self.dispatcher = CommandDispatcher(
            directory=self.directory,
            registry=self.registry,
            supervisor=self.supervisor,
            history=self.history,
            transport=transport,
            reconciler=self.reconciler,
            ids=ids,
        )
        self._translator = translator
        self._raw_translator = raw_translator or PassthroughTranslator()
        self._runner: Optional[asyncio.Task[None]] = None
        self.directory.on_status_change(self._on_agent_status)

    # ------------------------------------------------------------------ submit

    async def submit_raw(
        self,
        agent_id: str,
        text: str,
        *,
        timeout_ms: Optional[int] = None,
        command_type: Optional[str] = None,
    ) -> str:
        """
        Dispatches shell text as typed.

        Empty input is recorded as a failed history entry tagged
        ``translation`` and its id is returned, as in ``submit_natural``.

        Raises:
            AgentUnavailableError: The agent is unknown or offline.
            DispatchError: The transport rejected the command.
        """
        agent = self.directory.require(agent_id)
        try:
            resolved = await self._raw_translator.translate(text, agent)
        except TranslationError as exc:
            return self._record_translation_failure(agent, text, exc)
        return await self.dispatcher.dispatch(
            agent_id,
            resolved.resolved_command,
            command_type or resolved.command_type,
            timeout_ms or resolved.suggested_timeout_ms,
            raw_input=text,
        )

    async def submit_natural(self, agent_id: str, text: str) -> str:
        """
        Translates natural language and dispatches the result.

        A translation failure is not raised: it is recorded as a single
        failed history entry tagged ``translation`` and its id is returned.
        Nothing is registered or sent in that case.
        """
        if self._translator is None:
            raise RuntimeError("No translation adapter configured")
        agent = self.directory.require(agent_id)
        try:
            result = await self._translator.translate(text, agent)
        except TranslationError as exc:
            return self._record_translation_failure(agent, text, exc)
        return await self.dispatcher.dispatch(
            agent_id,
            result.resolved_command,
            result.command_type,
            result.suggested_timeout_ms,
            raw_input=text,
            explanation=result.explanation or None,
        )

    async def retry(self, correlation_id: str) -> str:
        """
        Resubmits a finished command under a new correlation id.

        Raises:
            KeyError: The entry is not in History.
            ValueError: The command is still in flight or was never resolved.
        """
        entry = self.history.get(correlation_id)
        if entry is None:
            raise KeyError(correlation_id)
        if not entry.is_terminal:
            raise ValueError(f"Command {correlation_id} is still in flight")
        if not entry.command or not entry.timeout_ms:
            raise ValueError(f"Command {correlation_id} has nothing to resubmit")
        return await self.dispatcher.dispatch(
            entry.agent_id,
            entry.command,
            entry.command_type or "shell",
            entry.timeout_ms,
            raw_input=entry.raw_input,
            cause_id=correlation_id,
            retry_count=entry.retry_count + 1,
            explanation=entry.explanation,
        )

    def cancel(self, correlation_id: str) -> Optional[CommandRecord]:
        return self.reconciler.cancel(correlation_id)

    # ------------------------------------------------------------------ inbound

    def handle_event(
        self, event: Union[CompletionEvent, Mapping[str, Any]]
    ) -> Optional[CommandRecord]:
        if not isinstance(event, CompletionEvent):
            try:
                event = CompletionEvent.model_validate(event)
            except ValidationError as exc:
                LOGGER.warning("Dropping malformed completion event: %s", exc)
                return None
        return self.reconciler.resolve(event.correlation_id, event)

    def handle_agent_status(self, update: AgentStatusUpdate) -> List[CommandRecord]:
        """Applies a status feed entry; returns records failed by a disconnect."""
        in_flight = self.registry.pending_for_agent(update.agent_id)
        self.directory.apply_status(update)
        return [
            record
            for record in in_flight
            if record.failure_kind == FailureKind.DISCONNECTED
        ]

    def handle_envelope(self, envelope: MessageEnvelope) -> None:
        if envelope.message == COMPLETION_MESSAGE:
            self.handle_event(envelope.payload)
        elif envelope.message == STATUS_MESSAGE:
            try:
                update = AgentStatusUpdate.model_validate(envelope.payload)
            except ValidationError as exc:
                LOGGER.warning("Dropping malformed status update: %s", exc)
                return
            self.handle_agent_status(update)
        else:
            LOGGER.debug("Ignoring %s message from %s", envelope.message, envelope.sender)

    # ------------------------------------------------------------------ views

    def record(self, correlation_id: str) -> Optional[CommandRecord]:
        return self.registry.get(correlation_id)

    def subscribe(self, listener: HistoryListener):
        return self.history.subscribe(listener)

    async def wait_for(self, correlation_id: str, timeout: Optional[float] = None) -> HistoryEntry:
        """Waits until the history entry for ``correlation_id`` is terminal."""
        entry = self.history.get(correlation_id)
        if entry is None:
            raise KeyError(correlation_id)
        if entry.is_terminal:
            return entry
        future: asyncio.Future[HistoryEntry] = asyncio.get_running_loop().create_future()

        def _listener(_event: str, updated: HistoryEntry) -> None:
            if updated.entry_id == correlation_id and updated.is_terminal and not future.done():
                future.set_result(updated)

        unsubscribe = self.history.subscribe(_listener)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()

    # ------------------------------------------------------------------ running

    async def run(self) -> None:
        """Consumes inbound envelopes until the transport ends or the task is cancelled."""
        async for envelope in self.transport.events():
            try:
                self.handle_envelope(envelope)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Failed to handle %s envelope: %s", envelope.message, exc)

    def start(self) -> asyncio.Task[None]:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self.run(), name="opsdeck-inbound")
        return self._runner

    async def shutdown(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            with suppress(asyncio.CancelledError):
                await self._runner
            self._runner = None
        await self.supervisor.shutdown()
        if self.relay is not None:
            await self.relay.aclose()
        closer = getattr(self._translator, "aclose", None)
        if closer is not None:
            await closer()
        await self.transport.close()

    # ------------------------------------------------------------------ internals

    def _record_translation_failure(self, agent: Agent, text: str, exc: TranslationError) -> str:
        entry_id = self.dispatcher.ids.mint()
        LOGGER.warning("Translation failed for agent %s: %s", agent.agent_id, exc)
        self.history.append(
            HistoryEntry.translation_failure(
                entry_id,
                agent_id=agent.agent_id,
                raw_input=text,
                error=str(exc),
            )
        )
        return entry_id

    def _on_agent_status(self, agent: Agent, previous: Optional[AgentStatus]) -> None:
        if agent.status == AgentStatus.OFFLINE:
            self.reconciler.disconnect_agent(agent.agent_id)


def create_lifecycle(
    settings: Optional[RuntimeSettings] = None,
    *,
    transport: Optional[Transport] = None,
    agents: Iterable[Agent] = (),
) -> CommandLifecycle:
    """
    Factory wiring a ``CommandLifecycle`` from settings.

    Args:
        settings: Runtime settings; read from the environment when omitted.
        transport: Overrides the Redis stream transport.
        agents: Agents known at startup.
    """
    settings = settings or RuntimeSettings()
    policy = settings.timeout_policy()
    if transport is None:
        transport = RedisStreamTransport.from_url(
            settings.redis_url,
            events_stream=settings.events_stream,
            status_stream=settings.status_stream,
            sender=settings.console_id,
            block_ms=settings.read_block_ms,
        )
    translator = None
    if settings.translation_endpoint:
        translator = HttpTranslationAdapter(
            settings.translation_endpoint,
            timeout=settings.translation_timeout,
            policy=policy,
        )
    relay_config = settings.relay_config()
    relay = RelayForwarder(relay_config) if relay_config.enabled else None
    return CommandLifecycle(
        transport,
        directory=AgentDirectory(agents),
        translator=translator,
        raw_translator=PassthroughTranslator(policy),
        relay=relay,
        history_capacity=settings.history_capacity,
        ids=CorrelationIdFactory(settings.correlation_prefix),
    )


async def run_forever(settings: Optional[RuntimeSettings] = None) -> None:
    lifecycle = create_lifecycle(settings)
    try:
        await lifecycle.run()
    finally:
        await lifecycle.shutdown()
