from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

import httpx
import pytest

from opsdeck_contracts import (
    Agent,
    AgentStatus,
    AgentStatusUpdate,
    CommandStatus,
    CompletionEvent,
    DispatchMessage,
    FailureKind,
)

from opsdeck_runtime.agents import AgentDirectory
from opsdeck_runtime.correlation import CorrelationIdFactory
from opsdeck_runtime.engine import CommandLifecycle
from opsdeck_runtime.errors import (
    AgentDisconnectedError,
    AgentUnavailableError,
    CommandTimeoutError,
    DispatchError,
)
from opsdeck_runtime.translation import HttpTranslationAdapter
from opsdeck_runtime.transport import LoopbackTransport


class SlowTransport(LoopbackTransport):
    """Loopback transport whose sends stall, as on a congested link."""

    async def send(self, message: DispatchMessage) -> None:
        await asyncio.sleep(10)
        await super().send(message)


def _lifecycle(
    online_agent: Agent, transport: Optional[LoopbackTransport] = None, **kwargs
) -> tuple[CommandLifecycle, LoopbackTransport]:
    transport = transport or LoopbackTransport()
    lifecycle = CommandLifecycle(
        transport,
        directory=AgentDirectory([online_agent]),
        ids=CorrelationIdFactory("test"),
        **kwargs,
    )
    return lifecycle, transport


def _completed(correlation_id: str, output: str = "ok") -> CompletionEvent:
    return CompletionEvent(correlation_id=correlation_id, status="completed", output=output)


@pytest.mark.anyio
async def test_whoami_completes_with_output(online_agent):
    lifecycle, transport = _lifecycle(online_agent)

    cid = await lifecycle.submit_raw("a1", "whoami", timeout_ms=5000)

    assert [m.command for m in transport.sent] == ["whoami"]
    assert transport.sent[0].correlation_id == cid
    assert lifecycle.history.get(cid).status == CommandStatus.PENDING
    assert lifecycle.supervisor.is_armed(cid)

    lifecycle.handle_event({"correlationId": cid, "status": "completed", "output": "root"})

    entry = lifecycle.history.get(cid)
    assert entry.status == CommandStatus.COMPLETED
    assert entry.output == "root"
    assert cid not in lifecycle.registry
    assert not lifecycle.supervisor.is_armed(cid)
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_empty_natural_input_records_translation_failure(online_agent):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"command": "true"})

    translator = HttpTranslationAdapter(
        "http://translator.local/translate",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    lifecycle, transport = _lifecycle(online_agent, translator=translator)

    entry_id = await lifecycle.submit_natural("a1", "")

    entries = lifecycle.history.list()
    assert len(entries) == 1
    assert entries[0].entry_id == entry_id
    assert entries[0].status == CommandStatus.FAILED
    assert entries[0].failure_kind == FailureKind.TRANSLATION
    assert transport.sent == []
    assert calls == []
    assert len(lifecycle.registry) == 0
    assert lifecycle.supervisor.armed_count == 0
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_natural_input_dispatches_translated_command(online_agent):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"resolvedCommand": "df -h", "commandType": "bash", "explanation": "Disk usage."},
        )

    translator = HttpTranslationAdapter(
        "http://translator.local/translate",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    lifecycle, transport = _lifecycle(online_agent, translator=translator)

    cid = await lifecycle.submit_natural("a1", "how full are the disks")

    entry = lifecycle.history.get(cid)
    assert transport.sent[0].command == "df -h"
    assert entry.raw_input == "how full are the disks"
    assert entry.explanation == "Disk usage."
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_agent_going_offline_fails_all_pending_commands(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    first = await lifecycle.submit_raw("a1", "sleep 100", timeout_ms=60_000)
    second = await lifecycle.submit_raw("a1", "sleep 200", timeout_ms=60_000)

    failed = lifecycle.handle_agent_status(
        AgentStatusUpdate(agent_id="a1", status=AgentStatus.OFFLINE)
    )

    assert {record.correlation_id for record in failed} == {first, second}
    for cid in (first, second):
        entry = lifecycle.history.get(cid)
        assert entry.status == CommandStatus.FAILED
        assert entry.failure_kind == FailureKind.DISCONNECTED
        assert entry.error == str(AgentDisconnectedError("a1"))
        assert cid not in lifecycle.registry
    assert lifecycle.supervisor.armed_count == 0

    with pytest.raises(AgentUnavailableError):
        await lifecycle.submit_raw("a1", "whoami")
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_unanswered_command_times_out(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)

    cid = await lifecycle.submit_raw("a1", "sleep 10", timeout_ms=100)
    await asyncio.sleep(0.05)
    assert lifecycle.history.get(cid).status == CommandStatus.PENDING

    entry = await lifecycle.wait_for(cid, timeout=1.0)

    assert entry.status == CommandStatus.TIMED_OUT
    assert entry.failure_kind == FailureKind.TIMEOUT
    assert entry.error == str(CommandTimeoutError(cid, 100))
    assert timedelta(milliseconds=100) <= entry.completed_at - entry.submitted_at < timedelta(seconds=1)
    assert cid not in lifecycle.registry
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_late_completion_after_timeout_is_dropped(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "sleep 10", timeout_ms=20)
    await lifecycle.wait_for(cid, timeout=1.0)

    assert lifecycle.handle_event(_completed(cid, "too late")) is None

    entry = lifecycle.history.get(cid)
    assert entry.status == CommandStatus.TIMED_OUT
    assert entry.output is None
    assert lifecycle.reconciler.dropped == 1
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_completion_before_deadline_wins_over_timer(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "hostname", timeout_ms=50)

    lifecycle.handle_event(_completed(cid, "box"))
    await asyncio.sleep(0.1)

    entry = lifecycle.history.get(cid)
    assert entry.status == CommandStatus.COMPLETED
    assert entry.output == "box"
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_duplicate_completion_is_idempotent(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "whoami")
    seen = []
    lifecycle.subscribe(lambda event, entry: seen.append(event))

    lifecycle.handle_event(_completed(cid, "root"))
    lifecycle.handle_event(_completed(cid, "someone else"))
    lifecycle.handle_event(
        CompletionEvent(correlation_id=cid, status="failed", error="late failure")
    )

    entry = lifecycle.history.get(cid)
    assert entry.status == CommandStatus.COMPLETED
    assert entry.output == "root"
    assert seen == ["update"]
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_history_order_is_submission_order(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    first = await lifecycle.submit_raw("a1", "echo A")
    second = await lifecycle.submit_raw("a1", "echo B")

    lifecycle.handle_event(_completed(second, "B"))
    lifecycle.handle_event(_completed(first, "A"))

    assert [entry.entry_id for entry in lifecycle.history.list()] == [first, second]
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_executing_ack_then_remote_failure(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "cat /nope")

    lifecycle.handle_event({"correlationId": cid, "status": "executing"})
    assert lifecycle.history.get(cid).status == CommandStatus.EXECUTING
    assert lifecycle.supervisor.is_armed(cid)

    lifecycle.handle_event(
        {"correlationId": cid, "status": "failed", "error": "No such file or directory"}
    )
    entry = lifecycle.history.get(cid)
    assert entry.status == CommandStatus.FAILED
    assert entry.failure_kind == FailureKind.REMOTE
    assert entry.error == "No such file or directory"
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_unknown_and_malformed_events_are_dropped(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)

    assert lifecycle.handle_event(_completed("never-sent")) is None
    assert lifecycle.handle_event({"status": "completed"}) is None
    assert lifecycle.handle_event({"correlationId": "x", "status": "exploded"}) is None
    assert lifecycle.history.list() == []
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_rejected_send_fails_without_arming_timer(online_agent):
    lifecycle, transport = _lifecycle(online_agent)
    transport.reject_with = ConnectionError("socket closed")

    with pytest.raises(DispatchError) as excinfo:
        await lifecycle.submit_raw("a1", "whoami")

    cid = excinfo.value.correlation_id
    entry = lifecycle.history.get(cid)
    assert entry.status == CommandStatus.FAILED
    assert entry.failure_kind == FailureKind.DISPATCH
    assert "socket closed" in entry.error
    assert cid not in lifecycle.registry
    assert lifecycle.supervisor.armed_count == 0
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_empty_raw_input_records_translation_failure(online_agent):
    lifecycle, transport = _lifecycle(online_agent)

    entry_id = await lifecycle.submit_raw("a1", "   ")

    entries = lifecycle.history.list()
    assert [entry.entry_id for entry in entries] == [entry_id]
    assert entries[0].status == CommandStatus.FAILED
    assert entries[0].failure_kind == FailureKind.TRANSLATION
    assert transport.sent == []
    assert len(lifecycle.registry) == 0
    assert lifecycle.supervisor.armed_count == 0
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_cancelled_send_fails_command(online_agent):
    lifecycle, transport = _lifecycle(online_agent, SlowTransport())

    task = asyncio.get_running_loop().create_task(
        lifecycle.submit_raw("a1", "whoami", timeout_ms=100)
    )
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.2)

    entries = lifecycle.history.list()
    assert len(entries) == 1
    assert entries[0].status == CommandStatus.FAILED
    assert entries[0].failure_kind == FailureKind.CANCELLED
    assert len(lifecycle.registry) == 0
    assert lifecycle.supervisor.armed_count == 0
    assert transport.sent == []
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_per_command_state_stays_bounded(online_agent):
    lifecycle, _transport = _lifecycle(online_agent, history_capacity=5)

    for n in range(200):
        cid = await lifecycle.submit_raw("a1", f"echo {n}")
        lifecycle.handle_event(_completed(cid, str(n)))

    assert len(lifecycle.history) == 5
    assert len(lifecycle.registry) == 0
    assert lifecycle.supervisor.armed_count == 0
    assert lifecycle.supervisor.tracked_count <= 5
    assert lifecycle.registry.retired_count <= 5
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_dispatch_preconditions(online_agent, offline_agent):
    lifecycle, transport = _lifecycle(online_agent)
    lifecycle.directory.upsert(offline_agent)

    with pytest.raises(AgentUnavailableError):
        await lifecycle.submit_raw("a2", "whoami")
    with pytest.raises(AgentUnavailableError):
        await lifecycle.submit_raw("ghost", "whoami")
    with pytest.raises(ValueError):
        await lifecycle.dispatcher.dispatch("a1", "whoami", "bash", 0)

    assert transport.sent == []
    assert lifecycle.history.list() == []
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_retry_links_new_command_to_cause(online_agent):
    lifecycle, transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "systemctl restart app", timeout_ms=20)

    with pytest.raises(ValueError):
        await lifecycle.retry(cid)

    await lifecycle.wait_for(cid, timeout=1.0)
    retry_id = await lifecycle.retry(cid)

    assert retry_id != cid
    retried = lifecycle.history.get(retry_id)
    assert retried.cause_id == cid
    assert retried.retry_count == 1
    assert retried.timeout_ms == 20
    assert transport.sent[-1].command == "systemctl restart app"
    with pytest.raises(KeyError):
        await lifecycle.retry("unknown")
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_cancel_fails_in_flight_command(online_agent):
    lifecycle, _transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "tail -f /var/log/syslog")

    record = lifecycle.cancel(cid)

    assert record is not None
    assert record.status == CommandStatus.FAILED
    assert lifecycle.history.get(cid).failure_kind == FailureKind.CANCELLED
    assert lifecycle.cancel(cid) is None
    await lifecycle.shutdown()


@pytest.mark.anyio
async def test_run_consumes_transport_envelopes(online_agent):
    lifecycle, transport = _lifecycle(online_agent)
    cid = await lifecycle.submit_raw("a1", "uname -a")
    lifecycle.start()

    transport.deliver(_completed(cid, "Linux"))
    entry = await lifecycle.wait_for(cid, timeout=1.0)
    assert entry.output == "Linux"

    transport.deliver_status(AgentStatusUpdate(agent_id="a9", status=AgentStatus.ONLINE))
    await asyncio.sleep(0.01)
    assert lifecycle.directory.get("a9").is_online
    await lifecycle.shutdown()
