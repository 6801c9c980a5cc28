from __future__ import annotations

import pytest

from opsdeck_contracts import CommandRecord, CommandRequest, CommandStatus

from opsdeck_runtime.correlation import CorrelationIdFactory, CorrelationRegistry
from opsdeck_runtime.errors import DuplicateCorrelationError, UnknownCorrelationError


def _record(correlation_id: str, agent_id: str = "a1") -> CommandRecord:
    return CommandRecord(
        request=CommandRequest(
            correlation_id=correlation_id,
            agent_id=agent_id,
            resolved_command="whoami",
            timeout_ms=1000,
        )
    )


def test_minted_ids_are_unique_across_factories():
    first = CorrelationIdFactory("cmd")
    second = CorrelationIdFactory("cmd")

    ids = {first.mint() for _ in range(500)} | {second.mint() for _ in range(500)}

    assert len(ids) == 1000
    assert all(value.startswith("cmd-") for value in ids)


def test_blank_prefix_falls_back_to_default():
    assert CorrelationIdFactory("  ").mint().startswith("cmd-")


def test_register_lookup_remove_cycle():
    registry = CorrelationRegistry()
    record = _record("cmd-1")

    registry.register("cmd-1", record)
    assert "cmd-1" in registry
    assert registry.lookup("cmd-1") is record

    assert registry.remove("cmd-1") is record
    assert "cmd-1" not in registry
    assert registry.remove("cmd-1") is None
    with pytest.raises(UnknownCorrelationError):
        registry.lookup("cmd-1")


def test_unknown_lookup_is_a_defined_error():
    registry = CorrelationRegistry()
    with pytest.raises(UnknownCorrelationError) as excinfo:
        registry.lookup("never-registered")
    assert excinfo.value.correlation_id == "never-registered"
    assert registry.get("never-registered") is None


def test_duplicate_and_retired_ids_cannot_be_registered():
    registry = CorrelationRegistry()
    registry.register("cmd-1", _record("cmd-1"))

    with pytest.raises(DuplicateCorrelationError):
        registry.register("cmd-1", _record("cmd-1"))

    registry.remove("cmd-1")
    assert registry.was_retired("cmd-1")
    with pytest.raises(DuplicateCorrelationError):
        registry.register("cmd-1", _record("cmd-1"))


def test_terminal_records_are_refused():
    registry = CorrelationRegistry()
    record = _record("cmd-1")
    record.transition(CommandStatus.COMPLETED, output="root")

    with pytest.raises(ValueError):
        registry.register("cmd-1", record)


def test_pending_for_agent_filters_by_agent():
    registry = CorrelationRegistry()
    registry.register("cmd-1", _record("cmd-1", "a1"))
    registry.register("cmd-2", _record("cmd-2", "a2"))
    registry.register("cmd-3", _record("cmd-3", "a1"))

    assert [r.correlation_id for r in registry.pending_for_agent("a1")] == ["cmd-1", "cmd-3"]
    assert len(registry) == 3


def test_retired_ids_are_remembered_for_a_bounded_window():
    registry = CorrelationRegistry(retain=2)
    for n in range(5):
        registry.register(f"cmd-{n}", _record(f"cmd-{n}"))
        registry.remove(f"cmd-{n}")

    assert registry.retired_count == 2
    assert not registry.was_retired("cmd-0")
    assert registry.was_retired("cmd-3")
    assert registry.was_retired("cmd-4")
    with pytest.raises(DuplicateCorrelationError):
        registry.register("cmd-4", _record("cmd-4"))


def test_negative_retain_is_rejected():
    with pytest.raises(ValueError):
        CorrelationRegistry(retain=-1)
