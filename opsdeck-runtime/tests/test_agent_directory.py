from __future__ import annotations

import pytest

from opsdeck_contracts import AgentStatus, AgentStatusUpdate

from opsdeck_runtime.agents import AgentDirectory
from opsdeck_runtime.errors import AgentUnavailableError


def test_require_enforces_online(online_agent, offline_agent):
    directory = AgentDirectory([online_agent, offline_agent])

    assert directory.require("a1") is online_agent
    assert directory.require("a2", online=False) is offline_agent
    with pytest.raises(AgentUnavailableError):
        directory.require("a2")
    with pytest.raises(AgentUnavailableError):
        directory.require("missing")
    assert [agent.agent_id for agent in directory.list(online_only=True)] == ["a1"]


def test_status_changes_notify_listeners(online_agent):
    directory = AgentDirectory([online_agent])
    changes = []
    directory.on_status_change(lambda agent, previous: changes.append((agent.agent_id, previous, agent.status)))

    assert directory.apply_status(AgentStatusUpdate(agent_id="a1", status=AgentStatus.ONLINE)) == AgentStatus.ONLINE
    assert changes == []

    directory.apply_status(AgentStatusUpdate(agent_id="a1", status=AgentStatus.OFFLINE))

    assert changes == [("a1", AgentStatus.ONLINE, AgentStatus.OFFLINE)]
    assert directory.get("a1").platform == "linux"


def test_unknown_agents_from_status_feed():
    directory = AgentDirectory()

    assert directory.apply_status(AgentStatusUpdate(agent_id="ghost", status=AgentStatus.OFFLINE)) is None
    assert directory.get("ghost") is None

    directory.apply_status(AgentStatusUpdate(agent_id="new", status=AgentStatus.ONLINE))
    assert directory.require("new").platform == ""
