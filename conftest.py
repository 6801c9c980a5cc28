"""
Project-wide pytest fixtures.

Runtime tests build engines on top of the in-process loopback transport so no
Redis instance or HTTP collaborator is needed.
"""
from __future__ import annotations

import pytest

from opsdeck_contracts import Agent, AgentStatus


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def online_agent() -> Agent:
    return Agent(
        agent_id="a1",
        display_name="build-box",
        status=AgentStatus.ONLINE,
        platform="linux",
    )


@pytest.fixture
def offline_agent() -> Agent:
    return Agent(agent_id="a2", status=AgentStatus.OFFLINE, platform="windows")
