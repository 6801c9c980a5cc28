"""
In-memory directory of known agents and the status feed that updates it.

The directory is the dispatcher's gate (only online agents accept commands)
and the source of disconnect notifications, which the lifecycle engine turns
into a bulk failure of every in-flight command for that agent.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from opsdeck_contracts import Agent, AgentStatus, AgentStatusUpdate

from .errors import AgentUnavailableError

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[Agent, Optional[AgentStatus]], None]


class AgentDirectory:
    """Keeps the latest known ``Agent`` snapshot per agent id."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: Dict[str, Agent] = {}
        self._listeners: List[StatusListener] = []
        for agent in agents:
            self.upsert(agent)

    def upsert(self, agent: Agent) -> Agent:
        previous = self._agents.get(agent.agent_id)
        self._agents[agent.agent_id] = agent
        if previous is not None and previous.status != agent.status:
            self._emit(agent, previous.status)
        return agent

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def require(self, agent_id: str, *, online: bool = True) -> Agent:
        """
        Returns the agent, enforcing the dispatch precondition.

        Raises:
            AgentUnavailableError: If the agent is unknown, or offline while
                ``online`` is True.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentUnavailableError(f"Unknown agent: {agent_id}")
        if online and not agent.is_online:
            raise AgentUnavailableError(f"Agent {agent_id} is offline")
        return agent

    def list(self, *, online_only: bool = False) -> List[Agent]:
        agents = list(self._agents.values())
        if online_only:
            agents = [agent for agent in agents if agent.is_online]
        return agents

    def apply_status(self, update: AgentStatusUpdate) -> Optional[AgentStatus]:
        """
        Applies one status feed entry.

        Unknown agents reported online are added with no platform hint;
        unknown agents reported offline are ignored.

        Returns:
            The agent's previous status, or None if it was unknown.
        """
        current = self._agents.get(update.agent_id)
        if current is None:
            if update.status == AgentStatus.OFFLINE:
                LOGGER.debug("Ignoring offline report for unknown agent %s", update.agent_id)
                return None
            LOGGER.info("Discovered agent %s via status feed", update.agent_id)
            self._agents[update.agent_id] = Agent(agent_id=update.agent_id, status=update.status)
            return None
        if current.status == update.status:
            return current.status
        updated = current.model_copy(update={"status": update.status})
        self._agents[update.agent_id] = updated
        LOGGER.info(
            "Agent %s status %s -> %s",
            update.agent_id,
            current.status.value,
            update.status.value,
        )
        self._emit(updated, current.status)
        return current.status

    def on_status_change(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _emit(self, agent: Agent, previous: Optional[AgentStatus]) -> None:
        for listener in list(self._listeners):
            listener(agent, previous)
