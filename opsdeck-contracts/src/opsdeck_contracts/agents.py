"""
Pydantic data models describing the remote agents that OpsDeck dispatches
commands to.

The command-lifecycle engine treats agents as external collaborators: their
identity and platform are read-only from its point of view, and only the
reported status is tracked, because it gates whether a dispatch is allowed
and triggers bulk cancellation when an agent drops offline.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


class AgentStatus(str, Enum):
    """Connectivity status of an agent.

    Attributes:
        ONLINE: The agent is connected and may receive commands.
        OFFLINE: The agent is unreachable; dispatch is refused.
    """

    ONLINE = "online"
    OFFLINE = "offline"


class Agent(BaseModel):
    """Snapshot of a remote agent as known to the operator console."""

    model_config = ConfigDict(extra="ignore")

    agent_id: str = Field(
        ...,
        min_length=1,
        description="Unique identifier for the agent.",
    )
    display_name: str = Field(
        default="",
        description="Human-readable label shown in the console.",
    )
    status: AgentStatus = Field(default=AgentStatus.OFFLINE)
    platform: str = Field(
        default="",
        description="Platform hint (e.g. 'windows', 'linux') used for translation.",
    )
    system_info: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_online(self) -> bool:
        return self.status == AgentStatus.ONLINE

    @property
    def label(self) -> str:
        return self.display_name or self.agent_id


class AgentStatusUpdate(BaseModel):
    """One entry of the agent status feed.

    Status updates arrive periodically from the connection tracker; an
    ``offline`` update for an agent with pending commands force-fails them.
    """

    model_config = ConfigDict(extra="ignore")

    agent_id: str = Field(..., min_length=1)
    status: AgentStatus
    reported_at: datetime = Field(default_factory=_utc_now)


__all__ = [
    "AgentStatus",
    "Agent",
    "AgentStatusUpdate",
]
