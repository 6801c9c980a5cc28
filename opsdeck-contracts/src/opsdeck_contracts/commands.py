"""
This module defines the data contracts for the command lifecycle: the
immutable request issued to an agent, the mutable record that tracks its
progress, the display projection kept in the history log, and the result of
translating free-form operator text into a command.

Status progression is modelled as an explicit state machine. The only legal
path is ``pending -> executing -> {completed | failed | timed_out}``, where a
pending command may also jump straight to a terminal status (dispatch failure,
an early completion, an agent disconnect or a timeout). Terminal statuses are
absorbing: ``CommandRecord.transition`` refuses to leave them, which is what
makes duplicate or racing completion events harmless.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CommandStatus(str, Enum):
    """Lifecycle status of a dispatched command."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[CommandStatus] = frozenset(
    {CommandStatus.COMPLETED, CommandStatus.FAILED, CommandStatus.TIMED_OUT}
)

_ALLOWED_TRANSITIONS: Dict[CommandStatus, FrozenSet[CommandStatus]] = {
    CommandStatus.PENDING: frozenset(
        {
            CommandStatus.EXECUTING,
            CommandStatus.COMPLETED,
            CommandStatus.FAILED,
            CommandStatus.TIMED_OUT,
        }
    ),
    CommandStatus.EXECUTING: TERMINAL_STATUSES,
}


def can_transition(current: CommandStatus, target: CommandStatus) -> bool:
    """Return True when ``current -> target`` is a legal status transition."""
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


class InvalidTransitionError(ValueError):
    """Raised when a record is asked to move along an illegal transition."""

    def __init__(self, correlation_id: str, current: CommandStatus, target: CommandStatus):
        super().__init__(
            f"Illegal status transition for {correlation_id}: "
            f"{current.value} -> {target.value}"
        )
        self.correlation_id = correlation_id
        self.current = current
        self.target = target


class FailureKind(str, Enum):
    """Why a command ended in a failure status.

    History renders a badge per kind; ``translation`` entries never reached
    the transport.
    """

    TRANSLATION = "translation"
    DISPATCH = "dispatch"
    REMOTE = "remote"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    CANCELLED = "cancelled"


class CommandRequest(BaseModel):
    """
    The immutable description of a single dispatch.

    A request is created exactly once, at dispatch time, together with its
    correlation identifier. Retrying a command never mutates the original
    request: a retry is a new request whose ``cause_id`` points back at the
    request it replaces and whose ``retry_count`` is one higher.
    """

    model_config = ConfigDict(frozen=True)

    correlation_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    raw_input: str = Field(
        default="",
        description="What the operator typed, before any translation.",
    )
    resolved_command: str = Field(..., min_length=1)
    command_type: str = Field(default="shell")
    timeout_ms: int = Field(..., gt=0)
    submitted_at: datetime = Field(default_factory=_utc_now)
    cause_id: Optional[str] = Field(
        default=None,
        description="Correlation id of the request this one retries.",
    )
    retry_count: int = Field(default=0, ge=0)
    explanation: Optional[str] = None


class CommandRecord(BaseModel):
    """The mutable lifecycle object tracking one ``CommandRequest``."""

    request: CommandRequest
    status: CommandStatus = CommandStatus.PENDING
    output: Optional[str] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    completed_at: Optional[datetime] = None
    status_history: List[CommandStatus] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        if not self.status_history:
            self.status_history.append(self.status)

    @property
    def correlation_id(self) -> str:
        return self.request.correlation_id

    @property
    def agent_id(self) -> str:
        return self.request.agent_id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        target: CommandStatus,
        *,
        output: Optional[str] = None,
        error: Optional[str] = None,
        failure_kind: Optional[FailureKind] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """
        Moves the record to ``target``, enforcing the status lattice.

        Args:
            target: The new status.
            output: Command output to attach, if any.
            error: Error text to attach, if any.
            failure_kind: Failure classification for failure statuses.
            at: Completion timestamp; defaults to now for terminal statuses.

        Raises:
            InvalidTransitionError: If the transition is not permitted, in
                particular any transition out of a terminal status.
        """
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.correlation_id, self.status, target)
        self.status = target
        self.status_history.append(target)
        if output is not None:
            self.output = output
        if error is not None:
            self.error = error
        if failure_kind is not None:
            self.failure_kind = failure_kind
        if target.is_terminal:
            self.completed_at = at or _utc_now()


class HistoryEntry(BaseModel):
    """
    Display-oriented projection of a ``CommandRecord``.

    Entries are appended in submission order and patched in place as the
    underlying record progresses, so position reflects submission while the
    content reflects the current status.
    """

    entry_id: str = Field(..., min_length=1)
    agent_id: str
    raw_input: str = ""
    command: Optional[str] = None
    command_type: Optional[str] = None
    timeout_ms: Optional[int] = None
    status: CommandStatus
    output: Optional[str] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    explanation: Optional[str] = None
    submitted_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None
    cause_id: Optional[str] = None
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_record(cls, record: CommandRecord) -> "HistoryEntry":
        request = record.request
        return cls(
            entry_id=request.correlation_id,
            agent_id=request.agent_id,
            raw_input=request.raw_input,
            command=request.resolved_command,
            command_type=request.command_type,
            timeout_ms=request.timeout_ms,
            status=record.status,
            output=record.output,
            error=record.error,
            failure_kind=record.failure_kind,
            explanation=request.explanation,
            submitted_at=request.submitted_at,
            completed_at=record.completed_at,
            cause_id=request.cause_id,
            retry_count=request.retry_count,
        )

    @classmethod
    def translation_failure(
        cls,
        entry_id: str,
        *,
        agent_id: str,
        raw_input: str,
        error: str,
    ) -> "HistoryEntry":
        """Builds the terminal entry recorded when translation fails."""
        now = _utc_now()
        return cls(
            entry_id=entry_id,
            agent_id=agent_id,
            raw_input=raw_input,
            status=CommandStatus.FAILED,
            error=error,
            failure_kind=FailureKind.TRANSLATION,
            submitted_at=now,
            completed_at=now,
        )

    def record_patch(self, record: CommandRecord) -> Dict[str, Any]:
        """Returns the fields of this entry that differ from ``record``."""
        fresh = HistoryEntry.from_record(record)
        patch: Dict[str, Any] = {}
        for name in ("status", "output", "error", "failure_kind", "completed_at"):
            value = getattr(fresh, name)
            if getattr(self, name) != value:
                patch[name] = value
        return patch


class TranslationResult(BaseModel):
    """Structured command produced from free-form operator text."""

    model_config = ConfigDict(extra="ignore")

    resolved_command: str = Field(..., min_length=1)
    command_type: str = Field(default="shell")
    suggested_timeout_ms: int = Field(..., gt=0)
    explanation: str = ""


__all__ = [
    "CommandStatus",
    "TERMINAL_STATUSES",
    "can_transition",
    "InvalidTransitionError",
    "FailureKind",
    "CommandRequest",
    "CommandRecord",
    "HistoryEntry",
    "TranslationResult",
]
