"""
Correlation identifiers and the registry of in-flight commands.

The registry is the single source of truth for "is this command still
pending": a record is present iff its status is non-terminal. A removed id is
retired, so a late completion can never re-insert a record that already
timed out (first writer wins). Only the most recent ``retain`` retired ids
are remembered; ids are freshly minted, so the memory is only needed long
enough to tell a late event from a stray one.
"""
from __future__ import annotations

import itertools
import logging
import secrets
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional

from opsdeck_contracts import CommandRecord

from .errors import DuplicateCorrelationError, UnknownCorrelationError

LOGGER = logging.getLogger(__name__)

DEFAULT_PREFIX = "cmd"
DEFAULT_RETAIN = 1024

# Shared by every factory so ids stay unique even across engines.
_COUNTER = itertools.count(1)


class CorrelationIdFactory:
    """Mints process-unique, opaque correlation identifiers.

    Each id combines a random token with a monotonic counter, so uniqueness
    does not depend on the wall clock.
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX, *, token_bytes: int = 6) -> None:
        self._prefix = prefix.strip() or DEFAULT_PREFIX
        self._token_bytes = max(1, token_bytes)

    def mint(self) -> str:
        return f"{self._prefix}-{secrets.token_hex(self._token_bytes)}-{next(_COUNTER)}"


class CorrelationRegistry:
    """Maps correlation ids to their in-flight ``CommandRecord``."""

    def __init__(self, *, retain: int = DEFAULT_RETAIN) -> None:
        if retain < 0:
            raise ValueError("retain must not be negative")
        self._retain = retain
        self._records: Dict[str, CommandRecord] = {}
        self._retired: "OrderedDict[str, None]" = OrderedDict()

    def register(self, correlation_id: str, record: CommandRecord) -> None:
        if correlation_id != record.correlation_id:
            raise ValueError(
                f"Record {record.correlation_id} registered under {correlation_id}"
            )
        if correlation_id in self._records or correlation_id in self._retired:
            raise DuplicateCorrelationError(
                f"Correlation id already used: {correlation_id}"
            )
        if record.is_terminal:
            raise ValueError(f"Cannot register terminal record {correlation_id}")
        self._records[correlation_id] = record
        LOGGER.debug("Registered %s (agent=%s)", correlation_id, record.agent_id)

    def lookup(self, correlation_id: str) -> CommandRecord:
        try:
            return self._records[correlation_id]
        except KeyError:
            raise UnknownCorrelationError(correlation_id) from None

    def get(self, correlation_id: str) -> Optional[CommandRecord]:
        return self._records.get(correlation_id)

    def remove(self, correlation_id: str) -> Optional[CommandRecord]:
        """Removes and retires ``correlation_id``; a no-op for unknown ids."""
        record = self._records.pop(correlation_id, None)
        if record is not None:
            self._retire(correlation_id)
            LOGGER.debug("Removed %s from registry", correlation_id)
        return record

    def was_retired(self, correlation_id: str) -> bool:
        return correlation_id in self._retired

    @property
    def retired_count(self) -> int:
        return len(self._retired)

    def pending_for_agent(self, agent_id: str) -> List[CommandRecord]:
        return [record for record in self._records.values() if record.agent_id == agent_id]

    def snapshot(self) -> List[CommandRecord]:
        return list(self._records.values())

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    def _retire(self, correlation_id: str) -> None:
        if self._retain == 0:
            return
        self._retired[correlation_id] = None
        while len(self._retired) > self._retain:
            self._retired.popitem(last=False)
