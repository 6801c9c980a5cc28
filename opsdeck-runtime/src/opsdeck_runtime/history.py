"""
Append-only command history used by the operator views.

Entries keep their submission position forever; status progression patches
the existing entry in place. Views subscribe to change notifications instead
of polling. When a capacity is configured, eviction only ever removes
terminal entries (oldest first) so an in-flight command never loses its only
visible record.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Callable, List, Optional

from opsdeck_contracts import CommandRecord, HistoryEntry

LOGGER = logging.getLogger(__name__)

HistoryListener = Callable[[str, HistoryEntry], None]


class HistoryLog:
    """Ordered log of ``HistoryEntry`` objects keyed by entry id."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._entries: "OrderedDict[str, HistoryEntry]" = OrderedDict()
        self._listeners: List[HistoryListener] = []

    @property
    def capacity(self) -> Optional[int]:
        return self._capacity

    def append(self, entry: HistoryEntry) -> None:
        if entry.entry_id in self._entries:
            raise ValueError(f"History already contains {entry.entry_id}")
        self._entries[entry.entry_id] = entry
        self._notify("append", entry)
        self._evict()

    def update_by_id(self, entry_id: str, **patch: Any) -> HistoryEntry:
        """
        Patches an existing entry without changing its position.

        Raises:
            KeyError: If the entry is unknown (for instance already evicted).
        """
        current = self._entries[entry_id]
        unknown = set(patch) - set(HistoryEntry.model_fields)
        if unknown:
            raise ValueError(f"Unknown history fields: {sorted(unknown)}")
        updated = current.model_copy(update=patch)
        self._entries[entry_id] = updated
        self._notify("update", updated)
        self._evict()
        return updated

    def sync(self, record: CommandRecord) -> Optional[HistoryEntry]:
        """Copies the record's current status into its entry, if still held."""
        current = self._entries.get(record.correlation_id)
        if current is None:
            LOGGER.debug("History entry %s no longer held", record.correlation_id)
            return None
        patch = current.record_patch(record)
        if not patch:
            return current
        return self.update_by_id(record.correlation_id, **patch)

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        return self._entries.get(entry_id)

    def list(self) -> List[HistoryEntry]:
        return list(self._entries.values())

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        """Registers ``listener(event, entry)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def _evict(self) -> None:
        if self._capacity is None:
            return
        overflow = len(self._entries) - self._capacity
        if overflow <= 0:
            return
        victims = [
            entry_id for entry_id, entry in self._entries.items() if entry.is_terminal
        ][:overflow]
        for entry_id in victims:
            entry = self._entries.pop(entry_id)
            self._notify("evict", entry)
        if len(self._entries) > self._capacity:
            LOGGER.debug(
                "History over capacity (%d/%d); remaining entries are in flight",
                len(self._entries),
                self._capacity,
            )

    def _notify(self, event: str, entry: HistoryEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, entry)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("History listener failed on %s: %s", event, exc)
