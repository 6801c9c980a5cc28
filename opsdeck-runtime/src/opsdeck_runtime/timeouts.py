"""
Deadline tracking for in-flight commands.

Every dispatched command gets one timer task. The timer only *reports*
expiry through the supplied callback; whether the record actually moves to
``timed_out`` is decided by the engine, which re-checks the registry first.
That check, not locking, is what guarantees at most one terminal transition
when a completion and a timeout race on the same event loop.

Only armed timers are held for their whole lifetime. The final state of a
finished timer is remembered for the most recent ``retain`` ids so a
long-running engine does not grow with every command it has ever seen.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import suppress
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Union

LOGGER = logging.getLogger(__name__)

DEFAULT_RETAIN = 1024

ExpiryCallback = Callable[[str], Union[Awaitable[None], None]]


class TimerState(str, Enum):
    ARMED = "armed"
    DISARMED = "disarmed"
    EXPIRED = "expired"


class TimeoutSupervisor:
    """Arms and disarms one deadline per correlation id."""

    def __init__(self, *, retain: int = DEFAULT_RETAIN) -> None:
        if retain < 0:
            raise ValueError("retain must not be negative")
        self._retain = retain
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._finished: "OrderedDict[str, TimerState]" = OrderedDict()

    def arm(self, correlation_id: str, timeout_s: float, on_expire: ExpiryCallback) -> None:
        """
        Starts the deadline for ``correlation_id``.

        Args:
            correlation_id: Id of the in-flight command.
            timeout_s: Seconds until expiry; must be positive.
            on_expire: Called with the id when the deadline passes. May be a
                coroutine function.

        Raises:
            ValueError: If the id is already armed or the timeout is not
                positive.
        """
        if timeout_s <= 0:
            raise ValueError("timeout must be positive")
        if correlation_id in self._tasks:
            raise ValueError(f"Timer already armed for {correlation_id}")
        self._finished.pop(correlation_id, None)
        self._tasks[correlation_id] = asyncio.get_running_loop().create_task(
            self._wait(correlation_id, timeout_s, on_expire),
            name=f"opsdeck-timeout-{correlation_id}",
        )

    def disarm(self, correlation_id: str) -> bool:
        """Cancels a pending deadline. Returns True if a timer was cancelled."""
        task = self._tasks.pop(correlation_id, None)
        if task is None:
            return False
        self._remember(correlation_id, TimerState.DISARMED)
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def state(self, correlation_id: str) -> Optional[TimerState]:
        if correlation_id in self._tasks:
            return TimerState.ARMED
        return self._finished.get(correlation_id)

    def is_armed(self, correlation_id: str) -> bool:
        return correlation_id in self._tasks

    @property
    def armed_count(self) -> int:
        return len(self._tasks)

    @property
    def tracked_count(self) -> int:
        """Armed timers plus remembered final states."""
        return len(self._tasks) + len(self._finished)

    async def shutdown(self) -> None:
        """Disarms every timer and waits for the tasks to finish."""
        tasks = list(self._tasks.values())
        for correlation_id in list(self._tasks):
            self.disarm(correlation_id)
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    def _remember(self, correlation_id: str, state: TimerState) -> None:
        if self._retain == 0:
            return
        self._finished[correlation_id] = state
        self._finished.move_to_end(correlation_id)
        while len(self._finished) > self._retain:
            self._finished.popitem(last=False)

    async def _wait(self, correlation_id: str, timeout_s: float, on_expire: ExpiryCallback) -> None:
        await asyncio.sleep(timeout_s)
        if self._tasks.get(correlation_id) is not asyncio.current_task():
            return
        del self._tasks[correlation_id]
        self._remember(correlation_id, TimerState.EXPIRED)
        LOGGER.debug("Deadline expired for %s after %.3fs", correlation_id, timeout_s)
        try:
            result = on_expire(correlation_id)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Timeout handler for %s failed: %s", correlation_id, exc)
