"""Cancellable one-shot and periodic timers over a monotonic clock.

The scheduler never runs anything on its own. The owning node calls
``run_due()`` from the same loop that dispatches datagrams, so timer
callbacks and packet handlers never interleave.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TimerHandle:
    __slots__ = ("name", "when", "interval", "callback", "cancelled", "done")

    def __init__(self, name: str, when: float, callback: Callable[[], None], interval: Optional[float] = None):
        self.name = name
        self.when = when
        self.interval = interval
        self.callback = callback
        self.cancelled = False
        self.done = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.done)

    def cancel(self) -> None:
        self.cancelled = True

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else f"when={self.when:.3f}"
        return f"<TimerHandle {self.name} {state}>"


class Scheduler:
    def __init__(self, clock: Clock = time.monotonic):
        self.clock = clock
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self.clock()

    def call_later(self, delay_s: float, callback: Callable[[], None], name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name, self.now() + max(0.0, delay_s), callback)
        self._push(handle)
        return handle

    def call_every(self, interval_s: float, callback: Callable[[], None], name: str = "timer") -> TimerHandle:
        if interval_s <= 0:
            raise ValueError(f"interval must be positive: {interval_s}")
        handle = TimerHandle(name, self.now() + interval_s, callback, interval=interval_s)
        self._push(handle)
        return handle

    def _push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._heap, (handle.when, next(self._counter), handle))

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)

    def next_deadline(self) -> Optional[float]:
        self._drop_cancelled()
        return self._heap[0][0] if self._heap else None

    def time_until_next(self) -> Optional[float]:
        deadline = self.next_deadline()
        if deadline is None:
            return None
        return max(0.0, deadline - self.now())

    def run_due(self) -> int:
        """Fire every timer whose deadline has passed; return how many ran."""
        fired = 0
        now = self.now()
        while True:
            self._drop_cancelled()
            if not self._heap or self._heap[0][0] > now:
                break
            _, _, handle = heapq.heappop(self._heap)
            if handle.interval is not None:
                # re-arm before the callback so it may cancel itself;
                # ticks missed during a stall are skipped, not replayed
                handle.when += handle.interval
                if handle.when <= now:
                    handle.when = now + handle.interval
                self._push(handle)
            else:
                handle.done = True
            logger.debug("timer fired; name=%s", handle.name)
            handle.callback()
            fired += 1
        return fired

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if h.active)
