"""Cooperative timers driven by the host loop.

The host calls :meth:`TimerQueue.update` once per frame; due callbacks run
one at a time on that call, so there is no preemption and no locking. Time
comes only from the injected clock, which keeps tests deterministic.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .clock import WallClock

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TimerHandle:
    due_ms: int
    interval_ms: int | None
    callback: Callable[[], None]
    seq: int
    cancelled: bool = False

    @property
    def active(self) -> bool:
        return not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True


class TimerQueue:
    def __init__(self, clock: WallClock) -> None:
        self._clock = clock
        self._timers: list[TimerHandle] = []
        self._seq = 0

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        return self._add(self._clock.now_ms() + int(delay_ms), None, callback)

    def call_every(
        self,
        interval_ms: int,
        callback: Callable[[], None],
        *,
        first_delay_ms: int | None = None,
    ) -> TimerHandle:
        """Run ``callback`` every ``interval_ms``; missed intervals are caught up.

        ``first_delay_ms`` shortens (or lengthens) the wait before the first run;
        later runs keep the regular interval from there.
        """
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        first = int(interval_ms) if first_delay_ms is None else int(first_delay_ms)
        if first < 0:
            raise ValueError("first_delay_ms must be >= 0")
        return self._add(self._clock.now_ms() + first, int(interval_ms), callback)

    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def cancel_all(self) -> None:
        for t in self._timers:
            t.cancel()
        self._timers.clear()

    def update(self) -> int:
        """Run every callback that is due. Returns how many ran."""
        now = self._clock.now_ms()
        fired = 0
        while True:
            self._timers = [t for t in self._timers if not t.cancelled]
            due = [t for t in self._timers if t.due_ms <= now]
            if not due:
                return fired
            timer = min(due, key=lambda t: (t.due_ms, t.seq))
            if timer.interval_ms is None:
                timer.cancelled = True
            else:
                timer.due_ms += timer.interval_ms
            try:
                timer.callback()
            except Exception:
                logger.exception("timer callback failed")
            fired += 1

    def _add(self, due_ms: int, interval_ms: int | None, callback: Callable[[], None]) -> TimerHandle:
        self._seq += 1
        handle = TimerHandle(due_ms=due_ms, interval_ms=interval_ms, callback=callback, seq=self._seq)
        self._timers.append(handle)
        return handle
