"""Persisted, drift-corrected countdown for one session.

Remaining time is stored after every tick together with the wall-clock
time of that tick. After a reload the gap since the last stored tick is
subtracted, so closing the tab does not pause the countdown.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from .clock import WallClock
from .config import IntegrityConfig
from .keys import CLOCK_COMPONENT, SessionKey
from .persistence import KeyValueStore, RecordStore, require_int
from .scheduler import TimerHandle, TimerQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ClockRecord:
    remaining_seconds: int
    last_tick_at: int
    started_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "remaining_seconds": int(self.remaining_seconds),
            "last_tick_at": int(self.last_tick_at),
            "started_at": int(self.started_at),
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "ClockRecord":
        return cls(
            remaining_seconds=require_int(key, data, "remaining_seconds"),
            last_tick_at=require_int(key, data, "last_tick_at"),
            started_at=require_int(key, data, "started_at"),
        )


class SessionClock:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        clock: WallClock,
        timers: TimerQueue,
        config: IntegrityConfig | None = None,
    ) -> None:
        cfg = config or IntegrityConfig()
        self._clock = clock
        self._timers = timers
        self._cfg = cfg
        self._records: RecordStore[ClockRecord] = RecordStore(
            store,
            component=CLOCK_COMPONENT,
            clock=clock,
            decode=ClockRecord.from_dict,
            max_age_ms=cfg.stale_entry_max_age_ms,
        )

        self._key: SessionKey | None = None
        self._total = 0
        self._remaining = 0
        self._started_at_ms = 0
        self._last_tick_at_ms = 0
        self._expired = False
        self._generation = 0
        self._ticker: TimerHandle | None = None
        self._expiry_handlers: list[Callable[[], None]] = []

    @property
    def session_key(self) -> SessionKey | None:
        return self._key

    @property
    def total_seconds(self) -> int:
        return self._total

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def running(self) -> bool:
        return self._ticker is not None and self._ticker.active

    @property
    def memory_only(self) -> bool:
        return self._records.memory_only

    def on_expired(self, handler: Callable[[], None]) -> None:
        self._expiry_handlers.append(handler)

    def init(self, total_seconds: int, session_key: SessionKey) -> int:
        """Create or resume the countdown for ``session_key``; returns remaining seconds."""
        if total_seconds < 0:
            raise ValueError("total_seconds must be >= 0")
        self.stop()

        now = self._clock.now_ms()
        self._key = session_key
        self._total = int(total_seconds)
        self._expired = False

        record = self._records.load(session_key)
        if record is None:
            self._remaining = self._total
            self._started_at_ms = now
            self._last_tick_at_ms = now
            logger.debug("new countdown for %s: %ds", session_key, self._remaining)
        else:
            drift_s = max(0, (now - record.last_tick_at) // 1000)
            self._remaining = max(0, record.remaining_seconds - drift_s)
            self._started_at_ms = record.started_at
            if now < record.last_tick_at:
                self._last_tick_at_ms = now
            else:
                # Only whole seconds were charged; the remainder carries over.
                self._last_tick_at_ms = record.last_tick_at + drift_s * 1000
            logger.info(
                "resumed countdown for %s: %ds stored, %ds drift, %ds left",
                session_key,
                record.remaining_seconds,
                drift_s,
                self._remaining,
            )
        self._persist()
        return self._remaining

    def start(self) -> None:
        """Begin ticking once per configured interval."""
        if self._key is None:
            raise RuntimeError("SessionClock.init() must be called before start()")
        if self.running or self._expired:
            return
        if self._remaining <= 0:
            self._expire()
            return
        interval = self._cfg.tick_interval_ms
        behind_ms = self._clock.now_ms() - self._last_tick_at_ms
        self._generation += 1
        self._ticker = self._timers.call_every(
            interval,
            partial(self._on_timer, self._generation),
            first_delay_ms=min(interval, max(0, interval - behind_ms)),
        )

    def stop(self) -> None:
        self._generation += 1
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def tick(self) -> None:
        if self._key is None:
            return
        if self._expired:
            logger.debug("tick after expiry suppressed for %s", self._key)
            self.stop()
            return
        now = self._clock.now_ms()
        step = self._last_tick_at_ms + 1000
        self._remaining = max(0, self._remaining - 1)
        self._last_tick_at_ms = step if 0 <= now - step < 1000 else now
        self._persist()
        if self._remaining == 0:
            self._expire()

    def remaining(self) -> int:
        return self._remaining

    def elapsed(self) -> int:
        return max(0, self._total - self._remaining)

    def clear(self, session_key: SessionKey | None = None) -> None:
        """Drop the stored countdown so the next ``init`` starts fresh."""
        key = self._key if session_key is None else session_key
        if key is None:
            return
        if key == self._key:
            self.stop()
        self._records.remove(key)
        logger.debug("countdown cleared for %s", key)

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.tick()

    def _expire(self) -> None:
        if self._expired:
            logger.debug("duplicate expiry suppressed for %s", self._key)
            return
        self._expired = True
        self.stop()
        logger.info("countdown expired for %s", self._key)
        for handler in list(self._expiry_handlers):
            handler()

    def _persist(self) -> None:
        assert self._key is not None
        record = ClockRecord(
            remaining_seconds=self._remaining,
            last_tick_at=self._last_tick_at_ms,
            started_at=self._started_at_ms,
        )
        self._records.save(self._key, record.to_dict())


def format_clock(seconds: int | float | None) -> str:
    """MM:SS for the timer label; hours roll into minutes."""
    if seconds is None:
        return "--:--"
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"
