"""Focus-loss detection with a dwell rule.

A hidden transition only counts as a switch once the page has stayed hidden
for the whole dwell threshold. Short OS-level focus churn (notifications, a
glance at the window switcher) resolves before the timer fires and is
discarded. Counts persist per session, so a reload does not wipe them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from .clock import WallClock
from .config import IntegrityConfig
from .errors import HostApiUnavailable
from .keys import CHEAT_COMPONENT, SessionKey
from .persistence import KeyValueStore, RecordStore, require_bool, require_int
from .scheduler import TimerHandle, TimerQueue

logger = logging.getLogger(__name__)


class VisibilitySignal(Protocol):
    @property
    def hidden(self) -> bool: ...
    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]: ...


@dataclass(frozen=True, slots=True)
class CheatRecord:
    switch_count: int
    flagged: bool
    last_updated: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "switch_count": int(self.switch_count),
            "flagged": bool(self.flagged),
            "last_updated": int(self.last_updated),
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "CheatRecord":
        return cls(
            switch_count=require_int(key, data, "switch_count"),
            flagged=require_bool(key, data, "flagged"),
            last_updated=require_int(key, data, "last_updated"),
        )


@dataclass(frozen=True, slots=True)
class CheatSnapshot:
    switch_count: int
    flagged: bool

    def to_payload(self) -> dict[str, Any]:
        """Fields as the results endpoint expects them."""
        return {
            "caught_cheating": bool(self.flagged),
            "visibility_change_times": int(self.switch_count),
        }


class CheatSignalAggregator:
    def __init__(
        self,
        visibility: VisibilitySignal | None,
        *,
        store: KeyValueStore,
        clock: WallClock,
        timers: TimerQueue,
        session_key: SessionKey,
        config: IntegrityConfig | None = None,
    ) -> None:
        cfg = config or IntegrityConfig()
        self._visibility = visibility
        self._clock = clock
        self._timers = timers
        self._key = session_key
        self._cfg = cfg
        self._records: RecordStore[CheatRecord] = RecordStore(
            store,
            component=CHEAT_COMPONENT,
            clock=clock,
            decode=CheatRecord.from_dict,
            max_age_ms=cfg.stale_entry_max_age_ms,
        )

        self._switch_count = 0
        self._flagged = False
        self._active = False
        self._available = visibility is not None
        self._generation = 0
        self._dwell: TimerHandle | None = None
        self._hidden_at_ms = 0
        self._unsubscribe: Callable[[], None] | None = None
        self._flag_handlers: list[Callable[[CheatSnapshot], None]] = []

    @property
    def active(self) -> bool:
        return self._active

    @property
    def available(self) -> bool:
        return self._available

    @property
    def dwell_pending(self) -> bool:
        return self._dwell is not None and self._dwell.active

    @property
    def memory_only(self) -> bool:
        return self._records.memory_only

    def on_flagged(self, handler: Callable[[CheatSnapshot], None]) -> None:
        self._flag_handlers.append(handler)

    def start(self) -> None:
        if self._active:
            return
        self._load()

        if not self._available or self._visibility is None:
            logger.debug("visibility signal unavailable; switch detection disabled")
            return
        self._generation += 1
        generation = self._generation
        try:
            self._unsubscribe = self._visibility.subscribe(partial(self._on_visibility, generation))
            already_hidden = bool(self._visibility.hidden)
        except Exception as exc:
            self._degrade(exc)
            return
        self._active = True
        logger.debug("switch detection started for %s", self._key)

        if self._flagged:
            self._notify_flagged()
        if already_hidden:
            self._begin_dwell()

    def stop(self) -> None:
        self._generation += 1
        self._active = False
        self._cancel_dwell()
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.warning("failed to unsubscribe from visibility changes", exc_info=True)

    def snapshot(self) -> CheatSnapshot:
        return CheatSnapshot(switch_count=self._switch_count, flagged=self._flagged)

    def reset(self) -> None:
        """Forget every counted switch for this session, in memory and in storage."""
        self._cancel_dwell()
        self._records.remove(self._key)
        self._switch_count = 0
        self._flagged = False
        logger.info("switch counters reset for %s", self._key)

    def record_violation(self, reason: str = "navigation") -> CheatSnapshot:
        """Count a switch explicitly, outside the visibility dwell rule."""
        self._count_switch(reason)
        return self.snapshot()

    def _load(self) -> None:
        if self._records.memory_only:
            # Storage stopped accepting writes; what it holds is older than memory.
            return
        record = self._records.load(self._key)
        if record is None:
            self._switch_count = 0
            self._flagged = False
            self._persist()
            return
        self._switch_count = record.switch_count
        self._flagged = self._switch_count >= self._cfg.strike_threshold
        if self._flagged != record.flagged:
            logger.info("recomputed flagged=%s for %s", self._flagged, self._key)
            self._persist()

    def _on_visibility(self, generation: int, hidden: bool) -> None:
        if generation != self._generation or not self._active:
            return
        if hidden:
            self._begin_dwell()
        elif self._dwell is not None:
            hidden_ms = self._clock.now_ms() - self._hidden_at_ms
            self._cancel_dwell()
            if hidden_ms >= self._cfg.dwell_threshold_ms:
                # Deadline passed while the host loop was not pumping timers.
                self._count_switch("visibility")
            else:
                logger.debug("page visible again before the dwell threshold; discarded")

    def _begin_dwell(self) -> None:
        self._cancel_dwell()
        hidden_at_ms = self._clock.now_ms()
        self._hidden_at_ms = hidden_at_ms
        self._dwell = self._timers.call_later(
            self._cfg.dwell_threshold_ms,
            partial(self._dwell_elapsed, self._generation, hidden_at_ms),
        )

    def _cancel_dwell(self) -> None:
        if self._dwell is not None:
            self._dwell.cancel()
            self._dwell = None

    def _dwell_elapsed(self, generation: int, hidden_at_ms: int) -> None:
        self._dwell = None
        if generation != self._generation or not self._active:
            return
        assert self._visibility is not None
        try:
            still_hidden = bool(self._visibility.hidden)
        except Exception as exc:
            self._degrade(exc)
            return
        if not still_hidden:
            return
        if self._clock.now_ms() - hidden_at_ms < self._cfg.dwell_threshold_ms:
            return
        self._count_switch("visibility")

    def _count_switch(self, reason: str) -> None:
        was_flagged = self._flagged
        self._switch_count += 1
        self._flagged = self._switch_count >= self._cfg.strike_threshold
        self._persist()
        logger.info(
            "switch counted for %s (reason=%s count=%d flagged=%s)",
            self._key,
            reason,
            self._switch_count,
            self._flagged,
        )
        if self._flagged and not was_flagged:
            self._notify_flagged()

    def _persist(self) -> None:
        record = CheatRecord(
            switch_count=self._switch_count,
            flagged=self._flagged,
            last_updated=self._clock.now_ms(),
        )
        self._records.save(self._key, record.to_dict())

    def _notify_flagged(self) -> None:
        snap = self.snapshot()
        for handler in list(self._flag_handlers):
            handler(snap)

    def _degrade(self, exc: BaseException) -> None:
        self.stop()
        self._available = False
        logger.warning("%s; switch detection disabled", HostApiUnavailable(f"visibility signal failed: {exc}"))
