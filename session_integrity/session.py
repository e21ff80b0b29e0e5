from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .cheat_signals import CheatSignalAggregator, CheatSnapshot, VisibilitySignal
from .clock import WallClock
from .config import IntegrityConfig
from .history import BackAttempt, HistoryInterceptor, NavigationStack
from .keys import SessionKey
from .persistence import KeyValueStore
from .scheduler import TimerQueue
from .session_clock import SessionClock

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    EXPIRED = "expired"
    LEFT = "left"
    COMPLETED = "completed"
    DISPOSED = "disposed"


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """View model for the UI (pure data)."""

    phase: SessionPhase
    time_remaining_s: int
    time_elapsed_s: int
    switch_count: int
    flagged: bool
    guard_active: bool
    exit_pending: bool


class SessionController:
    """Wires the back guard, switch detection and countdown for one attempt.

    The three components stay independent; this class only starts and stops
    them together and turns their outputs into a submission payload.
    """

    def __init__(
        self,
        session_key: SessionKey,
        *,
        navigation: NavigationStack | None,
        visibility: VisibilitySignal | None,
        store: KeyValueStore,
        clock: WallClock,
        timers: TimerQueue | None = None,
        config: IntegrityConfig | None = None,
        count_exit_as_switch: bool = False,
    ) -> None:
        cfg = config or IntegrityConfig()
        self._key = session_key
        self._owns_timers = timers is None
        self._timers = timers or TimerQueue(clock)
        self._count_exit_as_switch = count_exit_as_switch
        self._phase = SessionPhase.IDLE
        self._exit_prompt: Callable[[BackAttempt], None] | None = None
        self._expiry_handlers: list[Callable[[], None]] = []
        self._prompt: BackAttempt | None = None

        self.history = HistoryInterceptor(navigation, clock=clock)
        self.cheat = CheatSignalAggregator(
            visibility,
            store=store,
            clock=clock,
            timers=self._timers,
            session_key=session_key,
            config=cfg,
        )
        self.clock = SessionClock(store=store, clock=clock, timers=self._timers, config=cfg)

        self.history.on_back_attempted(self._on_back)
        self.clock.on_expired(self._on_expired)

    @property
    def session_key(self) -> SessionKey:
        return self._key

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def timers(self) -> TimerQueue:
        return self._timers

    @property
    def exit_prompt(self) -> BackAttempt | None:
        """The back attempt awaiting a decision, if it is still the latest one."""
        if self._prompt is not None and self.history.pending is None:
            self._prompt = None
        return self._prompt

    def on_exit_requested(self, handler: Callable[[BackAttempt], None] | None) -> None:
        self._exit_prompt = handler

    def on_expired(self, handler: Callable[[], None]) -> None:
        self._expiry_handlers.append(handler)

    def begin(self, total_seconds: int) -> int:
        if self._phase is SessionPhase.DISPOSED:
            raise RuntimeError("session has been disposed")
        remaining = self.clock.init(total_seconds, self._key)
        self._phase = SessionPhase.RUNNING
        self.cheat.start()
        self.history.activate(True)
        self.clock.start()
        logger.info("session %s running with %ds left", self._key, remaining)
        return self.clock.remaining()

    def update(self) -> None:
        self._timers.update()

    def snapshot(self) -> SessionSnapshot:
        cheat = self.cheat.snapshot()
        return SessionSnapshot(
            phase=self._phase,
            time_remaining_s=self.clock.remaining(),
            time_elapsed_s=self.clock.elapsed(),
            switch_count=cheat.switch_count,
            flagged=cheat.flagged,
            guard_active=self.history.active,
            exit_pending=self.exit_prompt is not None,
        )

    def cheat_snapshot(self) -> CheatSnapshot:
        return self.cheat.snapshot()

    def submission_payload(self) -> dict[str, Any]:
        payload = self.cheat.snapshot().to_payload()
        payload["time_remaining_s"] = self.clock.remaining()
        payload["time_elapsed_s"] = self.clock.elapsed()
        return payload

    def complete(self) -> dict[str, Any]:
        """Call after the results were accepted; drops stored state for this key."""
        payload = self.submission_payload()
        self._halt()
        self.history.activate(False)
        self.clock.clear(self._key)
        self.cheat.reset()
        self._phase = SessionPhase.COMPLETED
        logger.info("session %s completed", self._key)
        return payload

    def retake(self, total_seconds: int) -> int:
        self._halt()
        self.history.activate(False)
        self.clock.clear(self._key)
        self.cheat.reset()
        logger.info("session %s restarting as a retake", self._key)
        return self.begin(total_seconds)

    def dispose(self) -> None:
        if self._phase is SessionPhase.DISPOSED:
            return
        self._halt()
        self.history.dispose()
        if self._owns_timers:
            self._timers.cancel_all()
        self._phase = SessionPhase.DISPOSED

    def _halt(self) -> None:
        self.clock.stop()
        self.cheat.stop()
        self._prompt = None

    def _on_back(self, attempt: BackAttempt) -> None:
        wrapped = BackAttempt(
            confirm=lambda: self._confirm_exit(attempt),
            cancel=attempt.cancel,
            seq=attempt.seq,
            source=attempt.source,
        )
        self._prompt = wrapped
        if self._exit_prompt is None:
            logger.debug("no exit prompt registered; back attempt %d left pending", attempt.seq)
            return
        self._exit_prompt(wrapped)

    def _confirm_exit(self, attempt: BackAttempt) -> None:
        if self.history.pending is not attempt:
            return
        if self._count_exit_as_switch:
            self.cheat.record_violation("exit")
        attempt.confirm()
        self._halt()
        self._phase = SessionPhase.LEFT
        logger.info("session %s left via back navigation", self._key)

    def _on_expired(self) -> None:
        if self._phase is not SessionPhase.RUNNING:
            return
        self._phase = SessionPhase.EXPIRED
        self.cheat.stop()
        for handler in list(self._expiry_handlers):
            handler()
