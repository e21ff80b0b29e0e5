"""Back-navigation guard for an active session.

While active, the current navigation entry is wrapped in a sentinel entry.
A back gesture then lands on the original entry, the guard immediately
re-arms with a fresh sentinel, and the owner decides through a
:class:`BackAttempt` whether the user really leaves.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Protocol

from .clock import WallClock
from .errors import HostApiUnavailable

logger = logging.getLogger(__name__)


class NavigationStack(Protocol):
    @property
    def state(self) -> object: ...
    def push(self, state: object) -> None: ...
    def replace(self, state: object) -> None: ...
    def go(self, delta: int) -> None: ...
    def subscribe_back(self, listener: Callable[[object], None]) -> Callable[[], None]: ...


@dataclass(frozen=True, slots=True)
class SentinelState:
    """Synthetic entry; ``prev_state`` is the wrapped entry, returned untouched."""

    prev_state: object
    pushed_at_ms: int


@dataclass(frozen=True, slots=True, eq=False)
class BackAttempt:
    confirm: Callable[[], None]
    cancel: Callable[[], None]
    seq: int
    source: str = "history"


@dataclass(slots=True)
class NavigationGuardState:
    active: bool = False
    sentinel_pushed: bool = False
    pending: BackAttempt | None = None


class HistoryInterceptor:
    def __init__(self, navigation: NavigationStack | None, *, clock: WallClock) -> None:
        self._nav = navigation
        self._clock = clock
        self._state = NavigationGuardState()
        self._handler: Callable[[BackAttempt], None] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._available = navigation is not None
        self._generation = 0
        self._seq = 0

    @property
    def active(self) -> bool:
        return self._state.active

    @property
    def available(self) -> bool:
        return self._available

    @property
    def pending(self) -> BackAttempt | None:
        return self._state.pending

    @property
    def guard_state(self) -> NavigationGuardState:
        s = self._state
        return NavigationGuardState(active=s.active, sentinel_pushed=s.sentinel_pushed, pending=s.pending)

    def on_back_attempted(self, handler: Callable[[BackAttempt], None] | None) -> None:
        self._handler = handler

    def activate(self, enabled: bool) -> None:
        if enabled and not self._state.active:
            self._arm()
        elif not enabled and self._state.active:
            self._disarm()
            self._restore()

    def deactivate(self) -> None:
        self.activate(False)

    def dispose(self) -> None:
        """Teardown; restores the original entry even if the session never finished."""
        self._disarm()
        self._restore()

    def _arm(self) -> None:
        if not self._available or self._nav is None:
            logger.debug("navigation stack unavailable; back guard disabled")
            return
        self._generation += 1
        generation = self._generation
        try:
            self._unsubscribe = self._nav.subscribe_back(partial(self._on_back, generation))
            self._push_sentinel(self._nav.state)
        except Exception as exc:
            self._degrade(exc)
            return
        self._state.active = True
        logger.debug("back guard armed (generation %d)", generation)

    def _disarm(self) -> None:
        self._generation += 1
        self._state.active = False
        self._state.pending = None
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.warning("failed to unsubscribe from back notifications", exc_info=True)

    def _push_sentinel(self, prev_state: object) -> None:
        assert self._nav is not None
        while isinstance(prev_state, SentinelState):
            prev_state = prev_state.prev_state
        self._nav.push(SentinelState(prev_state=prev_state, pushed_at_ms=self._clock.now_ms()))
        self._state.sentinel_pushed = True

    def _restore(self) -> None:
        if self._nav is None or not self._available:
            return
        try:
            current = self._nav.state
            if isinstance(current, SentinelState):
                self._nav.replace(current.prev_state)
        except Exception:
            logger.warning("failed to restore previous navigation state", exc_info=True)
        self._state.sentinel_pushed = False

    def _on_back(self, generation: int, prev_state: object) -> None:
        if generation != self._generation or not self._state.active:
            self._state.sentinel_pushed = False
            return

        # The gesture consumed the sentinel; re-arm before asking the owner.
        self._state.sentinel_pushed = False
        try:
            self._push_sentinel(prev_state)
        except Exception as exc:
            self._degrade(exc)
            return

        self._seq += 1
        seq = self._seq
        attempt = BackAttempt(confirm=partial(self._confirm, seq), cancel=partial(self._cancel, seq), seq=seq)
        superseded = self._state.pending
        if superseded is not None:
            logger.debug("back attempt %d superseded by %d", superseded.seq, seq)
        self._state.pending = attempt

        if self._handler is None:
            logger.debug("back attempt %d has no handler; holding it pending", seq)
            return
        self._handler(attempt)

    def _confirm(self, seq: int) -> None:
        pending = self._state.pending
        if not self._state.active or pending is None or pending.seq != seq:
            logger.debug("ignoring stale confirm for back attempt %d", seq)
            return
        self._disarm()
        self._restore()
        assert self._nav is not None
        try:
            self._nav.go(-1)
        except Exception:
            logger.warning("back navigation failed after confirm", exc_info=True)

    def _cancel(self, seq: int) -> None:
        pending = self._state.pending
        if pending is not None and pending.seq == seq:
            self._state.pending = None

    def _degrade(self, exc: BaseException) -> None:
        self._disarm()
        self._available = False
        logger.warning("%s; back guard disabled", HostApiUnavailable(f"navigation stack failed: {exc}"))
