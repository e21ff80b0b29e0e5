from __future__ import annotations

import time
from typing import Protocol


class WallClock(Protocol):
    """Wall clock abstraction.

    Integrity logic depends on this interface rather than calling real time
    directly, so tests can drive drift and dwell windows deterministically.
    """

    def now_ms(self) -> int:
        """Return milliseconds since the Unix epoch."""
        ...


class SystemWallClock:
    """Production clock backed by time.time()."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class FakeClock:
    """Deterministic test clock."""

    def __init__(self, *, start_ms: int = 1_700_000_000_000) -> None:
        self._t = int(start_ms)

    def now_ms(self) -> int:
        return self._t

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("Cannot advance clock backwards")
        self._t += int(ms)

    def set(self, t_ms: int) -> None:
        self._t = int(t_ms)
