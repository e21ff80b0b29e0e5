"""Scenario tests for the controller that wires all three components.

The navigation host is ``PygameNavigationStack`` (pure Python, no display
needed) and the visibility host is ``PygameVisibilitySignal`` driven through
``set_hidden``.
"""

from __future__ import annotations

import json

from session_integrity.clock import FakeClock
from session_integrity.config import IntegrityConfig
from session_integrity.history import BackAttempt, SentinelState
from session_integrity.keys import CHEAT_COMPONENT, CLOCK_COMPONENT, SessionKey, record_key
from session_integrity.persistence import MemoryStore
from session_integrity.pygame_host import PygameNavigationStack, PygameVisibilitySignal
from session_integrity.session import SessionController, SessionPhase

KEY = SessionKey("st-1", "fill_blanks", "77")


class Rig:
    def __init__(self, *, store: MemoryStore | None = None, count_exit_as_switch: bool = False) -> None:
        self.wall = FakeClock()
        self.store = store if store is not None else MemoryStore()
        self.exits = 0
        self.nav = PygameNavigationStack(initial_state={"screen": "test"}, on_exit=self._exit)
        self.vis = PygameVisibilitySignal()
        self.prompts: list[BackAttempt] = []
        self.ctl = SessionController(
            KEY,
            navigation=self.nav,
            visibility=self.vis,
            store=self.store,
            clock=self.wall,
            config=IntegrityConfig(dwell_threshold_ms=6500, strike_threshold=2),
            count_exit_as_switch=count_exit_as_switch,
        )
        self.ctl.on_exit_requested(self.prompts.append)

    def _exit(self) -> None:
        self.exits += 1

    def run_for(self, ms: int, step_ms: int = 250) -> None:
        elapsed = 0
        while elapsed < ms:
            dt = min(step_ms, ms - elapsed)
            self.wall.advance(dt)
            self.ctl.update()
            elapsed += dt


def test_begin_arms_everything() -> None:
    rig = Rig()
    assert rig.ctl.begin(60) == 60

    snap = rig.ctl.snapshot()
    assert snap.phase is SessionPhase.RUNNING
    assert snap.guard_active
    assert snap.time_remaining_s == 60
    assert isinstance(rig.nav.state, SentinelState)
    assert rig.store.get(record_key(CLOCK_COMPONENT, KEY)) is not None
    assert rig.store.get(record_key(CHEAT_COMPONENT, KEY)) is not None


def test_cancelled_exit_keeps_session_running() -> None:
    rig = Rig()
    rig.ctl.begin(60)

    rig.nav.back()
    assert rig.ctl.snapshot().exit_pending
    rig.prompts[0].cancel()

    assert not rig.ctl.snapshot().exit_pending
    assert rig.ctl.phase is SessionPhase.RUNNING
    rig.nav.back()
    assert len(rig.prompts) == 2


def test_confirmed_exit_leaves_and_keeps_records_for_resume() -> None:
    rig = Rig()
    rig.ctl.begin(60)
    rig.run_for(5000)

    rig.nav.back()
    rig.prompts[0].confirm()

    assert rig.ctl.phase is SessionPhase.LEFT
    assert not rig.ctl.history.active
    assert rig.nav.depth == 1
    assert rig.ctl.cheat.snapshot().switch_count == 0
    stored = json.loads(rig.store.get(record_key(CLOCK_COMPONENT, KEY)) or "{}")
    assert stored["remaining_seconds"] == 55

    # Nothing keeps ticking after leaving.
    rig.run_for(5000)
    assert rig.ctl.clock.remaining() == 55


def test_exit_can_count_as_a_switch() -> None:
    rig = Rig(count_exit_as_switch=True)
    rig.ctl.begin(60)

    rig.nav.back()
    rig.nav.back()
    rig.prompts[0].confirm()
    assert rig.ctl.cheat.snapshot().switch_count == 0

    rig.prompts[1].confirm()
    assert rig.ctl.cheat.snapshot().switch_count == 1


def test_tab_switches_flow_into_submission_payload() -> None:
    rig = Rig()
    rig.ctl.begin(120)

    rig.vis.set_hidden(True)
    rig.run_for(3000)
    rig.vis.set_hidden(False)
    rig.vis.set_hidden(True)
    rig.run_for(8000)
    rig.vis.set_hidden(False)
    rig.vis.set_hidden(True)
    rig.run_for(8000)
    rig.vis.set_hidden(False)

    payload = rig.ctl.submission_payload()
    assert payload == {
        "caught_cheating": True,
        "visibility_change_times": 2,
        "time_remaining_s": 101,
        "time_elapsed_s": 19,
    }


def test_expiry_notifies_once_and_stops_detection() -> None:
    rig = Rig()
    expired: list[int] = []
    rig.ctl.on_expired(lambda: expired.append(1))
    rig.ctl.begin(3)

    rig.run_for(10_000)

    assert expired == [1]
    assert rig.ctl.phase is SessionPhase.EXPIRED
    assert not rig.ctl.cheat.active


def test_complete_clears_records_and_releases_guard() -> None:
    rig = Rig()
    rig.ctl.begin(30)
    rig.vis.set_hidden(True)
    rig.run_for(7000)
    rig.vis.set_hidden(False)

    payload = rig.ctl.complete()

    assert payload["visibility_change_times"] == 1
    assert rig.ctl.phase is SessionPhase.COMPLETED
    assert rig.store.get(record_key(CLOCK_COMPONENT, KEY)) is None
    assert rig.store.get(record_key(CHEAT_COMPONENT, KEY)) is None
    assert not isinstance(rig.nav.state, SentinelState)
    assert not rig.ctl.history.active


def test_retake_starts_from_scratch() -> None:
    rig = Rig()
    rig.ctl.begin(30)
    rig.vis.set_hidden(True)
    rig.run_for(7000)
    rig.vis.set_hidden(False)

    assert rig.ctl.retake(30) == 30

    snap = rig.ctl.snapshot()
    assert snap.switch_count == 0
    assert snap.time_elapsed_s == 0
    assert snap.guard_active
    sentinels = [e for e in rig.nav.entries()[: rig.nav.depth] if isinstance(e, SentinelState)]
    assert len(sentinels) == 1


def test_reload_resumes_time_and_switches() -> None:
    store = MemoryStore()
    first = Rig(store=store)
    first.ctl.begin(120)
    first.vis.set_hidden(True)
    first.run_for(7000)
    first.vis.set_hidden(False)
    first.ctl.dispose()

    second = Rig(store=store)
    second.wall.set(first.wall.now_ms() + 10_000)
    remaining = second.ctl.begin(120)

    assert remaining == 103
    assert second.ctl.cheat.snapshot().switch_count == 1


def test_dispose_is_idempotent_and_restores_navigation() -> None:
    rig = Rig()
    rig.ctl.begin(30)

    rig.ctl.dispose()
    rig.ctl.dispose()

    assert rig.ctl.phase is SessionPhase.DISPOSED
    assert rig.nav.state == {"screen": "test"}
    rig.nav.back()
    assert rig.prompts == []
    assert rig.exits == 0
    rig.nav.back()
    assert rig.exits == 1
