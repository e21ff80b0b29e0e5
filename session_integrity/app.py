"""Pygame demo shell for the session integrity components.

Runs one timed session with the back guard, switch detection and the
persisted countdown wired together. Esc/Backspace asks to leave; Y confirms
and N cancels. Switching away from the window for longer than the dwell
threshold counts a switch. Closing and reopening resumes the countdown.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import pygame

from .clock import SystemWallClock, WallClock
from .config import DB_PATH_ENV, LOG_LEVEL_ENV, IntegrityConfig
from .keys import SessionKey
from .persistence import KeyValueStore, SqliteStore
from .pygame_host import PygameNavigationStack, PygameVisibilitySignal
from .session import SessionController, SessionPhase
from .session_clock import format_clock

logger = logging.getLogger(__name__)

WINDOW_SIZE = (960, 540)
TARGET_FPS = 60
DEMO_TOTAL_S = 10 * 60

CONFIRM_KEYS = (pygame.K_y, pygame.K_RETURN, pygame.K_KP_ENTER)
CANCEL_KEYS = (pygame.K_n, pygame.K_ESCAPE, pygame.K_BACKSPACE)


class Screen(Protocol):
    def handle_event(self, event: pygame.event.Event) -> bool: ...
    def render(self, surface: pygame.Surface) -> None: ...


class App:
    def __init__(self, surface: pygame.Surface, font: pygame.font.Font) -> None:
        self._surface = surface
        self._font = font
        self._screens: list[Screen] = []
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def font(self) -> pygame.font.Font:
        return self._font

    def push(self, screen: Screen) -> None:
        self._screens.append(screen)

    def quit(self) -> None:
        self._running = False

    def handle_event(self, event: pygame.event.Event) -> bool:
        if event.type == pygame.QUIT:
            self.quit()
            return True
        if not self._screens:
            return False
        return self._screens[-1].handle_event(event)

    def render(self) -> None:
        if not self._screens:
            return
        self._screens[-1].render(self._surface)


class SessionScreen:
    def __init__(self, app: App, controller: SessionController) -> None:
        self._app = app
        self._controller = controller
        self._title_font = pygame.font.Font(None, 42)
        self._clock_font = pygame.font.Font(None, 112)
        self._hint_font = pygame.font.Font(None, 24)

    def handle_event(self, event: pygame.event.Event) -> bool:
        # Only the confirm prompt consumes keys; back keys otherwise reach the navigation stack.
        prompt = self._controller.exit_prompt
        if prompt is None or event.type != pygame.KEYDOWN:
            return False
        if event.key in CONFIRM_KEYS:
            prompt.confirm()
            return True
        if event.key in CANCEL_KEYS:
            prompt.cancel()
            return True
        return False

    def render(self, surface: pygame.Surface) -> None:
        w, h = surface.get_size()
        bg = (3, 9, 78)
        panel_bg = (8, 18, 104)
        border = (226, 236, 255)
        text_main = (238, 245, 255)
        text_muted = (186, 200, 224)
        warn = (255, 196, 84)

        snap = self._controller.snapshot()
        surface.fill(bg)

        margin = max(10, min(26, w // 34))
        frame = pygame.Rect(margin, margin, max(260, w - margin * 2), max(220, h - margin * 2))
        pygame.draw.rect(surface, panel_bg, frame)
        pygame.draw.rect(surface, border, frame, 2)

        title = self._title_font.render("Timed Session", True, text_main)
        surface.blit(title, title.get_rect(midtop=(frame.centerx, frame.y + 16)))

        clock_text = self._clock_font.render(format_clock(snap.time_remaining_s), True, text_main)
        surface.blit(clock_text, clock_text.get_rect(center=(frame.centerx, frame.centery - 30)))

        switches = f"Tab switches: {snap.switch_count}"
        status = self._hint_font.render(switches, True, warn if snap.flagged else text_muted)
        surface.blit(status, status.get_rect(center=(frame.centerx, frame.centery + 40)))

        if snap.flagged:
            note = self._hint_font.render(
                "Suspicious activity detected. Further switches may disqualify this attempt.",
                True,
                warn,
            )
            surface.blit(note, note.get_rect(center=(frame.centerx, frame.centery + 70)))

        if snap.exit_pending:
            box = pygame.Rect(0, 0, min(frame.w - 40, 560), 110)
            box.center = frame.center
            pygame.draw.rect(surface, (18, 30, 118), box)
            pygame.draw.rect(surface, border, box, 2)
            q = self._hint_font.render("Leave this session? Your progress will not be submitted.", True, text_main)
            a = self._hint_font.render("Y / Enter: Leave  |  N / Esc: Stay", True, text_muted)
            surface.blit(q, q.get_rect(center=(box.centerx, box.centery - 16)))
            surface.blit(a, a.get_rect(center=(box.centerx, box.centery + 18)))

        footer = "Esc/Backspace: Leave session"
        foot = self._hint_font.render(footer, True, text_muted)
        surface.blit(foot, foot.get_rect(midbottom=(frame.centerx, frame.bottom - 10)))


class ResultsScreen:
    def __init__(self, app: App, payload: dict[str, object]) -> None:
        self._app = app
        self._payload = payload
        self._font = app.font

    def handle_event(self, event: pygame.event.Event) -> bool:
        if event.type == pygame.KEYDOWN and event.key in (pygame.K_ESCAPE, pygame.K_RETURN, pygame.K_BACKSPACE):
            self._app.quit()
            return True
        return False

    def render(self, surface: pygame.Surface) -> None:
        surface.fill((10, 10, 14))
        lines = ["Time is up. Submission payload:"]
        lines.extend(f"  {k}: {v}" for k, v in sorted(self._payload.items()))
        lines.append("Press Enter to exit.")
        y = 40
        for line in lines:
            surface.blit(self._font.render(line, True, (235, 235, 245)), (40, y))
            y += 40


def default_db_path() -> Path:
    explicit = os.environ.get(DB_PATH_ENV)
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".session_integrity.sqlite3"


def _configure_logging() -> None:
    level_name = os.environ.get(LOG_LEVEL_ENV, "WARNING").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def run(
    *,
    max_frames: int | None = None,
    event_injector: Callable[[int], None] | None = None,
    store: KeyValueStore | None = None,
    wall_clock: WallClock | None = None,
    total_seconds: int = DEMO_TOTAL_S,
    session_key: SessionKey | None = None,
) -> int:
    _configure_logging()
    pygame.init()

    pygame.display.set_caption("Session Integrity Demo")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    font = pygame.font.Font(None, 36)
    frame_clock = pygame.time.Clock()

    app = App(surface=surface, font=font)

    owned_store: SqliteStore | None = None
    if store is None:
        owned_store = SqliteStore(default_db_path())
        store = owned_store

    navigation = PygameNavigationStack(initial_state={"screen": "session"}, on_exit=app.quit)
    visibility = PygameVisibilitySignal()
    key = session_key or SessionKey.from_parts(os.environ.get("USER", "student"), "demo", "practice")
    controller = SessionController(
        key,
        navigation=navigation,
        visibility=visibility,
        store=store,
        clock=wall_clock or SystemWallClock(),
        config=IntegrityConfig.from_env(),
    )

    def show_results() -> None:
        app.push(ResultsScreen(app, controller.complete()))

    controller.on_expired(show_results)
    app.push(SessionScreen(app, controller))
    controller.begin(total_seconds)

    frame = 0
    try:
        while app.running:
            if event_injector is not None:
                event_injector(frame)

            for event in pygame.event.get():
                if visibility.handle_event(event):
                    continue
                if app.handle_event(event):
                    continue
                if controller.phase is SessionPhase.RUNNING:
                    navigation.handle_event(event)

            controller.update()
            if controller.phase is SessionPhase.LEFT:
                app.quit()

            app.render()

            pygame.display.flip()

            frame += 1
            if max_frames is not None and frame >= max_frames:
                break

            frame_clock.tick(TARGET_FPS)
    finally:
        controller.dispose()
        if owned_store is not None:
            owned_store.close()
        pygame.quit()

    return 0
