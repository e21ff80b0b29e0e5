"""pygame adapters for the navigation and visibility host interfaces.

A pygame window has no browser history, so :class:`PygameNavigationStack`
keeps a browser-like entry list: a back gesture (Esc, Backspace, the AC Back
key or joystick button 1) moves one entry back and notifies listeners with
the state of the entry it landed on. :class:`PygameVisibilitySignal` maps
window focus, minimise and hide events to a single ``hidden`` flag.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import pygame

logger = logging.getLogger(__name__)

BACK_KEYS = (pygame.K_ESCAPE, pygame.K_BACKSPACE, pygame.K_AC_BACK)
BACK_JOY_BUTTON = 1

_HIDDEN_EVENTS = (pygame.WINDOWFOCUSLOST, pygame.WINDOWMINIMIZED, pygame.WINDOWHIDDEN)
_VISIBLE_EVENTS = (pygame.WINDOWFOCUSGAINED, pygame.WINDOWRESTORED, pygame.WINDOWSHOWN)


class PygameNavigationStack:
    def __init__(self, *, initial_state: object = None, on_exit: Callable[[], None] | None = None) -> None:
        self._entries: list[object] = [initial_state]
        self._index = 0
        self._listeners: list[Callable[[object], None]] = []
        self._on_exit = on_exit

    @property
    def state(self) -> object:
        return self._entries[self._index]

    @property
    def depth(self) -> int:
        return self._index + 1

    def entries(self) -> list[object]:
        return list(self._entries)

    def push(self, state: object) -> None:
        # Pushing drops any forward entries, as a browser does.
        del self._entries[self._index + 1 :]
        self._entries.append(state)
        self._index += 1

    def replace(self, state: object) -> None:
        self._entries[self._index] = state

    def go(self, delta: int) -> None:
        if delta == 0:
            return
        target = self._index + int(delta)
        if target < 0:
            # Back past the first entry leaves the host altogether.
            if self._on_exit is not None:
                self._on_exit()
            return
        if target >= len(self._entries):
            return
        self._index = target
        if delta < 0:
            self._notify_back(self.state)

    def back(self) -> None:
        self.go(-1)

    def subscribe_back(self, listener: Callable[[object], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def handle_event(self, event: pygame.event.Event) -> bool:
        """Treat back keys as a back gesture. Returns True if consumed."""
        if event.type == pygame.KEYDOWN and event.key in BACK_KEYS:
            self.back()
            return True
        if event.type == pygame.JOYBUTTONDOWN and event.button == BACK_JOY_BUTTON:
            self.back()
            return True
        return False

    def _notify_back(self, state: object) -> None:
        for listener in list(self._listeners):
            listener(state)


class PygameVisibilitySignal:
    def __init__(self, *, hidden: bool = False) -> None:
        self._hidden = bool(hidden)
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def hidden(self) -> bool:
        return self._hidden

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_hidden(self, hidden: bool) -> None:
        hidden = bool(hidden)
        if hidden == self._hidden:
            return
        self._hidden = hidden
        logger.debug("window %s", "hidden" if hidden else "visible")
        for listener in list(self._listeners):
            listener(hidden)

    def handle_event(self, event: pygame.event.Event) -> bool:
        if event.type in _HIDDEN_EVENTS:
            self.set_hidden(True)
            return True
        if event.type in _VISIBLE_EVENTS:
            self.set_hidden(False)
            return True
        return False
