from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

CHEAT_COMPONENT = "anti_cheating"
CLOCK_COMPONENT = "test_timer"

KNOWN_COMPONENTS = (CHEAT_COMPONENT, CLOCK_COMPONENT)


@dataclass(frozen=True, slots=True)
class SessionKey:
    """Identity of one timed attempt: who, which kind of test, which test."""

    user_id: str
    session_kind: str
    session_id: str

    @classmethod
    def from_parts(cls, user_id: object, session_kind: object, session_id: object) -> "SessionKey":
        parts = [str(p).strip() if p is not None else "" for p in (user_id, session_kind, session_id)]
        if any(p == "" for p in parts):
            raise ValueError("user_id, session_kind and session_id must be non-empty")
        return cls(user_id=parts[0], session_kind=parts[1], session_id=parts[2])


def record_key(component: str, key: SessionKey) -> str:
    """Storage key for a component's record: ``component:user:kind:id``.

    Each part is percent-encoded, so a ``:`` inside an id cannot shift the
    field boundaries and collide with another session's key.
    """
    if component == "":
        raise ValueError("component must be non-empty")
    parts = (component, key.user_id, key.session_kind, key.session_id)
    return ":".join(quote(p, safe="") for p in parts)


def component_of(storage_key: str) -> str | None:
    """Return the integrity component prefix of a storage key, if any."""
    head, sep, _ = storage_key.partition(":")
    if sep == "" or head not in KNOWN_COMPONENTS:
        return None
    return head
