from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from .clock import WallClock
from .config import SEVEN_DAYS_MS
from .errors import PersistenceCorrupt, StorageWriteFailure
from .keys import SessionKey, component_of, record_key

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_RECORD_TIMESTAMP_FIELDS = ("last_updated", "last_tick_at", "started_at")

T = TypeVar("T")


class KeyValueStore(Protocol):
    """Persistent string store. ``set`` may raise when capacity is exhausted."""

    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...
    def keys(self) -> list[str]: ...


class StorageFull(OSError):
    """Raised by MemoryStore when a write would exceed its capacity."""


class MemoryStore:
    """Dict-backed store with an optional quota, counted in characters."""

    def __init__(self, *, capacity: int | None = None) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._data: dict[str, str] = {}
        self._capacity = capacity

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._capacity is not None:
            used = self._used() - self._entry_size(key, self._data.get(key))
            if used + self._entry_size(key, value) > self._capacity:
                raise StorageFull(f"quota of {self._capacity} exceeded writing {key!r}")
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def _used(self) -> int:
        return sum(self._entry_size(k, v) for k, v in self._data.items())

    @staticmethod
    def _entry_size(key: str, value: str | None) -> int:
        if value is None:
            return 0
        return len(key) + len(value)


def open_db(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    _migrate(conn)
    return conn


def _utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time()))


def _migrate(conn: sqlite3.Connection) -> None:
    row = conn.execute("PRAGMA user_version;").fetchone()
    ver = int(row[0]) if row else 0
    if ver >= SCHEMA_VERSION:
        return

    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            );
            """
        )
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")


class SqliteStore:
    """SQLite-backed KeyValueStore; records survive a process restart."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._conn = open_db(path)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO kv(key, value, updated_at_utc) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (key, value, _utc_now_iso()),
            )

    def remove(self, key: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        return [str(r[0]) for r in self._conn.execute("SELECT key FROM kv ORDER BY key")]

    def close(self) -> None:
        self._conn.close()


def purge_stale_entries(
    store: KeyValueStore,
    *,
    now_ms: int,
    max_age_ms: int = SEVEN_DAYS_MS,
    keep: Iterable[str] = (),
) -> int:
    """Best-effort cleanup to free space before a retried write.

    Drops expired TTL envelopes (``{"timestamp", "ttl"}``) left by other parts
    of the app, integrity records older than ``max_age_ms``, and unparseable
    values under the integrity prefixes. Keys in ``keep`` are never touched.
    Returns the number of entries removed.
    """
    protected = set(keep)
    removed = 0
    try:
        candidates = list(store.keys())
    except Exception:
        logger.debug("store does not support key listing; skipping cleanup", exc_info=True)
        return 0

    for key in candidates:
        if key in protected:
            continue
        try:
            raw = store.get(key)
            if raw is None:
                continue
            if _is_stale(key, raw, now_ms=now_ms, max_age_ms=max_age_ms):
                store.remove(key)
                removed += 1
        except Exception:
            logger.debug("cleanup skipped %r", key, exc_info=True)
            continue

    if removed:
        logger.info("purged %d stale storage entries", removed)
    return removed


def _is_stale(key: str, raw: str, *, now_ms: int, max_age_ms: int) -> bool:
    owned = component_of(key) is not None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return owned
    if not isinstance(parsed, dict):
        return owned

    ts = parsed.get("timestamp")
    ttl = parsed.get("ttl")
    if _is_number(ts) and _is_number(ttl) and now_ms - ts > ttl:
        return True

    if not owned:
        return False
    stamps = [parsed[f] for f in _RECORD_TIMESTAMP_FIELDS if _is_number(parsed.get(f))]
    if not stamps:
        return True
    return now_ms - max(stamps) > max_age_ms


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class RecordStore(Generic[T]):
    """JSON records for one integrity component, keyed by SessionKey.

    Reads never raise: missing or corrupt values come back as None. Writes
    retry once after ``purge_stale_entries``; a second failure switches the
    store to memory-only mode for the rest of the session.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        component: str,
        clock: WallClock,
        decode: Callable[[str, dict[str, Any]], T],
        max_age_ms: int = SEVEN_DAYS_MS,
    ) -> None:
        self._store = store
        self._component = component
        self._clock = clock
        self._decode = decode
        self._max_age_ms = int(max_age_ms)
        self._memory_only = False

    @property
    def component(self) -> str:
        return self._component

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    def key_for(self, session_key: SessionKey) -> str:
        return record_key(self._component, session_key)

    def load(self, session_key: SessionKey) -> T | None:
        key = self.key_for(session_key)
        try:
            raw = self._store.get(key)
        except Exception:
            logger.warning("read failed for %s; treating as absent", key, exc_info=True)
            return None
        if raw is None:
            return None

        try:
            try:
                parsed = json.loads(raw)
            except ValueError as exc:
                raise PersistenceCorrupt(key, f"invalid JSON ({exc})") from exc
            if not isinstance(parsed, dict):
                raise PersistenceCorrupt(key, "expected a JSON object")
            return self._decode(key, parsed)
        except PersistenceCorrupt as exc:
            logger.warning("%s; reinitialising from defaults", exc)
            self._discard(key)
            return None

    def save(self, session_key: SessionKey, data: dict[str, Any]) -> bool:
        """Persist ``data``. Returns False when the write did not reach the store."""
        if self._memory_only:
            return False
        key = self.key_for(session_key)
        payload = json.dumps(data, separators=(",", ":"), sort_keys=True)
        try:
            self._store.set(key, payload)
            return True
        except Exception as first:
            logger.warning("write failed for %s (%s); cleaning up and retrying", key, first)

        purge_stale_entries(
            self._store,
            now_ms=self._clock.now_ms(),
            max_age_ms=self._max_age_ms,
            keep=(key,),
        )
        try:
            self._store.set(key, payload)
            return True
        except Exception as second:
            self._memory_only = True
            logger.error("%s; continuing in memory only", StorageWriteFailure(key, second))
            return False

    def remove(self, session_key: SessionKey) -> None:
        self._discard(self.key_for(session_key))

    def _discard(self, key: str) -> None:
        try:
            self._store.remove(key)
        except Exception:
            logger.warning("could not remove %s", key, exc_info=True)


def require_int(key: str, data: dict[str, Any], name: str, *, minimum: int = 0) -> int:
    """Fetch a non-negative integer field or raise PersistenceCorrupt."""
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PersistenceCorrupt(key, f"missing or non-numeric {name!r}")
    if value != value or value in (float("inf"), float("-inf")):
        raise PersistenceCorrupt(key, f"non-finite {name!r}")
    out = int(value)
    if out < minimum:
        raise PersistenceCorrupt(key, f"{name!r} below {minimum}")
    return out


def require_bool(key: str, data: dict[str, Any], name: str) -> bool:
    value = data.get(name)
    if not isinstance(value, bool):
        raise PersistenceCorrupt(key, f"missing or non-boolean {name!r}")
    return value
