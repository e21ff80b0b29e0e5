"""Failure taxonomy for the integrity components.

Every class here is raised and caught inside the package; callers of the
public components never see them.
"""

from __future__ import annotations


class IntegrityError(Exception):
    """Base class for recoverable integrity failures."""


class PersistenceCorrupt(IntegrityError):
    """A stored record is not valid JSON or lacks required fields."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"corrupt record at {key!r}: {reason}")
        self.key = key
        self.reason = reason


class HostApiUnavailable(IntegrityError):
    """A navigation or visibility host API is missing or throwing."""


class StorageWriteFailure(IntegrityError):
    """A persistence write failed even after cleanup and one retry."""

    def __init__(self, key: str, cause: BaseException | None = None) -> None:
        super().__init__(f"could not persist {key!r}: {cause}")
        self.key = key
        self.cause = cause
