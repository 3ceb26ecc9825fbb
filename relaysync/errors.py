"""
Error taxonomy for relaysync.

Every failure raised by the synchronization core derives from RelaySyncError so
callers (the CLI, the Synchronizer report) can tell core failures apart from
programming errors.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class RelaySyncError(Exception):
    """Base error for relaysync."""


class ConfigurationError(RelaySyncError):
    """Missing or invalid configuration (e.g. the store connection URI)."""


class StoreError(RelaySyncError):
    """Query or connection failure in the relay store."""


class ConstraintViolation(StoreError):
    """Unique / foreign key / check constraint rejected a write."""


class WriteError(RelaySyncError):
    """OS-level failure while opening, writing or closing an output file."""

    def __init__(self, message: str, path: Optional[Path | str] = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class DataIntegrityError(RelaySyncError):
    """Store returned data that violates the cursor invariants."""


def map_db_error(e: Exception) -> StoreError:
    import psycopg.errors as E

    if isinstance(e, (E.UniqueViolation, E.CheckViolation, E.ForeignKeyViolation)):
        return ConstraintViolation(str(e))
    return StoreError(str(e))


__all__ = [
    "RelaySyncError",
    "ConfigurationError",
    "StoreError",
    "ConstraintViolation",
    "WriteError",
    "DataIntegrityError",
    "map_db_error",
]
