"""
Infrastructure package for relaysync.

Centralizes I/O concerns: store connectivity and access, keyset pagination and
the backpressure-aware file writer. Keep this layer decoupled from emitter and
synchronizer logic.
"""

from relaysync.infrastructure.cursor import RelayCursor, next_page
from relaysync.infrastructure.db_factory import build_dsn, open_async_pool
from relaysync.infrastructure.repository import PostgresRepository, RelayRepository
from relaysync.infrastructure.writer import SequentialWriter, WriterState

__all__ = [
    "RelayCursor",
    "next_page",
    "build_dsn",
    "open_async_pool",
    "PostgresRepository",
    "RelayRepository",
    "SequentialWriter",
    "WriterState",
]
