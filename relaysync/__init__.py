"""
relaysync - regenerate Postfix configuration from a relational relay store.

The package exports a relay store (users, domains and alias relays kept in
PostgreSQL) into the files Postfix reads:

- main.cf, with the virtual lookup pointers
- the virtual domain lookup map
- the alias lookup map, as a live-query map or pre-rendered from the store

The export streams relays page by page through a keyset cursor and writes
through a backpressure-aware sequential writer, so memory stays bounded no
matter how many relays exist.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from relaysync.config import Settings, get_settings
from relaysync.errors import (
    ConfigurationError,
    DataIntegrityError,
    RelaySyncError,
    StoreError,
    WriteError,
)
from relaysync.synchronizer import SyncReport, SyncState, Synchronizer, synchronize
from relaysync.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Synchronization
    "SyncReport",
    "SyncState",
    "Synchronizer",
    "synchronize",
    # Errors
    "RelaySyncError",
    "ConfigurationError",
    "StoreError",
    "WriteError",
    "DataIntegrityError",
    # Logging
    "configure_logging",
    "get_logger",
]
