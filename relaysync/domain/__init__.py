"""
Domain package for relaysync.

Exports the immutable records shared by the repository, the cursor, the
emitters and the Synchronizer. Keep this package focused on data definitions.
"""

from relaysync.domain.models import (
    SHARED_OWNER,
    ConnectionDescriptor,
    DomainRecord,
    RelayRecord,
    SyncSnapshot,
    UserRecord,
)

__all__ = [
    "SHARED_OWNER",
    "ConnectionDescriptor",
    "DomainRecord",
    "RelayRecord",
    "SyncSnapshot",
    "UserRecord",
]
