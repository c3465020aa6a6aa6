"""
Data Sync System
Per-connection incremental Slack workspace sync

Only errors and records are imported here; app.core.circuit_breakers
depends on this package.
"""
from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    PersistenceError,
    ProviderError,
    SyncAlreadyInProgressError,
    SyncError,
)
from app.services.sync.records import SyncMode

__all__ = [
    "ConnectionInactiveError",
    "ConnectionNotFoundError",
    "PersistenceError",
    "ProviderError",
    "SyncAlreadyInProgressError",
    "SyncError",
    "SyncMode",
]
