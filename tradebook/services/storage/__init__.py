"""
Storage Services Package

Provides the abstract local store interface and its SQLite implementation.
The local store is the mirror every mutation lands in first; it also
holds the outbox and the audit log.
"""

from tradebook.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LocalStoreInterface,
    NotFoundError,
    StorageError,
    StoreTransaction,
)
from tradebook.services.storage.sqlite_store import (
    LOCAL_TABLE_MODELS,
    LocalAuditStorage,
    SqliteLocalStore,
    SqliteTransaction,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LocalStoreInterface",
    "StoreTransaction",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # SQLite implementation
    "LOCAL_TABLE_MODELS",
    "LocalAuditStorage",
    "SqliteLocalStore",
    "SqliteTransaction",
]
