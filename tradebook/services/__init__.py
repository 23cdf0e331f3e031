"""Services package: local mirror store and remote authoritative store."""

from tradebook.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LocalAuditStorage,
    LocalStoreInterface,
    NotFoundError,
    SqliteLocalStore,
    StorageError,
    StoreTransaction,
)
from tradebook.services.remote import (
    AuthExpiredError,
    GoogleSheetsTableClient,
    MemoryTableClient,
    RemoteError,
    RemoteRejectionError,
    RemoteResult,
    RemoteStoreInterface,
    RemoteTableClient,
    TableBackedRemoteStore,
    TransientNetworkError,
)

__all__ = [
    # Local store
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "LocalAuditStorage",
    "LocalStoreInterface",
    "NotFoundError",
    "SqliteLocalStore",
    "StorageError",
    "StoreTransaction",
    # Remote store
    "AuthExpiredError",
    "GoogleSheetsTableClient",
    "MemoryTableClient",
    "RemoteError",
    "RemoteRejectionError",
    "RemoteResult",
    "RemoteStoreInterface",
    "RemoteTableClient",
    "TableBackedRemoteStore",
    "TransientNetworkError",
]
