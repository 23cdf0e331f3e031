"""
Remote Store Package

The remote authoritative store: action handlers (TableBackedRemoteStore)
over a row backend (Google Sheets or in-memory).
"""

from tradebook.services.remote.interface import (
    AuthExpiredError,
    CreatedRecord,
    RemoteError,
    RemoteRejectionError,
    RemoteResult,
    RemoteStoreInterface,
    RemoteTableClient,
    TransientNetworkError,
)
from tradebook.services.remote.store import (
    ACTIVITY_LOG,
    MUTATION_LOG,
    TableBackedRemoteStore,
)
from tradebook.services.remote.memory import MemoryTableClient
from tradebook.services.remote.google_sheets import (
    GoogleSheetsTableClient,
    translate_error,
)

__all__ = [
    # Interfaces
    "RemoteStoreInterface",
    "RemoteTableClient",
    "CreatedRecord",
    "RemoteResult",
    # Exceptions
    "AuthExpiredError",
    "RemoteError",
    "RemoteRejectionError",
    "TransientNetworkError",
    # Implementations
    "ACTIVITY_LOG",
    "MUTATION_LOG",
    "GoogleSheetsTableClient",
    "MemoryTableClient",
    "TableBackedRemoteStore",
    "translate_error",
]
