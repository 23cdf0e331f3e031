"""
Remote Authoritative Store Interface

DESIGN DECISION: Two layers, each an ABC:

1. RemoteStoreInterface - one async handler per outbox action. This is
   what the sync processor talks to. Handlers return the records they
   created, keyed by the slot names the action declared, so the caller
   can reconcile its pending ids.
2. RemoteTableClient - plain row storage (fetch/insert/update/delete per
   table). Backends (Google Sheets, in-memory) only implement this layer.

Failures are typed, because the sync processor treats them differently:
- TransientNetworkError: keep the entry queued, try again next trigger
- AuthExpiredError: stop and tell the session layer
- RemoteRejectionError: drop the entry and tell the user
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from tradebook.models.ledger import Table
from tradebook.models.outbox import (
    BatchImport,
    CreateRecord,
    CreateStockTransaction,
    DeleteAll,
    DeleteCategory,
    EmptyRecycleBin,
    RecordAdvance,
    RestoreRecord,
    SetInitialBalances,
    SettleDirect,
    SettleTotal,
    SoftDeleteRecord,
    TransferFunds,
    UpdateRecord,
    UpdateStockTransaction,
)


class CreatedRecord(BaseModel):
    """A record as stored remotely, with its server-assigned id."""

    table: Table
    record: dict[str, Any]

    @property
    def id(self) -> str:
        return self.record["id"]


class RemoteResult(BaseModel):
    """What a handler did."""

    created: dict[str, CreatedRecord] = Field(
        default_factory=dict,
        description="slot -> created record, matching the action's local_ids"
    )
    updated: list[CreatedRecord] = Field(default_factory=list)
    affected: int = Field(default=0, description="Rows touched by bulk handlers")


class RemoteStoreInterface(ABC):
    """
    Abstract interface for the remote authoritative store.

    Every handler must be safe to call twice with the same action
    (same idempotency_key): the second call returns the first call's result.
    """

    @abstractmethod
    async def create_record(self, action: CreateRecord) -> RemoteResult:
        """
        Insert one record.

        Raises:
            RemoteRejectionError: If a referenced record does not exist
        """
        pass

    @abstractmethod
    async def update_record(self, action: UpdateRecord) -> RemoteResult:
        """
        Merge changes into an existing record.

        Raises:
            RemoteRejectionError: If the record does not exist
        """
        pass

    @abstractmethod
    async def soft_delete_record(self, action: SoftDeleteRecord) -> RemoteResult:
        pass

    @abstractmethod
    async def restore_record(self, action: RestoreRecord) -> RemoteResult:
        pass

    @abstractmethod
    async def settle_total(self, action: SettleTotal) -> RemoteResult:
        """
        Record one payment and spread it over the contact's open entries,
        oldest first.
        """
        pass

    @abstractmethod
    async def settle_direct(self, action: SettleDirect) -> RemoteResult:
        """
        Record one payment against one entry.

        Raises:
            RemoteRejectionError: If the payment exceeds what is owed
        """
        pass

    @abstractmethod
    async def record_advance(self, action: RecordAdvance) -> RemoteResult:
        pass

    @abstractmethod
    async def transfer_funds(self, action: TransferFunds) -> RemoteResult:
        pass

    @abstractmethod
    async def set_initial_balances(self, action: SetInitialBalances) -> RemoteResult:
        pass

    @abstractmethod
    async def delete_category(self, action: DeleteCategory) -> RemoteResult:
        pass

    @abstractmethod
    async def create_stock_transaction(
        self,
        action: CreateStockTransaction,
    ) -> RemoteResult:
        """Create a stock movement together with its financial record or ledger entry."""
        pass

    @abstractmethod
    async def update_stock_transaction(
        self,
        action: UpdateStockTransaction,
    ) -> RemoteResult:
        pass

    @abstractmethod
    async def batch_import(self, action: BatchImport) -> RemoteResult:
        pass

    @abstractmethod
    async def delete_all(self, action: DeleteAll) -> RemoteResult:
        pass

    @abstractmethod
    async def empty_recycle_bin(self, action: EmptyRecycleBin) -> RemoteResult:
        pass

    @abstractmethod
    async def fetch_table(self, table: Table) -> list[dict[str, Any]]:
        """
        Read every row of a table (deleted rows included), for mirroring.
        """
        pass


class RemoteTableClient(ABC):
    """
    Row-level access to the remote backend.

    Rows are JSON-compatible dicts with an "id" key.
    """

    @abstractmethod
    async def fetch_rows(self, table: str) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def update_row(self, table: str, row: dict[str, Any]) -> bool:
        """
        Replace the row with the same id.

        Returns:
            False if no such row exists
        """
        pass

    @abstractmethod
    async def delete_rows(self, table: str, row_ids: list[str]) -> int:
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> int:
        pass


class RemoteError(Exception):
    """Base exception for remote store operations."""
    pass


class TransientNetworkError(RemoteError):
    """Remote unreachable or temporarily failing. Safe to retry later."""
    pass


class AuthExpiredError(RemoteError):
    """The session is no longer valid. Retrying cannot succeed."""
    pass


class RemoteRejectionError(RemoteError):
    """The remote store refused the operation for a domain reason."""

    def __init__(self, message: str, action_tag: str = ""):
        self.action_tag = action_tag
        super().__init__(message)
