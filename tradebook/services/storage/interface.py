"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for the local mirror.
This allows us to:
1. Swap SQLite for another embedded store later
2. Keep business logic decoupled from the storage implementation
3. Make every multi-table write explicit (it always happens in a transaction)

The interface is intentionally simple - we're not building a full ORM.
get/put/delete/query per table, plus rekey for id reconciliation.
No business validation happens at this layer.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel

from tradebook.models.audit import AuditEvent
from tradebook.models.ledger import Table


ModelT = TypeVar("ModelT", bound=BaseModel)
Predicate = Callable[[BaseModel], bool]


class StoreTransaction(ABC):
    """
    Reads and writes inside one local transaction.

    Everything done through a transaction commits together when the
    `async with` block exits normally, and rolls back if it raises.
    """

    @abstractmethod
    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        """
        Retrieve a record by id.

        Returns:
            The record if found, None otherwise
        """
        pass

    @abstractmethod
    async def put(self, table: Table, record: BaseModel) -> None:
        """
        Insert or replace a record, keyed by its id.

        Replacing keeps the record's original position in creation order.
        """
        pass

    @abstractmethod
    async def delete(self, table: Table, record_id: str) -> bool:
        """
        Remove a record permanently.

        Returns:
            True if a record was removed
        """
        pass

    @abstractmethod
    async def query(
        self,
        table: Table,
        predicate: Optional[Predicate] = None,
    ) -> list[BaseModel]:
        """
        List records matching a predicate, in creation order.

        Args:
            table: Table to scan
            predicate: Filter applied to each record; None returns all
        """
        pass

    @abstractmethod
    async def rekey(self, table: Table, old_id: str, new_id: str) -> bool:
        """
        Change a record's id in place.

        Returns:
            True if the record existed

        Raises:
            DuplicateError: If new_id is already taken
        """
        pass

    @abstractmethod
    async def clear(self, table: Table) -> int:
        """
        Remove every record of a table.

        Returns:
            Number of records removed
        """
        pass

    @abstractmethod
    async def count(self, table: Table) -> int:
        pass


class LocalStoreInterface(ABC):
    """
    Abstract interface for the local mirror store.

    Any local storage implementation must implement these methods.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        """
        Open a transaction.

        Usage:
            async with store.transaction() as tx:
                await tx.put(Table.CONTACTS, contact)

        Raises:
            StorageError: If the transaction cannot commit
        """
        pass

    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        """Single read in its own transaction."""
        async with self.transaction() as tx:
            return await tx.get(table, record_id)

    async def query(
        self,
        table: Table,
        predicate: Optional[Predicate] = None,
    ) -> list[BaseModel]:
        """Single query in its own transaction."""
        async with self.transaction() as tx:
            return await tx.query(table, predicate)

    async def put(self, table: Table, record: BaseModel) -> None:
        async with self.transaction() as tx:
            await tx.put(table, record)

    async def delete(self, table: Table, record_id: str) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(table, record_id)


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one sync pass).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
