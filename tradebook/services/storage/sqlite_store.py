"""
SQLite Local Mirror Store

DESIGN DECISION: SQLite (through SQLAlchemy Core) is the local mirror because:
1. It is embedded - no server, works fully offline
2. It is durable - the outbox survives restarts and crashes
3. It is transactional - a composite mutation commits or rolls back as a whole

Every table has the same three columns:
- seq:  autoincrement, records creation order (ties in date sort use it)
- id:   the record's id, pending or confirmed, unique per table
- data: the record's JSON form

TRADEOFFS:
- Queries filter in Python (fine for a small business's books)
- No SQL-level foreign keys; references are declared on the models and
  rewritten by the sync processor when ids are reconciled
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    MetaData,
    String,
    Table as SqlTable,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from tradebook.config import get_settings
from tradebook.models.audit import AuditEvent
from tradebook.models.ledger import TABLE_MODELS, Table
from tradebook.models.outbox import OutboxEntry
from tradebook.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LocalStoreInterface,
    Predicate,
    StorageError,
    StoreTransaction,
)


logger = structlog.get_logger(__name__)

# Every local table and the model its rows validate into
LOCAL_TABLE_MODELS: dict[Table, type[BaseModel]] = {
    **TABLE_MODELS,
    Table.OUTBOX: OutboxEntry,
    Table.AUDIT_LOG: AuditEvent,
}


def _define_table(metadata: MetaData, table: Table) -> SqlTable:
    return SqlTable(
        table.value,
        metadata,
        Column("seq", Integer, primary_key=True, autoincrement=True),
        Column("id", String, nullable=False, unique=True, index=True),
        Column("data", JSON, nullable=False),
    )


class SqliteTransaction(StoreTransaction):
    """StoreTransaction bound to one open SQLAlchemy connection."""

    def __init__(self, conn: Connection, tables: dict[Table, SqlTable]):
        self._conn = conn
        self._tables = tables

    def _load(self, table: Table, data: dict) -> BaseModel:
        return LOCAL_TABLE_MODELS[table].model_validate(data)

    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        sql_table = self._tables[table]
        row = self._conn.execute(
            select(sql_table.c.data).where(sql_table.c.id == record_id)
        ).first()
        return None if row is None else self._load(table, row.data)

    async def put(self, table: Table, record: BaseModel) -> None:
        sql_table = self._tables[table]
        record_id = record.id
        data = record.model_dump(mode="json")
        result = self._conn.execute(
            update(sql_table).where(sql_table.c.id == record_id).values(data=data)
        )
        if result.rowcount == 0:
            self._conn.execute(insert(sql_table).values(id=record_id, data=data))

    async def delete(self, table: Table, record_id: str) -> bool:
        sql_table = self._tables[table]
        result = self._conn.execute(
            delete(sql_table).where(sql_table.c.id == record_id)
        )
        return result.rowcount > 0

    async def query(
        self,
        table: Table,
        predicate: Optional[Predicate] = None,
    ) -> list[BaseModel]:
        sql_table = self._tables[table]
        rows = self._conn.execute(
            select(sql_table.c.data).order_by(sql_table.c.seq)
        ).all()
        records = [self._load(table, row.data) for row in rows]
        if predicate is None:
            return records
        return [record for record in records if predicate(record)]

    async def rekey(self, table: Table, old_id: str, new_id: str) -> bool:
        sql_table = self._tables[table]
        row = self._conn.execute(
            select(sql_table.c.data).where(sql_table.c.id == old_id)
        ).first()
        if row is None:
            return False
        if old_id == new_id:
            return True

        taken = self._conn.execute(
            select(sql_table.c.seq).where(sql_table.c.id == new_id)
        ).first()
        if taken is not None:
            raise DuplicateError(f"{table.value} already has a record {new_id}")

        data = dict(row.data)
        data["id"] = new_id
        self._conn.execute(
            update(sql_table)
            .where(sql_table.c.id == old_id)
            .values(id=new_id, data=data)
        )
        return True

    async def clear(self, table: Table) -> int:
        result = self._conn.execute(delete(self._tables[table]))
        return result.rowcount

    async def count(self, table: Table) -> int:
        sql_table = self._tables[table]
        return self._conn.execute(
            select(func.count()).select_from(sql_table)
        ).scalar_one()


class SqliteLocalStore(LocalStoreInterface):
    """
    Local mirror store backed by a SQLite file.

    Tables are created on first use. Pass database_url explicitly in tests;
    otherwise TRADEBOOK_LOCAL_DATABASE_URL (or its default) is used.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: Optional[bool] = None,
    ):
        if database_url is None or echo is None:
            settings = get_settings().local_store
            database_url = database_url or settings.database_url
            echo = settings.echo_sql if echo is None else echo

        engine_kwargs: dict = {}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # One shared connection, otherwise each checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool

        self._engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
            future=True,
            **engine_kwargs,
        )
        self._metadata = MetaData()
        self._tables = {table: _define_table(self._metadata, table) for table in Table}

        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to initialize local store: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteTransaction]:
        try:
            with self._engine.begin() as conn:
                yield SqliteTransaction(conn, self._tables)
        except SQLAlchemyError as e:
            raise StorageError(f"Local store transaction failed: {e}") from e

    def dispose(self) -> None:
        """Close pooled connections (e.g. before deleting the file)."""
        self._engine.dispose()


class LocalAuditStorage(AuditStorageInterface):
    """
    Audit log kept in the local store's audit_log table.

    Audit events are append-only.
    """

    def __init__(self, store: LocalStoreInterface):
        self._store = store

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            async with self._store.transaction() as tx:
                await tx.put(Table.AUDIT_LOG, event)
            return True
        except StorageError as e:
            # Audit logging must not break the main flow
            logger.warning(
                "audit_event_not_persisted",
                error=str(e),
                event_id=str(event.event_id),
            )
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = await self._store.query(
            Table.AUDIT_LOG,
            lambda e: e.correlation_id == correlation_id,
        )
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = await self._store.query(
            Table.AUDIT_LOG,
            lambda e: e.entity_type == entity_type and e.entity_id == entity_id,
        )
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = await self._store.query(Table.AUDIT_LOG)
        # Newest first; creation order breaks timestamp ties
        return list(reversed(events))[:limit]
