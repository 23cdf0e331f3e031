"""
Outbox Queue

Durable FIFO of actions waiting to reach the remote store. It lives in
the local store's outbox table, so it survives restarts, and it is
written in the same transaction as the local change it describes.

DESIGN DECISION: Every method takes an optional open transaction.
The ledger manager passes its own, so a mutation and its outbox entry
commit or roll back together; standalone callers get a transaction each.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from tradebook.models.ledger import Table
from tradebook.models.outbox import OutboxEntry, SyncAction, replace_id
from tradebook.services.storage import LocalStoreInterface, StoreTransaction


class OutboxQueue:
    """Append-only, FIFO outbox over the local store."""

    def __init__(self, store: LocalStoreInterface):
        self._store = store

    @asynccontextmanager
    async def _tx(self, tx: Optional[StoreTransaction]) -> AsyncIterator[StoreTransaction]:
        if tx is not None:
            yield tx
        else:
            async with self._store.transaction() as own:
                yield own

    async def enqueue(
        self,
        action: SyncAction,
        tx: Optional[StoreTransaction] = None,
    ) -> OutboxEntry:
        """Append an action. Returns the stored entry (its id is the entry id)."""
        entry = OutboxEntry(action=action)
        async with self._tx(tx) as t:
            await t.put(Table.OUTBOX, entry)
        return entry

    async def peek_all(self, tx: Optional[StoreTransaction] = None) -> list[OutboxEntry]:
        """All entries, oldest first."""
        async with self._tx(tx) as t:
            return await t.query(Table.OUTBOX)

    async def get(
        self,
        entry_id: str,
        tx: Optional[StoreTransaction] = None,
    ) -> Optional[OutboxEntry]:
        async with self._tx(tx) as t:
            return await t.get(Table.OUTBOX, entry_id)

    async def remove(self, entry_id: str, tx: Optional[StoreTransaction] = None) -> bool:
        async with self._tx(tx) as t:
            return await t.delete(Table.OUTBOX, entry_id)

    async def count(self, tx: Optional[StoreTransaction] = None) -> int:
        async with self._tx(tx) as t:
            return await t.count(Table.OUTBOX)

    async def clear(self, tx: Optional[StoreTransaction] = None) -> int:
        async with self._tx(tx) as t:
            return await t.clear(Table.OUTBOX)

    async def rewrite_references(
        self,
        old_id: str,
        new_id: str,
        tx: Optional[StoreTransaction] = None,
    ) -> int:
        """
        Replace a reconciled pending id in every queued payload.

        Queue order is unchanged. Returns the number of entries rewritten.
        """
        rewritten = 0
        async with self._tx(tx) as t:
            for entry in await t.query(Table.OUTBOX):
                data = entry.model_dump(mode="json")
                updated = replace_id(data, old_id, new_id)
                if updated != data:
                    await t.put(Table.OUTBOX, OutboxEntry.model_validate(updated))
                    rewritten += 1
        return rewritten
