"""Tests for the SQLite local mirror store and the outbox queue."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from tradebook.audit import AuditLogger
from tradebook.models import AuditEventBuilder, Contact, Table
from tradebook.models.outbox import CreateRecord, UpdateRecord
from tradebook.services.storage import (
    DuplicateError,
    LocalAuditStorage,
    SqliteLocalStore,
    StorageError,
)


class TestSqliteLocalStore:
    """Tests for SqliteLocalStore."""

    def test_put_get_round_trip(self, store):
        contact = Contact(name="Rahim Traders")

        async def scenario():
            await store.put(Table.CONTACTS, contact)
            return await store.get(Table.CONTACTS, contact.id)

        assert asyncio.run(scenario()) == contact

    def test_put_overwrites_in_place(self, store):
        """Updating a record keeps its creation order."""
        first, second = Contact(name="A"), Contact(name="B")

        async def scenario():
            await store.put(Table.CONTACTS, first)
            await store.put(Table.CONTACTS, second)
            await store.put(Table.CONTACTS, first.model_copy(update={"name": "A2"}))
            return await store.query(Table.CONTACTS)

        assert [c.name for c in asyncio.run(scenario())] == ["A2", "B"]

    def test_query_with_predicate(self, store):
        async def scenario():
            for name in ("Karim", "Kamal", "Rahim"):
                await store.put(Table.CONTACTS, Contact(name=name))
            return await store.query(Table.CONTACTS, lambda c: c.name.startswith("K"))

        assert [c.name for c in asyncio.run(scenario())] == ["Karim", "Kamal"]

    def test_transaction_rolls_back_on_error(self, store):
        """Nothing written inside a failed transaction survives."""
        contact = Contact(name="Ghost")

        async def scenario():
            with pytest.raises(RuntimeError):
                async with store.transaction() as tx:
                    await tx.put(Table.CONTACTS, contact)
                    raise RuntimeError("boom")
            return await store.get(Table.CONTACTS, contact.id)

        assert asyncio.run(scenario()) is None

    def test_rekey_keeps_order_and_data(self, store):
        first, second = Contact(name="First"), Contact(name="Second")

        async def scenario():
            await store.put(Table.CONTACTS, first)
            await store.put(Table.CONTACTS, second)
            async with store.transaction() as tx:
                assert await tx.rekey(Table.CONTACTS, first.id, "srv-1")
            return await store.query(Table.CONTACTS)

        records = asyncio.run(scenario())
        assert [r.id for r in records] == ["srv-1", second.id]
        assert records[0].name == "First"

    def test_rekey_missing_record(self, store):
        async def scenario():
            async with store.transaction() as tx:
                return await tx.rekey(Table.CONTACTS, "tmp_missing", "srv")

        assert asyncio.run(scenario()) is False

    def test_rekey_onto_existing_id_fails(self, store):
        async def scenario():
            await store.put(Table.CONTACTS, Contact(id="srv-1", name="Taken"))
            pending = Contact(name="New")
            await store.put(Table.CONTACTS, pending)
            async with store.transaction() as tx:
                await tx.rekey(Table.CONTACTS, pending.id, "srv-1")

        with pytest.raises(DuplicateError):
            asyncio.run(scenario())

    def test_clear_and_count(self, store):
        async def scenario():
            await store.put(Table.CONTACTS, Contact(name="A"))
            await store.put(Table.CONTACTS, Contact(name="B"))
            async with store.transaction() as tx:
                before = await tx.count(Table.CONTACTS)
                removed = await tx.clear(Table.CONTACTS)
                after = await tx.count(Table.CONTACTS)
            return before, removed, after

        assert asyncio.run(scenario()) == (2, 2, 0)

    def test_survives_reopen(self, tmp_path):
        """Records are durable in the SQLite file."""
        url = f"sqlite:///{tmp_path / 'durable.db'}"
        contact = Contact(name="Durable")

        async def write():
            first = SqliteLocalStore(url, echo=False)
            await first.put(Table.CONTACTS, contact)
            first.dispose()

        async def read():
            second = SqliteLocalStore(url, echo=False)
            found = await second.get(Table.CONTACTS, contact.id)
            second.dispose()
            return found

        asyncio.run(write())
        assert asyncio.run(read()) == contact


class TestOutboxQueue:
    """Tests for OutboxQueue."""

    def test_fifo_order(self, outbox):
        async def scenario():
            for name in ("a", "b", "c"):
                await outbox.enqueue(UpdateRecord(
                    table=Table.CONTACTS, record_id="c1", changes={"name": name},
                ))
            return await outbox.peek_all()

        entries = asyncio.run(scenario())
        assert [e.action.changes["name"] for e in entries] == ["a", "b", "c"]

    def test_remove(self, outbox):
        async def scenario():
            entry = await outbox.enqueue(UpdateRecord(
                table=Table.CONTACTS, record_id="c1", changes={"name": "x"},
            ))
            removed = await outbox.remove(entry.id)
            return removed, await outbox.count()

        assert asyncio.run(scenario()) == (True, 0)

    def test_enqueue_joins_open_transaction(self, store, outbox):
        """An entry enqueued in a failed transaction is rolled back with it."""
        async def scenario():
            with pytest.raises(RuntimeError):
                async with store.transaction() as tx:
                    await outbox.enqueue(UpdateRecord(
                        table=Table.CONTACTS, record_id="c1", changes={},
                    ), tx)
                    raise RuntimeError("boom")
            return await outbox.count()

        assert asyncio.run(scenario()) == 0

    def test_rewrite_references(self, outbox):
        """Queued payloads pick up a reconciled id; order is unchanged."""
        async def scenario():
            create = await outbox.enqueue(CreateRecord(
                table=Table.CONTACTS,
                data={"id": "tmp_c", "name": "Rahim"},
                local_ids={"record": "tmp_c"},
            ))
            update = await outbox.enqueue(UpdateRecord(
                table=Table.CONTACTS, record_id="tmp_c", changes={"name": "R"},
            ))
            other = await outbox.enqueue(UpdateRecord(
                table=Table.CONTACTS, record_id="srv-9", changes={"name": "Z"},
            ))
            rewritten = await outbox.rewrite_references("tmp_c", "srv-1")
            return rewritten, [create.id, update.id, other.id], await outbox.peek_all()

        rewritten, ids, entries = asyncio.run(scenario())
        assert rewritten == 2
        assert [e.id for e in entries] == ids
        assert entries[1].action.record_id == "srv-1"
        assert entries[0].action.local_ids == {"record": "srv-1"}
        assert entries[2].action.record_id == "srv-9"


class TestLocalAuditStorage:
    """Tests for audit persistence in the local store."""

    def test_events_persisted_newest_first(self, store):
        audit = AuditLogger(LocalAuditStorage(store))

        async def scenario():
            await audit.log(AuditEventBuilder.connectivity_changed(True))
            await audit.log(AuditEventBuilder.connectivity_changed(False))
            return await LocalAuditStorage(store).get_recent_events()

        events = asyncio.run(scenario())
        assert [e.details["is_online"] for e in events] == [False, True]

    def test_failed_write_does_not_raise(self, store, monkeypatch):
        """Audit persistence problems never break the caller."""
        @asynccontextmanager
        async def broken_transaction():
            raise StorageError("disk full")
            yield

        monkeypatch.setattr(store, "transaction", broken_transaction)
        storage = LocalAuditStorage(store)

        result = asyncio.run(storage.append_event(AuditEventBuilder.connectivity_changed(True)))

        assert result is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
