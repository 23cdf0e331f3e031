"""
Shared fixtures.

Every test gets a fresh SQLite file under tmp_path and an in-memory
remote store. Async code is driven with asyncio.run inside the tests.
"""

import datetime as dt

import pytest

from tradebook.ledger import LedgerConsistencyManager
from tradebook.services.remote import (
    MemoryTableClient,
    TableBackedRemoteStore,
)
from tradebook.services.storage import SqliteLocalStore
from tradebook.sync import OutboxQueue, SyncProcessor


class FlakyTableClient(MemoryTableClient):
    """In-memory backend that raises the queued errors on its next reads."""

    def __init__(self, errors=None):
        super().__init__()
        self.errors = list(errors or [])

    async def fetch_rows(self, table):
        if self.errors:
            raise self.errors.pop(0)
        return await super().fetch_rows(table)


@pytest.fixture
def store(tmp_path):
    local = SqliteLocalStore(f"sqlite:///{tmp_path / 'tradebook.db'}", echo=False)
    yield local
    local.dispose()


@pytest.fixture
def remote_client():
    return FlakyTableClient()


@pytest.fixture
def remote(remote_client):
    return TableBackedRemoteStore(remote_client)


@pytest.fixture
def outbox(store):
    return OutboxQueue(store)


@pytest.fixture
def sync(store, outbox, remote):
    processor = SyncProcessor(store, outbox, remote, sync_on_enqueue=False)
    processor.state.is_online = True
    return processor


@pytest.fixture
def manager(store, outbox, sync):
    return LedgerConsistencyManager(store, outbox=outbox, sync=sync)


@pytest.fixture
def today():
    return dt.date(2024, 3, 1)
