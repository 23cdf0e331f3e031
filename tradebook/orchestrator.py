"""
Main Orchestrator for Tradebook

Ties the components together:
1. Local mirror store (SQLite) and its outbox
2. Ledger Consistency Manager (every user mutation)
3. Sync processor over the remote store (Google Sheets, or in-memory)
4. Audit logger persisting into the local store

DESIGN DECISION: The app works without a remote store. When the remote
backend is not configured the components are built without a sync
processor: mutations still commit locally and queue in the outbox, and
are delivered once a remote store is wired in.
"""

from typing import Optional

import structlog

from tradebook.audit import AuditLogger, configure_logging
from tradebook.config import get_settings
from tradebook.engines import BalanceCalculator
from tradebook.ledger import LedgerConsistencyManager
from tradebook.services.remote import (
    GoogleSheetsTableClient,
    MemoryTableClient,
    RemoteTableClient,
    TableBackedRemoteStore,
)
from tradebook.services.storage import LocalAuditStorage, SqliteLocalStore
from tradebook.sync import OutboxQueue, SyncProcessor, SyncState
from tradebook.validation import LedgerValidator


logger = structlog.get_logger(__name__)


class LedgerApp:
    """Everything a UI needs, wired together."""

    def __init__(
        self,
        store: SqliteLocalStore,
        manager: LedgerConsistencyManager,
        outbox: OutboxQueue,
        audit_logger: AuditLogger,
        sync: Optional[SyncProcessor] = None,
    ):
        self.store = store
        self.manager = manager
        self.outbox = outbox
        self.audit_logger = audit_logger
        self.sync = sync

    @property
    def state(self) -> Optional[SyncState]:
        return self.sync.state if self.sync else None

    async def start(self, online: Optional[bool] = None) -> None:
        """
        Load balances from the local store and set the initial connectivity.

        Args:
            online: Override TRADEBOOK_SYNC_START_ONLINE
        """
        await self.manager.refresh_balances()
        if self.sync is None:
            return
        if online is None:
            online = get_settings().sync.start_online
        await self.sync.set_online(online)

    async def shutdown(self) -> None:
        """Let running sync passes finish, then release the database."""
        if self.sync is not None:
            await self.sync.join()
        self.store.dispose()


def create_app_components(
    use_remote: bool = True,
    database_url: Optional[str] = None,
    remote_client: Optional[RemoteTableClient] = None,
) -> LedgerApp:
    """
    Factory function to create all application components.

    Args:
        use_remote: Whether to sync with a remote store at all.
                    Set to False for a purely local book.
        database_url: SQLite URL of the local mirror (default from settings)
        remote_client: Row backend for the remote store. Defaults to
                    Google Sheets; pass a MemoryTableClient for testing.

    Returns:
        The wired LedgerApp
    """
    settings = get_settings()
    configure_logging(settings.app.log_level)

    store = SqliteLocalStore(database_url)
    outbox = OutboxQueue(store)
    audit_logger = AuditLogger(LocalAuditStorage(store))

    sync = None
    if use_remote:
        if remote_client is None:
            try:
                remote_client = GoogleSheetsTableClient()
            except ValueError as e:
                # Remote not configured - continue local only
                logger.warning("remote_store_not_configured", error=str(e))
        if remote_client is not None:
            sync = SyncProcessor(
                store,
                outbox,
                TableBackedRemoteStore(remote_client),
                audit_logger=audit_logger,
                sync_on_enqueue=settings.sync.sync_on_enqueue,
            )

    manager = LedgerConsistencyManager(
        store,
        outbox=outbox,
        validator=LedgerValidator(),
        calculator=BalanceCalculator(store),
        audit_logger=audit_logger,
        sync=sync,
    )

    return LedgerApp(store, manager, outbox, audit_logger, sync)


def create_local_test_app(database_url: str = "sqlite://") -> LedgerApp:
    """An app over an in-memory remote store, for tests and demos."""
    return create_app_components(
        use_remote=True,
        database_url=database_url,
        remote_client=MemoryTableClient(),
    )
