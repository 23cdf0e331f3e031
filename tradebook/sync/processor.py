"""
Sync Processor

Delivers outbox entries to the remote store, oldest first, and folds the
server's answer back into the local mirror.

DESIGN DECISION: One pass at a time. process_queue() sets is_syncing
before its first await, so a second trigger that arrives mid-pass sees
the flag and returns immediately. The running pass keeps re-reading the
queue until nothing it can deliver is left, so work enqueued meanwhile is
still picked up.

PER ENTRY:
1. Deferred if its payload still mentions a pending id it does not create
   itself (its creator has not synced yet); it stays queued
2. Otherwise dispatched to the matching remote handler
3. Success: every pending id it created is swapped for the server id in
   the local record, in every local record referencing it and in every
   queued payload; then the entry is removed. All in one local transaction
4. TransientNetworkError (or any other unclassified RemoteError): stays
   queued, counted failed, the pass goes on
5. RemoteRejectionError: removed, counted rejected, reason reported
6. AuthExpiredError: the pass stops and the error propagates

Triggers: after each enqueue while online, and on going online.
There is no timer.
"""

import asyncio
from typing import Optional, assert_never
from uuid import UUID

import structlog

from tradebook.audit import AuditLogger, create_correlation_id
from tradebook.models.audit import AuditEventBuilder
from tradebook.models.identity import is_pending
from tradebook.models.ledger import (
    ESSENTIAL_CATEGORIES,
    REFERENCES_TO,
    SYNCED_TABLES,
    TABLE_MODELS,
    AppState,
    Category,
    Table,
    utc_now,
)
from tradebook.models.outbox import (
    BatchImport,
    CreateRecord,
    CreateStockTransaction,
    DeleteAll,
    DeleteCategory,
    EmptyRecycleBin,
    OutboxEntry,
    RecordAdvance,
    RestoreRecord,
    SetInitialBalances,
    SettleDirect,
    SettleTotal,
    SoftDeleteRecord,
    TransferFunds,
    UpdateRecord,
    UpdateStockTransaction,
    pending_references,
)
from tradebook.services.remote import (
    AuthExpiredError,
    RemoteError,
    RemoteRejectionError,
    RemoteResult,
    RemoteStoreInterface,
    TransientNetworkError,
)
from tradebook.services.storage import LocalStoreInterface, StoreTransaction
from tradebook.sync.outbox import OutboxQueue
from tradebook.sync.state import SyncReport, SyncState


logger = structlog.get_logger(__name__)


class SyncProcessor:
    """Drains the outbox into the remote store."""

    def __init__(
        self,
        store: LocalStoreInterface,
        outbox: OutboxQueue,
        remote: RemoteStoreInterface,
        state: Optional[SyncState] = None,
        audit_logger: Optional[AuditLogger] = None,
        sync_on_enqueue: bool = True,
    ):
        self._store = store
        self._outbox = outbox
        self._remote = remote
        self._audit_logger = audit_logger
        self._sync_on_enqueue = sync_on_enqueue
        self.state = state or SyncState()
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def notify_enqueued(self) -> None:
        """Start a background pass after a local commit, when online."""
        if self._sync_on_enqueue and self.state.is_online:
            self._schedule()

    async def set_online(self, is_online: bool) -> None:
        """Record a connectivity change; going online starts a pass."""
        was_online = self.state.is_online
        self.state.is_online = is_online
        if was_online == is_online:
            return

        logger.info("connectivity_changed", is_online=is_online)
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.connectivity_changed(is_online))
        if is_online:
            self._schedule()

    def _schedule(self) -> None:
        task = asyncio.get_running_loop().create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, AuthExpiredError):
            # Already recorded on the state by the pass itself
            logger.warning("background_sync_auth_expired", error=str(error))
        elif error is not None:
            logger.error("background_sync_failed", error=str(error), error_type=type(error).__name__)

    async def join(self) -> None:
        """Wait for every background pass started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # The pass
    # -------------------------------------------------------------------------

    async def process_queue(self, entry_id: Optional[str] = None) -> Optional[SyncReport]:
        """
        Run one sync pass.

        Args:
            entry_id: Deliver only this entry (urgent single-item sync)

        Returns:
            The pass report, or None when a pass is already running or
            the device is offline

        Raises:
            AuthExpiredError: Credentials must be renewed; the entry being
                delivered stays queued
        """
        if self.state.is_syncing or not self.state.is_online:
            return None
        self.state.is_syncing = True

        correlation_id = create_correlation_id()
        report = SyncReport(started_at=utc_now())
        try:
            queued = await self._outbox.count()
            logger.info("sync_started", queued=queued, entry_id=entry_id)
            if self._audit_logger:
                await self._audit_logger.log_sync_started(queued, correlation_id)

            await self._drain(report, correlation_id, entry_id)

            self.state.auth_expired = False
            self.state.last_sync = utc_now()
        finally:
            report.finished_at = utc_now()
            self.state.last_report = report
            self.state.is_syncing = False

        logger.info(
            "sync_completed",
            succeeded=report.succeeded,
            failed=report.failed,
            rejected=report.rejected,
            deferred=report.deferred,
        )
        if self._audit_logger:
            await self._audit_logger.log_sync_completed(
                report.succeeded, report.failed, report.rejected, report.deferred,
                correlation_id,
            )
        return report

    async def _drain(
        self,
        report: SyncReport,
        correlation_id: UUID,
        entry_id: Optional[str],
    ) -> None:
        """
        Deliver entries until a full read of the queue changes nothing.

        Deferred entries are looked at again after every delivery, since
        it may have reconciled the ids they were waiting for.
        """
        settled: set[str] = set()
        deferred: dict[str, OutboxEntry] = {}
        progress = True

        while progress:
            progress = False
            if entry_id is not None:
                single = await self._outbox.get(entry_id)
                entries = [single] if single is not None else []
            else:
                entries = await self._outbox.peek_all()

            for listed in entries:
                if listed.id in settled:
                    continue
                # Earlier deliveries in this pass may have rewritten it
                entry = await self._outbox.get(listed.id)
                if entry is None:
                    continue

                waiting = pending_references(entry.action)
                if waiting:
                    if listed.id not in deferred:
                        logger.info(
                            "sync_item_deferred",
                            entry_id=entry.id,
                            action=entry.action_tag,
                            waiting_for=sorted(waiting),
                        )
                        if self._audit_logger:
                            await self._audit_logger.log_item_deferred(
                                entry.id, entry.action_tag, sorted(waiting), correlation_id,
                            )
                    deferred[entry.id] = entry
                    continue

                deferred.pop(entry.id, None)
                settled.add(entry.id)
                await self._deliver(entry, report, correlation_id)
                progress = True

        report.deferred = len(deferred)

    async def _deliver(
        self,
        entry: OutboxEntry,
        report: SyncReport,
        correlation_id: UUID,
    ) -> None:
        try:
            result = await self._dispatch(entry)
        except TransientNetworkError as e:
            await self._record_failure(entry, e, report, correlation_id)
            return
        except RemoteRejectionError as e:
            await self._outbox.remove(entry.id)
            report.rejected += 1
            report.rejections.append(f"{entry.action_tag}: {e}")
            logger.warning(
                "sync_item_rejected", entry_id=entry.id, action=entry.action_tag, reason=str(e),
            )
            if self._audit_logger:
                await self._audit_logger.log_item_rejected(
                    entry.id, entry.action_tag, str(e), correlation_id,
                )
            return
        except AuthExpiredError as e:
            self.state.auth_expired = True
            logger.error("sync_auth_expired", entry_id=entry.id, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_auth_expired(str(e), correlation_id)
            raise
        except RemoteError as e:
            # Unclassified remote failure: kept for the next pass like a transient one
            await self._record_failure(entry, e, report, correlation_id)
            return

        await self._reconcile(entry, result, correlation_id)
        report.succeeded += 1
        logger.info("sync_item_applied", entry_id=entry.id, action=entry.action_tag)
        if self._audit_logger:
            await self._audit_logger.log_item_applied(entry.id, entry.action_tag, correlation_id)

    async def _record_failure(
        self,
        entry: OutboxEntry,
        error: RemoteError,
        report: SyncReport,
        correlation_id: UUID,
    ) -> None:
        """The entry stays queued; count and log the failure."""
        report.failed += 1
        logger.warning(
            "sync_item_failed",
            entry_id=entry.id,
            action=entry.action_tag,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._audit_logger:
            await self._audit_logger.log_item_failed(
                entry.id, entry.action_tag, str(error), correlation_id,
            )

    async def _dispatch(self, entry: OutboxEntry) -> RemoteResult:
        action = entry.action
        match action:
            case CreateRecord():
                return await self._remote.create_record(action)
            case UpdateRecord():
                return await self._remote.update_record(action)
            case SoftDeleteRecord():
                return await self._remote.soft_delete_record(action)
            case RestoreRecord():
                return await self._remote.restore_record(action)
            case SettleTotal():
                return await self._remote.settle_total(action)
            case SettleDirect():
                return await self._remote.settle_direct(action)
            case RecordAdvance():
                return await self._remote.record_advance(action)
            case TransferFunds():
                return await self._remote.transfer_funds(action)
            case SetInitialBalances():
                return await self._remote.set_initial_balances(action)
            case DeleteCategory():
                return await self._remote.delete_category(action)
            case CreateStockTransaction():
                return await self._remote.create_stock_transaction(action)
            case UpdateStockTransaction():
                return await self._remote.update_stock_transaction(action)
            case BatchImport():
                return await self._remote.batch_import(action)
            case DeleteAll():
                return await self._remote.delete_all(action)
            case EmptyRecycleBin():
                return await self._remote.empty_recycle_bin(action)
            case _:
                assert_never(action)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def _reconcile(
        self,
        entry: OutboxEntry,
        result: RemoteResult,
        correlation_id: UUID,
    ) -> None:
        """Swap in server ids and dequeue the entry, atomically."""
        reconciled: list[tuple[Table, str, str, int]] = []
        unmatched: list[tuple[str, str]] = []

        async with self._store.transaction() as tx:
            for slot, pending_id in entry.action.local_ids.items():
                if not is_pending(pending_id):
                    continue
                created = result.created.get(slot)
                if created is None:
                    unmatched.append((slot, pending_id))
                    continue
                rewritten = await self._rekey(tx, created.table, pending_id, created.id)
                rewritten += await self._outbox.rewrite_references(pending_id, created.id, tx)
                reconciled.append((created.table, pending_id, created.id, rewritten))
            await self._outbox.remove(entry.id, tx)

        for table, pending_id, server_id, rewritten in reconciled:
            logger.info(
                "id_reconciled",
                table=table.value,
                pending_id=pending_id,
                server_id=server_id,
                rewritten=rewritten,
            )
            if self._audit_logger:
                await self._audit_logger.log_id_reconciled(
                    table.value, pending_id, server_id, rewritten, correlation_id,
                )
        for slot, pending_id in unmatched:
            # The remote store did not create this record (e.g. it allocated
            # a settlement differently); it stays pending until a forced refresh
            logger.warning(
                "id_not_reconciled",
                entry_id=entry.id,
                action=entry.action_tag,
                slot=slot,
                pending_id=pending_id,
            )

    async def _rekey(
        self,
        tx: StoreTransaction,
        table: Table,
        pending_id: str,
        server_id: str,
    ) -> int:
        """
        Rename a local record and repoint every field referencing it.

        Returns the number of referencing records rewritten.
        """
        await tx.rekey(table, pending_id, server_id)

        rewritten = 0
        for source, field in REFERENCES_TO.get(table, ()):
            referencing = await tx.query(
                source, lambda r, f=field: getattr(r, f, None) == pending_id,
            )
            for record in referencing:
                await tx.put(source, record.model_copy(update={field: server_id}))
                rewritten += 1
        return rewritten

    # -------------------------------------------------------------------------
    # Mirror refresh
    # -------------------------------------------------------------------------

    async def refresh_mirror(self, force: bool = False) -> dict[str, int]:
        """
        Replace the local copies of the synced tables with the remote ones.

        The outbox is drained first. If anything is still queued afterwards
        the refresh is skipped (it would erase unsent changes) unless
        force is set.

        Returns:
            Rows mirrored per table (empty when skipped)

        Raises:
            AuthExpiredError: Credentials must be renewed
        """
        if not self.state.is_online:
            logger.info("mirror_refresh_skipped", reason="offline")
            return {}

        await self.process_queue()
        remaining = await self._outbox.count()
        if remaining and not force:
            logger.warning("mirror_refresh_skipped", queued=remaining)
            return {}

        remote_rows = {table: await self._remote.fetch_table(table) for table in SYNCED_TABLES}
        records = {
            table: [TABLE_MODELS[table].model_validate(row) for row in rows]
            for table, rows in remote_rows.items()
        }

        counts: dict[str, int] = {}
        async with self._store.transaction() as tx:
            for table, rows in records.items():
                await tx.clear(table)
                for record in rows:
                    await tx.put(table, record)
                counts[table.value] = len(rows)

            counts[Table.CATEGORIES.value] += await self._seed_categories(tx, records[Table.CATEGORIES])

            app_state = await tx.get(Table.APP_STATE, "1") or AppState()
            await tx.put(Table.APP_STATE, app_state.model_copy(update={"last_sync": utc_now()}))

        self.state.last_sync = utc_now()
        logger.info("mirror_refreshed", **counts)
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.mirror_refreshed(counts))
        return counts

    async def _seed_categories(self, tx: StoreTransaction, existing: list[Category]) -> int:
        """
        Add missing essential categories to the local mirror.

        They are local only and get a fixed id, so every refresh finds
        the same rows again.
        """
        present = {(c.name, c.type, c.direction) for c in existing}
        seeded = 0
        for name, category_type, direction in ESSENTIAL_CATEGORIES:
            if (name, category_type, direction) in present:
                continue
            slug = name.lower().replace("/", "").replace(" ", "-")
            await tx.put(Table.CATEGORIES, Category(
                id=f"essential-{category_type.value}-{direction.value}-{slug}",
                name=name, type=category_type, direction=direction, is_deletable=False,
            ))
            seeded += 1
        return seeded
