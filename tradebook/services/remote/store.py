"""
Table-Backed Remote Store

Implements every outbox action handler on top of a RemoteTableClient, so
any row store (a spreadsheet, an in-memory dict) can act as the remote
authoritative store.

DESIGN DECISION: The server side assigns ids, enforces references and
replays payments with the same allocation engine the device uses.

IDEMPOTENCY: Every applied action is recorded in a mutation_log table
under its idempotency_key, together with its result. A replayed action
(the device crashed after the remote applied it but before dequeuing)
returns the recorded result without touching any data.

Each applied action also appends a human-readable row to activity_log.
"""

import functools
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import structlog

from tradebook.engines.allocation import allocate
from tradebook.models.ledger import (
    CATEGORY_INITIAL_BALANCE,
    FOREIGN_KEYS,
    MONETARY_TABLES,
    SYNCED_TABLES,
    TABLE_MODELS,
    Category,
    LedgerEntry,
    LedgerType,
    Table,
    utc_now,
)
from tradebook.models.outbox import (
    SLOT_BANK,
    SLOT_CASH,
    SLOT_FINANCIAL,
    SLOT_INSTALLMENT,
    SLOT_LEDGER,
    SLOT_RECORD,
    SLOT_STOCK,
    BaseAction,
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
    replace_id,
)
from tradebook.services.remote.interface import (
    CreatedRecord,
    RemoteRejectionError,
    RemoteResult,
    RemoteStoreInterface,
    RemoteTableClient,
)


MUTATION_LOG = "mutation_log"
ACTIVITY_LOG = "activity_log"

HandlerResult = tuple[RemoteResult, str]


def idempotent(
    handler: Callable[[Any, Any], Awaitable[HandlerResult]],
) -> Callable[[Any, Any], Awaitable[RemoteResult]]:
    """
    Wrap a handler so a replayed action returns its recorded result.

    The wrapped handler returns (result, activity description).
    """
    @functools.wraps(handler)
    async def wrapper(self: "TableBackedRemoteStore", action: BaseAction) -> RemoteResult:
        previous = await self._recorded_result(action)
        if previous is not None:
            self._logger.info(
                "remote_replay_ignored",
                action=action.action,
                idempotency_key=action.idempotency_key,
            )
            return previous

        result, description = await handler(self, action)
        await self._record(action, result, description)
        return result

    return wrapper


class TableBackedRemoteStore(RemoteStoreInterface):
    """
    Remote authoritative store over plain tables.

    Rows are the JSON form of the ledger models, validated on every write.
    """

    def __init__(self, client: RemoteTableClient):
        self._client = client
        self._logger = structlog.get_logger(__name__)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    async def _recorded_result(self, action: BaseAction) -> Optional[RemoteResult]:
        for row in await self._client.fetch_rows(MUTATION_LOG):
            if row.get("id") == action.idempotency_key:
                return RemoteResult.model_validate(row["result"])
        return None

    async def _record(
        self,
        action: BaseAction,
        result: RemoteResult,
        description: str,
    ) -> None:
        now = utc_now().isoformat()
        await self._client.insert_rows(MUTATION_LOG, [{
            "id": action.idempotency_key,
            "action": action.action,
            "applied_at": now,
            "result": result.model_dump(mode="json"),
        }])
        await self._client.insert_rows(ACTIVITY_LOG, [{
            "id": uuid4().hex,
            "action": action.action,
            "description": description,
            "created_at": now,
        }])

    # -------------------------------------------------------------------------
    # Row helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _new_server_id() -> str:
        return str(uuid4())

    def _validated(self, table: Table, data: dict[str, Any], action_tag: str) -> dict[str, Any]:
        """Round-trip a row through its model, rejecting invalid data."""
        if table == Table.LEDGER_ENTRIES:
            # Status is derived from the amounts
            data = {**data, "status": None}
        try:
            return TABLE_MODELS[table].model_validate(data).model_dump(mode="json")
        except ValueError as e:
            raise RemoteRejectionError(f"Invalid {table.value} row: {e}", action_tag) from e

    async def _find(self, table: Table, record_id: str) -> Optional[dict[str, Any]]:
        for row in await self._client.fetch_rows(table.value):
            if row.get("id") == record_id:
                return row
        return None

    async def _require(self, table: Table, record_id: str, action_tag: str) -> dict[str, Any]:
        row = await self._find(table, record_id)
        if row is None:
            raise RemoteRejectionError(f"{table.value} {record_id} does not exist", action_tag)
        return row

    async def _check_references(
        self,
        table: Table,
        row: dict[str, Any],
        action_tag: str,
        also_existing: frozenset[str] = frozenset(),
    ) -> None:
        """Every foreign key must point at a row that exists remotely."""
        for field, targets in FOREIGN_KEYS.get(table, {}).items():
            value = row.get(field)
            if not value or value in also_existing:
                continue
            for target in targets:
                if await self._find(target, value) is not None:
                    break
            else:
                raise RemoteRejectionError(
                    f"{table.value}.{field} references missing record {value}",
                    action_tag,
                )

    async def _create(
        self,
        batch: list[tuple[str, Table, dict[str, Any]]],
        action_tag: str,
    ) -> dict[str, CreatedRecord]:
        """
        Insert records created together, assigning server ids.

        References between records of the same batch are rewritten to the
        new ids before anything is written.
        """
        id_map = {data["id"]: self._new_server_id() for _, _, data in batch}

        prepared: list[tuple[str, Table, dict[str, Any]]] = []
        for slot, table, data in batch:
            row = data
            for old_id, new_id in id_map.items():
                row = replace_id(row, old_id, new_id)
            prepared.append((slot, table, self._validated(table, row, action_tag)))

        new_ids = frozenset(id_map.values())
        for _, table, row in prepared:
            await self._check_references(table, row, action_tag, also_existing=new_ids)

        created: dict[str, CreatedRecord] = {}
        for slot, table, row in prepared:
            await self._client.insert_rows(table.value, [row])
            created[slot] = CreatedRecord(table=table, record=row)
        return created

    async def _update(
        self,
        table: Table,
        record_id: str,
        changes: dict[str, Any],
        action_tag: str,
    ) -> CreatedRecord:
        row = await self._require(table, record_id, action_tag)
        merged = self._validated(table, {**row, **changes, "id": record_id}, action_tag)
        await self._check_references(table, merged, action_tag)
        await self._client.update_row(table.value, merged)
        return CreatedRecord(table=table, record=merged)

    # -------------------------------------------------------------------------
    # Generic record handlers
    # -------------------------------------------------------------------------

    @idempotent
    async def create_record(self, action: CreateRecord) -> HandlerResult:
        created = await self._create([(SLOT_RECORD, action.table, action.data)], action.action)
        return (
            RemoteResult(created=created),
            f"Created {action.table.value} record {created[SLOT_RECORD].id}",
        )

    @idempotent
    async def update_record(self, action: UpdateRecord) -> HandlerResult:
        updated = await self._update(action.table, action.record_id, action.changes, action.action)
        return (
            RemoteResult(updated=[updated]),
            f"Updated {action.table.value} record {action.record_id}",
        )

    @idempotent
    async def soft_delete_record(self, action: SoftDeleteRecord) -> HandlerResult:
        updated = await self._update(
            action.table,
            action.record_id,
            {"deleted_at": action.deleted_at.isoformat()},
            action.action,
        )
        return (
            RemoteResult(updated=[updated]),
            f"Moved {action.table.value} record {action.record_id} to the recycle bin",
        )

    @idempotent
    async def restore_record(self, action: RestoreRecord) -> HandlerResult:
        updated = await self._update(
            action.table, action.record_id, {"deleted_at": None}, action.action,
        )
        return (
            RemoteResult(updated=[updated]),
            f"Restored {action.table.value} record {action.record_id}",
        )

    # -------------------------------------------------------------------------
    # Composite handlers
    # -------------------------------------------------------------------------

    async def _open_entries(self, contact_id: str, ledger_type: LedgerType) -> list[LedgerEntry]:
        entries = [
            LedgerEntry.model_validate(row)
            for row in await self._client.fetch_rows(Table.LEDGER_ENTRIES.value)
        ]
        return [
            entry for entry in entries
            if entry.is_active
            and entry.contact_id == contact_id
            and entry.type == ledger_type
            and entry.remaining > 0
        ]

    @idempotent
    async def settle_total(self, action: SettleTotal) -> HandlerResult:
        entries = await self._open_entries(action.contact_id, action.ledger_type)
        allocations = allocate(entries, action.amount)

        templates = {item["ledger_entry_id"]: item for item in action.installments}
        batch: list[tuple[str, Table, dict[str, Any]]] = [
            (SLOT_FINANCIAL, action.financial_table, action.financial),
        ]
        for allocation in allocations:
            base = templates.get(allocation.entry_id) or {
                "id": self._new_server_id(),
                "ledger_entry_id": allocation.entry_id,
                "date": action.date.isoformat(),
                "payment_method": action.payment_method.value,
                "monetary_tx_id": action.financial["id"],
            }
            batch.append((
                allocation.entry_id,
                Table.PAYMENT_INSTALLMENTS,
                {**base, "amount": str(allocation.applied)},
            ))
        created = await self._create(batch, action.action)

        updated = []
        for allocation in allocations:
            updated.append(await self._update(
                Table.LEDGER_ENTRIES,
                allocation.entry_id,
                {"paid_amount": str(allocation.paid_amount)},
                action.action,
            ))

        return (
            RemoteResult(created=created, updated=updated),
            f"Settled {action.amount} against {len(allocations)} "
            f"{action.ledger_type.value} entr{'y' if len(allocations) == 1 else 'ies'}",
        )

    @idempotent
    async def settle_direct(self, action: SettleDirect) -> HandlerResult:
        row = await self._require(Table.LEDGER_ENTRIES, action.ledger_entry_id, action.action)
        entry = LedgerEntry.model_validate(row)
        if not entry.is_active:
            raise RemoteRejectionError(
                f"Ledger entry {entry.id} is in the recycle bin", action.action,
            )
        if action.amount > entry.remaining:
            raise RemoteRejectionError(
                f"Payment {action.amount} exceeds remaining {entry.remaining}",
                action.action,
            )

        created = await self._create([
            (SLOT_FINANCIAL, action.financial_table, action.financial),
            (SLOT_INSTALLMENT, Table.PAYMENT_INSTALLMENTS, action.installment),
        ], action.action)
        updated = await self._update(
            Table.LEDGER_ENTRIES,
            entry.id,
            {"paid_amount": str(entry.paid_amount + action.amount)},
            action.action,
        )
        return (
            RemoteResult(created=created, updated=[updated]),
            f"Paid {action.amount} against ledger entry {entry.id}",
        )

    @idempotent
    async def record_advance(self, action: RecordAdvance) -> HandlerResult:
        created = await self._create([
            (SLOT_LEDGER, Table.LEDGER_ENTRIES, action.ledger),
            (SLOT_FINANCIAL, action.financial_table, action.financial),
        ], action.action)
        return (
            RemoteResult(created=created),
            f"Recorded advance {created[SLOT_LEDGER].id}",
        )

    @idempotent
    async def transfer_funds(self, action: TransferFunds) -> HandlerResult:
        created = await self._create([
            (SLOT_CASH, Table.CASH_TRANSACTIONS, action.cash),
            (SLOT_BANK, Table.BANK_TRANSACTIONS, action.bank),
        ], action.action)
        return (
            RemoteResult(created=created),
            f"Transferred {action.cash['actual_amount']} between cash and bank",
        )

    @idempotent
    async def set_initial_balances(self, action: SetInitialBalances) -> HandlerResult:
        now = utc_now().isoformat()
        updated = []
        for table in MONETARY_TABLES:
            for row in await self._client.fetch_rows(table.value):
                if row.get("category") == CATEGORY_INITIAL_BALANCE and not row.get("deleted_at"):
                    updated.append(await self._update(
                        table, row["id"], {"deleted_at": now}, action.action,
                    ))

        batch: list[tuple[str, Table, dict[str, Any]]] = []
        if action.cash is not None:
            batch.append((SLOT_CASH, Table.CASH_TRANSACTIONS, action.cash))
        for bank_id, data in action.banks.items():
            batch.append((bank_id, Table.BANK_TRANSACTIONS, data))
        created = await self._create(batch, action.action)

        return (
            RemoteResult(created=created, updated=updated),
            "Set initial cash and bank balances",
        )

    @idempotent
    async def delete_category(self, action: DeleteCategory) -> HandlerResult:
        row = await self._find(Table.CATEGORIES, action.category_id)
        if row is None:
            return RemoteResult(), f"Category {action.category_id} already gone"
        if not Category.model_validate(row).is_deletable:
            raise RemoteRejectionError(
                f"Category {row.get('name')} cannot be deleted", action.action,
            )
        affected = await self._client.delete_rows(Table.CATEGORIES.value, [action.category_id])
        return RemoteResult(affected=affected), f"Deleted category {row.get('name')}"

    @idempotent
    async def create_stock_transaction(self, action: CreateStockTransaction) -> HandlerResult:
        batch: list[tuple[str, Table, dict[str, Any]]] = [
            (SLOT_STOCK, Table.STOCK_TRANSACTIONS, action.stock),
        ]
        if action.financial is not None and action.financial_table is not None:
            batch.append((SLOT_FINANCIAL, action.financial_table, action.financial))
        if action.ledger is not None:
            batch.append((SLOT_LEDGER, Table.LEDGER_ENTRIES, action.ledger))
        created = await self._create(batch, action.action)

        stock = created[SLOT_STOCK].record
        return (
            RemoteResult(created=created),
            f"Recorded stock {stock['type']} of {stock['weight']}kg {stock['item_name']}",
        )

    @idempotent
    async def update_stock_transaction(self, action: UpdateStockTransaction) -> HandlerResult:
        updated = [await self._update(
            Table.STOCK_TRANSACTIONS, action.stock_tx_id, action.changes, action.action,
        )]
        if action.financial_id and action.financial_table is not None:
            updated.append(await self._update(
                action.financial_table,
                action.financial_id,
                action.financial_changes,
                action.action,
            ))
        if action.ledger_id:
            updated.append(await self._update(
                Table.LEDGER_ENTRIES, action.ledger_id, action.ledger_changes, action.action,
            ))
        return (
            RemoteResult(updated=updated),
            f"Edited stock transaction {action.stock_tx_id}",
        )

    # -------------------------------------------------------------------------
    # Bulk handlers
    # -------------------------------------------------------------------------

    @idempotent
    async def batch_import(self, action: BatchImport) -> HandlerResult:
        affected = 0
        for table, rows in action.tables.items():
            validated = [self._validated(table, row, action.action) for row in rows]
            await self._client.clear_table(table.value)
            if validated:
                await self._client.insert_rows(table.value, validated)
            affected += len(validated)
        return RemoteResult(affected=affected), f"Imported {affected} records"

    @idempotent
    async def delete_all(self, action: DeleteAll) -> HandlerResult:
        affected = 0
        for table in SYNCED_TABLES:
            affected += await self._client.clear_table(table.value)
        return RemoteResult(affected=affected), "Deleted all data"

    @idempotent
    async def empty_recycle_bin(self, action: EmptyRecycleBin) -> HandlerResult:
        affected = 0
        for table in SYNCED_TABLES:
            deleted = [
                row["id"]
                for row in await self._client.fetch_rows(table.value)
                if row.get("deleted_at")
            ]
            if deleted:
                affected += await self._client.delete_rows(table.value, deleted)
        return RemoteResult(affected=affected), f"Emptied recycle bin ({affected} records)"

    async def fetch_table(self, table: Table) -> list[dict[str, Any]]:
        return await self._client.fetch_rows(table.value)

