"""
Ledger Consistency Manager

Every user-level mutation goes through here. Each operation:

1. Validates its input (schema, then against the local store)
2. Writes every record it touches AND its outbox entries in ONE local
   transaction - all of it commits, or none of it does
3. Recomputes the derived balances from the committed state
4. Tells the sync processor there is something to deliver

DESIGN DECISION: Composite operations (a stock purchase and its payment,
a transfer's two legs, a settlement and its installments) are queued as
ONE composite action. The remote store creates the whole group or
nothing, so the two stores can never hold half of a group. Deletes and
restores queue one entry per record.

Records created here get pending ids. Each queued action names them
(local_ids) so the sync processor can swap in the server ids later.
"""

import datetime as dt
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Union

from pydantic import BaseModel, Field

from tradebook.audit import AuditLogger, create_correlation_id
from tradebook.engines.allocation import allocate, apply_allocations
from tradebook.engines.balances import BalanceCalculator, BalanceSnapshot
from tradebook.models.audit import AuditEventBuilder
from tradebook.models.identity import new_pending_id
from tradebook.models.ledger import (
    CATEGORY_ADVANCE_PAYMENT,
    CATEGORY_ADVANCE_RECEIVED,
    CATEGORY_AP_SETTLEMENT,
    CATEGORY_AR_SETTLEMENT,
    CATEGORY_FUNDS_TRANSFER,
    CATEGORY_INITIAL_BALANCE,
    CATEGORY_STOCK_PURCHASE,
    CATEGORY_STOCK_SALE,
    COUNTERPART_FIELDS,
    FOREIGN_KEYS,
    MONETARY_TABLES,
    REFERENCES_TO,
    SYNCED_TABLES,
    TABLE_MODELS,
    AppState,
    Bank,
    BankTransaction,
    BankTxType,
    CashTransaction,
    CashTxType,
    Category,
    CategoryDirection,
    CategoryType,
    Contact,
    ContactType,
    InitialStockItem,
    LedgerEntry,
    LedgerType,
    PaymentInstallment,
    PaymentMethod,
    Record,
    StockTransaction,
    StockTxType,
    Table,
    attach_installments,
    monetary_table,
    money,
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
    SyncAction,
    TransferFunds,
    UpdateRecord,
    UpdateStockTransaction,
)
from tradebook.models.validation import PayloadValidationError, ValidationIssue
from tradebook.services.storage import LocalStoreInterface, StoreTransaction
from tradebook.sync.outbox import OutboxQueue
from tradebook.validation import LedgerValidator

if TYPE_CHECKING:
    from tradebook.sync.processor import SyncProcessor


MonetaryRecord = Union[CashTransaction, BankTransaction]

_STOCK_EDIT_FIELDS = (
    "date", "item_name", "weight", "price_per_kg", "contact_id", "description",
    "expected_amount", "actual_amount", "difference", "difference_reason",
)
_FINANCIAL_EDIT_FIELDS = (
    "date", "contact_id", "expected_amount", "actual_amount", "difference", "difference_reason",
)
_MONETARY_EDITABLE = frozenset({
    "date", "description", "category", "contact_id",
    "expected_amount", "actual_amount", "difference_reason",
})


# =============================================================================
# RESULTS
# =============================================================================

class StockRecording(BaseModel):
    """A stock movement and the record it owns."""
    stock: StockTransaction
    financial: Optional[MonetaryRecord] = None
    ledger: Optional[LedgerEntry] = None


class PaymentRecording(BaseModel):
    """A settlement: the money movement, its installments, the entries it paid."""
    financial: MonetaryRecord
    installments: list[PaymentInstallment] = Field(default_factory=list)
    entries: list[LedgerEntry] = Field(default_factory=list)


class AdvanceRecording(BaseModel):
    ledger: LedgerEntry
    financial: MonetaryRecord


class TransferRecording(BaseModel):
    cash: CashTransaction
    bank: BankTransaction


def _json_subset(record: BaseModel, fields: tuple[str, ...]) -> dict[str, Any]:
    data = record.model_dump(mode="json")
    return {field: data[field] for field in fields}


def _dump(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json")


# =============================================================================
# UNIT OF WORK
# =============================================================================

class _Operation:
    """Records written and actions queued by one operation."""

    def __init__(self, name: str, tx: StoreTransaction):
        self.name = name
        self.tx = tx
        self.written: list[tuple[str, str]] = []
        self.actions: list[SyncAction] = []
        self.entries: list[OutboxEntry] = []

    async def put(self, table: Table, record: BaseModel) -> None:
        await self.tx.put(table, record)
        self.written.append((table.value, record.id))

    async def create(self, table: Table, record: BaseModel) -> None:
        """Write a single new record and queue its creation."""
        await self.put(table, record)
        self.queue(CreateRecord(
            table=table,
            data=_dump(record),
            local_ids={SLOT_RECORD: record.id},
        ))

    def queue(self, action: SyncAction) -> None:
        self.actions.append(action)


class LedgerConsistencyManager:
    """
    Atomic multi-record writes plus their outbox entries.

    All collaborators are injectable; only the local store is required.
    """

    def __init__(
        self,
        store: LocalStoreInterface,
        outbox: Optional[OutboxQueue] = None,
        validator: Optional[LedgerValidator] = None,
        calculator: Optional[BalanceCalculator] = None,
        audit_logger: Optional[AuditLogger] = None,
        sync: Optional["SyncProcessor"] = None,
    ):
        self._store = store
        self._outbox = outbox or OutboxQueue(store)
        self._validator = validator or LedgerValidator()
        self._calculator = calculator or BalanceCalculator(store)
        self._audit_logger = audit_logger
        self._sync = sync

    def attach_sync(self, sync: "SyncProcessor") -> None:
        self._sync = sync

    @property
    def balances(self) -> BalanceSnapshot:
        """Balances as of the last committed operation."""
        return self._calculator.snapshot

    async def refresh_balances(self) -> BalanceSnapshot:
        """Recompute balances from the local store (e.g. at startup)."""
        return await self._calculator.refresh()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[_Operation]:
        """
        One local transaction holding the writes and their outbox entries.

        Anything raised inside rolls the whole operation back.
        """
        try:
            async with self._store.transaction() as tx:
                op = _Operation(name, tx)
                yield op
                for action in op.actions:
                    op.entries.append(await self._outbox.enqueue(action, tx))
        except PayloadValidationError as e:
            if self._audit_logger:
                await self._audit_logger.log_validation_failed(
                    name, [issue.model_dump() for issue in e.issues],
                )
            raise

        await self._after_commit(op)

    async def _after_commit(self, op: _Operation) -> None:
        await self._calculator.refresh()

        if self._audit_logger:
            correlation_id = create_correlation_id()
            await self._audit_logger.log_mutation(op.name, op.written, correlation_id)
            for entry in op.entries:
                await self._audit_logger.log_enqueued(entry.id, entry.action_tag, correlation_id)

        if op.entries and self._sync is not None:
            self._sync.notify_enqueued()

    def _reject(self, operation: str, field: str, issue_type: str, message: str) -> PayloadValidationError:
        return PayloadValidationError(operation, [ValidationIssue(
            field=field, issue_type=issue_type, message=message,
        )])

    async def _require_active(
        self,
        op: _Operation,
        table: Table,
        record_id: Optional[str],
        field: str,
    ) -> Record:
        record, issues = await self._validator.find_active(op.tx, table, record_id, field)
        self._validator.require(op.name, issues)
        return record

    def _build_financial(
        self,
        operation: str,
        table: Table,
        inflow: bool,
        amount: Decimal,
        date: dt.date,
        category: str,
        description: str = "",
        expected_amount: Optional[Decimal] = None,
        **links: Any,
    ) -> MonetaryRecord:
        """A cash or bank transaction moving `amount` in or out."""
        fields = dict(
            date=date,
            expected_amount=amount if expected_amount is None else expected_amount,
            actual_amount=amount,
            category=category,
            description=description,
            **links,
        )
        if table == Table.CASH_TRANSACTIONS:
            fields.pop("bank_id", None)
            fields["type"] = CashTxType.INCOME if inflow else CashTxType.EXPENSE
            return self._validator.build(operation, CashTransaction, **fields)
        fields["type"] = BankTxType.DEPOSIT if inflow else BankTxType.WITHDRAWAL
        return self._validator.build(operation, BankTransaction, **fields)

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    async def add_contact(
        self,
        name: str,
        contact_type: ContactType = ContactType.BOTH,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Contact:
        operation = "add_contact"
        contact = self._validator.build(
            operation, Contact,
            name=name, contact_type=contact_type, phone=phone, address=address,
        )
        async with self._operation(operation) as op:
            await op.create(Table.CONTACTS, contact)
        return contact

    async def add_bank(self, name: str, account_number: Optional[str] = None) -> Bank:
        operation = "add_bank"
        bank = self._validator.build(operation, Bank, name=name, account_number=account_number)
        async with self._operation(operation) as op:
            await op.create(Table.BANKS, bank)
        return bank

    async def add_category(
        self,
        name: str,
        category_type: CategoryType,
        direction: CategoryDirection,
    ) -> Category:
        operation = "add_category"
        category = self._validator.build(
            operation, Category, name=name, type=category_type, direction=direction,
        )
        async with self._operation(operation) as op:
            await op.create(Table.CATEGORIES, category)
        return category

    async def add_initial_stock_item(
        self,
        item_name: str,
        weight: Decimal,
        price_per_kg: Decimal,
    ) -> InitialStockItem:
        operation = "add_initial_stock_item"
        item = self._validator.build(
            operation, InitialStockItem,
            item_name=item_name, weight=weight, price_per_kg=price_per_kg,
        )
        async with self._operation(operation) as op:
            await op.create(Table.INITIAL_STOCK, item)
        return item

    # -------------------------------------------------------------------------
    # Plain money movements and ledger entries
    # -------------------------------------------------------------------------

    async def add_monetary_transaction(
        self,
        method: PaymentMethod,
        inflow: bool,
        amount: Decimal,
        date: dt.date,
        category: str,
        description: str = "",
        contact_id: Optional[str] = None,
        bank_id: Optional[str] = None,
        expected_amount: Optional[Decimal] = None,
        difference_reason: Optional[str] = None,
    ) -> MonetaryRecord:
        """Income/expense in cash, or deposit/withdrawal in a bank."""
        operation = "add_monetary_transaction"
        expected = amount if expected_amount is None else expected_amount
        self._validator.require(
            operation,
            self._validator.check_settlement_method(method, bank_id),
            self._validator.check_override(expected, amount, difference_reason),
            stage="schema",
        )
        table = monetary_table(method)
        record = self._build_financial(
            operation, table, inflow, amount, date, category, description,
            expected_amount=expected,
            contact_id=contact_id,
            bank_id=bank_id,
            difference_reason=difference_reason,
        )
        async with self._operation(operation) as op:
            self._validator.require(
                operation, await self._validator.check_references(op.tx, table, record),
            )
            await op.create(table, record)
        return record

    async def add_ledger_entry(
        self,
        ledger_type: LedgerType,
        contact_id: str,
        amount: Decimal,
        date: dt.date,
        description: str = "",
    ) -> LedgerEntry:
        """A manual payable or receivable, e.g. a loan."""
        operation = "add_ledger_entry"
        self._validator.require(
            operation,
            self._validator.check_ledger_type(ledger_type),
            self._validator.check_amount("amount", amount),
            stage="schema",
        )
        async with self._operation(operation) as op:
            contact = await self._require_active(op, Table.CONTACTS, contact_id, "contact_id")
            entry = self._validator.build(
                operation, LedgerEntry,
                type=ledger_type,
                date=date,
                description=description,
                amount=amount,
                contact_id=contact.id,
                contact_name=contact.name,
            )
            await op.create(Table.LEDGER_ENTRIES, entry)
        return entry

    async def edit_monetary_transaction(
        self,
        table: Table,
        tx_id: str,
        **changes: Any,
    ) -> MonetaryRecord:
        """
        Edit descriptive fields or the amount of a cash/bank transaction.

        Amounts of transactions owned by a stock movement or a transfer are
        changed through those operations instead.
        """
        operation = "edit_monetary_transaction"
        if table not in MONETARY_TABLES:
            raise self._reject(operation, "table", "invalid_value", f"{table.value} is not a money table")
        unknown = set(changes) - _MONETARY_EDITABLE
        if unknown:
            raise self._reject(
                operation, ",".join(sorted(unknown)), "not_editable",
                "These fields cannot be edited",
            )

        async with self._operation(operation) as op:
            current = await self._require_active(op, table, tx_id, "tx_id")
            amount_change = {"expected_amount", "actual_amount"} & set(changes)
            if amount_change and (current.linked_stock_tx_id or current.counterpart_id):
                raise self._reject(
                    operation, "actual_amount", "linked",
                    "This amount belongs to a stock transaction or transfer; edit that instead",
                )

            merged = {**current.model_dump(), **changes, "difference": None}
            updated = self._validator.build(operation, type(current), **merged)
            self._validator.require(
                operation,
                self._validator.check_override(
                    updated.expected_amount, updated.actual_amount, updated.difference_reason,
                ),
                await self._validator.check_references(op.tx, table, updated),
            )
            await op.put(table, updated)
            fields = tuple(sorted(set(changes) | {"difference"}))
            op.queue(UpdateRecord(
                table=table,
                record_id=updated.id,
                changes=_json_subset(updated, fields),
            ))
        return updated

    # -------------------------------------------------------------------------
    # Stock
    # -------------------------------------------------------------------------

    async def record_stock_transaction(
        self,
        date: dt.date,
        item_name: str,
        tx_type: StockTxType,
        weight: Decimal,
        price_per_kg: Decimal,
        payment_method: PaymentMethod,
        contact_id: Optional[str] = None,
        bank_id: Optional[str] = None,
        actual_amount: Optional[Decimal] = None,
        difference_reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> StockRecording:
        """
        Record a purchase or sale with what it owns.

        - cash/bank: one money movement linked by linked_stock_tx_id
        - credit: one unpaid payable (purchase) or receivable (sale)

        The amount is weight x price unless actual_amount overrides it,
        in which case difference_reason is required.
        """
        operation = "record_stock_transaction"
        expected = money(weight * price_per_kg)
        actual = expected if actual_amount is None else money(actual_amount)
        self._validator.require(
            operation,
            self._validator.check_override(expected, actual, difference_reason),
            stage="schema",
        )
        stock = self._validator.build(
            operation, StockTransaction,
            date=date,
            item_name=item_name,
            type=tx_type,
            weight=weight,
            price_per_kg=price_per_kg,
            payment_method=payment_method,
            contact_id=contact_id,
            bank_id=bank_id if payment_method == PaymentMethod.BANK else None,
            expected_amount=expected,
            actual_amount=actual,
            difference_reason=difference_reason,
            description=description,
        )
        is_purchase = tx_type == StockTxType.PURCHASE
        summary = description or f"{tx_type.value.capitalize()} of {weight}kg {item_name}"

        async with self._operation(operation) as op:
            self._validator.require(
                operation,
                await self._validator.check_references(op.tx, Table.STOCK_TRANSACTIONS, stock),
            )
            contact_name = ""
            if contact_id:
                contact = await op.tx.get(Table.CONTACTS, contact_id)
                contact_name = contact.name

            recording = StockRecording(stock=stock)
            action = CreateStockTransaction(
                stock=_dump(stock),
                local_ids={SLOT_STOCK: stock.id},
            )

            if payment_method == PaymentMethod.CREDIT:
                ledger = self._validator.build(
                    operation, LedgerEntry,
                    type=LedgerType.PAYABLE if is_purchase else LedgerType.RECEIVABLE,
                    date=date,
                    description=summary,
                    amount=actual,
                    contact_id=contact_id,
                    contact_name=contact_name,
                    linked_stock_tx_id=stock.id,
                )
                recording.ledger = ledger
                action.ledger = _dump(ledger)
                action.local_ids[SLOT_LEDGER] = ledger.id
            else:
                table = monetary_table(payment_method)
                financial = self._build_financial(
                    operation, table,
                    inflow=not is_purchase,
                    amount=actual,
                    date=date,
                    category=CATEGORY_STOCK_PURCHASE if is_purchase else CATEGORY_STOCK_SALE,
                    description=summary,
                    expected_amount=expected,
                    difference_reason=difference_reason,
                    contact_id=contact_id,
                    bank_id=bank_id,
                    linked_stock_tx_id=stock.id,
                )
                recording.financial = financial
                action.financial_table = table
                action.financial = _dump(financial)
                action.local_ids[SLOT_FINANCIAL] = financial.id

            await op.put(Table.STOCK_TRANSACTIONS, stock)
            if recording.ledger is not None:
                await op.put(Table.LEDGER_ENTRIES, recording.ledger)
            if recording.financial is not None:
                await op.put(action.financial_table, recording.financial)
            op.queue(action)
        return recording

    async def _owned_by_stock(
        self,
        tx: StoreTransaction,
        stock_tx_id: str,
    ) -> tuple[Optional[Table], Optional[MonetaryRecord], Optional[LedgerEntry]]:
        for table in MONETARY_TABLES:
            found = await tx.query(
                table, lambda r: r.is_active and r.linked_stock_tx_id == stock_tx_id,
            )
            if found:
                return table, found[0], None
        ledgers = await tx.query(
            Table.LEDGER_ENTRIES,
            lambda r: r.is_active and r.linked_stock_tx_id == stock_tx_id,
        )
        return None, None, ledgers[0] if ledgers else None

    async def edit_stock_transaction(
        self,
        stock_tx_id: str,
        date: Optional[dt.date] = None,
        item_name: Optional[str] = None,
        weight: Optional[Decimal] = None,
        price_per_kg: Optional[Decimal] = None,
        actual_amount: Optional[Decimal] = None,
        difference_reason: Optional[str] = None,
        description: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> StockRecording:
        """
        Edit a stock movement; the new amount flows to what it owns.

        expected_amount is recomputed from weight x price. actual_amount
        follows it unless overridden (with a reason). The linked money
        movement gets the same amounts and contact; a linked credit entry
        gets the new amount, contact and a re-derived status.
        """
        operation = "edit_stock_transaction"

        async with self._operation(operation) as op:
            current = await self._require_active(
                op, Table.STOCK_TRANSACTIONS, stock_tx_id, "stock_tx_id",
            )
            new_weight = current.weight if weight is None else weight
            new_price = current.price_per_kg if price_per_kg is None else price_per_kg
            new_date = current.date if date is None else date
            expected = money(new_weight * new_price)
            actual = expected if actual_amount is None else money(actual_amount)
            reason = difference_reason if actual != expected else None

            self._validator.require(
                operation,
                self._validator.check_override(expected, actual, reason),
            )
            stock = self._validator.build(operation, StockTransaction, **{
                **current.model_dump(),
                "date": new_date,
                "item_name": current.item_name if item_name is None else item_name,
                "weight": new_weight,
                "price_per_kg": new_price,
                "contact_id": current.contact_id if contact_id is None else contact_id,
                "description": current.description if description is None else description,
                "expected_amount": expected,
                "actual_amount": actual,
                "difference": None,
                "difference_reason": reason,
            })
            self._validator.require(
                operation,
                await self._validator.check_references(op.tx, Table.STOCK_TRANSACTIONS, stock),
            )

            contact_name = ""
            if stock.contact_id:
                contact = await op.tx.get(Table.CONTACTS, stock.contact_id)
                contact_name = contact.name

            table, financial, ledger = await self._owned_by_stock(op.tx, stock.id)
            action = UpdateStockTransaction(
                stock_tx_id=stock.id,
                changes=_json_subset(stock, _STOCK_EDIT_FIELDS),
            )
            recording = StockRecording(stock=stock)

            if financial is not None:
                financial = self._validator.build(operation, type(financial), **{
                    **financial.model_dump(),
                    "date": new_date,
                    "contact_id": stock.contact_id,
                    "expected_amount": expected,
                    "actual_amount": actual,
                    "difference": None,
                    "difference_reason": reason,
                })
                await op.put(table, financial)
                recording.financial = financial
                action.financial_table = table
                action.financial_id = financial.id
                action.financial_changes = _json_subset(financial, _FINANCIAL_EDIT_FIELDS)

            if ledger is not None:
                self._validator.require(
                    operation, self._validator.check_amount_covers_paid(ledger, actual),
                )
                ledger = self._validator.build(operation, LedgerEntry, **{
                    **ledger.model_dump(),
                    "date": new_date,
                    "amount": actual,
                    "status": None,
                    "contact_id": stock.contact_id,
                    "contact_name": contact_name,
                })
                await op.put(Table.LEDGER_ENTRIES, ledger)
                recording.ledger = ledger
                action.ledger_id = ledger.id
                action.ledger_changes = _json_subset(
                    ledger, ("date", "amount", "status", "contact_id", "contact_name"),
                )

            await op.put(Table.STOCK_TRANSACTIONS, stock)
            op.queue(action)
        return recording

    # -------------------------------------------------------------------------
    # Settlements and advances
    # -------------------------------------------------------------------------

    async def record_payment(
        self,
        contact_id: str,
        ledger_type: LedgerType,
        amount: Decimal,
        date: dt.date,
        payment_method: PaymentMethod,
        bank_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentRecording:
        """
        Settle a contact's payables (or receivables), oldest first.

        One money movement for the whole amount, one installment per entry
        it reaches. Paying more than is owed is allowed; the excess stays
        unallocated.
        """
        operation = "record_payment"
        self._validator.require(
            operation,
            self._validator.check_ledger_type(ledger_type),
            self._validator.check_amount("amount", amount),
            self._validator.check_settlement_method(payment_method, bank_id),
            stage="schema",
        )
        is_receivable = ledger_type == LedgerType.RECEIVABLE

        async with self._operation(operation) as op:
            contact = await self._require_active(op, Table.CONTACTS, contact_id, "contact_id")
            entries = await op.tx.query(
                Table.LEDGER_ENTRIES,
                lambda e: (
                    e.is_active
                    and e.contact_id == contact_id
                    and e.type == ledger_type
                    and e.remaining > 0
                ),
            )
            self._validator.require(operation, self._validator.check_outstanding(entries, amount))

            table = monetary_table(payment_method)
            financial = self._build_financial(
                operation, table,
                inflow=is_receivable,
                amount=amount,
                date=date,
                category=CATEGORY_AR_SETTLEMENT if is_receivable else CATEGORY_AP_SETTLEMENT,
                description=description or (
                    f"Payment from {contact.name}" if is_receivable else f"Payment to {contact.name}"
                ),
                contact_id=contact_id,
                bank_id=bank_id,
            )
            self._validator.require(
                operation, await self._validator.check_references(op.tx, table, financial),
            )

            allocations = allocate(entries, amount)
            installments = [
                self._validator.build(
                    operation, PaymentInstallment,
                    ledger_entry_id=allocation.entry_id,
                    amount=allocation.applied,
                    date=date,
                    payment_method=payment_method,
                    monetary_tx_id=financial.id,
                )
                for allocation in allocations
            ]
            updated = apply_allocations(entries, allocations)

            await op.put(table, financial)
            for installment in installments:
                await op.put(Table.PAYMENT_INSTALLMENTS, installment)
            for entry in updated:
                await op.put(Table.LEDGER_ENTRIES, entry)

            op.queue(SettleTotal(
                contact_id=contact_id,
                ledger_type=ledger_type,
                amount=amount,
                date=date,
                payment_method=payment_method,
                financial_table=table,
                financial=_dump(financial),
                installments=[_dump(i) for i in installments],
                local_ids={
                    SLOT_FINANCIAL: financial.id,
                    **{i.ledger_entry_id: i.id for i in installments},
                },
            ))
        return PaymentRecording(financial=financial, installments=installments, entries=updated)

    async def record_direct_payment(
        self,
        ledger_entry_id: str,
        amount: Decimal,
        date: dt.date,
        payment_method: PaymentMethod,
        bank_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentRecording:
        """Settle one chosen entry. Paying more than it owes is rejected."""
        operation = "record_direct_payment"
        self._validator.require(
            operation,
            self._validator.check_amount("amount", amount),
            self._validator.check_settlement_method(payment_method, bank_id),
            stage="schema",
        )

        async with self._operation(operation) as op:
            entry = await self._require_active(
                op, Table.LEDGER_ENTRIES, ledger_entry_id, "ledger_entry_id",
            )
            self._validator.require(operation, self._validator.check_payment_fits(entry, amount))

            is_receivable = entry.type == LedgerType.RECEIVABLE
            table = monetary_table(payment_method)
            financial = self._build_financial(
                operation, table,
                inflow=is_receivable,
                amount=amount,
                date=date,
                category=CATEGORY_AR_SETTLEMENT if is_receivable else CATEGORY_AP_SETTLEMENT,
                description=description or f"Payment for {entry.description or entry.id}",
                contact_id=entry.contact_id,
                bank_id=bank_id,
                linked_ledger_id=entry.id,
            )
            self._validator.require(
                operation, await self._validator.check_references(op.tx, table, financial),
            )
            installment = self._validator.build(
                operation, PaymentInstallment,
                ledger_entry_id=entry.id,
                amount=amount,
                date=date,
                payment_method=payment_method,
                monetary_tx_id=financial.id,
            )
            updated = entry.revalued(paid_amount=entry.paid_amount + amount)

            await op.put(table, financial)
            await op.put(Table.PAYMENT_INSTALLMENTS, installment)
            await op.put(Table.LEDGER_ENTRIES, updated)
            op.queue(SettleDirect(
                ledger_entry_id=entry.id,
                amount=amount,
                financial_table=table,
                financial=_dump(financial),
                installment=_dump(installment),
                local_ids={SLOT_FINANCIAL: financial.id, SLOT_INSTALLMENT: installment.id},
            ))
        return PaymentRecording(financial=financial, installments=[installment], entries=[updated])

    async def record_advance(
        self,
        contact_id: str,
        ledger_type: LedgerType,
        amount: Decimal,
        date: dt.date,
        payment_method: PaymentMethod,
        bank_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AdvanceRecording:
        """
        Record money paid to a vendor (payable side) or received from a
        client (receivable side) ahead of any invoice.

        Creates an advance ledger entry (negative amount, already paid) and
        the money movement that funded it, linked by advance_id.
        """
        operation = "record_advance"
        self._validator.require(
            operation,
            self._validator.check_ledger_type(ledger_type),
            self._validator.check_amount("amount", amount),
            self._validator.check_settlement_method(payment_method, bank_id),
            stage="schema",
        )
        is_receivable = ledger_type == LedgerType.RECEIVABLE

        async with self._operation(operation) as op:
            contact = await self._require_active(op, Table.CONTACTS, contact_id, "contact_id")
            summary = description or (
                f"Advance from {contact.name}" if is_receivable else f"Advance to {contact.name}"
            )
            ledger = self._validator.build(
                operation, LedgerEntry,
                type=LedgerType.ADVANCE,
                date=date,
                description=summary,
                amount=-amount,
                contact_id=contact.id,
                contact_name=contact.name,
            )
            table = monetary_table(payment_method)
            financial = self._build_financial(
                operation, table,
                inflow=is_receivable,
                amount=amount,
                date=date,
                category=CATEGORY_ADVANCE_RECEIVED if is_receivable else CATEGORY_ADVANCE_PAYMENT,
                description=summary,
                contact_id=contact.id,
                bank_id=bank_id,
                advance_id=ledger.id,
            )
            self._validator.require(
                operation,
                await self._validator.check_references(
                    op.tx, table, financial, created_together=frozenset({ledger.id}),
                ),
            )

            await op.put(Table.LEDGER_ENTRIES, ledger)
            await op.put(table, financial)
            op.queue(RecordAdvance(
                ledger=_dump(ledger),
                financial_table=table,
                financial=_dump(financial),
                local_ids={SLOT_LEDGER: ledger.id, SLOT_FINANCIAL: financial.id},
            ))
        return AdvanceRecording(ledger=ledger, financial=financial)

    # -------------------------------------------------------------------------
    # Cash <-> bank
    # -------------------------------------------------------------------------

    async def transfer_funds(
        self,
        source: PaymentMethod,
        amount: Decimal,
        date: dt.date,
        bank_id: str,
        description: Optional[str] = None,
    ) -> TransferRecording:
        """Move money from cash to a bank or back; two legs, same date."""
        operation = "transfer_funds"
        self._validator.require(
            operation,
            self._validator.check_amount("amount", amount),
            self._validator.check_settlement_method(source, bank_id),
            stage="schema",
        )
        from_cash = source == PaymentMethod.CASH
        note = description or "Funds Transfer"
        cash_id, bank_tx_id = new_pending_id(), new_pending_id()

        cash = self._build_financial(
            operation, Table.CASH_TRANSACTIONS,
            inflow=not from_cash,
            amount=amount,
            date=date,
            category=CATEGORY_FUNDS_TRANSFER,
            description=f"Transfer to Bank: {note}" if from_cash else f"Transfer from Bank: {note}",
            id=cash_id,
            counterpart_id=bank_tx_id,
        )
        bank = self._build_financial(
            operation, Table.BANK_TRANSACTIONS,
            inflow=from_cash,
            amount=amount,
            date=date,
            category=CATEGORY_FUNDS_TRANSFER,
            description=f"Transfer from Cash: {note}" if from_cash else f"Transfer to Cash: {note}",
            id=bank_tx_id,
            bank_id=bank_id,
            counterpart_id=cash_id,
        )

        async with self._operation(operation) as op:
            await self._require_active(op, Table.BANKS, bank_id, "bank_id")
            await op.put(Table.CASH_TRANSACTIONS, cash)
            await op.put(Table.BANK_TRANSACTIONS, bank)
            op.queue(TransferFunds(
                cash=_dump(cash),
                bank=_dump(bank),
                local_ids={SLOT_CASH: cash.id, SLOT_BANK: bank.id},
            ))
        return TransferRecording(cash=cash, bank=bank)

    async def set_initial_balances(
        self,
        cash: Decimal,
        bank_totals: dict[str, Decimal],
        date: dt.date,
    ) -> list[MonetaryRecord]:
        """
        Replace the opening balances.

        Earlier opening-balance rows move to the recycle bin; one cash row
        and one row per bank take their place.
        """
        operation = "set_initial_balances"
        now = utc_now()
        created: list[MonetaryRecord] = []

        async with self._operation(operation) as op:
            for bank_id in bank_totals:
                await self._require_active(op, Table.BANKS, bank_id, "bank_totals")

            for table in MONETARY_TABLES:
                previous = await op.tx.query(
                    table,
                    lambda r: r.is_active and r.category == CATEGORY_INITIAL_BALANCE,
                )
                for record in previous:
                    await op.put(table, record.model_copy(update={"deleted_at": now}))

            cash_row = self._build_financial(
                operation, Table.CASH_TRANSACTIONS,
                inflow=True,
                amount=cash,
                date=date,
                category=CATEGORY_INITIAL_BALANCE,
                description="Initial cash balance set.",
            )
            await op.put(Table.CASH_TRANSACTIONS, cash_row)
            created.append(cash_row)

            bank_rows: dict[str, dict[str, Any]] = {}
            local_ids = {SLOT_CASH: cash_row.id}
            for bank_id, total in bank_totals.items():
                row = self._build_financial(
                    operation, Table.BANK_TRANSACTIONS,
                    inflow=True,
                    amount=total,
                    date=date,
                    category=CATEGORY_INITIAL_BALANCE,
                    description="Initial bank balance set.",
                    bank_id=bank_id,
                )
                await op.put(Table.BANK_TRANSACTIONS, row)
                created.append(row)
                bank_rows[bank_id] = _dump(row)
                local_ids[bank_id] = row.id

            op.queue(SetInitialBalances(
                date=date,
                cash=_dump(cash_row),
                banks=bank_rows,
                local_ids=local_ids,
            ))
        return created

    # -------------------------------------------------------------------------
    # Lifecycle: delete, restore, purge
    # -------------------------------------------------------------------------

    async def _linked_group(
        self,
        tx: StoreTransaction,
        table: Table,
        record_id: str,
        active: bool,
    ) -> list[tuple[Table, Record]]:
        """
        The record plus everything tied to it by counterpart links
        (stock <-> its payment or credit entry, advance <-> its payment,
        transfer leg <-> other leg), in the given lifecycle state.
        """
        group: list[tuple[Table, Record]] = []
        seen = {(table, record_id)}
        pending = [(table, record_id)]

        while pending:
            current_table, current_id = pending.pop(0)
            record = await tx.get(current_table, current_id)
            if record is None or record.is_active != active:
                continue
            group.append((current_table, record))

            neighbours: list[tuple[Table, str]] = []
            for field, targets in FOREIGN_KEYS.get(current_table, {}).items():
                value = getattr(record, field, None)
                if field in COUNTERPART_FIELDS and value:
                    neighbours.extend((target, value) for target in targets)
            for source, field in REFERENCES_TO.get(current_table, ()):
                if field not in COUNTERPART_FIELDS:
                    continue
                for linked in await tx.query(
                    source, lambda r, f=field: getattr(r, f) == current_id,
                ):
                    neighbours.append((source, linked.id))

            for key in neighbours:
                if key not in seen:
                    seen.add(key)
                    pending.append(key)

        return group

    def _require_synced_table(self, operation: str, table: Table) -> None:
        if table not in SYNCED_TABLES:
            raise self._reject(operation, "table", "invalid_value", f"{table.value} has no lifecycle")

    async def delete_record(self, table: Table, record_id: str) -> list[tuple[Table, str]]:
        """
        Move a record and its linked counterparts to the recycle bin.

        Returns every (table, id) that was soft-deleted.
        """
        operation = "delete_record"
        self._require_synced_table(operation, table)
        now = utc_now()

        async with self._operation(operation) as op:
            await self._require_active(op, table, record_id, "record_id")
            group = await self._linked_group(op.tx, table, record_id, active=True)
            for member_table, record in group:
                await op.put(member_table, record.model_copy(update={"deleted_at": now}))
                op.queue(SoftDeleteRecord(
                    table=member_table, record_id=record.id, deleted_at=now,
                ))
        return [(member_table, record.id) for member_table, record in group]

    async def restore_record(self, table: Table, record_id: str) -> list[tuple[Table, str]]:
        """Bring a record and its linked counterparts back from the recycle bin."""
        operation = "restore_record"
        self._require_synced_table(operation, table)

        async with self._operation(operation) as op:
            record = await op.tx.get(table, record_id)
            if record is None or record.is_active:
                raise self._reject(
                    operation, "record_id", "not_deleted",
                    f"{table.value} {record_id} is not in the recycle bin",
                )
            group = await self._linked_group(op.tx, table, record_id, active=False)
            for member_table, member in group:
                await op.put(member_table, member.model_copy(update={"deleted_at": None}))
                op.queue(RestoreRecord(table=member_table, record_id=member.id))
        return [(member_table, member.id) for member_table, member in group]

    async def delete_category(self, category_id: str) -> None:
        """Remove a user category for good. Essential categories are protected."""
        operation = "delete_category"
        async with self._operation(operation) as op:
            category = await op.tx.get(Table.CATEGORIES, category_id)
            if category is None:
                raise self._reject(
                    operation, "category_id", "not_found", f"Category {category_id} does not exist",
                )
            self._validator.require(operation, self._validator.check_category_deletable(category))
            await op.tx.delete(Table.CATEGORIES, category_id)
            op.written.append((Table.CATEGORIES.value, category_id))
            op.queue(DeleteCategory(category_id=category_id))

    async def empty_recycle_bin(self) -> dict[str, int]:
        """
        Purge every record in the recycle bin, across all tables.

        Returns the number of records purged per table.
        """
        operation = "empty_recycle_bin"
        purged: dict[str, int] = {}

        async with self._operation(operation) as op:
            for table in SYNCED_TABLES:
                deleted = await op.tx.query(table, lambda r: not r.is_active)
                for record in deleted:
                    await op.tx.delete(table, record.id)
                if deleted:
                    purged[table.value] = len(deleted)
            op.queue(EmptyRecycleBin())

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.recycle_bin_purged(purged))
        return purged

    # -------------------------------------------------------------------------
    # Bulk
    # -------------------------------------------------------------------------

    async def import_data(self, tables: dict[Table, list[dict[str, Any]]]) -> int:
        """
        Replace whole tables with imported rows (ids are kept as given).

        Returns the number of records imported.
        """
        operation = "import_data"
        for table in tables:
            self._require_synced_table(operation, table)

        records = {
            table: [self._validator.build(operation, TABLE_MODELS[table], **row) for row in rows]
            for table, rows in tables.items()
        }

        async with self._operation(operation) as op:
            for table, rows in records.items():
                await op.tx.clear(table)
                for record in rows:
                    await op.put(table, record)
            op.queue(BatchImport(
                tables={table: [_dump(r) for r in rows] for table, rows in records.items()},
            ))
        return sum(len(rows) for rows in records.values())

    async def delete_all_data(self) -> None:
        """Wipe every table locally and remotely. Unsent changes are discarded."""
        async with self._operation("delete_all_data") as op:
            for table in SYNCED_TABLES:
                await op.tx.clear(table)
            await self._outbox.clear(op.tx)
            op.queue(DeleteAll())

    # -------------------------------------------------------------------------
    # Preferences and reads
    # -------------------------------------------------------------------------

    async def get_app_state(self) -> AppState:
        state = await self._store.get(Table.APP_STATE, "1")
        return state or AppState()

    async def update_settings(self, **preferences: Any) -> AppState:
        """Change device preferences. Local only, nothing is queued."""
        operation = "update_settings"
        async with self._store.transaction() as tx:
            current = await tx.get(Table.APP_STATE, "1") or AppState()
            updated = self._validator.build(
                operation, AppState, **{**current.model_dump(), **preferences, "id": "1"},
            )
            await tx.put(Table.APP_STATE, updated)
        return updated

    async def list_records(self, table: Table, include_deleted: bool = False) -> list[BaseModel]:
        if include_deleted:
            return await self._store.query(table)
        return await self._store.query(table, lambda r: r.is_active)

    async def recycle_bin(self) -> dict[Table, list[Record]]:
        """Deleted records per table (tables with none are omitted)."""
        binned: dict[Table, list[Record]] = {}
        async with self._store.transaction() as tx:
            for table in SYNCED_TABLES:
                deleted = await tx.query(table, lambda r: not r.is_active)
                if deleted:
                    binned[table] = deleted
        return binned

    async def ledger_entries(
        self,
        contact_id: Optional[str] = None,
        ledger_type: Optional[LedgerType] = None,
    ) -> list[LedgerEntry]:
        """Active ledger entries with their installments attached."""
        async with self._store.transaction() as tx:
            entries = await tx.query(
                Table.LEDGER_ENTRIES,
                lambda e: (
                    e.is_active
                    and (contact_id is None or e.contact_id == contact_id)
                    and (ledger_type is None or e.type == ledger_type)
                ),
            )
            installments = await tx.query(Table.PAYMENT_INSTALLMENTS)
        return attach_installments(entries, installments)
