"""
Outbox Action Models

Every mutation that must reach the remote store is captured as one
action. The set of actions is closed: SyncAction is a discriminated union
on the `action` tag, and the sync processor dispatches over it with an
exhaustive match.

DESIGN DECISION: Record payloads are stored in their JSON form (the same
form the local store and the remote store use), so an outbox entry
survives restarts and can be replayed byte-for-byte.

Each action carries:
1. idempotency_key - lets the remote store recognise a replay
2. local_ids - slot -> pending id of every record the action creates,
   so the sync processor can reconcile them with the server ids
"""

import datetime as dt
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from tradebook.models.identity import is_pending
from tradebook.models.ledger import LedgerType, PaymentMethod, Table, utc_now


# Slots naming the records created by composite actions
SLOT_RECORD = "record"
SLOT_STOCK = "stock"
SLOT_FINANCIAL = "financial"
SLOT_LEDGER = "ledger"
SLOT_CASH = "cash"
SLOT_BANK = "bank"
SLOT_INSTALLMENT = "installment"


class BaseAction(BaseModel):
    """Fields shared by every outbox action."""

    idempotency_key: str = Field(default_factory=lambda: uuid4().hex)
    local_ids: dict[str, str] = Field(
        default_factory=dict,
        description="slot -> pending id of each record this action creates"
    )


# =============================================================================
# GENERIC RECORD ACTIONS
# =============================================================================

class CreateRecord(BaseAction):
    action: Literal["create_record"] = "create_record"
    table: Table
    data: dict[str, Any]


class UpdateRecord(BaseAction):
    action: Literal["update_record"] = "update_record"
    table: Table
    record_id: str
    changes: dict[str, Any]


class SoftDeleteRecord(BaseAction):
    action: Literal["soft_delete_record"] = "soft_delete_record"
    table: Table
    record_id: str
    deleted_at: dt.datetime = Field(default_factory=utc_now)


class RestoreRecord(BaseAction):
    action: Literal["restore_record"] = "restore_record"
    table: Table
    record_id: str


# =============================================================================
# COMPOSITE LEDGER ACTIONS
# =============================================================================

class SettleTotal(BaseAction):
    """
    Pay down a contact's payables or receivables, oldest first.

    local_ids: "financial" -> payment transaction,
    <ledger_entry_id> -> installment created against that entry.
    """
    action: Literal["settle_total"] = "settle_total"
    contact_id: str
    ledger_type: LedgerType
    amount: Decimal
    date: dt.date
    payment_method: PaymentMethod
    financial_table: Table
    financial: dict[str, Any]
    installments: list[dict[str, Any]]


class SettleDirect(BaseAction):
    """
    Pay one chosen invoice.

    local_ids: "financial" -> payment transaction, "installment" -> installment.
    """
    action: Literal["settle_direct"] = "settle_direct"
    ledger_entry_id: str
    amount: Decimal
    financial_table: Table
    financial: dict[str, Any]
    installment: dict[str, Any]


class RecordAdvance(BaseAction):
    action: Literal["record_advance"] = "record_advance"
    ledger: dict[str, Any]
    financial_table: Table
    financial: dict[str, Any]


class TransferFunds(BaseAction):
    """Move money between the cash drawer and a bank account."""
    action: Literal["transfer_funds"] = "transfer_funds"
    cash: dict[str, Any]
    bank: dict[str, Any]


class SetInitialBalances(BaseAction):
    """
    Replace the opening cash and bank balances.

    local_ids: "cash" -> cash row, <bank_id> -> that bank's row.
    """
    action: Literal["set_initial_balances"] = "set_initial_balances"
    date: dt.date
    cash: Optional[dict[str, Any]] = None
    banks: dict[str, dict[str, Any]] = Field(default_factory=dict)


class DeleteCategory(BaseAction):
    action: Literal["delete_category"] = "delete_category"
    category_id: str


class CreateStockTransaction(BaseAction):
    """
    A stock movement with the record it owns, created as one unit.

    Exactly one of financial (cash/bank payment) or ledger (credit) is set.
    """
    action: Literal["create_stock_transaction"] = "create_stock_transaction"
    stock: dict[str, Any]
    financial_table: Optional[Table] = None
    financial: Optional[dict[str, Any]] = None
    ledger: Optional[dict[str, Any]] = None


class UpdateStockTransaction(BaseAction):
    """An edited stock movement and the amount change of what it owns."""
    action: Literal["update_stock_transaction"] = "update_stock_transaction"
    stock_tx_id: str
    changes: dict[str, Any]
    financial_table: Optional[Table] = None
    financial_id: Optional[str] = None
    financial_changes: dict[str, Any] = Field(default_factory=dict)
    ledger_id: Optional[str] = None
    ledger_changes: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# BULK ACTIONS
# =============================================================================

class BatchImport(BaseAction):
    """Replace whole tables with imported rows, in the given order."""
    action: Literal["batch_import"] = "batch_import"
    tables: dict[Table, list[dict[str, Any]]]


class DeleteAll(BaseAction):
    action: Literal["delete_all"] = "delete_all"


class EmptyRecycleBin(BaseAction):
    action: Literal["empty_recycle_bin"] = "empty_recycle_bin"


SyncAction = Annotated[
    Union[
        CreateRecord,
        UpdateRecord,
        SoftDeleteRecord,
        RestoreRecord,
        SettleTotal,
        SettleDirect,
        RecordAdvance,
        TransferFunds,
        SetInitialBalances,
        DeleteCategory,
        CreateStockTransaction,
        UpdateStockTransaction,
        BatchImport,
        DeleteAll,
        EmptyRecycleBin,
    ],
    Field(discriminator="action"),
]


class OutboxEntry(BaseModel):
    """One queued action. FIFO by insertion order."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    action: SyncAction
    enqueued_at: dt.datetime = Field(default_factory=utc_now)

    @property
    def action_tag(self) -> str:
        return self.action.action

    @property
    def payload(self) -> dict[str, Any]:
        return self.action.model_dump(mode="json", exclude={"action"})


def _collect_strings(value: Any, found: set[str]) -> None:
    if isinstance(value, str):
        if is_pending(value):
            found.add(value)
    elif isinstance(value, dict):
        for key, item in value.items():
            _collect_strings(key, found)
            _collect_strings(item, found)
    elif isinstance(value, list):
        for item in value:
            _collect_strings(item, found)


def pending_references(action: BaseAction) -> set[str]:
    """Pending ids in the payload that the action itself does not create."""
    found: set[str] = set()
    _collect_strings(
        action.model_dump(mode="json", exclude={"local_ids", "idempotency_key"}),
        found,
    )
    return found - set(action.local_ids.values())


def replace_id(value: Any, old_id: str, new_id: str) -> Any:
    """Deep copy of a JSON value with every occurrence of old_id replaced."""
    if isinstance(value, str):
        return new_id if value == old_id else value
    if isinstance(value, dict):
        return {
            replace_id(key, old_id, new_id): replace_id(item, old_id, new_id)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [replace_id(item, old_id, new_id) for item in value]
    return value
