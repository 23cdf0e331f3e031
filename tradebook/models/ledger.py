"""
Core Data Models for Tradebook

These models define the strict schemas for every record the business keeps:
cash and bank movements, stock movements, payables/receivables and the
reference data around them (contacts, banks, categories, opening stock).

They are designed to:
1. Enforce the bookkeeping invariants at construction time
2. Serialize unchanged into the local store, the outbox and the remote store
3. Declare their cross-references once, so id reconciliation is generic

DESIGN DECISION: Money and weight are Decimal. Amounts are quantized to
two places whenever they are derived (weight x price), never silently
elsewhere.
"""

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)

from tradebook.models.identity import new_pending_id


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def money(value: Union[Decimal, int, str]) -> Decimal:
    """Quantize an amount to cents."""
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Table(str, Enum):
    """
    Every table of the local mirror.

    The same names are used by the remote store, except for the
    local-only bookkeeping tables (app_state, outbox, audit_log).
    """
    CASH_TRANSACTIONS = "cash_transactions"
    BANK_TRANSACTIONS = "bank_transactions"
    STOCK_TRANSACTIONS = "stock_transactions"
    LEDGER_ENTRIES = "ledger_entries"
    PAYMENT_INSTALLMENTS = "payment_installments"
    INITIAL_STOCK = "initial_stock"
    CONTACTS = "contacts"
    BANKS = "banks"
    CATEGORIES = "categories"
    # Local only
    APP_STATE = "app_state"
    OUTBOX = "outbox"
    AUDIT_LOG = "audit_log"


class CashTxType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class BankTxType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class StockTxType(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"


class PaymentMethod(str, Enum):
    """How a stock movement or settlement was paid."""
    CASH = "cash"
    BANK = "bank"
    CREDIT = "credit"  # Stock only: creates a payable/receivable instead


class LedgerType(str, Enum):
    PAYABLE = "payable"
    RECEIVABLE = "receivable"
    ADVANCE = "advance"


class LedgerStatus(str, Enum):
    """
    Settlement status of a ledger entry.

    CRITICAL: Always derived from paid_amount vs amount (see ledger_status).
    It is stored for display and filtering, never set independently.
    """
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class ContactType(str, Enum):
    VENDOR = "vendor"
    CLIENT = "client"
    BOTH = "both"


class CategoryType(str, Enum):
    CASH = "cash"
    BANK = "bank"


class CategoryDirection(str, Enum):
    CREDIT = "credit"  # Money in
    DEBIT = "debit"    # Money out


class RecordState(str, Enum):
    """
    Lifecycle of every stored record: Active -> Deleted -> Purged.

    Purged records no longer exist, so only the first two are observable.
    """
    ACTIVE = "active"
    DELETED = "deleted"


def ledger_status(paid_amount: Decimal, amount: Decimal) -> LedgerStatus:
    """Status of a payable/receivable given what has been paid against it."""
    if paid_amount <= 0:
        return LedgerStatus.UNPAID
    if paid_amount >= amount:
        return LedgerStatus.PAID
    return LedgerStatus.PARTIALLY_PAID


# =============================================================================
# BASE RECORD
# =============================================================================

class Record(BaseModel):
    """
    Fields shared by every stored entity.

    New records get a pending id; the sync processor rewrites it once
    the remote store assigns the permanent one.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_pending_id, min_length=1)
    created_at: dt.datetime = Field(default_factory=utc_now)
    deleted_at: Optional[dt.datetime] = None

    @property
    def lifecycle(self) -> RecordState:
        return RecordState.DELETED if self.deleted_at else RecordState.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class _AmountsMixin(BaseModel):
    """Expected vs actual amount with an explained difference."""

    expected_amount: Decimal = Field(..., ge=0)
    actual_amount: Decimal = Field(..., ge=0)
    difference: Optional[Decimal] = Field(
        default=None,
        description="actual_amount - expected_amount; derived when omitted"
    )
    difference_reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def check_difference(self):
        derived = self.actual_amount - self.expected_amount
        if self.difference is None:
            self.difference = derived
        elif self.difference != derived:
            raise ValueError(
                f"difference {self.difference} does not match "
                f"actual - expected ({derived})"
            )
        return self


# =============================================================================
# MONETARY TRANSACTIONS
# =============================================================================

class MonetaryTransaction(Record, _AmountsMixin):
    """
    A movement of money in the cash drawer or a bank account.

    The optional links tie it to the record that caused it:
    - linked_stock_tx_id: stock purchase/sale paid with this money
    - linked_ledger_id: the single invoice settled by this payment
    - advance_id: the advance ledger entry this payment funded
    - counterpart_id: the other leg of a cash <-> bank transfer
    """

    date: dt.date
    description: str = Field(default="", max_length=500)
    category: str = Field(..., min_length=1, max_length=100)
    contact_id: Optional[str] = None
    linked_stock_tx_id: Optional[str] = None
    linked_ledger_id: Optional[str] = None
    advance_id: Optional[str] = None
    counterpart_id: Optional[str] = None


class CashTransaction(MonetaryTransaction):
    type: CashTxType

    @property
    def signed_amount(self) -> Decimal:
        if self.type == CashTxType.INCOME:
            return self.actual_amount
        return -self.actual_amount


class BankTransaction(MonetaryTransaction):
    type: BankTxType
    bank_id: str = Field(..., min_length=1)

    @property
    def signed_amount(self) -> Decimal:
        if self.type == BankTxType.DEPOSIT:
            return self.actual_amount
        return -self.actual_amount


# =============================================================================
# STOCK
# =============================================================================

class StockTransaction(Record, _AmountsMixin):
    """A purchase or sale of a stock item, by weight."""

    date: dt.date
    item_name: str = Field(..., min_length=1, max_length=200)
    type: StockTxType
    weight: Decimal = Field(..., gt=0, description="Weight in kg")
    price_per_kg: Decimal = Field(..., ge=0)
    payment_method: PaymentMethod
    contact_id: Optional[str] = None
    bank_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def check_payment_links(self):
        if self.payment_method == PaymentMethod.BANK and not self.bank_id:
            raise ValueError("Bank payments require bank_id")
        if self.payment_method == PaymentMethod.CREDIT and not self.contact_id:
            raise ValueError("Credit purchases and sales require contact_id")
        return self

    @property
    def line_total(self) -> Decimal:
        """weight x price, before any override."""
        return money(self.weight * self.price_per_kg)


class InitialStockItem(Record):
    """Opening inventory, entered once when the books are started."""

    item_name: str = Field(..., min_length=1, max_length=200)
    weight: Decimal = Field(..., ge=0)
    price_per_kg: Decimal = Field(..., ge=0)


class StockItem(BaseModel):
    """Derived inventory position. Recomputed, never stored."""

    name: str
    weight: Decimal
    avg_purchase_price_per_kg: Decimal
    total_value: Decimal


# =============================================================================
# PAYABLES / RECEIVABLES
# =============================================================================

class PaymentInstallment(Record):
    """
    One allocation of a payment to one ledger entry.

    Append-only: the sum of installments of an entry equals its paid_amount.
    """

    ledger_entry_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    date: dt.date
    payment_method: PaymentMethod
    monetary_tx_id: Optional[str] = None

    @model_validator(mode="after")
    def check_method(self):
        if self.payment_method == PaymentMethod.CREDIT:
            raise ValueError("Installments are paid in cash or through a bank")
        return self


class LedgerEntry(Record):
    """
    An account payable, account receivable or advance.

    Payables and receivables satisfy 0 <= paid_amount <= amount and carry
    a status derived from the two. An advance is prepaid credit: it is
    created already paid, with a negative amount.
    """

    date: dt.date
    type: LedgerType
    description: str = Field(default="", max_length=500)
    amount: Decimal
    paid_amount: Decimal = Decimal("0")
    status: Optional[LedgerStatus] = None
    contact_id: str = Field(..., min_length=1)
    contact_name: str = Field(default="", max_length=200)
    linked_stock_tx_id: Optional[str] = None

    # Kept in their own table; attached on read by attach_installments()
    installments: list[PaymentInstallment] = Field(default_factory=list, exclude=True)

    @model_validator(mode="after")
    def check_amounts_and_status(self):
        if self.type == LedgerType.ADVANCE:
            if self.amount >= 0:
                raise ValueError("Advance amount must be negative")
            if self.paid_amount != 0:
                raise ValueError("Advances carry no paid_amount")
            expected = LedgerStatus.PAID
        else:
            if self.amount <= 0:
                raise ValueError("Ledger amount must be greater than zero")
            if self.paid_amount < 0 or self.paid_amount > self.amount:
                raise ValueError(
                    f"paid_amount {self.paid_amount} outside 0..{self.amount}"
                )
            expected = ledger_status(self.paid_amount, self.amount)

        if self.status is None:
            self.status = expected
        elif self.status != expected:
            raise ValueError(
                f"status {self.status.value} inconsistent with amounts "
                f"(expected {expected.value})"
            )
        return self

    @property
    def remaining(self) -> Decimal:
        if self.type == LedgerType.ADVANCE:
            return Decimal("0")
        return self.amount - self.paid_amount

    def revalued(
        self,
        *,
        amount: Optional[Decimal] = None,
        paid_amount: Optional[Decimal] = None,
    ) -> "LedgerEntry":
        """
        Copy with a new amount and/or paid amount, status re-derived.

        Raises:
            ValueError: If the new amounts break the entry's invariants
        """
        data = self.model_dump()
        if amount is not None:
            data["amount"] = amount
        if paid_amount is not None:
            data["paid_amount"] = paid_amount
        data["status"] = None
        return LedgerEntry.model_validate(data)


def attach_installments(
    entries: list[LedgerEntry],
    installments: list[PaymentInstallment],
) -> list[LedgerEntry]:
    """Return copies of entries carrying their active installments."""
    by_entry: dict[str, list[PaymentInstallment]] = {}
    for installment in installments:
        if installment.is_active:
            by_entry.setdefault(installment.ledger_entry_id, []).append(installment)
    return [
        entry.model_copy(update={"installments": by_entry.get(entry.id, [])})
        for entry in entries
    ]


# =============================================================================
# REFERENCE DATA
# =============================================================================

class Contact(Record):
    name: str = Field(..., min_length=1, max_length=200)
    contact_type: ContactType = ContactType.BOTH
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=500)


class Bank(Record):
    name: str = Field(..., min_length=1, max_length=200)
    account_number: Optional[str] = Field(default=None, max_length=50)


class Category(Record):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    direction: CategoryDirection
    is_deletable: bool = True


class AppState(BaseModel):
    """Singleton holding device preferences and sync bookkeeping."""

    id: str = "1"
    currency: str = "BDT"
    wastage_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    show_stock_value: bool = False
    last_sync: Optional[dt.datetime] = None
    user_id: Optional[str] = None


# =============================================================================
# CATEGORIES USED BY COMPOSITE OPERATIONS
# =============================================================================

CATEGORY_AR_SETTLEMENT = "A/R Settlement"
CATEGORY_AP_SETTLEMENT = "A/P Settlement"
CATEGORY_STOCK_PURCHASE = "Stock Purchase"
CATEGORY_STOCK_SALE = "Stock Sale"
CATEGORY_INITIAL_BALANCE = "Initial Balance"
CATEGORY_FUNDS_TRANSFER = "Funds Transfer"
CATEGORY_ADVANCE_PAYMENT = "Advance Payment"
CATEGORY_ADVANCE_RECEIVED = "Advance Received"

_ESSENTIAL = [
    (CATEGORY_AR_SETTLEMENT, CategoryDirection.CREDIT),
    (CATEGORY_AP_SETTLEMENT, CategoryDirection.DEBIT),
    (CATEGORY_STOCK_PURCHASE, CategoryDirection.DEBIT),
    (CATEGORY_STOCK_SALE, CategoryDirection.CREDIT),
    (CATEGORY_INITIAL_BALANCE, CategoryDirection.CREDIT),
    (CATEGORY_FUNDS_TRANSFER, CategoryDirection.CREDIT),
    (CATEGORY_FUNDS_TRANSFER, CategoryDirection.DEBIT),
    (CATEGORY_ADVANCE_PAYMENT, CategoryDirection.DEBIT),
    (CATEGORY_ADVANCE_RECEIVED, CategoryDirection.CREDIT),
]

# (name, type, direction) of the non-deletable categories every book has
ESSENTIAL_CATEGORIES: list[tuple[str, CategoryType, CategoryDirection]] = [
    (name, category_type, direction)
    for category_type in CategoryType
    for name, direction in _ESSENTIAL
]


# =============================================================================
# TABLE REGISTRY AND REFERENCES
# =============================================================================

TABLE_MODELS: dict[Table, type[BaseModel]] = {
    Table.CASH_TRANSACTIONS: CashTransaction,
    Table.BANK_TRANSACTIONS: BankTransaction,
    Table.STOCK_TRANSACTIONS: StockTransaction,
    Table.LEDGER_ENTRIES: LedgerEntry,
    Table.PAYMENT_INSTALLMENTS: PaymentInstallment,
    Table.INITIAL_STOCK: InitialStockItem,
    Table.CONTACTS: Contact,
    Table.BANKS: Bank,
    Table.CATEGORIES: Category,
    Table.APP_STATE: AppState,
}

# Tables mirrored from, and replayed to, the remote store
SYNCED_TABLES: tuple[Table, ...] = (
    Table.CONTACTS,
    Table.BANKS,
    Table.CATEGORIES,
    Table.INITIAL_STOCK,
    Table.STOCK_TRANSACTIONS,
    Table.CASH_TRANSACTIONS,
    Table.BANK_TRANSACTIONS,
    Table.LEDGER_ENTRIES,
    Table.PAYMENT_INSTALLMENTS,
)

MONETARY_TABLES = (Table.CASH_TRANSACTIONS, Table.BANK_TRANSACTIONS)

_MONETARY_REFS: dict[str, tuple[Table, ...]] = {
    "contact_id": (Table.CONTACTS,),
    "linked_stock_tx_id": (Table.STOCK_TRANSACTIONS,),
    "linked_ledger_id": (Table.LEDGER_ENTRIES,),
    "advance_id": (Table.LEDGER_ENTRIES,),
}

# table -> {field: tables the field may point into}
FOREIGN_KEYS: dict[Table, dict[str, tuple[Table, ...]]] = {
    Table.CASH_TRANSACTIONS: {
        **_MONETARY_REFS,
        "counterpart_id": (Table.BANK_TRANSACTIONS,),
    },
    Table.BANK_TRANSACTIONS: {
        **_MONETARY_REFS,
        "bank_id": (Table.BANKS,),
        "counterpart_id": (Table.CASH_TRANSACTIONS,),
    },
    Table.STOCK_TRANSACTIONS: {
        "contact_id": (Table.CONTACTS,),
        "bank_id": (Table.BANKS,),
    },
    Table.LEDGER_ENTRIES: {
        "contact_id": (Table.CONTACTS,),
        "linked_stock_tx_id": (Table.STOCK_TRANSACTIONS,),
    },
    Table.PAYMENT_INSTALLMENTS: {
        "ledger_entry_id": (Table.LEDGER_ENTRIES,),
        "monetary_tx_id": MONETARY_TABLES,
    },
}

# Links that make two records one logical unit: deleting or restoring
# either side carries the other along.
COUNTERPART_FIELDS = frozenset({"linked_stock_tx_id", "advance_id", "counterpart_id"})


def _build_reverse_index() -> dict[Table, tuple[tuple[Table, str], ...]]:
    index: dict[Table, list[tuple[Table, str]]] = {}
    for source, fields in FOREIGN_KEYS.items():
        for field, targets in fields.items():
            for target in targets:
                index.setdefault(target, []).append((source, field))
    return {target: tuple(refs) for target, refs in index.items()}


# target table -> every (table, field) that may hold one of its ids
REFERENCES_TO: dict[Table, tuple[tuple[Table, str], ...]] = _build_reverse_index()


def monetary_table(method: PaymentMethod) -> Table:
    """Table holding money movements for a cash or bank payment."""
    if method == PaymentMethod.CASH:
        return Table.CASH_TRANSACTIONS
    if method == PaymentMethod.BANK:
        return Table.BANK_TRANSACTIONS
    raise ValueError("Credit has no money movement")
