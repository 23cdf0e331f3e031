"""
Balance & Inventory Valuation Engine

Financial truth is never stored: cash and bank balances, outstanding
payables/receivables and stock value are recomputed from the full local
history after every write.

DESIGN DECISION: Everything except BalanceCalculator is a pure function
over lists of records. Deleted records are ignored everywhere.

Stock is valued at moving weighted-average cost, which is
order-sensitive: transactions are replayed in date order (creation order
breaks ties), never in whatever order the caller happens to hold them.
"""

from decimal import Decimal
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from tradebook.models.ledger import (
    BankTransaction,
    CashTransaction,
    InitialStockItem,
    LedgerEntry,
    LedgerType,
    StockItem,
    StockTransaction,
    StockTxType,
    Table,
)
from tradebook.services.storage import LocalStoreInterface


ZERO = Decimal("0")


def _active(records):
    return [record for record in records if record.is_active]


def cash_balance(transactions: Iterable[CashTransaction]) -> Decimal:
    """Income minus expense."""
    return sum((tx.signed_amount for tx in _active(transactions)), ZERO)


def bank_balance(
    transactions: Iterable[BankTransaction],
    bank_id: Optional[str] = None,
) -> Decimal:
    """Deposits minus withdrawals, for one bank or all of them."""
    return sum(
        (
            tx.signed_amount
            for tx in _active(transactions)
            if bank_id is None or tx.bank_id == bank_id
        ),
        ZERO,
    )


def bank_balances(transactions: Iterable[BankTransaction]) -> dict[str, Decimal]:
    """Balance per bank id."""
    balances: dict[str, Decimal] = {}
    for tx in _active(transactions):
        balances[tx.bank_id] = balances.get(tx.bank_id, ZERO) + tx.signed_amount
    return balances


def _outstanding(entries: Iterable[LedgerEntry], entry_type: LedgerType) -> Decimal:
    return sum(
        (entry.amount - entry.paid_amount for entry in _active(entries) if entry.type == entry_type),
        ZERO,
    )


def total_payables(entries: Iterable[LedgerEntry]) -> Decimal:
    return _outstanding(entries, LedgerType.PAYABLE)


def total_receivables(entries: Iterable[LedgerEntry]) -> Decimal:
    return _outstanding(entries, LedgerType.RECEIVABLE)


def total_advances(entries: Iterable[LedgerEntry]) -> Decimal:
    """Prepaid credit outstanding (advances are stored as negative amounts)."""
    return sum(
        (-entry.amount for entry in _active(entries) if entry.type == LedgerType.ADVANCE),
        ZERO,
    )


def stock_valuation(
    initial_stock: Iterable[InitialStockItem],
    transactions: Iterable[StockTransaction],
) -> list[StockItem]:
    """
    Replay stock movements into per-item weight, average cost and value.

    - Initial stock seeds each item's weight and value
    - Purchase: weight and value grow by the purchased weight x price
    - Sale: the average price is taken BEFORE the sale, then weight and
      value shrink by the sold weight at that average

    Items are returned sorted by name.
    """
    weight: dict[str, Decimal] = {}
    value: dict[str, Decimal] = {}

    for item in _active(initial_stock):
        weight[item.item_name] = weight.get(item.item_name, ZERO) + item.weight
        value[item.item_name] = value.get(item.item_name, ZERO) + item.weight * item.price_per_kg

    replay = sorted(_active(transactions), key=lambda tx: (tx.date, tx.created_at))
    for tx in replay:
        name = tx.item_name
        current_weight = weight.get(name, ZERO)
        current_value = value.get(name, ZERO)

        if tx.type == StockTxType.PURCHASE:
            weight[name] = current_weight + tx.weight
            value[name] = current_value + tx.weight * tx.price_per_kg
        else:
            avg_price = current_value / current_weight if current_weight != 0 else ZERO
            weight[name] = current_weight - tx.weight
            value[name] = current_value - tx.weight * avg_price

    items = []
    for name in sorted(weight):
        item_weight = weight[name]
        item_value = value[name]
        avg_price = item_value / item_weight if item_weight > 0 else ZERO
        items.append(StockItem(
            name=name,
            weight=item_weight,
            avg_purchase_price_per_kg=avg_price,
            total_value=item_value,
        ))
    return items


class BalanceSnapshot(BaseModel):
    """Every derived figure, computed from one consistent read."""

    cash_balance: Decimal = ZERO
    bank_balance: Decimal = ZERO
    bank_balances: dict[str, Decimal] = Field(default_factory=dict)
    total_payables: Decimal = ZERO
    total_receivables: Decimal = ZERO
    total_advances: Decimal = ZERO
    stock: list[StockItem] = Field(default_factory=list)

    @property
    def total_stock_value(self) -> Decimal:
        return sum((item.total_value for item in self.stock), ZERO)

    def stock_item(self, name: str) -> Optional[StockItem]:
        return next((item for item in self.stock if item.name == name), None)


def compute_snapshot(
    cash: list[CashTransaction],
    bank: list[BankTransaction],
    ledger: list[LedgerEntry],
    initial_stock: list[InitialStockItem],
    stock: list[StockTransaction],
) -> BalanceSnapshot:
    return BalanceSnapshot(
        cash_balance=cash_balance(cash),
        bank_balance=bank_balance(bank),
        bank_balances=bank_balances(bank),
        total_payables=total_payables(ledger),
        total_receivables=total_receivables(ledger),
        total_advances=total_advances(ledger),
        stock=stock_valuation(initial_stock, stock),
    )


class BalanceCalculator:
    """
    Recomputes the BalanceSnapshot from the local store.

    All tables are read inside one transaction, so the snapshot never
    mixes states from before and after a commit.
    """

    def __init__(self, store: LocalStoreInterface):
        self._store = store
        self._snapshot = BalanceSnapshot()

    @property
    def snapshot(self) -> BalanceSnapshot:
        """The last computed snapshot."""
        return self._snapshot

    async def refresh(self) -> BalanceSnapshot:
        async with self._store.transaction() as tx:
            cash = await tx.query(Table.CASH_TRANSACTIONS)
            bank = await tx.query(Table.BANK_TRANSACTIONS)
            ledger = await tx.query(Table.LEDGER_ENTRIES)
            initial_stock = await tx.query(Table.INITIAL_STOCK)
            stock = await tx.query(Table.STOCK_TRANSACTIONS)

        self._snapshot = compute_snapshot(cash, bank, ledger, initial_stock, stock)
        return self._snapshot
