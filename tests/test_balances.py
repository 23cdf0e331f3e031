"""Tests for the balance and inventory valuation engine."""

import datetime as dt
from decimal import Decimal

import pytest

from tradebook.engines import (
    bank_balance,
    bank_balances,
    cash_balance,
    compute_snapshot,
    stock_valuation,
    total_advances,
    total_payables,
    total_receivables,
)
from tradebook.models import (
    BankTransaction,
    BankTxType,
    CashTransaction,
    CashTxType,
    InitialStockItem,
    LedgerEntry,
    LedgerType,
    PaymentMethod,
    StockTransaction,
    StockTxType,
)


DELETED = dt.datetime(2024, 2, 1, tzinfo=dt.timezone.utc)


def cash(amount, tx_type=CashTxType.INCOME, deleted=False):
    return CashTransaction(
        date=dt.date(2024, 1, 1),
        type=tx_type,
        category="Sales",
        expected_amount=Decimal(amount),
        actual_amount=Decimal(amount),
        deleted_at=DELETED if deleted else None,
    )


def bank(amount, bank_id, tx_type=BankTxType.DEPOSIT):
    return BankTransaction(
        date=dt.date(2024, 1, 1),
        type=tx_type,
        category="Sales",
        bank_id=bank_id,
        expected_amount=Decimal(amount),
        actual_amount=Decimal(amount),
    )


def ledger(ledger_type, amount, paid="0", deleted=False):
    return LedgerEntry(
        date=dt.date(2024, 1, 1),
        type=ledger_type,
        amount=Decimal(amount),
        paid_amount=Decimal(paid),
        contact_id="c1",
        deleted_at=DELETED if deleted else None,
    )


def stock(tx_type, weight, price, day, item="Copper"):
    amount = Decimal(weight) * Decimal(price)
    return StockTransaction(
        date=dt.date(2024, 1, day),
        item_name=item,
        type=tx_type,
        weight=Decimal(weight),
        price_per_kg=Decimal(price),
        payment_method=PaymentMethod.CASH,
        expected_amount=amount,
        actual_amount=amount,
    )


class TestMoneyBalances:
    """Tests for cash and bank balances."""

    def test_cash_balance_ignores_deleted(self):
        txs = [
            cash("1000"),
            cash("300", CashTxType.EXPENSE),
            cash("5000", deleted=True),
        ]
        assert cash_balance(txs) == Decimal("700")

    def test_bank_balance_per_bank(self):
        txs = [
            bank("500", "b1"),
            bank("200", "b1", BankTxType.WITHDRAWAL),
            bank("50", "b2"),
        ]
        assert bank_balance(txs) == Decimal("350")
        assert bank_balance(txs, "b1") == Decimal("300")
        assert bank_balances(txs) == {"b1": Decimal("300"), "b2": Decimal("50")}

    def test_empty_history(self):
        assert cash_balance([]) == Decimal("0")
        assert bank_balances([]) == {}


class TestLedgerTotals:
    """Tests for payables, receivables and advances."""

    def test_outstanding_totals(self):
        entries = [
            ledger(LedgerType.PAYABLE, "500", paid="300"),
            ledger(LedgerType.PAYABLE, "100"),
            ledger(LedgerType.RECEIVABLE, "80", paid="80"),
            ledger(LedgerType.RECEIVABLE, "40"),
            ledger(LedgerType.PAYABLE, "999", deleted=True),
        ]
        assert total_payables(entries) == Decimal("300")
        assert total_receivables(entries) == Decimal("40")

    def test_advances_are_positive_total(self):
        entries = [
            ledger(LedgerType.ADVANCE, "-150"),
            ledger(LedgerType.ADVANCE, "-50"),
        ]
        assert total_advances(entries) == Decimal("200")


class TestStockValuation:
    """Tests for moving weighted-average stock valuation."""

    def test_weighted_average_from_initial_stock(self):
        initial = [InitialStockItem(item_name="Copper", weight=Decimal("100"), price_per_kg=Decimal("10"))]
        txs = [
            stock(StockTxType.PURCHASE, "50", "16", day=2),
            stock(StockTxType.SALE, "30", "20", day=3),
        ]

        [item] = stock_valuation(initial, txs)

        assert item.weight == Decimal("120")
        assert item.avg_purchase_price_per_kg == Decimal("12")
        assert item.total_value == Decimal("1440")

    def test_sale_keeps_average_price(self):
        purchase = stock(StockTxType.PURCHASE, "100", "10", day=1)
        sale = stock(StockTxType.SALE, "40", "15", day=2)

        for txs in ([purchase, sale], [sale, purchase]):
            [item] = stock_valuation([], txs)
            assert item.weight == Decimal("60")
            assert item.avg_purchase_price_per_kg == Decimal("10")
            assert item.total_value == Decimal("600")

    def test_replayed_in_date_order(self):
        """A sale dated before a purchase is valued at the earlier average."""
        sale = stock(StockTxType.SALE, "10", "30", day=5)
        purchase = stock(StockTxType.PURCHASE, "10", "20", day=9)
        opening = stock(StockTxType.PURCHASE, "20", "10", day=1)

        [item] = stock_valuation([], [sale, purchase, opening])

        # 20kg @10, sell 10kg @ avg 10, buy 10kg @20
        assert item.weight == Decimal("20")
        assert item.total_value == Decimal("300")

    def test_items_sorted_by_name(self):
        txs = [
            stock(StockTxType.PURCHASE, "1", "1", day=1, item="Zinc"),
            stock(StockTxType.PURCHASE, "1", "1", day=1, item="Brass"),
        ]
        assert [i.name for i in stock_valuation([], txs)] == ["Brass", "Zinc"]

    def test_sale_from_empty_stock(self):
        """Selling what was never bought leaves a negative weight at zero cost."""
        [item] = stock_valuation([], [stock(StockTxType.SALE, "5", "10", day=1)])
        assert item.weight == Decimal("-5")
        assert item.total_value == Decimal("0")
        assert item.avg_purchase_price_per_kg == Decimal("0")


class TestSnapshot:
    """Tests for compute_snapshot()."""

    def test_snapshot_collects_everything(self):
        snapshot = compute_snapshot(
            cash=[cash("100")],
            bank=[bank("40", "b1")],
            ledger=[ledger(LedgerType.RECEIVABLE, "70")],
            initial_stock=[],
            stock=[stock(StockTxType.PURCHASE, "2", "5", day=1)],
        )
        assert snapshot.cash_balance == Decimal("100")
        assert snapshot.bank_balance == Decimal("40")
        assert snapshot.total_receivables == Decimal("70")
        assert snapshot.total_stock_value == Decimal("10")
        assert snapshot.stock_item("Copper").weight == Decimal("2")
        assert snapshot.stock_item("Tin") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
