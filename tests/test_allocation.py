"""Tests for oldest-first payment allocation."""

import datetime as dt
from decimal import Decimal

import pytest

from tradebook.engines import allocate, apply_allocations, total_applied
from tradebook.models import LedgerEntry, LedgerStatus, LedgerType


def entry(amount, day, paid="0", entry_id=None):
    fields = dict(
        date=dt.date(2024, 1, day),
        type=LedgerType.PAYABLE,
        amount=Decimal(amount),
        paid_amount=Decimal(paid),
        contact_id="vendor-1",
    )
    if entry_id:
        fields["id"] = entry_id
    return LedgerEntry(**fields)


class TestAllocate:
    """Tests for allocate()."""

    def test_oldest_entry_paid_first(self):
        """The earliest entry is cleared before the next one is touched."""
        newer = entry("200", day=5, entry_id="newer")
        older = entry("300", day=1, entry_id="older")

        allocations = allocate([newer, older], Decimal("400"))

        assert [a.entry_id for a in allocations] == ["older", "newer"]
        assert allocations[0].applied == Decimal("300")
        assert allocations[0].status == LedgerStatus.PAID
        assert allocations[1].applied == Decimal("100")
        assert allocations[1].status == LedgerStatus.PARTIALLY_PAID

    def test_payment_split_across_two_invoices(self):
        first = entry("100", day=1, entry_id="jan")
        second = entry("100", day=31, entry_id="feb")

        allocations = allocate([second, first], Decimal("150"))

        assert [(a.entry_id, a.applied) for a in allocations] == [
            ("jan", Decimal("100")),
            ("feb", Decimal("50")),
        ]
        assert total_applied(allocations) == Decimal("150")

    def test_same_date_keeps_given_order(self):
        first = entry("100", day=1, entry_id="first")
        second = entry("100", day=1, entry_id="second")

        allocations = allocate([first, second], Decimal("50"))

        assert [a.entry_id for a in allocations] == ["first"]

    def test_counts_existing_payments(self):
        partly_paid = entry("500", day=1, paid="300", entry_id="e1")

        allocations = allocate([partly_paid], Decimal("150"))

        assert allocations[0].applied == Decimal("150")
        assert allocations[0].paid_amount == Decimal("450")

    def test_paid_entries_skipped(self):
        done = entry("100", day=1, paid="100", entry_id="done")
        open_ = entry("100", day=2, entry_id="open")

        allocations = allocate([done, open_], Decimal("30"))

        assert [a.entry_id for a in allocations] == ["open"]

    def test_excess_left_unallocated(self):
        allocations = allocate([entry("100", day=1)], Decimal("250"))

        assert total_applied(allocations) == Decimal("100")

    def test_zero_payment_allocates_nothing(self):
        assert allocate([entry("100", day=1)], Decimal("0")) == []

    def test_negative_payment_rejected(self):
        with pytest.raises(ValueError):
            allocate([entry("100", day=1)], Decimal("-1"))

    def test_inputs_not_mutated(self):
        original = entry("100", day=1)
        allocate([original], Decimal("60"))
        assert original.paid_amount == Decimal("0")


class TestApplyAllocations:
    """Tests for apply_allocations()."""

    def test_returns_updated_copies(self):
        first = entry("100", day=1, entry_id="a")
        second = entry("100", day=2, entry_id="b")

        updated = apply_allocations([first, second], allocate([first, second], Decimal("100")))

        assert len(updated) == 1
        assert updated[0].id == "a"
        assert updated[0].status == LedgerStatus.PAID
        assert first.status == LedgerStatus.UNPAID


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
