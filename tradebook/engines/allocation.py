"""
Payment Allocation Engine

Oldest-first settlement: a payment against a contact pays off their
earliest open payable (or receivable) completely before touching the
next one.

DESIGN DECISION: allocate() is a pure function. It never mutates the
entries it is given; each Allocation carries the entry's new paid amount
and status, and apply_allocations() produces updated copies. The same
function runs on the device (to update the local mirror) and in the
remote store (to apply the replayed payment), so both sides agree.
"""

from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from tradebook.models.ledger import LedgerEntry, LedgerStatus, ledger_status


class Allocation(BaseModel):
    """The share of one payment applied to one ledger entry."""
    model_config = ConfigDict(frozen=True)

    entry_id: str
    applied: Decimal
    paid_amount: Decimal
    status: LedgerStatus


def allocate(entries: Iterable[LedgerEntry], payment: Decimal) -> list[Allocation]:
    """
    Spread a payment over outstanding entries, oldest first.

    Entries are ordered by date; entries on the same date keep the order
    they were given in (creation order). Entries with nothing remaining
    are skipped. Allocation stops as soon as the payment is used up; any
    excess over the total remaining is left unallocated.

    Raises:
        ValueError: If the payment is negative
    """
    if payment < 0:
        raise ValueError("Payment amount cannot be negative")

    remaining_payment = payment
    allocations: list[Allocation] = []

    # sorted() is stable, so same-date entries keep creation order
    for entry in sorted(entries, key=lambda e: e.date):
        if remaining_payment <= 0:
            break
        remaining = entry.remaining
        if remaining <= 0:
            continue

        applied = min(remaining_payment, remaining)
        paid_amount = entry.paid_amount + applied
        allocations.append(Allocation(
            entry_id=entry.id,
            applied=applied,
            paid_amount=paid_amount,
            status=ledger_status(paid_amount, entry.amount),
        ))
        remaining_payment -= applied

    return allocations


def apply_allocations(
    entries: Iterable[LedgerEntry],
    allocations: list[Allocation],
) -> list[LedgerEntry]:
    """Updated copies of the entries that received part of the payment."""
    by_id = {allocation.entry_id: allocation for allocation in allocations}
    return [
        entry.revalued(paid_amount=by_id[entry.id].paid_amount)
        for entry in entries
        if entry.id in by_id
    ]


def total_applied(allocations: list[Allocation]) -> Decimal:
    return sum((a.applied for a in allocations), Decimal("0"))
