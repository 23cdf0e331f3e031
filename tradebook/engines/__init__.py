"""Pure calculation engines: payment allocation and balance/stock valuation."""

from tradebook.engines.allocation import (
    Allocation,
    allocate,
    apply_allocations,
    total_applied,
)
from tradebook.engines.balances import (
    BalanceCalculator,
    BalanceSnapshot,
    bank_balance,
    bank_balances,
    cash_balance,
    compute_snapshot,
    stock_valuation,
    total_advances,
    total_payables,
    total_receivables,
)

__all__ = [
    # Allocation
    "Allocation",
    "allocate",
    "apply_allocations",
    "total_applied",
    # Balances
    "BalanceCalculator",
    "BalanceSnapshot",
    "bank_balance",
    "bank_balances",
    "cash_balance",
    "compute_snapshot",
    "stock_valuation",
    "total_advances",
    "total_payables",
    "total_receivables",
]
