"""
Tradebook - Source Package

A local-first bookkeeping engine for a small trading business:
cash, bank and stock movements plus payables and receivables.

DESIGN PRINCIPLES:
1. Every mutation lands locally first, instantly
2. The outbox replays mutations to the remote store in order
3. Temporary ids are reconciled across every referencing record
4. Balances and stock value are always recomputed from history
5. Storage layers are swappable
"""

__version__ = "1.0.0"
__author__ = "Tradebook Team"
