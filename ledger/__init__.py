"""
Paired Ledger - Source Package

Double-entry style money transfers between balance-holding categories
(cash boxes, staff, clients, a warehouse) on top of a document store.

DESIGN PRINCIPLES:
1. Every transfer writes two legs and two balances in one atomic commit
2. Deleting either leg removes the pair and restores both balances
3. Balances are re-read from the store, never taken from the caller
4. Fail early, fail visibly; only notifications are best-effort
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Paired Ledger Team"
