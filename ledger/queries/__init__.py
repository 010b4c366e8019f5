"""Read-side queries package."""

from ledger.queries.board import CategoryBoard
from ledger.queries.history import LedgerQueries, LedgerTotals, summarize

__all__ = ["CategoryBoard", "LedgerQueries", "LedgerTotals", "summarize"]
