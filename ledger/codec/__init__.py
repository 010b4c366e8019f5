"""Amount codec package."""

from ledger.codec.amount import (
    CURRENCY_SYMBOL,
    AmountFormatError,
    format_amount,
    parse_amount,
    round_amount,
)

__all__ = [
    "CURRENCY_SYMBOL",
    "AmountFormatError",
    "format_amount",
    "parse_amount",
    "round_amount",
]
