"""
Amount Codec

Category balances are persisted as display strings ("1 234 567 ₸").
All arithmetic happens on Decimal values; this module is the only place
that crosses between the two representations.

RULES:
- parse is permissive: every character that is not a digit, sign or
  decimal point is dropped before parsing.
- format rounds to a whole unit, half toward +infinity (2.5 -> 3, -2.5 -> -2),
  and groups thousands with a non-breaking space.
- format is lossy: parse(format(x)) == round_amount(x), not x.
"""

import re
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Union


CURRENCY_SYMBOL = "₸"

# ru-RU grouping separator
GROUP_SEPARATOR = "\u00a0"

_STRIP_PATTERN = re.compile(r"[^0-9+\-.]")
_NUMBER_PREFIX = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)")

_HALF = Decimal("0.5")

AmountLike = Union[str, int, float, Decimal]


class AmountFormatError(ValueError):
    """Input could not be read as an amount."""
    pass


def _to_decimal(value: Union[int, float, Decimal]) -> Decimal:
    if isinstance(value, bool):
        raise AmountFormatError(f"Not an amount: {value!r}")
    try:
        result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except InvalidOperation as e:
        raise AmountFormatError(f"Not an amount: {value!r}") from e
    if not result.is_finite():
        raise AmountFormatError(f"Amount must be finite: {value!r}")
    return result


def parse_amount(display: AmountLike) -> Decimal:
    """
    Extract the numeric value from a formatted currency string.

    Numbers (int, float, Decimal) pass straight through, since older
    documents may hold a raw number in the amount field.

    Raises:
        AmountFormatError: If nothing numeric is left after stripping
    """
    if not isinstance(display, str):
        return _to_decimal(display)

    cleaned = _STRIP_PATTERN.sub("", display)
    match = _NUMBER_PREFIX.match(cleaned)
    if match is None:
        raise AmountFormatError(f"No amount found in {display!r}")
    return Decimal(match.group(0))


def round_amount(value: AmountLike) -> Decimal:
    """Round to a whole unit, halves toward +infinity."""
    number = parse_amount(value)
    rounded = (number + _HALF).to_integral_value(rounding=ROUND_FLOOR)
    # Normalise -0 to 0
    return rounded + Decimal(0)


def format_amount(value: AmountLike, symbol: str = CURRENCY_SYMBOL) -> str:
    """
    Render an amount for storage and display.

    Example:
        format_amount(1234567.4) -> "1 234 567 ₸" (non-breaking spaces)
    """
    whole = int(round_amount(value))
    grouped = f"{whole:,}".replace(",", GROUP_SEPARATOR)
    return f"{grouped} {symbol}"
