"""
Decimal money helpers.

Amounts are dollars held as Decimal with 2-digit precision. Floats are
refused outright: they cannot represent most cent values exactly.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an amount to Decimal.

    Raises:
        TypeError: If value is a float or bool
        ValueError: If value is not a finite number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Monetary amounts must not be {type(value).__name__}: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid monetary amount: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return result


def quantize(value: AmountLike) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: AmountLike) -> int:
    """Dollars to integer cents, e.g. Decimal("1052.06") -> 105206."""
    return int(quantize(value) * 100)


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_money(value: AmountLike) -> str:
    """Format as "$1,052.06"."""
    return f"${quantize(value):,.2f}"
