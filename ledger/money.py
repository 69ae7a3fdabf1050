"""Conversion between GH amounts and integer minor units (1/100 GH)."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .errors import InvalidAmountError

MINOR_UNITS = 100
CENT = Decimal("0.01")

# Keeps every balance well inside a signed 64-bit integer column
MAX_AMOUNT = Decimal("1000000000000.00")

Amount = Union[Decimal, int, float, str]


def to_minor(amount: Amount) -> int:
    """Parse a positive GH amount with at most two decimal places."""
    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise InvalidAmountError(f"Malformed amount: {amount!r}")
        if value <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {value}")
        if value > MAX_AMOUNT:
            raise InvalidAmountError(f"Amount {value} exceeds the maximum of {MAX_AMOUNT}")
        if value != value.quantize(CENT):
            raise InvalidAmountError(f"Amount {value} has more than two decimal places")
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Malformed amount: {amount!r}")
    return int(value * MINOR_UNITS)


def from_minor(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS).quantize(CENT)


def percentage_of(minor: int, percentage: Decimal) -> int:
    """Share of a minor-unit amount, rounded half-up to the minor unit."""
    share = Decimal(minor) * Decimal(percentage) / Decimal(100)
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))
