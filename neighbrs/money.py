"""Currency amounts live as integer minor units; Decimal only at the edges."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from .errors import ValidationError

Amount = Union[Decimal, int, float, str]

_CENT = Decimal("0.01")


def to_minor_units(amount: Amount) -> int:
    """Convert a major-unit amount (e.g. 7.50) to minor units (750).

    Raises ValidationError for anything that isn't a finite number.
    """
    if isinstance(amount, bool):
        raise ValidationError("Amount must be a number")
    try:
        # str() first so 7.1 becomes Decimal("7.1"), not its binary expansion
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Amount {amount!r} is not a number")
    if not value.is_finite():
        raise ValidationError("Amount must be a finite number")
    try:
        return int((value.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())
    except InvalidOperation:
        raise ValidationError(f"Amount {amount!r} is out of range")


def positive_minor_units(amount: Amount, what: str = "Amount") -> int:
    cents = to_minor_units(amount)
    if cents <= 0:
        raise ValidationError(f"{what} must be greater than zero")
    return cents


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)
