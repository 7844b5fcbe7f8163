"""
Module: procure_kernel.db.types
Responsibility: Annotated column types and money helpers shared by models,
    domain and services.  Centralizes precision and rounding so every amount
    in the ledger and on requisitions is handled identically.

No floats anywhere: all monetary amounts are Decimal.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import Numeric, String

from procure_kernel.exceptions import ValidationError

# Monetary amount: 38 digits, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code
Currency = Annotated[str, String(3)]

# Short identifier strings (statuses, codes, roles)
ShortCode = Annotated[str, String(50)]

# Free text (justification, comments, messages)
LongText = Annotated[str, String(4000)]


MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0")


def round_money(amount: Decimal, places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """Round a monetary amount half-up to the given number of places."""
    quantum = Decimal(1).scaleb(-places)
    return amount.quantize(quantum, rounding=DEFAULT_ROUNDING)


def to_money(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """
    Coerce an input amount to a rounded Decimal.

    Floats are refused outright; they cannot represent money exactly.

    Raises:
        ValidationError: If the value is a float or not numeric.
    """
    if isinstance(value, float):
        raise ValidationError(field, "floats are not accepted for money")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(field, f"not a number: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(field, f"not a finite number: {value!r}")
    return round_money(amount)


def require_positive(amount: Decimal, field: str = "amount") -> Decimal:
    """Return the amount if strictly positive, else raise ValidationError."""
    if amount <= ZERO:
        raise ValidationError(field, f"must be positive, got {amount}")
    return amount
