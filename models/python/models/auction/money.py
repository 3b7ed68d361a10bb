"""
Currency amounts.

Every price in the auction engine is a ``Decimal`` with cent granularity.
Floats coming from JSON are converted through ``str`` so 10.1 stays 10.10
instead of 10.0999999999999996447286321199499070644378662109375.
"""

from decimal import Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BeforeValidator, Field

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce *value* to a two-decimal ``Decimal``.

    Raises ``ValueError`` for non-numeric input, NaN/Infinity, or sub-cent precision.
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")

    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation:
        # Exceeds the context precision once expanded to cents
        raise ValueError(f"Amount {value} is too large")
    if quantized != amount:
        raise ValueError(f"Amount {value} has more precision than 0.01")
    return quantized


Money = Annotated[Decimal, BeforeValidator(to_money), Field(ge=Decimal("0"))]
PositiveMoney = Annotated[Decimal, BeforeValidator(to_money), Field(ge=CENT)]


def format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"
