"""Decimal helpers shared by the cart, payment and return engines.

Monetary values travel through the core as :class:`~decimal.Decimal`
instances at full precision. Rounding to the currency minor unit happens only
in :func:`quantize_money`, which payload and ticket builders call at the
boundary, so accumulated totals never compound rounding error.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from . import log
from .constants import DEFAULT_CURRENCY, MONEY_QUANTUM, DiscountType
from .errors import InvalidAmountError, InvalidQuantityError

Numeric = Union[Decimal, int, str, float]

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Numeric, *, field: str = "amount") -> Decimal:
    """Coerce a caller-supplied number into a finite :class:`Decimal`.

    Floats are routed through ``str`` so that ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion. Booleans are rejected even though they
    subclass ``int``, because a ``True`` price is always a caller bug.

    Args:
        value (Decimal | int | str | float): Raw value, typically parsed from
            a form, the CLI or a worksheet cell.
        field (str): Name used in the error message.

    Returns:
        Decimal: Finite decimal representation of ``value``.

    Raises:
        InvalidAmountError: If ``value`` is not numeric or not finite.
    """
    if isinstance(value, bool):
        raise InvalidAmountError(f"{field} must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        candidate = value
    else:
        try:
            candidate = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmountError(f"{field} must be numeric, got {value!r}") from exc
    if not candidate.is_finite():
        raise InvalidAmountError(f"{field} must be finite, got {value!r}")
    return candidate


def require_nonnegative_money(amount: Numeric, *, field: str = "amount") -> Decimal:
    """Validate that a monetary value is zero or positive.

    Args:
        amount (Decimal | int | str | float): Currency value supplied by a
            caller.
        field (str): Name used in log and error messages.

    Returns:
        Decimal: The coerced amount.

    Raises:
        InvalidAmountError: If ``amount`` is negative or not numeric.
    """
    value = to_decimal(amount, field=field)
    if value < ZERO:
        log.error("Monetary value validation failed for %s: %s", field, value)
        raise InvalidAmountError(f"{field} must be zero or positive, got {value}")
    return value


def require_quantity(quantity: object, *, allow_zero: bool = False, field: str = "quantity") -> int:
    """Validate and coerce an item quantity into an ``int``.

    Integral decimals and digit strings are accepted (``Decimal("2")``,
    ``"3"``); fractional or non-numeric values are not.

    Raises:
        InvalidQuantityError: If the value is not a whole number, is negative,
            or is zero while ``allow_zero`` is ``False``.
    """
    if isinstance(quantity, bool):
        raise InvalidQuantityError(f"{field} must be a whole number, got {quantity!r}")
    if isinstance(quantity, int):
        value = quantity
    else:
        try:
            as_decimal = Decimal(str(quantity).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidQuantityError(f"{field} must be a whole number, got {quantity!r}") from exc
        if not as_decimal.is_finite() or as_decimal != as_decimal.to_integral_value():
            raise InvalidQuantityError(f"{field} must be a whole number, got {quantity!r}")
        value = int(as_decimal)

    minimum = 0 if allow_zero else 1
    if value < minimum:
        log.error("Quantity validation failed for %s: %s", field, value)
        raise InvalidQuantityError(f"{field} must be at least {minimum}, got {value}")
    return value


def validate_discount(discount_type: DiscountType, value: Numeric) -> Decimal:
    """Check a discount value against the rules of its type.

    Args:
        discount_type (DiscountType): How ``value`` is interpreted.
        value (Decimal | int | str | float): Percentage in ``[0, 100]`` or an
            absolute amount ``>= 0``.

    Returns:
        Decimal: The coerced discount value.

    Raises:
        InvalidAmountError: If the value is negative, or above 100 for a
            percentage, or the type is unknown.
    """
    try:
        kind = DiscountType(discount_type)
    except ValueError as exc:
        raise InvalidAmountError(f"Unsupported discount type: {discount_type!r}") from exc
    amount = require_nonnegative_money(value, field="discount value")
    if kind is DiscountType.PERCENTAGE and amount > HUNDRED:
        log.error("Percentage discount out of range: %s", amount)
        raise InvalidAmountError(f"Percentage discount must be within [0, 100], got {amount}")
    return amount


def discount_amount(base: Decimal, discount_type: DiscountType, value: Decimal) -> Decimal:
    """Compute the money taken off ``base`` by a discount.

    The result is clamped to ``[0, base]`` so that no discount can drive a
    total below zero. ``base`` itself is never negative in the core.
    """
    if base <= ZERO:
        return ZERO
    if DiscountType(discount_type) is DiscountType.PERCENTAGE:
        reduction = base * value / HUNDRED
    else:
        reduction = value
    return min(max(reduction, ZERO), base)


def quantize_money(amount: Numeric) -> Decimal:
    """Round ``amount`` to the currency minor unit using half-up rounding."""
    return to_decimal(amount).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def format_price(amount: Numeric, currency: str = DEFAULT_CURRENCY) -> str:
    """Render an amount for display, e.g. ``"12.50 DH"``."""
    formatted = f"{quantize_money(amount):.2f}"
    return f"{formatted} {currency}" if currency else formatted


__all__ = [
    "ZERO",
    "to_decimal",
    "require_nonnegative_money",
    "require_quantity",
    "validate_discount",
    "discount_amount",
    "quantize_money",
    "format_price",
]
