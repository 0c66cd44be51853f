"""Unit tests for the decimal, discount and formatting helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from bookstore_pos import money
from bookstore_pos.constants import DiscountType
from bookstore_pos.errors import BusinessRuleViolation, InvalidAmountError, InvalidQuantityError


def test_to_decimal_routes_floats_through_str():
    """0.1 should become Decimal('0.1'), not its binary expansion."""

    assert money.to_decimal(0.1) == Decimal("0.1")


@pytest.mark.parametrize("value", [True, "abc", "NaN", "Infinity", None])
def test_to_decimal_rejects_non_numeric_values(value):
    """Booleans, text and non-finite values are caller bugs."""

    with pytest.raises(InvalidAmountError):
        money.to_decimal(value)


def test_require_nonnegative_money_rejects_negative_amounts():
    """A negative tender must never be treated as zero."""

    with pytest.raises(InvalidAmountError) as excinfo:
        money.require_nonnegative_money("-0.01", field="tendered amount")
    assert "tendered amount" in str(excinfo.value)


def test_invalid_amount_error_is_value_error_and_rule_violation():
    """Callers may catch either the domain base class or ValueError."""

    with pytest.raises(ValueError):
        money.require_nonnegative_money(-1)
    with pytest.raises(BusinessRuleViolation):
        money.require_nonnegative_money(-1)


@pytest.mark.parametrize("value, expected", [(3, 3), ("4", 4), (Decimal("2"), 2), ("2.0", 2)])
def test_require_quantity_accepts_whole_numbers(value, expected):
    """Integral values of any numeric representation are accepted."""

    assert money.require_quantity(value) == expected


@pytest.mark.parametrize("value", [-1, 0, "1.5", "two", True, Decimal("0.5")])
def test_require_quantity_rejects_invalid_values(value):
    """Zero is rejected unless explicitly allowed."""

    with pytest.raises(InvalidQuantityError):
        money.require_quantity(value)


def test_require_quantity_allows_zero_when_requested():
    """Quantity edits may set zero to remove a line."""

    assert money.require_quantity(0, allow_zero=True) == 0
    with pytest.raises(InvalidQuantityError):
        money.require_quantity(-1, allow_zero=True)


def test_validate_discount_bounds_percentage():
    """Percentages must stay within [0, 100]."""

    assert money.validate_discount(DiscountType.PERCENTAGE, "100") == Decimal("100")
    with pytest.raises(InvalidAmountError):
        money.validate_discount(DiscountType.PERCENTAGE, "100.01")
    with pytest.raises(InvalidAmountError):
        money.validate_discount(DiscountType.AMOUNT, "-5")


def test_validate_discount_rejects_unknown_type():
    """Unknown discount types are reported as invalid amounts."""

    with pytest.raises(InvalidAmountError):
        money.validate_discount("bogus", "5")


def test_discount_amount_clamps_to_base():
    """An amount discount larger than the base only removes the base."""

    assert money.discount_amount(Decimal("30"), DiscountType.AMOUNT, Decimal("50")) == Decimal("30")
    assert money.discount_amount(Decimal("200"), DiscountType.PERCENTAGE, Decimal("10")) == Decimal("20")
    assert money.discount_amount(Decimal("0"), DiscountType.AMOUNT, Decimal("5")) == Decimal("0")


def test_quantize_money_rounds_half_up():
    """Rounding to the minor unit uses half-up."""

    assert money.quantize_money(Decimal("2.345")) == Decimal("2.35")
    assert money.quantize_money(Decimal("2.344")) == Decimal("2.34")


def test_format_price_appends_currency():
    """Prices render with two decimals and the currency code."""

    assert money.format_price(Decimal("12.5")) == "12.50 DH"
    assert money.format_price("3", currency="") == "3.00"
