"""Unit tests for the cart engine."""

from __future__ import annotations

import itertools
from decimal import Decimal

import pytest

from bookstore_pos.cart import Cart, recompute_sale_total
from bookstore_pos.constants import DiscountType, PaymentMethod, PaymentStatus
from bookstore_pos.errors import (
    InsufficientStockError,
    InvalidAmountError,
    InvalidQuantityError,
    MissingReferenceError,
)


# ---------------------------------------------------------------------------
# Adding items
# ---------------------------------------------------------------------------


def test_add_item_creates_line_with_catalog_price(make_product):
    """The first add captures the product price on a new line."""

    cart = Cart()
    line = cart.add_item(make_product("P1", price="12.50"), 2)

    assert line.unit_price == Decimal("12.50")
    assert line.quantity == 2
    assert len(cart) == 1
    assert "P1" in cart


def test_add_item_twice_merges_into_one_line(make_product):
    """Adding the same product increments the existing line."""

    cart = Cart()
    product = make_product("P1", stock=5)
    cart.add_item(product, 2)
    cart.add_item(product, 3)

    assert len(cart) == 1
    assert cart.get_line("P1").quantity == 5


def test_add_item_keeps_original_price_on_increment(make_product):
    """A later price change does not alter a line already in the cart."""

    cart = Cart()
    cart.add_item(make_product("P1", price="10.00"))
    cart.add_item(make_product("P1", price="99.00"))

    assert cart.get_line("P1").unit_price == Decimal("10.00")
    assert cart.get_line("P1").quantity == 2


def test_add_item_beyond_stock_raises_and_leaves_cart_unchanged(make_product):
    """Exceeding stock is rejected without touching the existing line."""

    cart = Cart()
    product = make_product("P1", stock=3)
    cart.add_item(product, 2)

    with pytest.raises(InsufficientStockError) as excinfo:
        cart.add_item(product, 2)

    assert excinfo.value.product_id == "P1"
    assert excinfo.value.requested == 4
    assert excinfo.value.available == 3
    assert cart.get_line("P1").quantity == 2


def test_add_item_out_of_stock_product_raises(make_product):
    """Zero stock blocks any add."""

    cart = Cart()
    with pytest.raises(InsufficientStockError):
        cart.add_item(make_product("P1", stock=0))
    assert cart.is_empty()


@pytest.mark.parametrize("quantity", [0, -1, "x", "1.5"])
def test_add_item_rejects_invalid_quantities(make_product, quantity):
    """Only positive whole numbers may be added."""

    cart = Cart()
    with pytest.raises(InvalidQuantityError):
        cart.add_item(make_product(), quantity)
    assert cart.is_empty()


@pytest.mark.parametrize("q1, q2, stock", list(itertools.product([1, 2, 3], [1, 2, 4], [0, 3, 5, 7])))
def test_two_adds_sum_or_fail_atomically(make_product, q1, q2, stock):
    """Two adds yield q1+q2 when stock allows, otherwise the cart is untouched."""

    cart = Cart()
    product = make_product("P1", stock=stock)
    try:
        cart.add_item(product, q1)
    except InsufficientStockError:
        assert cart.is_empty()
        return
    before = cart.get_line("P1").quantity
    try:
        cart.add_item(product, q2)
    except InsufficientStockError:
        assert cart.get_line("P1").quantity == before
        assert q1 + q2 > stock
        return
    assert len(cart) == 1
    assert cart.get_line("P1").quantity == q1 + q2 <= stock


# ---------------------------------------------------------------------------
# Editing lines
# ---------------------------------------------------------------------------


def test_set_quantity_updates_and_skips_stock_check(make_product):
    """Quantity edits are not capped by the stock displayed at add time."""

    cart = Cart()
    cart.add_item(make_product("P1", stock=2))
    line = cart.set_quantity("P1", 10)

    assert line is not None
    assert line.quantity == 10


def test_set_quantity_zero_removes_line(make_product):
    """Setting zero removes the line entirely."""

    cart = Cart()
    cart.add_item(make_product("P1"))
    assert cart.set_quantity("P1", 0) is None
    assert "P1" not in cart


def test_set_quantity_negative_raises(make_product):
    """Negative quantities are invalid."""

    cart = Cart()
    cart.add_item(make_product("P1"))
    with pytest.raises(InvalidQuantityError):
        cart.set_quantity("P1", -2)
    assert cart.get_line("P1").quantity == 1


def test_set_quantity_unknown_line_raises():
    """Editing a line that does not exist is a missing reference."""

    with pytest.raises(MissingReferenceError):
        Cart().set_quantity("nope", 1)


def test_decrement_removes_line_at_zero(make_product):
    """Decrementing the last unit removes the line."""

    cart = Cart()
    cart.add_item(make_product("P1"), 2)
    cart.decrement("P1")
    assert cart.get_line("P1").quantity == 1
    assert cart.decrement("P1") is None
    assert cart.is_empty()


def test_remove_item_is_idempotent(make_product):
    """Removing an absent line is not an error."""

    cart = Cart()
    cart.add_item(make_product("P1"))
    cart.remove_item("P1")
    cart.remove_item("P1")
    assert cart.is_empty()


# ---------------------------------------------------------------------------
# Discounts and totals
# ---------------------------------------------------------------------------


def test_line_and_global_discounts_compose(make_product):
    """Line discounts apply first, the global discount on the subtotal."""

    cart = Cart()
    cart.add_item(make_product("P1", price="100.00"), 2)
    cart.add_item(make_product("P2", price="50.00"), 1)
    cart.set_line_discount("P1", DiscountType.PERCENTAGE, "10")
    cart.set_line_discount("P2", DiscountType.AMOUNT, "5")
    cart.set_global_discount(DiscountType.AMOUNT, "15")

    assert cart.get_line("P1").line_total == Decimal("180")
    assert cart.get_line("P2").line_total == Decimal("45")
    assert cart.get_subtotal() == Decimal("225")
    assert cart.get_global_discount_amount() == Decimal("15")
    assert cart.get_total() == Decimal("210")


def test_invalid_discounts_are_rejected(make_product):
    """Out-of-range discounts raise and leave the previous discount in place."""

    cart = Cart()
    cart.add_item(make_product("P1"))
    cart.set_line_discount("P1", DiscountType.PERCENTAGE, "5")

    with pytest.raises(InvalidAmountError):
        cart.set_line_discount("P1", DiscountType.PERCENTAGE, "150")
    with pytest.raises(InvalidAmountError):
        cart.set_global_discount(DiscountType.AMOUNT, "-1")

    assert cart.get_line("P1").discount.value == Decimal("5")
    assert cart.global_discount is None


@pytest.mark.parametrize("percentage", ["0", "12.5", "33.33", "99.99", "100"])
def test_total_never_negative_for_percentages(make_product, percentage):
    """Any percentage in [0, 100] keeps the total non-negative."""

    cart = Cart()
    cart.add_item(make_product("P1", price="19.99"), 3)
    cart.set_line_discount("P1", DiscountType.PERCENTAGE, percentage)
    cart.set_global_discount(DiscountType.PERCENTAGE, percentage)
    assert cart.get_total() >= 0


@pytest.mark.parametrize("factor", ["0", "0.5", "1", "3", "10"])
def test_total_never_negative_for_large_amounts(make_product, factor):
    """Amount discounts up to ten times the subtotal clamp at zero."""

    cart = Cart()
    cart.add_item(make_product("P1", price="20.00"), 2)
    cart.set_global_discount(DiscountType.AMOUNT, cart.get_subtotal() * Decimal(factor))
    assert cart.get_total() >= 0
    if Decimal(factor) >= 1:
        assert cart.get_total() == 0


def test_empty_cart_totals_are_zero():
    """An empty cart has zero subtotal and total even with a discount."""

    cart = Cart()
    cart.set_global_discount(DiscountType.AMOUNT, "10")
    assert cart.get_subtotal() == 0
    assert cart.get_total() == 0


def test_clear_resets_lines_and_discount(make_product):
    """clear() empties the cart."""

    cart = Cart()
    cart.add_item(make_product("P1"))
    cart.set_global_discount(DiscountType.PERCENTAGE, "5")
    cart.clear()
    assert cart.is_empty()
    assert cart.global_discount is None


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def _payload(cart: Cart) -> dict:
    return cart.to_sale_payload(
        amount_paid=cart.get_total(),
        change_amount=Decimal("0"),
        payment_method=PaymentMethod.CASH,
        payment_status=PaymentStatus.PAID,
    )


def test_sale_payload_recomputes_same_total(make_product):
    """Recomputing a payload's total from its items reproduces the total."""

    cart = Cart()
    cart.add_item(make_product("P1", price="19.99", stock=10), 3)
    cart.add_item(make_product("P2", price="7.35", stock=10), 2)
    cart.set_line_discount("P1", DiscountType.PERCENTAGE, "7.5")
    cart.set_line_discount("P2", DiscountType.AMOUNT, "1.10")
    cart.set_global_discount(DiscountType.PERCENTAGE, "3")

    payload = _payload(cart)

    assert recompute_sale_total(payload) == payload["total"]
    assert recompute_sale_total(payload) == recompute_sale_total(payload)


def test_sale_payload_shape(make_product):
    """The payload carries items, discounts and payment fields."""

    cart = Cart()
    cart.add_item(make_product("P1", name="Roman", price="10.00"), 2)
    cart.set_global_discount(DiscountType.AMOUNT, "2")
    payload = _payload(cart)

    assert payload["items"] == [
        {
            "product_id": "P1",
            "product_name": "Roman",
            "quantity": 2,
            "unit_price": Decimal("10.00"),
            "discount_type": None,
            "discount_value": None,
            "line_total": Decimal("20.00"),
        }
    ]
    assert payload["global_discount_type"] == "amount"
    assert payload["subtotal"] == Decimal("20.00")
    assert payload["discount_amount"] == Decimal("2.00")
    assert payload["total"] == Decimal("18.00")
    assert payload["payment_method"] == "cash"
    assert payload["payment_status"] == "paid"


def test_to_dict_from_dict_preserves_totals(make_product):
    """A snapshot rebuilt from plain data yields the same figures."""

    cart = Cart()
    cart.add_item(make_product("P1", price="12.40"), 2)
    cart.set_line_discount("P1", DiscountType.AMOUNT, "1")
    cart.set_global_discount(DiscountType.PERCENTAGE, "10")

    rebuilt = Cart.from_dict(cart.to_dict())

    assert rebuilt.get_total() == cart.get_total()
    assert rebuilt.get_line("P1").quantity == 2
