"""Integration tests describing the end-to-end bookstore till workflows.

These scenarios drive the checkout and return sessions against the workbook
collaborator, persisting and reloading between steps so each test mirrors
how the production till writes to disk before the next customer.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from bookstore_pos import data_manager, gateways
from bookstore_pos.checkout import CheckoutSession
from bookstore_pos.constants import DiscountType, PaymentStatus, ReturnType, SessionState
from bookstore_pos.errors import (
    InsufficientPaymentError,
    QuantityExceedsOriginalError,
    SubmissionFailedError,
)
from bookstore_pos.returns import ReturnSession


def _register(context, *, product_id: str, name: str, price: str, quantity: int) -> None:
    gateways.add_product(context, product_id=product_id, name=name, price=price, quantity=quantity)


def _reload(context):
    gateways.persist_context(context)
    return gateways.refresh_context(context)


@pytest.fixture
def till(runtime_context, fixed_clock):
    """Runtime context stocked with three books, persisted, with its gateway."""

    _register(runtime_context, product_id="1", name="Encyclopédie", price="100.00", quantity=10)
    _register(runtime_context, product_id="2", name="Atlas", price="60.00", quantity=5)
    _register(runtime_context, product_id="3", name="Manuel", price="50.00", quantity=6)
    context = _reload(runtime_context)
    return context, gateways.WorkbookGateway(context, clock=fixed_clock)


def _sell(gateway, *lines, tendered=None):
    session = CheckoutSession(gateway, gateway)
    for code, quantity in lines:
        session.scan(code, quantity)
    if tendered is None:
        session.tender_exact()
    else:
        session.tender(tendered)
    return session.submit()


def test_full_payment_sale_is_stored_as_paid(till):
    """Three books at 100.00 paid exactly: no change, status paid."""

    context, gateway = till
    session = CheckoutSession(gateway, gateway)
    session.scan("1", 3)
    payment = session.tender("300.00")

    assert session.cart.get_subtotal() == Decimal("300.00")
    assert payment.change == 0
    assert payment.status is PaymentStatus.PAID

    ticket = session.submit()
    context = _reload(context)

    (sale,) = data_manager.iter_sales(context.workbook)
    assert ticket["invoice_number"] == "FAC-20240315-0001"
    assert sale.total == Decimal("300.00")
    assert sale.payment_status == "paid"
    assert gateways.get_product(context, "1").quantity == 7


def test_partial_tender_after_global_discount(till):
    """A 10% discount brings the total to 270.00; 200.00 tendered is partial."""

    _, gateway = till
    session = CheckoutSession(gateway, gateway)
    session.scan("1", 3)
    session.cart.set_global_discount(DiscountType.PERCENTAGE, "10")
    payment = session.tender("200.00")

    assert payment.total == Decimal("270.00")
    assert payment.change == 0
    assert payment.status is PaymentStatus.PARTIAL
    with pytest.raises(InsufficientPaymentError):
        session.submit()

    session.allow_partial = True
    ticket = session.submit()
    assert ticket["payment_status"] == "partial"
    assert ticket["amount_due"] == Decimal("70.00")


def test_partial_refund_of_four_unit_line(till):
    """Returning 2 of 4 units at 50.00 refunds 100.00 and stays partial."""

    context, gateway = till
    receipt_ticket = _sell(gateway, ("3", 4))
    context = _reload(context)
    gateway = gateways.WorkbookGateway(context)

    session = ReturnSession(gateway.get_sale(receipt_ticket["id"]))
    (line,) = session.sale.items
    session.set_return_quantity(line.sale_item_id, 2)
    session.set_line_reason(line.sale_item_id, "defective")
    session.set_reason("defective")

    assert session.refund_total() == Decimal("100.00")
    assert session.return_status().value == "partial"

    receipt = session.submit(gateway)
    context = _reload(context)

    assert receipt.total_refund_amount == Decimal("100.00")
    assert gateways.get_product(context, "3").quantity == 4
    (header,) = data_manager.iter_returns(context.workbook)
    assert header.return_status == "partial"


def test_exchange_with_refund_owed_to_customer(till):
    """Four units back as exchange for three at 60.00: balance is -20.00."""

    context, gateway = till
    sale_ticket = _sell(gateway, ("3", 4))

    session = ReturnSession(
        gateway.get_sale(sale_ticket["id"]), return_type=ReturnType.EXCHANGE, require_reasons=False
    )
    (line,) = session.sale.items
    session.set_return_quantity(line.sale_item_id, 4)
    session.add_exchange_item(gateway.find_product("2"), 3)

    assert session.exchange_total() == Decimal("180.00")
    assert session.refund_total() == Decimal("200.00")
    assert session.balance_adjustment() == Decimal("-20.00")
    assert session.return_status().value == "complete"

    receipt = session.submit(gateway)
    context = _reload(context)

    assert receipt.invoice_number == "ECH-20240315-0001"
    assert receipt.balance_adjustment == Decimal("-20.00")
    assert gateways.get_product(context, "3").quantity == 6
    assert gateways.get_product(context, "2").quantity == 2


def test_over_return_is_rejected_and_state_unchanged(till):
    """Asking for 5 of 4 purchased units raises and keeps the prior value."""

    _, gateway = till
    sale_ticket = _sell(gateway, ("3", 4))
    session = ReturnSession(gateway.get_sale(sale_ticket["id"]), require_reasons=False)
    (line,) = session.sale.items
    session.set_return_quantity(line.sale_item_id, 1)

    with pytest.raises(QuantityExceedsOriginalError):
        session.set_return_quantity(line.sale_item_id, 5)

    assert session.selection(line.sale_item_id).quantity == 1
    assert session.state is SessionState.SELECTING


def test_stale_return_session_fails_submission_and_can_retry(till):
    """A collaborator rejection keeps the session usable for a corrected retry."""

    _, gateway = till
    sale_ticket = _sell(gateway, ("1", 2))
    first = ReturnSession(gateway.get_sale(sale_ticket["id"]), require_reasons=False)
    stale = ReturnSession(gateway.get_sale(sale_ticket["id"]), require_reasons=False)
    first.set_return_quantity("1", 2)
    stale.set_return_quantity("1", 1)
    first.submit(gateway)

    with pytest.raises(SubmissionFailedError):
        stale.submit(gateway)

    assert stale.state is SessionState.SELECTING
    assert stale.selection("1").quantity == 1
    assert stale.last_error


def test_sale_payload_total_round_trips_through_workbook(till):
    """The stored total equals a recomputation of the stored lines."""

    context, gateway = till
    session = CheckoutSession(gateway, gateway)
    session.scan("1", 2)
    session.scan("2", 1)
    session.cart.set_line_discount("1", DiscountType.PERCENTAGE, "12.5")
    session.cart.set_line_discount("2", DiscountType.AMOUNT, "7.35")
    session.cart.set_global_discount(DiscountType.AMOUNT, "3.10")
    session.tender_exact()
    expected_total = session.payment.total
    session.submit()
    context = _reload(context)

    (sale,) = data_manager.iter_sales(context.workbook)
    items = list(data_manager.iter_sale_items(context.workbook))
    subtotal = sum((item.line_total for item in items), Decimal("0"))

    assert sale.total == expected_total.quantize(Decimal("0.01"))
    assert subtotal - sale.discount_amount == sale.total
