"""Ticket and invoice payloads handed to the external renderer.

The renderer only formats; every figure on a ticket is computed here from the
cart, payment or return session and rounded to the currency minor unit.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from .cart import Cart
from .constants import (
    DEFAULT_CURRENCY,
    RETURN_INVOICE_PREFIXES,
    SALE_INVOICE_PREFIX,
    ReturnType,
)
from .money import quantize_money
from .payment import Payment
from .returns import ReturnReceipt, ReturnSession


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _padded(identifier: object) -> str:
    return str(identifier).zfill(4)


def generate_sale_invoice_number(sale_id: object, *, when: Optional[datetime] = None) -> str:
    """Return ``FAC-YYYYMMDD-NNNN`` for a sale id."""
    when = _resolve_timestamp(when)
    return f"{SALE_INVOICE_PREFIX}-{when.strftime('%Y%m%d')}-{_padded(sale_id)}"


def generate_return_invoice_number(return_type: ReturnType, return_id: object, *, when: Optional[datetime] = None) -> str:
    """Return ``RMB-YYYYMMDD-NNNN`` for refunds and ``ECH-...`` for exchanges."""
    when = _resolve_timestamp(when)
    prefix = RETURN_INVOICE_PREFIXES[ReturnType(return_type)]
    return f"{prefix}-{when.strftime('%Y%m%d')}-{_padded(return_id)}"


def generate_sale_barcode(sale_id: object, *, when: Optional[datetime] = None) -> str:
    """Padded sale id followed by the last six digits of the epoch milliseconds."""
    when = _resolve_timestamp(when)
    millis = str(int(when.timestamp() * 1000))[-6:]
    return f"{_padded(sale_id)}{millis}"


def build_sale_ticket(
    cart: Cart,
    payment: Payment,
    *,
    sale_id: str,
    invoice_number: str,
    barcode: Optional[str] = None,
    store_name: Optional[str] = None,
    currency: str = DEFAULT_CURRENCY,
    when: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build the sale ticket payload from a cart about to be cleared."""
    items: List[Dict[str, Any]] = [
        {
            "product_name": line.name,
            "quantity": line.quantity,
            "unit_price": quantize_money(line.unit_price),
            "discount": quantize_money(line.discount_amount),
            "total": quantize_money(line.line_total),
        }
        for line in cart.lines
    ]
    return {
        "id": sale_id,
        "invoice_number": invoice_number,
        "barcode": barcode,
        "date": _resolve_timestamp(when).isoformat(),
        "store_name": store_name,
        "currency": currency,
        "items": items,
        "subtotal": quantize_money(cart.get_subtotal()),
        "discount": quantize_money(cart.get_global_discount_amount()),
        "total": quantize_money(cart.get_total()),
        "amount_paid": quantize_money(payment.tendered),
        "change": quantize_money(payment.change),
        "amount_due": quantize_money(payment.amount_due),
        "payment_method": payment.method.value,
        "payment_status": payment.status.value,
    }


def build_return_ticket(
    session: ReturnSession,
    receipt: ReturnReceipt,
    *,
    store_name: Optional[str] = None,
    currency: str = DEFAULT_CURRENCY,
    when: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build the ticket of the original sale with its return section.

    Amounts in the return section come from ``receipt`` so the printed
    figures match what the collaborator stored.
    """
    sale = session.sale
    line_type = "exchange" if session.return_type is ReturnType.EXCHANGE else "return"
    returned = [
        {
            "product_name": selection.item.product_name,
            "quantity": selection.quantity,
            "unit_price": quantize_money(selection.item.unit_price),
            "total": quantize_money(selection.amount),
            "reason": selection.reason,
            "type": line_type,
        }
        for selection in session.selections
        if selection.quantity > 0
    ]
    exchanged = [
        {
            "product_name": exchange.product_name,
            "quantity": exchange.quantity,
            "unit_price": quantize_money(exchange.unit_price),
            "total": quantize_money(exchange.amount),
        }
        for exchange in session.exchanges
    ] if session.return_type is ReturnType.EXCHANGE else []

    original_items = [
        {
            "product_name": item.product_name,
            "quantity": item.purchased_quantity,
            "unit_price": quantize_money(item.unit_price),
            "total": quantize_money(item.unit_price * item.purchased_quantity),
        }
        for item in sale.items
    ]
    return {
        "id": sale.sale_id,
        "invoice_number": sale.invoice_number,
        "return_invoice_number": receipt.invoice_number,
        "date": _resolve_timestamp(when).isoformat(),
        "store_name": store_name,
        "currency": currency,
        "items": original_items,
        "subtotal": quantize_money(sum((item["total"] for item in original_items), quantize_money(0))),
        "total": quantize_money(sale.total),
        "amount_paid": quantize_money(sale.amount_paid),
        "change": quantize_money(sale.change_amount),
        "payment_method": sale.payment_method.value,
        "return_info": {
            "status": session.return_status().value,
            "return_type": receipt.return_type.value,
            "refund_amount": quantize_money(receipt.total_refund_amount),
            "exchange_amount": quantize_money(receipt.total_exchange_amount),
            "balance_adjustment": quantize_money(receipt.balance_adjustment),
            "refund_method": session.refund_method.value if session.refund_method else None,
            "items": returned,
            "exchange_items": exchanged,
        },
    }


__all__ = [
    "generate_sale_invoice_number",
    "generate_return_invoice_number",
    "generate_sale_barcode",
    "build_sale_ticket",
    "build_return_ticket",
]
