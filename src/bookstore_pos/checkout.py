"""Checkout controller tying the cart, the payment and the sale collaborator.

One :class:`CheckoutSession` is owned by one till flow. It resolves scanned
codes through a catalog, accumulates lines in its :class:`~bookstore_pos.cart.Cart`,
derives the payment from the tender and, on submission, hands the sale
payload to the collaborator. The session does not deduplicate requests: the
caller keeps a single submission in flight per user action.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

from . import log
from .cart import Cart, CartLine, Product
from .constants import DEFAULT_CURRENCY, PaymentMethod
from .errors import EmptyCartError, InsufficientPaymentError, MissingReferenceError, SubmissionFailedError
from .money import ZERO, Numeric, require_nonnegative_money
from .payment import Payment
from .tickets import build_sale_ticket


@dataclass(frozen=True)
class SubmissionReceipt:
    """Durable identifiers returned by the sale collaborator."""

    sale_id: str
    invoice_number: str
    barcode: Optional[str] = None


class CatalogLookup(Protocol):
    """Resolve a product by id, barcode or reference; ``None`` when unknown."""

    def find_product(self, query: str) -> Optional[Product]:
        ...


class SaleGateway(Protocol):
    """Persist a finalized sale payload."""

    def create_sale(self, payload: Mapping[str, Any]) -> SubmissionReceipt:
        ...


class CheckoutSession:
    """State of one in-progress sale at the till."""

    def __init__(
        self,
        catalog: CatalogLookup,
        gateway: SaleGateway,
        *,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        allow_partial: bool = False,
        store_name: Optional[str] = None,
        currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self.catalog = catalog
        self.gateway = gateway
        self.default_payment_method = PaymentMethod(payment_method)
        self.payment_method = self.default_payment_method
        self.allow_partial = allow_partial
        self.store_name = store_name
        self.currency = currency
        self.cart = Cart()
        self.tendered: Decimal = ZERO
        self.last_error: Optional[str] = None

    def scan(self, query: str, quantity: object = 1) -> CartLine:
        """Look ``query`` up in the catalog and add the product to the cart.

        Raises:
            MissingReferenceError: If the catalog does not know ``query``.
            InsufficientStockError: If the stock cannot cover the quantity.
        """
        product = self.catalog.find_product(query.strip())
        if product is None:
            log.warning("No product found for code '%s'", query)
            raise MissingReferenceError(f"No product found for code: {query}")
        return self.cart.add_item(product, quantity)

    def tender(self, amount: Numeric) -> Payment:
        """Record the amount offered by the customer."""
        self.tendered = require_nonnegative_money(amount, field="tendered amount")
        return self.payment

    def tender_exact(self) -> Payment:
        """Record a tender equal to the current total."""
        self.tendered = self.cart.get_total()
        return self.payment

    def set_payment_method(self, method: PaymentMethod) -> None:
        self.payment_method = PaymentMethod(method)

    @property
    def payment(self) -> Payment:
        return Payment.create(self.cart.get_total(), self.tendered, self.payment_method)

    def submit(self, *, notes: Optional[str] = None, when: Optional[datetime] = None) -> Dict[str, Any]:
        """Finalize the sale and return its ticket payload.

        On success the cart and tender are reset for the next customer. On a
        collaborator failure nothing is cleared so the cashier can retry.

        Raises:
            EmptyCartError: If the cart holds no line.
            InsufficientPaymentError: If the tender does not allow finalization.
            SubmissionFailedError: If the collaborator rejected the sale.
        """
        if self.cart.is_empty():
            raise EmptyCartError("The cart is empty")
        payment = self.payment
        if not payment.can_finalize(self.allow_partial):
            log.warning(
                "Checkout blocked: tendered %s against total %s (allow_partial=%s)",
                payment.tendered,
                payment.total,
                self.allow_partial,
            )
            raise InsufficientPaymentError(
                f"Tendered {payment.tendered} does not cover the total {payment.total}"
            )

        payload = self.cart.to_sale_payload(
            amount_paid=payment.tendered,
            change_amount=payment.change,
            payment_method=payment.method,
            payment_status=payment.status,
            notes=notes or f"POS sale - {len(self.cart)} article(s)",
        )
        try:
            receipt = self.gateway.create_sale(payload)
        except SubmissionFailedError as exc:
            self.last_error = str(exc)
            log.error("Sale submission failed: %s", exc)
            raise

        ticket = build_sale_ticket(
            self.cart,
            payment,
            sale_id=receipt.sale_id,
            invoice_number=receipt.invoice_number,
            barcode=receipt.barcode,
            store_name=self.store_name,
            currency=self.currency,
            when=when,
        )
        log.info(
            "Sale '%s' submitted (invoice=%s, total=%s, status=%s)",
            receipt.sale_id,
            receipt.invoice_number,
            payload["total"],
            payload["payment_status"],
        )
        self.reset()
        return ticket

    def reset(self) -> None:
        """Discard the cart and tender, restoring the default payment method."""
        self.cart.clear()
        self.tendered = ZERO
        self.payment_method = self.default_payment_method
        self.last_error = None


__all__ = [
    "SubmissionReceipt",
    "CatalogLookup",
    "SaleGateway",
    "CheckoutSession",
]
