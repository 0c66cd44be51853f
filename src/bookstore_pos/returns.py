"""Return and exchange reconciliation for previously committed sales.

A :class:`ReturnSession` is created from an :class:`OriginalSale` snapshot and
owned by the single flow reversing that sale. The cashier picks how many units
of each original line come back (with a reason and a condition) and, for an
exchange, which new articles leave the shop instead. The session derives:

* ``refund_total``: value of the returned units at their original price;
* ``exchange_total``: value of the new articles (always zero for a refund);
* ``balance_adjustment``: ``exchange_total - refund_total``. Positive means the
  customer pays the difference, negative means money is handed back.

Lifecycle::

    SELECTING --submit()--> VALIDATING --ok--> SUBMITTED
        ^                        |
        +----- rule violation ---+
        +----- SubmissionFailedError (selections preserved)

Validation failures and submission failures both leave every quantity,
reason and exchange line in place so nothing has to be re-entered.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from . import log
from .cart import Product
from .constants import ItemCondition, PaymentMethod, ReturnStatus, ReturnType, SessionState
from .errors import (
    BusinessRuleViolation,
    EmptySelectionError,
    InsufficientStockError,
    MissingReasonError,
    MissingReferenceError,
    QuantityExceedsOriginalError,
    SessionStateError,
    SubmissionFailedError,
)
from .money import ZERO, Numeric, quantize_money, require_nonnegative_money, require_quantity


@dataclass(frozen=True)
class OriginalSaleItem:
    """Snapshot of one committed sale line.

    ``returned_quantity`` counts units already taken back by earlier returns
    against the same line; it lowers what this session may return.
    """

    sale_item_id: str
    product_id: str
    product_name: str
    unit_price: Decimal
    purchased_quantity: int
    returned_quantity: int = 0

    @property
    def returnable_quantity(self) -> int:
        return max(0, self.purchased_quantity - self.returned_quantity)


@dataclass(frozen=True)
class OriginalSale:
    """Read-only view of a committed sale as fetched for a reversal."""

    sale_id: str
    items: Tuple[OriginalSaleItem, ...]
    invoice_number: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    total: Decimal = ZERO
    amount_paid: Decimal = ZERO
    change_amount: Decimal = ZERO
    created_at: Optional[str] = None

    def get_item(self, sale_item_id: str) -> OriginalSaleItem:
        for item in self.items:
            if item.sale_item_id == sale_item_id:
                return item
        log.warning("Sale item '%s' not found on sale '%s'", sale_item_id, self.sale_id)
        raise MissingReferenceError(f"Unknown sale item id: {sale_item_id}")


@dataclass
class ReturnSelection:
    """Quantity, reason and condition chosen for one original sale line."""

    item: OriginalSaleItem
    quantity: int = 0
    reason: str = ""
    condition: ItemCondition = ItemCondition.GOOD

    @property
    def amount(self) -> Decimal:
        return self.item.unit_price * self.quantity


@dataclass(frozen=True)
class ExchangeSelection:
    """New merchandise handed to the customer as part of an exchange."""

    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class ReturnReceipt:
    """What the return collaborator hands back for a stored reversal."""

    return_id: str
    return_type: ReturnType
    total_refund_amount: Decimal
    total_exchange_amount: Decimal
    balance_adjustment: Decimal
    invoice_number: Optional[str] = None


class ReturnGateway(Protocol):
    """External collaborator persisting return/exchange transactions."""

    def create_return(self, payload: Mapping[str, Any]) -> ReturnReceipt:
        ...


# ----------------------------------------------------------------------
# Pure computations
# ----------------------------------------------------------------------


def calculate_refund_total(selections: Iterable[ReturnSelection]) -> Decimal:
    """Sum ``unit_price * quantity`` over selections with a positive quantity."""
    return sum((selection.amount for selection in selections if selection.quantity > 0), ZERO)


def calculate_exchange_total(return_type: ReturnType, exchanges: Iterable[ExchangeSelection]) -> Decimal:
    """Sum the exchange lines; a refund never carries exchange value."""
    if ReturnType(return_type) is not ReturnType.EXCHANGE:
        return ZERO
    return sum((exchange.amount for exchange in exchanges), ZERO)


def calculate_balance_adjustment(refund_total: Decimal, exchange_total: Decimal) -> Decimal:
    """``exchange_total - refund_total``; negative means a refund is owed."""
    return exchange_total - refund_total


def determine_return_status(
    items: Iterable[OriginalSaleItem],
    selections: Iterable[ReturnSelection],
) -> ReturnStatus:
    """Label a sale ``complete`` when every purchased unit has come back.

    Units returned by earlier returns count toward the total. The label is
    informational only.
    """
    items = list(items)
    purchased = sum(item.purchased_quantity for item in items)
    returned = sum(item.returned_quantity for item in items)
    returned += sum(selection.quantity for selection in selections if selection.quantity > 0)
    if purchased > 0 and returned >= purchased:
        return ReturnStatus.COMPLETE
    return ReturnStatus.PARTIAL


# ----------------------------------------------------------------------
# Session
# ----------------------------------------------------------------------


@dataclass
class ReturnSession:
    """Explicit state of one return/exchange flow.

    Args:
        sale (OriginalSale): Snapshot of the sale being reversed.
        return_type (ReturnType): ``refund`` or ``exchange``.
        require_reasons (bool): When ``True`` every returned line needs a
            non-blank reason and the session needs an overall reason.
        refund_method (PaymentMethod | None): How money goes back to the
            customer; defaults to the original sale's payment method.
    """

    sale: OriginalSale
    return_type: ReturnType = ReturnType.REFUND
    require_reasons: bool = True
    refund_method: Optional[PaymentMethod] = None
    reason: str = ""
    notes: str = ""
    state: SessionState = SessionState.SELECTING
    last_error: Optional[str] = None
    receipt: Optional[ReturnReceipt] = None
    _selections: Dict[str, ReturnSelection] = field(default_factory=dict, repr=False)
    _exchanges: Dict[str, ExchangeSelection] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.return_type = ReturnType(self.return_type)
        self.refund_method = PaymentMethod(self.refund_method or self.sale.payment_method)
        for item in self.sale.items:
            self._selections.setdefault(item.sale_item_id, ReturnSelection(item=item))

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def selections(self) -> List[ReturnSelection]:
        return list(self._selections.values())

    @property
    def exchanges(self) -> List[ExchangeSelection]:
        return list(self._exchanges.values())

    def selection(self, sale_item_id: str) -> ReturnSelection:
        try:
            return self._selections[sale_item_id]
        except KeyError as exc:
            log.warning("Return selection lookup failed for sale item '%s'", sale_item_id)
            raise MissingReferenceError(f"Unknown sale item id: {sale_item_id}") from exc

    def refund_total(self) -> Decimal:
        return calculate_refund_total(self._selections.values())

    def exchange_total(self) -> Decimal:
        return calculate_exchange_total(self.return_type, self._exchanges.values())

    def balance_adjustment(self) -> Decimal:
        return calculate_balance_adjustment(self.refund_total(), self.exchange_total())

    def return_status(self) -> ReturnStatus:
        return determine_return_status(self.sale.items, self._selections.values())

    # ------------------------------------------------------------------
    # Selecting
    # ------------------------------------------------------------------

    def set_return_type(self, return_type: ReturnType) -> None:
        """Switch between refund and exchange.

        Exchange lines entered earlier are kept but ignored while the session
        is a refund.
        """
        self._ensure_selecting()
        self.return_type = ReturnType(return_type)

    def set_return_quantity(self, sale_item_id: str, quantity: object) -> ReturnSelection:
        """Choose how many units of an original line come back.

        Out-of-range values are rejected rather than clamped and the previous
        valid quantity stays in place.

        Raises:
            InvalidQuantityError: If ``quantity`` is negative or not a whole number.
            QuantityExceedsOriginalError: If ``quantity`` is above the units
                still returnable on that line.
            MissingReferenceError: If the sale has no such line.
        """
        self._ensure_selecting()
        selection = self.selection(sale_item_id)
        requested = require_quantity(quantity, allow_zero=True)
        maximum = selection.item.returnable_quantity
        if requested > maximum:
            log.warning(
                "Rejected return of %d x sale item '%s' (maximum %d)",
                requested,
                sale_item_id,
                maximum,
            )
            raise QuantityExceedsOriginalError(sale_item_id, requested, maximum)
        selection.quantity = requested
        return selection

    def set_line_reason(self, sale_item_id: str, reason: str) -> None:
        self._ensure_selecting()
        self.selection(sale_item_id).reason = reason or ""

    def set_line_condition(self, sale_item_id: str, condition: ItemCondition) -> None:
        self._ensure_selecting()
        self.selection(sale_item_id).condition = ItemCondition(condition)

    def set_reason(self, reason: str) -> None:
        self._ensure_selecting()
        self.reason = reason or ""

    def set_notes(self, notes: str) -> None:
        self._ensure_selecting()
        self.notes = notes or ""

    def add_exchange_item(self, product: Product, quantity: object = 1, unit_price: Optional[Numeric] = None) -> ExchangeSelection:
        """Add new merchandise to the exchange, merging repeated products.

        ``unit_price`` defaults to the catalog price. The combined quantity may
        not exceed the product's available stock.

        Raises:
            InvalidQuantityError: If ``quantity`` is not a positive whole number.
            InsufficientStockError: If the stock cannot cover the exchange.
        """
        self._ensure_selecting()
        requested = require_quantity(quantity)
        existing = self._exchanges.get(product.product_id)
        combined = requested + (existing.quantity if existing is not None else 0)
        if product.available_quantity <= 0 or combined > product.available_quantity:
            log.warning(
                "Rejected exchange of %d x '%s' (%d available)",
                combined,
                product.product_id,
                product.available_quantity,
            )
            raise InsufficientStockError(product.product_id, combined, product.available_quantity)

        if existing is not None:
            updated = replace(existing, quantity=combined)
        else:
            price = product.price if unit_price is None else unit_price
            updated = ExchangeSelection(
                product_id=product.product_id,
                product_name=product.name,
                unit_price=require_nonnegative_money(price, field="unit price"),
                quantity=combined,
            )
        self._exchanges[product.product_id] = updated
        return updated

    def set_exchange_quantity(self, product_id: str, quantity: object) -> Optional[ExchangeSelection]:
        """Overwrite an exchange line's quantity; zero removes the line."""
        self._ensure_selecting()
        requested = require_quantity(quantity, allow_zero=True)
        try:
            existing = self._exchanges[product_id]
        except KeyError as exc:
            raise MissingReferenceError(f"No exchange line for product: {product_id}") from exc
        if requested == 0:
            del self._exchanges[product_id]
            return None
        updated = replace(existing, quantity=requested)
        self._exchanges[product_id] = updated
        return updated

    def remove_exchange_item(self, product_id: str) -> None:
        self._ensure_selecting()
        self._exchanges.pop(product_id, None)

    # ------------------------------------------------------------------
    # Validating / submitting
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check the selections against the submission rules.

        Raises:
            EmptySelectionError: For a refund with no positive return line, or
                an exchange with neither a positive return line nor an
                exchange line.
            MissingReasonError: When reasons are required and a returned line
                or the overall reason is blank.
        """
        returned = [selection for selection in self._selections.values() if selection.quantity > 0]
        if self.return_type is ReturnType.REFUND and not returned:
            raise EmptySelectionError("Select at least one article to return")
        if self.return_type is ReturnType.EXCHANGE and not returned and not self._exchanges:
            raise EmptySelectionError("Select at least one article to return or exchange")

        if not self.require_reasons:
            return
        missing = [selection.item.sale_item_id for selection in returned if not selection.reason.strip()]
        if missing:
            raise MissingReasonError(f"A reason is required for every returned article: {', '.join(missing)}")
        if not self.reason.strip():
            raise MissingReasonError("An overall reason for the return is required")

    def build_payload(self) -> Dict[str, Any]:
        """Assemble the reversing transaction for the return collaborator."""
        refund_total = self.refund_total()
        exchange_total = self.exchange_total()
        return_items = [
            {
                "sale_item_id": selection.item.sale_item_id,
                "product_id": selection.item.product_id,
                "product_name": selection.item.product_name,
                "quantity": selection.quantity,
                "unit_price": selection.item.unit_price,
                "total_amount": quantize_money(selection.amount),
                "reason": selection.reason.strip(),
                "condition": selection.condition.value,
            }
            for selection in self._selections.values()
            if selection.quantity > 0
        ]
        exchange_items = None
        if self.return_type is ReturnType.EXCHANGE:
            exchange_items = [
                {
                    "product_id": exchange.product_id,
                    "product_name": exchange.product_name,
                    "quantity": exchange.quantity,
                    "unit_price": exchange.unit_price,
                    "total_amount": quantize_money(exchange.amount),
                }
                for exchange in self._exchanges.values()
            ]
        return {
            "original_sale_id": self.sale.sale_id,
            "return_type": self.return_type.value,
            "return_items": return_items,
            "exchange_items": exchange_items,
            "total_refund_amount": quantize_money(refund_total),
            "total_exchange_amount": quantize_money(exchange_total),
            "balance_adjustment": quantize_money(calculate_balance_adjustment(refund_total, exchange_total)),
            "return_status": self.return_status().value,
            "refund_method": PaymentMethod(self.refund_method).value,
            "reason": self.reason.strip(),
            "notes": self.notes,
        }

    def submit(self, gateway: ReturnGateway) -> ReturnReceipt:
        """Validate, then hand the payload to ``gateway``.

        Returns:
            ReturnReceipt: Receipt of the stored reversal; the session becomes
                ``SUBMITTED``.

        Raises:
            BusinessRuleViolation: Any validation failure; the session returns
                to ``SELECTING``.
            SubmissionFailedError: The collaborator rejected the payload; the
                session returns to ``SELECTING`` with everything preserved.
            SessionStateError: If the session was already submitted.
        """
        self._ensure_selecting()
        self.state = SessionState.VALIDATING
        try:
            self.validate()
        except BusinessRuleViolation as exc:
            self._back_to_selecting(exc)
            log.warning("Return for sale '%s' failed validation: %s", self.sale.sale_id, exc)
            raise

        payload = self.build_payload()
        try:
            receipt = gateway.create_return(payload)
        except SubmissionFailedError as exc:
            self._back_to_selecting(exc)
            log.error("Return submission for sale '%s' failed: %s", self.sale.sale_id, exc)
            raise
        except Exception as exc:
            self._back_to_selecting(exc)
            raise

        self.state = SessionState.SUBMITTED
        self.receipt = receipt
        self.last_error = None
        log.info(
            "Submitted %s '%s' for sale '%s' (refund=%s, exchange=%s, balance=%s)",
            self.return_type.value,
            receipt.return_id,
            self.sale.sale_id,
            payload["total_refund_amount"],
            payload["total_exchange_amount"],
            payload["balance_adjustment"],
        )
        return receipt

    def _back_to_selecting(self, error: Exception) -> None:
        self.state = SessionState.SELECTING
        self.last_error = str(error)

    def _ensure_selecting(self) -> None:
        if self.state is SessionState.SUBMITTED:
            raise SessionStateError(f"Return for sale '{self.sale.sale_id}' was already submitted")


__all__ = [
    "OriginalSaleItem",
    "OriginalSale",
    "ReturnSelection",
    "ExchangeSelection",
    "ReturnReceipt",
    "ReturnGateway",
    "calculate_refund_total",
    "calculate_exchange_total",
    "calculate_balance_adjustment",
    "determine_return_status",
    "ReturnSession",
]
