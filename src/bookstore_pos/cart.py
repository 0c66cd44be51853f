"""Cart engine for one in-progress point-of-sale checkout.

The :class:`Cart` keeps the mutable list of :class:`CartLine` entries for a
single sale and exposes deterministic totals. Every derived amount is a pure
function of the current lines and discounts and is recomputed on each read,
so no cached figure can drift from the quantities the cashier sees.

Stock ceilings are enforced only when items are added. Later quantity edits
are allowed to exceed the displayed stock because the till may be keying a
manual or offline entry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from . import log
from .constants import DiscountType, PaymentMethod, PaymentStatus
from .errors import InsufficientStockError, MissingReferenceError
from .money import (
    ZERO,
    Numeric,
    discount_amount,
    quantize_money,
    require_nonnegative_money,
    require_quantity,
    to_decimal,
    validate_discount,
)


@dataclass(frozen=True)
class Product:
    """Read-only catalog view of a product as returned by a lookup."""

    product_id: str
    name: str
    price: Decimal
    available_quantity: int
    barcode: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class Discount:
    """A validated discount: a percentage in ``[0, 100]`` or an amount ``>= 0``."""

    discount_type: DiscountType
    value: Decimal

    @classmethod
    def create(cls, discount_type: DiscountType, value: Numeric) -> "Discount":
        """Validate ``value`` for ``discount_type`` and build the discount."""
        amount = validate_discount(discount_type, value)
        return cls(discount_type=DiscountType(discount_type), value=amount)

    def amount_on(self, base: Decimal) -> Decimal:
        """Return the reduction this discount applies to ``base``, clamped to it."""
        return discount_amount(base, self.discount_type, self.value)


@dataclass
class CartLine:
    """One product entry of the cart with its own quantity and discount.

    ``unit_price`` is captured when the product is first added; later catalog
    price changes do not alter lines already in the cart.
    """

    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    discount: Optional[Discount] = None
    barcode: Optional[str] = None

    @property
    def gross_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def discount_amount(self) -> Decimal:
        if self.discount is None:
            return ZERO
        return self.discount.amount_on(self.gross_total)

    @property
    def line_total(self) -> Decimal:
        return self.gross_total - self.discount_amount


@dataclass
class Cart:
    """Ordered collection of cart lines plus an optional global discount."""

    _lines: Dict[str, CartLine] = field(default_factory=dict, repr=False)
    global_discount: Optional[Discount] = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._lines

    def is_empty(self) -> bool:
        return not self._lines

    def item_count(self) -> int:
        """Return the number of units across every line."""
        return sum(line.quantity for line in self._lines.values())

    def get_line(self, product_id: str) -> CartLine:
        """Return the line for ``product_id``.

        Raises:
            MissingReferenceError: If the cart holds no line for the product.
        """
        try:
            return self._lines[product_id]
        except KeyError as exc:
            log.warning("Cart line lookup failed for product '%s'", product_id)
            raise MissingReferenceError(f"No cart line for product: {product_id}") from exc

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_item(self, product: Product, quantity: object = 1) -> CartLine:
        """Add ``quantity`` units of ``product`` to the cart.

        An existing line for the same product is incremented and keeps the
        unit price it was created with. A new line captures ``product.price``.
        The combined quantity may not exceed ``product.available_quantity``;
        when it would, nothing is changed.

        Args:
            product (Product): Catalog record resolved by the caller.
            quantity (int): Units to add; must be a whole number ``>= 1``.

        Returns:
            CartLine: The created or updated line.

        Raises:
            InvalidQuantityError: If ``quantity`` is not a positive whole number.
            InsufficientStockError: If the product is out of stock or the
                combined quantity would exceed the available stock.
        """
        requested = require_quantity(quantity)
        existing = self._lines.get(product.product_id)
        current = existing.quantity if existing is not None else 0
        combined = current + requested

        if product.available_quantity <= 0 or combined > product.available_quantity:
            log.warning(
                "Rejected add of %d x '%s': %d in cart, %d available",
                requested,
                product.product_id,
                current,
                product.available_quantity,
            )
            raise InsufficientStockError(product.product_id, combined, product.available_quantity)

        if existing is not None:
            existing.quantity = combined
            log.debug("Incremented cart line '%s' to %d", product.product_id, combined)
            return existing

        line = CartLine(
            product_id=product.product_id,
            name=product.name,
            unit_price=require_nonnegative_money(product.price, field="unit price"),
            quantity=requested,
            barcode=product.barcode,
        )
        self._lines[product.product_id] = line
        log.info("Added '%s' to cart (quantity=%d, unit_price=%s)", product.product_id, requested, line.unit_price)
        return line

    def set_quantity(self, product_id: str, new_quantity: object) -> Optional[CartLine]:
        """Overwrite the quantity of an existing line.

        A quantity of zero removes the line. The stock ceiling is not
        re-checked here.

        Returns:
            CartLine | None: The updated line, or ``None`` when it was removed.

        Raises:
            InvalidQuantityError: If ``new_quantity`` is negative or not a whole
                number.
            MissingReferenceError: If the cart holds no line for the product.
        """
        quantity = require_quantity(new_quantity, allow_zero=True)
        line = self.get_line(product_id)
        if quantity == 0:
            self.remove_item(product_id)
            return None
        line.quantity = quantity
        log.debug("Set cart line '%s' quantity to %d", product_id, quantity)
        return line

    def decrement(self, product_id: str, step: int = 1) -> Optional[CartLine]:
        """Lower a line's quantity by ``step``, removing it when it reaches zero."""
        line = self.get_line(product_id)
        return self.set_quantity(product_id, max(0, line.quantity - require_quantity(step, field="step")))

    def remove_item(self, product_id: str) -> None:
        """Remove a line; a missing line is not an error."""
        if self._lines.pop(product_id, None) is not None:
            log.info("Removed '%s' from cart", product_id)

    def set_line_discount(self, product_id: str, discount_type: DiscountType, value: Numeric) -> CartLine:
        """Attach a validated discount to one line.

        Raises:
            InvalidAmountError: If the value is negative or a percentage above 100.
            MissingReferenceError: If the cart holds no line for the product.
        """
        discount = Discount.create(discount_type, value)
        line = self.get_line(product_id)
        line.discount = discount
        log.debug("Line discount on '%s': %s %s", product_id, discount.discount_type.value, discount.value)
        return line

    def clear_line_discount(self, product_id: str) -> None:
        self.get_line(product_id).discount = None

    def set_global_discount(self, discount_type: DiscountType, value: Numeric) -> Discount:
        """Set the discount applied on top of the summed line totals."""
        self.global_discount = Discount.create(discount_type, value)
        log.debug("Global discount: %s %s", self.global_discount.discount_type.value, self.global_discount.value)
        return self.global_discount

    def clear_global_discount(self) -> None:
        self.global_discount = None

    def clear(self) -> None:
        """Empty every line and reset discounts."""
        self._lines.clear()
        self.global_discount = None
        log.debug("Cart cleared")

    # ------------------------------------------------------------------
    # Derived totals (full precision)
    # ------------------------------------------------------------------

    def get_subtotal(self) -> Decimal:
        """Sum of line totals before the global discount."""
        return sum((line.line_total for line in self._lines.values()), ZERO)

    def get_global_discount_amount(self) -> Decimal:
        if self.global_discount is None:
            return ZERO
        return self.global_discount.amount_on(self.get_subtotal())

    def get_total(self) -> Decimal:
        """``max(0, subtotal - global discount amount)``."""
        return max(ZERO, self.get_subtotal() - self.get_global_discount_amount())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_sale_payload(
        self,
        *,
        amount_paid: Decimal,
        change_amount: Decimal,
        payment_method: PaymentMethod,
        payment_status: PaymentStatus,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the sale submission payload for the external collaborator.

        Unit prices and discount values are passed through untouched so the
        receiver can recompute the same total (see :func:`recompute_sale_total`);
        derived amounts are rounded to the minor unit.
        """
        items = []
        for line in self._lines.values():
            items.append(
                {
                    "product_id": line.product_id,
                    "product_name": line.name,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "discount_type": line.discount.discount_type.value if line.discount else None,
                    "discount_value": line.discount.value if line.discount else None,
                    "line_total": quantize_money(line.line_total),
                }
            )
        return {
            "items": items,
            "global_discount_type": self.global_discount.discount_type.value if self.global_discount else None,
            "global_discount_value": self.global_discount.value if self.global_discount else None,
            "subtotal": quantize_money(self.get_subtotal()),
            "discount_amount": quantize_money(self.get_global_discount_amount()),
            "total": quantize_money(self.get_total()),
            "amount_paid": quantize_money(amount_paid),
            "change_amount": quantize_money(change_amount),
            "payment_method": PaymentMethod(payment_method).value,
            "payment_status": PaymentStatus(payment_status).value,
            "notes": notes,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot the cart state as plain, JSON-friendly data."""
        return {
            "lines": [
                {
                    "product_id": line.product_id,
                    "name": line.name,
                    "unit_price": str(line.unit_price),
                    "quantity": line.quantity,
                    "barcode": line.barcode,
                    "discount": _discount_to_dict(line.discount),
                }
                for line in self._lines.values()
            ],
            "global_discount": _discount_to_dict(self.global_discount),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Cart":
        """Rebuild a cart produced by :meth:`to_dict`, re-validating every value."""
        cart = cls()
        for raw in data.get("lines", []):
            line = CartLine(
                product_id=str(raw["product_id"]),
                name=str(raw["name"]),
                unit_price=require_nonnegative_money(raw["unit_price"], field="unit price"),
                quantity=require_quantity(raw["quantity"]),
                discount=_discount_from_dict(raw.get("discount")),
                barcode=raw.get("barcode"),
            )
            cart._lines[line.product_id] = line
        cart.global_discount = _discount_from_dict(data.get("global_discount"))
        return cart


def _discount_to_dict(discount: Optional[Discount]) -> Optional[Dict[str, str]]:
    if discount is None:
        return None
    return {"type": discount.discount_type.value, "value": str(discount.value)}


def _discount_from_dict(raw: Optional[Mapping[str, Any]]) -> Optional[Discount]:
    if not raw:
        return None
    return Discount.create(raw["type"], raw["value"])


@dataclass(frozen=True)
class SaleFigures:
    """Amounts of a sale payload recomputed with the cart's arithmetic."""

    lines: List[CartLine]
    global_discount: Optional[Discount]
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal


def recompute_sale_figures(payload: Mapping[str, Any]) -> SaleFigures:
    """Rebuild the lines of a sale payload and recompute every derived amount.

    Only quantities, unit prices and discounts are read; submitted line
    totals and subtotals are ignored. Amounts keep full precision.

    Raises:
        KeyError: If an item lacks its product id, quantity or unit price.
        InvalidQuantityError: If an item quantity is not a positive whole number.
        InvalidAmountError: If a price or discount value is invalid.
    """
    lines = [
        CartLine(
            product_id=str(item["product_id"]),
            name=str(item.get("product_name") or ""),
            unit_price=require_nonnegative_money(item["unit_price"], field="unit price"),
            quantity=require_quantity(item["quantity"]),
            discount=_optional_discount(item.get("discount_type"), item.get("discount_value")),
        )
        for item in payload.get("items", [])
    ]
    subtotal = sum((line.line_total for line in lines), ZERO)
    global_discount = _optional_discount(payload.get("global_discount_type"), payload.get("global_discount_value"))
    reduction = global_discount.amount_on(subtotal) if global_discount else ZERO
    return SaleFigures(
        lines=lines,
        global_discount=global_discount,
        subtotal=subtotal,
        discount_amount=reduction,
        total=max(ZERO, subtotal - reduction),
    )


def recompute_sale_total(payload: Mapping[str, Any]) -> Decimal:
    """Recompute the rounded total of a sale payload from its items and discounts.

    Applies exactly the cart's arithmetic to the payload's unit prices,
    quantities and discounts, so a payload built by
    :meth:`Cart.to_sale_payload` reproduces its own ``total``.

    Args:
        payload (Mapping[str, Any]): Sale submission payload.

    Returns:
        Decimal: Total rounded to the currency minor unit.

    Raises:
        InvalidQuantityError: If an item quantity is not a positive whole number.
        InvalidAmountError: If a price or discount value is invalid.
    """
    return quantize_money(recompute_sale_figures(payload).total)


def _optional_discount(discount_type: Optional[str], value: Optional[Numeric]) -> Optional[Discount]:
    if not discount_type or value is None:
        return None
    return Discount.create(discount_type, to_decimal(value, field="discount value"))


__all__ = [
    "Product",
    "Discount",
    "CartLine",
    "Cart",
    "SaleFigures",
    "recompute_sale_figures",
    "recompute_sale_total",
]
