"""Payment reconciliation: change, settlement status and finalization rules.

All functions here are pure. Tendered amounts are validated on entry so a
negative tender can never be silently treated as zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .constants import PaymentMethod, PaymentStatus
from .money import ZERO, Numeric, require_nonnegative_money


def compute_change(total: Numeric, tendered: Numeric) -> Decimal:
    """Return ``max(0, tendered - total)``.

    Raises:
        InvalidAmountError: If either amount is negative or not numeric.
    """
    due = require_nonnegative_money(total, field="total")
    paid = require_nonnegative_money(tendered, field="tendered amount")
    return max(ZERO, paid - due)


def compute_amount_due(total: Numeric, tendered: Numeric) -> Decimal:
    """Return what the customer still owes, ``max(0, total - tendered)``."""
    due = require_nonnegative_money(total, field="total")
    paid = require_nonnegative_money(tendered, field="tendered amount")
    return max(ZERO, due - paid)


def classify_payment_status(total: Numeric, tendered: Numeric) -> PaymentStatus:
    """Classify a tender against a total.

    ``paid`` when ``tendered >= total``, ``partial`` when
    ``0 < tendered < total`` and ``pending`` otherwise. The three cases do not
    overlap; a zero total with a zero tender is ``paid``.
    """
    due = require_nonnegative_money(total, field="total")
    paid = require_nonnegative_money(tendered, field="tendered amount")
    if paid >= due:
        return PaymentStatus.PAID
    if paid > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def can_finalize(total: Numeric, tendered: Numeric, allow_partial: bool = False) -> bool:
    """Tell whether a checkout may be submitted with this tender.

    ``True`` when the tender covers the total, or when ``allow_partial`` is
    set and something was tendered.
    """
    status = classify_payment_status(total, tendered)
    if status is PaymentStatus.PAID:
        return True
    return allow_partial and status is PaymentStatus.PARTIAL


@dataclass(frozen=True)
class Payment:
    """Settleable payment record derived from a cart total and a tender."""

    total: Decimal
    tendered: Decimal
    method: PaymentMethod = PaymentMethod.CASH

    @classmethod
    def create(cls, total: Numeric, tendered: Numeric, method: PaymentMethod = PaymentMethod.CASH) -> "Payment":
        return cls(
            total=require_nonnegative_money(total, field="total"),
            tendered=require_nonnegative_money(tendered, field="tendered amount"),
            method=PaymentMethod(method),
        )

    @property
    def change(self) -> Decimal:
        return compute_change(self.total, self.tendered)

    @property
    def amount_due(self) -> Decimal:
        return compute_amount_due(self.total, self.tendered)

    @property
    def status(self) -> PaymentStatus:
        return classify_payment_status(self.total, self.tendered)

    def can_finalize(self, allow_partial: bool = False) -> bool:
        return can_finalize(self.total, self.tendered, allow_partial)


__all__ = [
    "compute_change",
    "compute_amount_due",
    "classify_payment_status",
    "can_finalize",
    "Payment",
]
