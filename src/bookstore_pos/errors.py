"""Exception hierarchy shared by the cart, payment and return engines.

Every rule violation is an ordinary, recoverable result: callers catch
:class:`BusinessRuleViolation` to re-present the current session state with
a message. Only :class:`SubmissionFailedError` originates outside the core.
"""

from __future__ import annotations

from typing import Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, cart line, sale or sale item is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when adding an item would exceed the quantity available."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )


class InvalidQuantityError(BusinessRuleViolation, ValueError):
    """Raised for negative, zero-where-forbidden or non-numeric quantities."""


class InvalidAmountError(BusinessRuleViolation, ValueError):
    """Raised for negative money values or out-of-range discount values."""


class EmptySelectionError(BusinessRuleViolation):
    """Raised when a return or exchange carries no positive-quantity line."""


class QuantityExceedsOriginalError(BusinessRuleViolation, ValueError):
    """Raised when a return quantity is above what the customer bought."""

    def __init__(self, sale_item_id: str, requested: int, maximum: int) -> None:
        self.sale_item_id = sale_item_id
        self.requested = requested
        self.maximum = maximum
        super().__init__(
            f"Cannot return {requested} unit(s) of sale item '{sale_item_id}': "
            f"at most {maximum} may be returned"
        )


class MissingReasonError(BusinessRuleViolation):
    """Raised when reasons are required but one is blank."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when checking out a cart that holds no line."""


class InsufficientPaymentError(BusinessRuleViolation):
    """Raised when the tendered amount does not allow the sale to be finalized."""


class SessionStateError(BusinessRuleViolation):
    """Raised when a session is used after it reached a terminal state."""


class SubmissionFailedError(Exception):
    """Raised when the external collaborator rejects a finalized transaction.

    The session that attempted the submission keeps all of its in-memory
    state so the user can retry without re-entering anything.
    """

    def __init__(self, message: str, *, transaction_kind: Optional[str] = None) -> None:
        self.transaction_kind = transaction_kind
        super().__init__(message)


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InsufficientStockError",
    "InvalidQuantityError",
    "InvalidAmountError",
    "EmptySelectionError",
    "QuantityExceedsOriginalError",
    "MissingReasonError",
    "EmptyCartError",
    "InsufficientPaymentError",
    "SessionStateError",
    "SubmissionFailedError",
]
