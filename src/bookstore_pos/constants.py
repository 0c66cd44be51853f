"""Enumerations shared across the point-of-sale modules.

Centralises domain constants so that the cart, payment and return engines,
the workbook data access layer (DAL) and the CLI rely on a single source of
truth for identifiers that end up in payloads and worksheets.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Currency minor unit: amounts are rounded to this quantum only for display
# and submission.
MONEY_QUANTUM = Decimal("0.01")
DEFAULT_CURRENCY = "DH"


class DiscountType(str, Enum):
    """Enumerate how a line or global discount value is interpreted."""

    PERCENTAGE = "percentage"
    AMOUNT = "amount"


class PaymentMethod(str, Enum):
    """Enumerate tender types accepted at the till."""

    CASH = "cash"
    CARD = "card"
    CHECK = "check"
    CREDIT = "credit"


class PaymentStatus(str, Enum):
    """Enumerate settlement states of a sale payment."""

    PAID = "paid"
    PARTIAL = "partial"
    PENDING = "pending"


class ReturnType(str, Enum):
    """Enumerate the two kinds of reversing transactions."""

    REFUND = "refund"
    EXCHANGE = "exchange"


class ReturnStatus(str, Enum):
    """Informational label describing how much of a sale came back."""

    PARTIAL = "partial"
    COMPLETE = "complete"


class ItemCondition(str, Enum):
    """Enumerate the condition recorded for a returned article."""

    GOOD = "good"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"
    OPENED = "opened"


class SessionState(str, Enum):
    """Enumerate the lifecycle of a return/exchange session."""

    SELECTING = "selecting"
    VALIDATING = "validating"
    SUBMITTED = "submitted"


class ReturnLineAction(str, Enum):
    """Direction of a ``ReturnItems`` row relative to the shop's stock."""

    RETURN_IN = "return_in"
    EXCHANGE_OUT = "exchange_out"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    RETURNS = "Returns"
    RETURN_ITEMS = "ReturnItems"


SALE_INVOICE_PREFIX = "FAC"
RETURN_INVOICE_PREFIXES = {
    ReturnType.REFUND: "RMB",
    ReturnType.EXCHANGE: "ECH",
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "DEFAULT_CURRENCY",
    "DiscountType",
    "PaymentMethod",
    "PaymentStatus",
    "ReturnType",
    "ReturnStatus",
    "ItemCondition",
    "SessionState",
    "ReturnLineAction",
    "SheetName",
    "SALE_INVOICE_PREFIX",
    "RETURN_INVOICE_PREFIXES",
]
