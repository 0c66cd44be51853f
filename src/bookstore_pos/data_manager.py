"""Data access layer for the bookstore point of sale.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CURRENCY, PaymentMethod, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
RETURNS_SHEET = SheetName.RETURNS.value
RETURN_ITEMS_SHEET = SheetName.RETURN_ITEMS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    location_slug: str
    location_id: str
    currency: str = DEFAULT_CURRENCY
    default_payment_method: PaymentMethod = PaymentMethod.CASH
    allow_partial_payment: bool = False
    require_return_reasons: bool = True


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    price: Decimal
    quantity: int
    barcode: Optional[str]
    reference: Optional[str]
    location_id: str
    is_active: bool


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    invoice_number: str
    barcode: Optional[str]
    timestamp_iso: str
    location_id: str
    subtotal: Decimal
    discount_type: Optional[str]
    discount_value: Optional[Decimal]
    discount_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    change_amount: Decimal
    payment_method: str
    payment_status: str
    notes: Optional[str]


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_item_id: str
    sale_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    discount_type: Optional[str]
    discount_value: Optional[Decimal]
    line_total: Decimal


@dataclass(frozen=True)
class ReturnRow:
    """In-memory view of a row from the ``Returns`` sheet."""

    return_id: str
    invoice_number: str
    timestamp_iso: str
    sale_id: str
    return_type: str
    return_status: str
    total_refund_amount: Decimal
    total_exchange_amount: Decimal
    balance_adjustment: Decimal
    refund_method: Optional[str]
    reason: Optional[str]
    notes: Optional[str]


@dataclass(frozen=True)
class ReturnItemRow:
    """In-memory view of a row from the ``ReturnItems`` sheet.

    ``action`` is ``return_in`` for units coming back and ``exchange_out``
    for replacement articles; the latter carry no ``sale_item_id``.
    """

    return_item_id: str
    return_id: str
    sale_item_id: Optional[str]
    product_id: str
    product_name: str
    action: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    reason: Optional[str]
    condition: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System] Location`` slug is resolved through the ``[Locations]``
    table into the numeric location id stamped on products and sales. The
    ``[Defaults]`` section is optional; each entry falls back to its default
    when absent.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container with resolved data file
            path, store metadata, location and till defaults.

    Raises:
        KeyError: If a required section or option is missing, or the location
            slug is not listed under ``[Locations]``.
        ValueError: If ``PaymentMethod`` or a boolean default cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        location_slug = parser.get("System", "Location").strip().lower()
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        location_id = parser.get("Locations", location_slug).strip()
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        log.error("Unknown location slug '%s' in configuration", location_slug)
        raise KeyError(f"Unknown location: {location_slug}") from exc

    currency = parser.get("System", "Currency", fallback=DEFAULT_CURRENCY)
    payment_method = PaymentMethod(
        parser.get("Defaults", "PaymentMethod", fallback=PaymentMethod.CASH.value).strip().lower()
    )
    allow_partial = parser.getboolean("Defaults", "AllowPartialPayment", fallback=False)
    require_reasons = parser.getboolean("Defaults", "RequireReturnReasons", fallback=True)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        location_slug=location_slug,
        location_id=location_id,
        currency=currency,
        default_payment_method=payment_method,
        allow_partial_payment=allow_partial,
        require_return_reasons=require_reasons,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into a :class:`ProductRow` via :func:`deserialize_product`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale headers from the ``Sales`` worksheet."""

    for raw in _iter_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    """Stream sale lines from the ``SaleItems`` worksheet."""

    for raw in _iter_rows(workbook, SALE_ITEMS_SHEET):
        yield deserialize_sale_item(raw)


def iter_returns(workbook: Workbook) -> Iterable[ReturnRow]:
    """Stream return headers from the ``Returns`` worksheet."""

    for raw in _iter_rows(workbook, RETURNS_SHEET):
        yield deserialize_return(raw)


def iter_return_items(workbook: Workbook) -> Iterable[ReturnItemRow]:
    """Stream returned and exchanged lines from the ``ReturnItems`` worksheet."""

    for raw in _iter_rows(workbook, RETURN_ITEMS_SHEET):
        yield deserialize_return_item(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook whose products sheet should be modified.
        record (ProductRow): Structured product data ready for persistence.
    """

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_item(workbook: Workbook, record: SaleItemRow) -> None:
    workbook[SALE_ITEMS_SHEET].append(serialize_sale_item(record))


def append_return(workbook: Workbook, record: ReturnRow) -> None:
    workbook[RETURNS_SHEET].append(serialize_return(record))


def append_return_item(workbook: Workbook, record: ReturnItemRow) -> None:
    workbook[RETURN_ITEMS_SHEET].append(serialize_return_item(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: Dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    The function locates the row whose ``ProductID`` matches ``product_id``,
    validates that each requested field exists in the header row, and then writes
    the provided values into the corresponding cells. Only the specified fields
    are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Keys are compared as text so ids Excel stored as numbers still match.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if _text(row[key_col_index - 1]) == str(key_value):
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: ``[ProductID, ProductName, Price, Quantity, Barcode,
        Reference, LocationID, IsActive]``.
    """

    return [
        record.product_id,
        record.product_name,
        record.price,
        record.quantity,
        record.barcode,
        record.reference,
        record.location_id,
        record.is_active,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.invoice_number,
        record.barcode,
        record.timestamp_iso,
        record.location_id,
        record.subtotal,
        record.discount_type,
        record.discount_value,
        record.discount_amount,
        record.total,
        record.amount_paid,
        record.change_amount,
        record.payment_method,
        record.payment_status,
        record.notes,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_item_id,
        record.sale_id,
        record.product_id,
        record.product_name,
        record.quantity,
        record.unit_price,
        record.discount_type,
        record.discount_value,
        record.line_total,
    ]


def serialize_return(record: ReturnRow) -> list[object]:
    return [
        record.return_id,
        record.invoice_number,
        record.timestamp_iso,
        record.sale_id,
        record.return_type,
        record.return_status,
        record.total_refund_amount,
        record.total_exchange_amount,
        record.balance_adjustment,
        record.refund_method,
        record.reason,
        record.notes,
    ]


def serialize_return_item(record: ReturnItemRow) -> list[object]:
    return [
        record.return_item_id,
        record.return_id,
        record.sale_item_id,
        record.product_id,
        record.product_name,
        record.action,
        record.quantity,
        record.unit_price,
        record.total_amount,
        record.reason,
        record.condition,
    ]


def _text(value: object) -> str:
    # Excel hands integral numbers back as floats
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _optional_text(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return _text(value)


def _decimal(value: object, default: str = "0.00") -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(default)


def _optional_decimal(value: object) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _integer(value: object) -> int:
    return int(Decimal(str(value))) if value is not None else 0


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    The converter normalizes prices into :class:`~decimal.Decimal`, stock into
    ``int`` and coerces id, barcode and reference fields to ``str`` to avoid
    surprises caused by Excel automatically interpreting numbers.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ProductRow: Dataclass containing consistent Python representations of
            the row contents.
    """

    (
        product_id,
        product_name,
        price_raw,
        quantity_raw,
        barcode,
        reference,
        location_id,
        is_active,
    ) = tuple(raw_row[:8])

    return ProductRow(
        product_id=_text(product_id),
        product_name=str(product_name) if product_name is not None else "",
        price=_decimal(price_raw),
        quantity=_integer(quantity_raw),
        barcode=_optional_text(barcode),
        reference=_optional_text(reference),
        location_id=_text(location_id) if location_id is not None else "",
        is_active=bool(is_active),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`."""

    (
        sale_id,
        invoice_number,
        barcode,
        timestamp_iso,
        location_id,
        subtotal,
        discount_type,
        discount_value,
        discount_amount,
        total,
        amount_paid,
        change_amount,
        payment_method,
        payment_status,
        notes,
    ) = tuple(raw_row[:15])

    return SaleRow(
        sale_id=_text(sale_id),
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        barcode=_optional_text(barcode),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        location_id=_text(location_id) if location_id is not None else "",
        subtotal=_decimal(subtotal),
        discount_type=_optional_text(discount_type),
        discount_value=_optional_decimal(discount_value),
        discount_amount=_decimal(discount_amount),
        total=_decimal(total),
        amount_paid=_decimal(amount_paid),
        change_amount=_decimal(change_amount),
        payment_method=str(payment_method) if payment_method is not None else PaymentMethod.CASH.value,
        payment_status=str(payment_status) if payment_status is not None else "",
        notes=_optional_text(notes),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    (
        sale_item_id,
        sale_id,
        product_id,
        product_name,
        quantity,
        unit_price,
        discount_type,
        discount_value,
        line_total,
    ) = tuple(raw_row[:9])

    return SaleItemRow(
        sale_item_id=_text(sale_item_id),
        sale_id=_text(sale_id),
        product_id=_text(product_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=_integer(quantity),
        unit_price=_decimal(unit_price),
        discount_type=_optional_text(discount_type),
        discount_value=_optional_decimal(discount_value),
        line_total=_decimal(line_total),
    )


def deserialize_return(raw_row: Sequence[object]) -> ReturnRow:
    (
        return_id,
        invoice_number,
        timestamp_iso,
        sale_id,
        return_type,
        return_status,
        total_refund_amount,
        total_exchange_amount,
        balance_adjustment,
        refund_method,
        reason,
        notes,
    ) = tuple(raw_row[:12])

    return ReturnRow(
        return_id=_text(return_id),
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        sale_id=_text(sale_id),
        return_type=str(return_type) if return_type is not None else "",
        return_status=str(return_status) if return_status is not None else "",
        total_refund_amount=_decimal(total_refund_amount),
        total_exchange_amount=_decimal(total_exchange_amount),
        balance_adjustment=_decimal(balance_adjustment),
        refund_method=_optional_text(refund_method),
        reason=_optional_text(reason),
        notes=_optional_text(notes),
    )


def deserialize_return_item(raw_row: Sequence[object]) -> ReturnItemRow:
    (
        return_item_id,
        return_id,
        sale_item_id,
        product_id,
        product_name,
        action,
        quantity,
        unit_price,
        total_amount,
        reason,
        condition,
    ) = tuple(raw_row[:11])

    return ReturnItemRow(
        return_item_id=_text(return_item_id),
        return_id=_text(return_id),
        sale_item_id=_optional_text(sale_item_id),
        product_id=_text(product_id),
        product_name=str(product_name) if product_name is not None else "",
        action=str(action) if action is not None else "",
        quantity=_integer(quantity),
        unit_price=_decimal(unit_price),
        total_amount=_decimal(total_amount),
        reason=_optional_text(reason),
        condition=_optional_text(condition),
    )
