"""Workbook-backed collaborators for the checkout and return sessions.

This module plays the part of the external backend: it resolves catalog
lookups, stores finalized sales and returns, and moves stock, all on top of
the Data Access Layer (DAL). Every write validates the whole payload before
the first row is appended so a rejected submission leaves the workbook
untouched. Persisting the workbook to disk is the caller's decision (see
:func:`persist_context`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .barcode import clean_barcode
from .cart import Product, SaleFigures, recompute_sale_figures
from .checkout import SubmissionReceipt
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    PaymentMethod,
    PaymentStatus,
    ReturnLineAction,
    ReturnType,
)
from .errors import (
    BusinessRuleViolation,
    EmptySelectionError,
    InsufficientStockError,
    MissingReferenceError,
    QuantityExceedsOriginalError,
    SubmissionFailedError,
)
from .money import ZERO, quantize_money, require_nonnegative_money, require_quantity, to_decimal
from .returns import OriginalSale, OriginalSaleItem, ReturnReceipt
from .tickets import generate_return_invoice_number, generate_sale_barcode, generate_sale_invoice_number


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the gateway."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries that store precomputed query results,
    reducing repeated workbook scans.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections for a
            specific domain entity set.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, the ``active``
            products of the configured location and a ``by_id`` lookup.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        location_id = context.settings.location_id
        bucket["all"] = all_products
        bucket["active"] = [
            product for product in all_products
            if product.is_active and product.location_id == location_id
        ]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active at location %s)",
            len(all_products),
            len(bucket["active"]),
            location_id,
        )
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate sale headers and their lines grouped by sale id."""

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        all_items = list(data_manager.iter_sale_items(context.workbook))
        items_by_sale: Dict[str, List[data_manager.SaleItemRow]] = {}
        for item in all_items:
            items_by_sale.setdefault(item.sale_id, []).append(item)
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        bucket["items"] = all_items
        bucket["items_by_sale"] = items_by_sale
        log.debug(
            "Populated sales cache with %d sales and %d lines",
            len(all_sales),
            len(all_items),
        )
    return bucket


def _ensure_returns_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate return headers and the quantity already returned per sale line."""

    bucket = _get_cache_bucket(context, "returns")
    if "all" not in bucket:
        all_returns = list(data_manager.iter_returns(context.workbook))
        all_items = list(data_manager.iter_return_items(context.workbook))
        returned: Dict[str, int] = {}
        for item in all_items:
            if item.action == ReturnLineAction.RETURN_IN.value and item.sale_item_id:
                returned[item.sale_item_id] = returned.get(item.sale_item_id, 0) + item.quantity
        bucket["all"] = all_returns
        bucket["items"] = all_items
        bucket["returned_by_sale_item"] = returned
        log.debug(
            "Populated returns cache with %d returns and %d lines",
            len(all_returns),
            len(all_items),
        )
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for gateway calls.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing or the
            location slug is unknown.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info(
        "Loaded runtime context for workbook '%s' (location=%s)",
        settings.data_file,
        settings.location_slug,
    )
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows.

    By default only active products of the configured location are listed;
    ``include_inactive`` returns every row in the workbook.
    """
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][str(product_id)]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def to_product(row: data_manager.ProductRow) -> Product:
    """Project a worksheet row onto the catalog entry the cart consumes."""
    return Product(
        product_id=row.product_id,
        name=row.product_name,
        price=row.price,
        available_quantity=row.quantity,
        barcode=row.barcode,
        reference=row.reference,
    )


def find_product(context: RuntimeContext, query: str) -> Optional[Product]:
    """Resolve a scanned or typed code to an active product of this location.

    Candidates are tried in order: exact product id, cleaned barcode, raw
    barcode, then reference (case-insensitive).

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        query (str): Product id, barcode as scanned, or reference.

    Returns:
        Product | None: Matching catalog entry, or ``None`` when nothing
            matches.
    """
    query = (query or "").strip()
    if not query:
        return None
    active = _ensure_products_cache(context)["active"]

    cleaned = clean_barcode(query)
    matchers = (
        lambda row: row.product_id == query,
        lambda row: bool(cleaned) and row.barcode is not None and clean_barcode(row.barcode) == cleaned,
        lambda row: row.barcode == query,
        lambda row: row.reference is not None and row.reference.lower() == query.lower(),
    )
    for matcher in matchers:
        for row in active:
            if matcher(row):
                log.debug("Resolved code '%s' to product '%s'", query, row.product_id)
                return to_product(row)

    log.debug("No active product matches code '%s'", query)
    return None


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    price: Any,
    quantity: Any = 0,
    barcode: Optional[str] = None,
    reference: Optional[str] = None,
    product_id: Optional[str] = None,
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Register a product at the configured location.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        name (str): Display name; must not be blank.
        price (Any): Unit price, zero or positive.
        quantity (Any): Opening stock, zero or positive.
        barcode (str | None): Optional barcode, stored as given.
        reference (str | None): Optional shop reference.
        product_id (str | None): Explicit id; the next integer id is used when
            omitted.
        is_active (bool): Whether the product can be sold.

    Returns:
        data_manager.ProductRow: Newly appended product row.

    Raises:
        BusinessRuleViolation: If the name is blank or the id already exists.
        InvalidAmountError: If ``price`` is negative or not numeric.
        InvalidQuantityError: If ``quantity`` is negative or not whole.
    """
    if not name or not name.strip():
        raise BusinessRuleViolation("Product name must not be blank")
    unit_price = require_nonnegative_money(price, field="price")
    stock = require_quantity(quantity, allow_zero=True, field="stock quantity")

    cache = _ensure_products_cache(context)
    new_id = str(product_id).strip() if product_id else _next_identifier(cache["by_id"].keys())
    if new_id in cache["by_id"]:
        log.warning("Attempted to register duplicate product id '%s'", new_id)
        raise BusinessRuleViolation(f"Product id already exists: {new_id}")

    record = data_manager.ProductRow(
        product_id=new_id,
        product_name=name.strip(),
        price=unit_price,
        quantity=stock,
        barcode=barcode.strip() if barcode else None,
        reference=reference.strip() if reference else None,
        location_id=context.settings.location_id,
        is_active=is_active,
    )
    data_manager.append_product(context.workbook, record)
    _invalidate_cache(context, "products")
    log.info(
        "Registered product '%s' (%s) at location %s (price=%s, stock=%s)",
        record.product_id,
        record.product_name,
        record.location_id,
        record.price,
        record.quantity,
    )
    return record


def _next_identifier(existing: Iterable[str]) -> str:
    numeric = [int(value) for value in existing if str(value).isdigit()]
    return str(max(numeric, default=0) + 1)


def _set_stock(context: RuntimeContext, product_id: str, quantity: int) -> None:
    data_manager.update_product(context.workbook, product_id, field_values={"Quantity": quantity})


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def create_sale(context: RuntimeContext, payload: Mapping[str, Any], *, when: Optional[datetime] = None) -> SubmissionReceipt:
    """Validate and store a finalized sale, decrementing stock.

    The payload total is recomputed from its items and discounts and must
    match the submitted figure. Line totals and the subtotal are stored as
    recomputed, not as submitted. Stock is checked once more against the
    workbook because another till may have sold the same units.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        payload (Mapping[str, Any]): Sale payload as built by
            :meth:`~bookstore_pos.cart.Cart.to_sale_payload`.
        when (datetime | None): Sale timestamp; defaults to now (UTC).

    Returns:
        SubmissionReceipt: Sale id, invoice number and sale barcode.

    Raises:
        SubmissionFailedError: If the payload is rejected. Nothing is written
            in that case.
    """
    timestamp = _resolve_timestamp(when)
    sales_cache = _ensure_sales_cache(context)
    sale_id = _next_identifier(sales_cache["by_id"].keys())
    invoice_number = generate_sale_invoice_number(sale_id, when=timestamp)
    barcode = generate_sale_barcode(sale_id, when=timestamp)
    next_item_id = int(_next_identifier(item.sale_item_id for item in sales_cache["items"]))

    try:
        figures, products = _validate_sale_payload(context, payload)
        sale_row = data_manager.SaleRow(
            sale_id=sale_id,
            invoice_number=invoice_number,
            barcode=barcode,
            timestamp_iso=timestamp.isoformat(),
            location_id=context.settings.location_id,
            subtotal=quantize_money(figures.subtotal),
            discount_type=figures.global_discount.discount_type.value if figures.global_discount else None,
            discount_value=figures.global_discount.value if figures.global_discount else None,
            discount_amount=quantize_money(figures.discount_amount),
            total=quantize_money(figures.total),
            amount_paid=quantize_money(require_nonnegative_money(payload["amount_paid"], field="amount paid")),
            change_amount=quantize_money(require_nonnegative_money(payload.get("change_amount") or ZERO, field="change")),
            payment_method=PaymentMethod(payload["payment_method"]).value,
            payment_status=PaymentStatus(payload["payment_status"]).value,
            notes=payload.get("notes"),
        )
        item_rows = [
            data_manager.SaleItemRow(
                sale_item_id=str(next_item_id + offset),
                sale_id=sale_id,
                product_id=product.product_id,
                product_name=line.name or product.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount_type=line.discount.discount_type.value if line.discount else None,
                discount_value=line.discount.value if line.discount else None,
                line_total=quantize_money(line.line_total),
            )
            for offset, (line, product) in enumerate(zip(figures.lines, products))
        ]
    except (BusinessRuleViolation, KeyError, TypeError, ValueError) as exc:
        log.error("Rejected sale payload: %s", exc)
        raise SubmissionFailedError(f"Sale rejected: {exc}", transaction_kind="sale") from exc

    data_manager.append_sale(context.workbook, sale_row)
    for row in item_rows:
        data_manager.append_sale_item(context.workbook, row)
        _restock(context, row.product_id, -row.quantity)

    _invalidate_cache(context, "sales", "products")
    log.info(
        "Recorded sale '%s' (%s) with %d line(s), total=%s, status=%s",
        sale_id,
        invoice_number,
        len(item_rows),
        sale_row.total,
        sale_row.payment_status,
    )
    return SubmissionReceipt(sale_id=sale_id, invoice_number=invoice_number, barcode=barcode)


def _validate_sale_payload(
    context: RuntimeContext, payload: Mapping[str, Any]
) -> Tuple[SaleFigures, List[data_manager.ProductRow]]:
    if not payload.get("items"):
        raise BusinessRuleViolation("A sale needs at least one item")
    figures = recompute_sale_figures(payload)
    submitted_total = quantize_money(to_decimal(payload["total"], field="total"))
    if quantize_money(figures.total) != submitted_total:
        raise BusinessRuleViolation(
            f"Submitted total {submitted_total} does not match recomputed total {quantize_money(figures.total)}"
        )

    requested: Dict[str, int] = {}
    products = []
    for line in figures.lines:
        product = get_product(context, line.product_id)
        if not product.is_active:
            raise BusinessRuleViolation(f"Product '{product.product_id}' is inactive")
        requested[product.product_id] = requested.get(product.product_id, 0) + line.quantity
        if requested[product.product_id] > product.quantity:
            raise InsufficientStockError(product.product_id, requested[product.product_id], product.quantity)
        products.append(product)
    return figures, products


def get_sale(context: RuntimeContext, sale_id: str) -> OriginalSale:
    """Fetch a committed sale as the snapshot a return session starts from.

    Each line carries the quantity already taken back by earlier returns.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
    """
    sales = _ensure_sales_cache(context)
    try:
        sale = sales["by_id"][str(sale_id)]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc

    returned = _ensure_returns_cache(context)["returned_by_sale_item"]
    items = tuple(
        OriginalSaleItem(
            sale_item_id=row.sale_item_id,
            product_id=row.product_id,
            product_name=row.product_name,
            unit_price=row.unit_price,
            purchased_quantity=row.quantity,
            returned_quantity=returned.get(row.sale_item_id, 0),
        )
        for row in sales["items_by_sale"].get(sale.sale_id, [])
    )
    return OriginalSale(
        sale_id=sale.sale_id,
        items=items,
        invoice_number=sale.invoice_number,
        payment_method=PaymentMethod(sale.payment_method),
        total=sale.total,
        amount_paid=sale.amount_paid,
        change_amount=sale.change_amount,
        created_at=sale.timestamp_iso,
    )


def find_sale(context: RuntimeContext, query: str) -> OriginalSale:
    """Resolve a sale by id, invoice number or the barcode printed on its ticket.

    Raises:
        MissingReferenceError: If nothing matches ``query``.
    """
    query = (query or "").strip()
    sales = _ensure_sales_cache(context)
    if query in sales["by_id"]:
        return get_sale(context, query)
    cleaned = clean_barcode(query)
    for sale in sales["all"]:
        if sale.invoice_number == query or (cleaned and sale.barcode == cleaned):
            return get_sale(context, sale.sale_id)
    log.warning("No sale matches '%s'", query)
    raise MissingReferenceError(f"Unknown sale: {query}")


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def create_return(context: RuntimeContext, payload: Mapping[str, Any], *, when: Optional[datetime] = None) -> ReturnReceipt:
    """Validate and store a refund or exchange, moving stock both ways.

    Returned units are put back on the shelf; exchanged articles leave it.
    Quantities are checked again against the sale lines because another
    return may have been stored since the session fetched the sale. Refund
    and exchange totals are recomputed from the lines and must match the
    submitted figures.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        payload (Mapping[str, Any]): Return payload as built by
            :meth:`~bookstore_pos.returns.ReturnSession.build_payload`.
        when (datetime | None): Return timestamp; defaults to now (UTC).

    Returns:
        ReturnReceipt: Stored amounts with the return id and invoice number.

    Raises:
        SubmissionFailedError: If the payload is rejected. Nothing is written
            in that case.
    """
    timestamp = _resolve_timestamp(when)
    returns_cache = _ensure_returns_cache(context)
    return_id = _next_identifier(row.return_id for row in returns_cache["all"])
    next_item_id = int(_next_identifier(item.return_item_id for item in returns_cache["items"]))

    try:
        return_type, sale, returned_lines, exchange_lines = _validate_return_payload(context, payload)
        refund_total, exchange_total = _return_totals(returned_lines, exchange_lines)
        balance = exchange_total - refund_total
        invoice_number = generate_return_invoice_number(return_type, return_id, when=timestamp)
        refund_method = PaymentMethod(payload.get("refund_method") or sale.payment_method).value
        return_row = data_manager.ReturnRow(
            return_id=return_id,
            invoice_number=invoice_number,
            timestamp_iso=timestamp.isoformat(),
            sale_id=sale.sale_id,
            return_type=return_type.value,
            return_status=str(payload.get("return_status") or ""),
            total_refund_amount=refund_total,
            total_exchange_amount=exchange_total,
            balance_adjustment=balance,
            refund_method=refund_method,
            reason=payload.get("reason") or None,
            notes=payload.get("notes") or None,
        )
        item_rows = [
            data_manager.ReturnItemRow(
                return_item_id=str(next_item_id + offset),
                return_id=return_id,
                sale_item_id=original.sale_item_id,
                product_id=original.product_id,
                product_name=original.product_name,
                action=ReturnLineAction.RETURN_IN.value,
                quantity=quantity,
                unit_price=original.unit_price,
                total_amount=quantize_money(original.unit_price * quantity),
                reason=item.get("reason") or None,
                condition=item.get("condition") or None,
            )
            for offset, (item, original, quantity) in enumerate(returned_lines)
        ]
        item_rows.extend(
            data_manager.ReturnItemRow(
                return_item_id=str(next_item_id + len(returned_lines) + offset),
                return_id=return_id,
                sale_item_id=None,
                product_id=product.product_id,
                product_name=str(item.get("product_name") or product.product_name),
                action=ReturnLineAction.EXCHANGE_OUT.value,
                quantity=quantity,
                unit_price=unit_price,
                total_amount=quantize_money(unit_price * quantity),
                reason=None,
                condition=None,
            )
            for offset, (item, product, quantity, unit_price) in enumerate(exchange_lines)
        )
    except (BusinessRuleViolation, KeyError, TypeError, ValueError) as exc:
        log.error("Rejected return payload: %s", exc)
        raise SubmissionFailedError(f"Return rejected: {exc}", transaction_kind="return") from exc

    data_manager.append_return(context.workbook, return_row)
    for row in item_rows:
        data_manager.append_return_item(context.workbook, row)
        if row.action == ReturnLineAction.RETURN_IN.value:
            _restock(context, row.product_id, row.quantity)
        else:
            _restock(context, row.product_id, -row.quantity)

    _invalidate_cache(context, "returns", "products")
    log.info(
        "Recorded %s '%s' (%s) for sale '%s' (refund=%s, exchange=%s, balance=%s)",
        return_type.value,
        return_id,
        invoice_number,
        sale.sale_id,
        refund_total,
        exchange_total,
        balance,
    )
    return ReturnReceipt(
        return_id=return_id,
        return_type=return_type,
        total_refund_amount=refund_total,
        total_exchange_amount=exchange_total,
        balance_adjustment=balance,
        invoice_number=invoice_number,
    )


def _restock(context: RuntimeContext, product_id: str, delta: int) -> None:
    # Products are re-read so several lines on the same product accumulate
    _invalidate_cache(context, "products")
    product = get_product(context, product_id)
    _set_stock(context, product_id, product.quantity + delta)


_ReturnedLine = Tuple[Mapping[str, Any], OriginalSaleItem, int]
_ExchangedLine = Tuple[Mapping[str, Any], data_manager.ProductRow, int, Decimal]


def _return_totals(
    returned_lines: Iterable[_ReturnedLine], exchange_lines: Iterable[_ExchangedLine]
) -> Tuple[Decimal, Decimal]:
    refund_total = sum((original.unit_price * quantity for _, original, quantity in returned_lines), ZERO)
    exchange_total = sum((unit_price * quantity for _, _, quantity, unit_price in exchange_lines), ZERO)
    return quantize_money(refund_total), quantize_money(exchange_total)


def _validate_return_payload(
    context: RuntimeContext, payload: Mapping[str, Any]
) -> Tuple[ReturnType, OriginalSale, List[_ReturnedLine], List[_ExchangedLine]]:
    return_type = ReturnType(payload["return_type"])
    sale = get_sale(context, payload["original_sale_id"])

    requested: Dict[str, int] = {}
    returned_lines: List[_ReturnedLine] = []
    for item in payload.get("return_items") or []:
        original = sale.get_item(str(item["sale_item_id"]))
        quantity = require_quantity(item["quantity"])
        requested[original.sale_item_id] = requested.get(original.sale_item_id, 0) + quantity
        if requested[original.sale_item_id] > original.returnable_quantity:
            raise QuantityExceedsOriginalError(
                original.sale_item_id,
                requested[original.sale_item_id],
                original.returnable_quantity,
            )
        returned_lines.append((item, original, quantity))

    exchange_lines: List[_ExchangedLine] = []
    if return_type is ReturnType.EXCHANGE:
        wanted: Dict[str, int] = {}
        for item in payload.get("exchange_items") or []:
            product = get_product(context, item["product_id"])
            if not product.is_active:
                raise BusinessRuleViolation(f"Product '{product.product_id}' is inactive")
            quantity = require_quantity(item["quantity"])
            unit_price = require_nonnegative_money(item["unit_price"], field="unit price")
            wanted[product.product_id] = wanted.get(product.product_id, 0) + quantity
            if wanted[product.product_id] > product.quantity:
                raise InsufficientStockError(product.product_id, wanted[product.product_id], product.quantity)
            exchange_lines.append((item, product, quantity, unit_price))
        if not returned_lines and not exchange_lines:
            raise EmptySelectionError("An exchange needs at least one returned or exchanged article")
    elif not returned_lines:
        raise EmptySelectionError("A refund needs at least one returned article")

    refund_total, exchange_total = _return_totals(returned_lines, exchange_lines)
    submitted_refund = quantize_money(to_decimal(payload["total_refund_amount"], field="refund total"))
    submitted_exchange = quantize_money(to_decimal(payload.get("total_exchange_amount") or ZERO, field="exchange total"))
    if submitted_refund != refund_total or submitted_exchange != exchange_total:
        raise BusinessRuleViolation(
            f"Submitted totals (refund {submitted_refund}, exchange {submitted_exchange}) do not match "
            f"recomputed totals (refund {refund_total}, exchange {exchange_total})"
        )

    return return_type, sale, returned_lines, exchange_lines


class WorkbookGateway:
    """Catalog, sale and return collaborator bound to one runtime context.

    Satisfies the lookup and submission interfaces expected by
    :class:`~bookstore_pos.checkout.CheckoutSession` and
    :class:`~bookstore_pos.returns.ReturnSession`.
    """

    def __init__(self, context: RuntimeContext, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.context = context
        self._clock = clock

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock is not None else None

    def find_product(self, query: str) -> Optional[Product]:
        return find_product(self.context, query)

    def get_product(self, product_id: str) -> Product:
        return to_product(get_product(self.context, product_id))

    def add_product(self, **fields: Any) -> data_manager.ProductRow:
        return add_product(self.context, **fields)

    def create_sale(self, payload: Mapping[str, Any]) -> SubmissionReceipt:
        return create_sale(self.context, payload, when=self._now())

    def get_sale(self, sale_id: str) -> OriginalSale:
        return get_sale(self.context, sale_id)

    def find_sale(self, query: str) -> OriginalSale:
        return find_sale(self.context, query)

    def create_return(self, payload: Mapping[str, Any]) -> ReturnReceipt:
        return create_return(self.context, payload, when=self._now())


__all__ = [
    "RuntimeContext",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "list_products",
    "get_product",
    "to_product",
    "find_product",
    "add_product",
    "create_sale",
    "get_sale",
    "find_sale",
    "create_return",
    "WorkbookGateway",
]
