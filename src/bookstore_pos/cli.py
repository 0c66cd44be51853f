"""Command-line entry points for the bookstore point of sale.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the checkout and return sessions. Keeping
the CLI thin ensures the same parser configuration can be reused by tests,
scripts, or any alternative front-end that wants to expose the package
capabilities.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import gateways, log
from .checkout import CheckoutSession
from .constants import DiscountType, ItemCondition, PaymentMethod, ReturnType
from .errors import BusinessRuleViolation, MissingReferenceError, SubmissionFailedError
from .returns import ReturnSession
from .tickets import build_return_ticket


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[gateways.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line till for the bookstore POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as checkouts and returns."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "checkout": register_checkout_command(subparsers),
        "return": register_return_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "lookup": register_lookup_command(subparsers),
        "show-sale": register_show_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_code_quantity(raw: str) -> Tuple[str, int]:
    """Parse ``CODE`` or ``CODE:QTY`` into a code and a whole quantity."""
    code, _, quantity = raw.rpartition(":") if ":" in raw else (raw, "", "1")
    code = code.strip()
    if not code:
        raise argparse.ArgumentTypeError(f"Missing code in '{raw}'")
    try:
        return code, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{raw}'") from exc


def parse_return_item(raw: str) -> Tuple[str, int, Optional[str]]:
    """Parse ``SALE_ITEM_ID:QTY[:CONDITION]``."""
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0].strip():
        raise argparse.ArgumentTypeError(f"Expected SALE_ITEM_ID:QTY[:CONDITION], got '{raw}'")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{raw}'") from exc
    condition = parts[2].strip().lower() if len(parts) == 3 else None
    if condition is not None and condition not in {member.value for member in ItemCondition}:
        raise argparse.ArgumentTypeError(f"Unknown condition '{condition}'")
    return parts[0].strip(), quantity, condition


def parse_line_discount(raw: str) -> Tuple[str, str, str]:
    """Parse ``CODE:TYPE:VALUE`` where TYPE is ``percentage`` or ``amount``."""
    parts = raw.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Expected CODE:TYPE:VALUE, got '{raw}'")
    code, discount_type, value = (part.strip() for part in parts)
    if discount_type not in {member.value for member in DiscountType}:
        raise argparse.ArgumentTypeError(f"Unknown discount type '{discount_type}'")
    return code, discount_type, value


# ---------------------------------------------------------------------------
# Command registration
# ---------------------------------------------------------------------------


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product at the configured location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--quantity", default="0", help="Opening stock (default: 0).")
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--product-id", default=None, help="Explicit id; the next free id is used otherwise.")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, writes=True)


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Ring up a sale and print its ticket."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_code_quantity,
            required=True,
            help="Product id, barcode or reference, optionally followed by :QTY. Repeatable.",
        )
        parser.add_argument(
            "--line-discount",
            dest="line_discounts",
            action="append",
            type=parse_line_discount,
            default=[],
            help="CODE:TYPE:VALUE discount on one line. Repeatable.",
        )
        parser.add_argument("--discount-type", choices=[member.value for member in DiscountType], default=None)
        parser.add_argument("--discount-value", default=None)
        parser.add_argument("--tendered", default=None, help="Amount paid; defaults to the exact total.")
        parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--allow-partial", action="store_true", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_checkout, writes=True)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Refund or exchange articles of a previous sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale", required=True, help="Sale id, invoice number or ticket barcode.")
        parser.add_argument(
            "--type",
            dest="return_type",
            choices=[member.value for member in ReturnType],
            default=ReturnType.REFUND.value,
        )
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_return_item,
            default=[],
            help="SALE_ITEM_ID:QTY[:CONDITION] coming back. Repeatable.",
        )
        parser.add_argument(
            "--exchange",
            dest="exchanges",
            action="append",
            type=parse_code_quantity,
            default=[],
            help="Replacement article as CODE[:QTY]. Repeatable.",
        )
        parser.add_argument("--reason", default="", help="Overall reason, also used for every returned line.")
        parser.add_argument("--refund-method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--notes", dest="notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return, writes=True)


def register_lookup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``lookup``."""
    name = "lookup"
    help_text = "Find a product by id, barcode or reference."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("query")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lookup)


def register_show_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show-sale``."""
    name = "show-sale"
    help_text = "Display a sale with the quantities still returnable."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("query", help="Sale id, invoice number or ticket barcode.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_sale)


def dispatch_command(
    context: gateways.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def emit(payload: Any) -> None:
    """Print a payload as JSON, rendering decimals as strings."""
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "name": args.name,
        "price": args.price,
        "quantity": args.quantity,
        "barcode": args.barcode,
        "reference": args.reference,
        "product_id": args.product_id,
        "is_active": not getattr(args, "inactive", False),
    }


def run_add_product(context: gateways.RuntimeContext, args: argparse.Namespace) -> int:
    record = gateways.add_product(context, **translate_add_product(args))
    emit(asdict(record))
    return 0


def build_checkout_session(context: gateways.RuntimeContext, args: argparse.Namespace) -> CheckoutSession:
    """Fill a checkout session from CLI args without submitting it."""
    settings = context.settings
    allow_partial = settings.allow_partial_payment if args.allow_partial is None else args.allow_partial
    gateway = gateways.WorkbookGateway(context)
    session = CheckoutSession(
        gateway,
        gateway,
        payment_method=PaymentMethod(args.payment_method or settings.default_payment_method),
        allow_partial=allow_partial,
        store_name=settings.store_name,
        currency=settings.currency,
    )
    for code, quantity in args.items:
        session.scan(code, quantity)
    for code, discount_type, value in args.line_discounts:
        product = gateway.find_product(code)
        if product is None:
            raise MissingReferenceError(f"No product found for code: {code}")
        session.cart.set_line_discount(product.product_id, DiscountType(discount_type), value)
    if args.discount_type and args.discount_value is not None:
        session.cart.set_global_discount(DiscountType(args.discount_type), args.discount_value)
    if args.tendered is None:
        session.tender_exact()
    else:
        session.tender(args.tendered)
    return session


def run_checkout(context: gateways.RuntimeContext, args: argparse.Namespace) -> int:
    session = build_checkout_session(context, args)
    ticket = session.submit(notes=args.notes)
    emit(ticket)
    return 0


def build_return_session(context: gateways.RuntimeContext, args: argparse.Namespace) -> ReturnSession:
    """Fill a return session from CLI args without submitting it."""
    gateway = gateways.WorkbookGateway(context)
    sale = gateway.find_sale(args.sale)
    session = ReturnSession(
        sale=sale,
        return_type=ReturnType(args.return_type),
        require_reasons=context.settings.require_return_reasons,
        refund_method=PaymentMethod(args.refund_method) if args.refund_method else None,
    )
    for sale_item_id, quantity, condition in args.items:
        session.set_return_quantity(sale_item_id, quantity)
        session.set_line_reason(sale_item_id, args.reason)
        if condition:
            session.set_line_condition(sale_item_id, ItemCondition(condition))
    for code, quantity in args.exchanges:
        product = gateway.find_product(code)
        if product is None:
            raise MissingReferenceError(f"No product found for code: {code}")
        session.add_exchange_item(product, quantity)
    session.set_reason(args.reason)
    session.set_notes(args.notes)
    return session


def run_return(context: gateways.RuntimeContext, args: argparse.Namespace) -> int:
    session = build_return_session(context, args)
    receipt = session.submit(gateways.WorkbookGateway(context))
    emit(
        build_return_ticket(
            session,
            receipt,
            store_name=context.settings.store_name,
            currency=context.settings.currency,
        )
    )
    return 0


def run_lookup(context: gateways.RuntimeContext, args: argparse.Namespace) -> int:
    product = gateways.find_product(context, args.query)
    if product is None:
        raise MissingReferenceError(f"No product found for code: {args.query}")
    emit(asdict(product))
    return 0


def describe_sale(context: gateways.RuntimeContext, query: str) -> Dict[str, Any]:
    """Render a stored sale with returnable quantities per line."""
    sale = gateways.find_sale(context, query)
    items: List[Dict[str, Any]] = [
        {**asdict(item), "returnable_quantity": item.returnable_quantity}
        for item in sale.items
    ]
    return {**asdict(sale), "items": items}


def run_show_sale(context: gateways.RuntimeContext, args: argparse.Namespace) -> int:
    emit(describe_sale(context, args.query))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, SubmissionFailedError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: gateways.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        gateways.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = gateways.load_runtime_context(getattr(args, "config", None))
        gateways.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
