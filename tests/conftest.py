"""Shared pytest fixtures and utilities for the bookstore POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from bookstore_pos import cli, constants, data_manager, gateways  # noqa: E402
from bookstore_pos.cart import Product  # noqa: E402
from bookstore_pos.returns import OriginalSale, OriginalSaleItem  # noqa: E402
from bookstore_pos.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_LOCATION = "al-ouloum"
FIXED_MOMENT = datetime(2024, 3, 15, 10, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
    "Location = {location}\n"
    "Currency = DH\n\n"
    "[Defaults]\n"
    "PaymentMethod = {payment_method}\n"
    "AllowPartialPayment = {allow_partial}\n"
    "RequireReturnReasons = {require_reasons}\n\n"
    "[Locations]\n"
    "al-ouloum = 1\n"
    "renaissance = 2\n"
    "gros = 3\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str
    location: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: Optional[str] = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Bookstore",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        location: str = DEFAULT_LOCATION,
        payment_method: str = "cash",
        allow_partial: bool = False,
        require_reasons: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                location=location,
                payment_method=payment_method,
                allow_partial=str(allow_partial).lower(),
                require_reasons=str(require_reasons).lower(),
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
            location=location,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> gateways.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = gateways.load_runtime_context(config_file)
    gateways.ensure_schema_version(context)
    return context


@pytest.fixture
def stocked_context(runtime_context: gateways.RuntimeContext) -> gateways.RuntimeContext:
    """Runtime context whose location carries a small book catalog."""

    gateways.add_product(
        runtime_context, product_id="1", name="Le Petit Prince", price="10.00",
        quantity=5, barcode="9782070612758", reference="LPP-01",
    )
    gateways.add_product(
        runtime_context, product_id="2", name="Cahier 96p", price="4.00",
        quantity=10, barcode="3020120014050", reference="CAH-96",
    )
    gateways.add_product(
        runtime_context, product_id="3", name="Stylo bleu", price="1.50",
        quantity=0, barcode="3086123456789",
    )
    return runtime_context


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock returning a predetermined moment for invoice numbering."""

    return lambda: FIXED_MOMENT


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_product() -> Callable[..., Product]:
    """Factory for catalog entries used by cart and checkout tests."""

    def _make(
        product_id: str = "P1",
        *,
        name: Optional[str] = None,
        price: str = "10.00",
        stock: int = 5,
        barcode: Optional[str] = None,
    ) -> Product:
        return Product(
            product_id=product_id,
            name=name or f"Product {product_id}",
            price=Decimal(price),
            available_quantity=stock,
            barcode=barcode,
        )

    return _make


@pytest.fixture
def original_sale() -> OriginalSale:
    """A committed sale of two lines: 2 x 10.00 and 1 x 5.00."""

    return OriginalSale(
        sale_id="42",
        items=(
            OriginalSaleItem("101", "P1", "Roman", Decimal("10.00"), 2),
            OriginalSaleItem("102", "P2", "Carnet", Decimal("5.00"), 1),
        ),
        invoice_number="FAC-20240315-0042",
        payment_method=constants.PaymentMethod.CARD,
        total=Decimal("25.00"),
        amount_paid=Decimal("25.00"),
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Bookstore",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        location_slug=DEFAULT_LOCATION,
        location_id="1",
    )


@pytest.fixture
def mock_context(settings: data_manager.ConfigSettings) -> gateways.RuntimeContext:
    """Assemble a runtime context around a mock workbook."""

    return gateways.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))
