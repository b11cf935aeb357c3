"""Data access layer for POS ERP.

This module provides low-level helpers that read from and write to the store
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_BASE_UNIT, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SUPPLIERS_SHEET = SheetName.SUPPLIERS.value
PURCHASE_ORDERS_SHEET = SheetName.PURCHASE_ORDERS.value
PURCHASE_ORDER_ITEMS_SHEET = SheetName.PURCHASE_ORDER_ITEMS.value
STOCK_MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_base_unit: str = DEFAULT_BASE_UNIT
    strict_product_lookup: bool = False


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet.

    ``buy_price`` is always expressed per base unit. ``purchase_unit`` and
    ``conversion_to_unit`` describe the larger unit the supplier ships in.
    """

    product_id: str
    product_name: str
    base_unit: str
    purchase_unit: Optional[str]
    conversion_to_unit: Optional[Decimal]
    buy_price: Decimal
    sell_price: Decimal
    discount: Decimal
    discount_type: str
    stock: Decimal
    is_active: bool


@dataclass(frozen=True)
class SupplierRow:
    """In-memory view of a row from the ``Suppliers`` sheet."""

    supplier_id: str
    supplier_name: str
    phone: Optional[str]
    address: Optional[str]
    is_active: bool


@dataclass(frozen=True)
class PurchaseOrderRow:
    """In-memory view of a purchase order header row."""

    po_id: str
    date_iso: str
    supplier_id: str
    supplier_name: str
    status: str
    total_amount: Decimal
    notes: Optional[str]


@dataclass(frozen=True)
class PurchaseOrderItemRow:
    """In-memory view of a purchase order line.

    ``qty`` counts purchase units, ``qty_base`` counts base units. While the
    order is being planned ``buy_price`` is per base unit and ``subtotal`` is
    ``qty_base * buy_price``; once received the line carries the price paid
    per purchase unit and ``subtotal`` becomes ``qty * buy_price``.
    """

    line_id: str
    po_id: str
    product_id: str
    product_name: str
    qty: Decimal
    qty_base: Decimal
    buy_price: Decimal
    subtotal: Decimal


@dataclass(frozen=True)
class StockMovementRow:
    """In-memory view of a row from the ``StockMovements`` sheet."""

    movement_id: str
    timestamp_iso: str
    movement_type: str
    product_id: str
    quantity: Decimal
    unit_cost: Decimal
    previous_buy_price: Decimal
    reference_id: Optional[str]
    note: Optional[str]


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
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` is mandatory. ``[Defaults]`` and ``[Receiving]`` are optional
    and fall back to a ``Pcs`` base unit and lenient product lookups. Relative
    ``DataFile`` entries are expanded against ``base_path`` (or the current
    working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required options is missing or an optional
            flag holds something other than a boolean.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_base_unit = parser.get("Defaults", "BaseUnit", fallback=DEFAULT_BASE_UNIT)
    try:
        strict_lookup = parser.getboolean("Receiving", "StrictProductLookup", fallback=False)
    except ValueError as exc:
        raise KeyError(f"Invalid configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_base_unit=default_base_unit,
        strict_product_lookup=strict_lookup,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


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

    Header and fully empty rows are skipped. Each remaining row is converted
    through :func:`deserialize_product`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_suppliers(workbook: Workbook) -> Iterable[SupplierRow]:
    """Iterate over the ``Suppliers`` worksheet and yield typed records."""

    for raw in _iter_rows(workbook, SUPPLIERS_SHEET):
        yield deserialize_supplier(raw)


def iter_purchase_orders(workbook: Workbook) -> Iterable[PurchaseOrderRow]:
    """Iterate over purchase order headers in sheet order."""

    for raw in _iter_rows(workbook, PURCHASE_ORDERS_SHEET):
        yield deserialize_purchase_order(raw)


def iter_order_items(workbook: Workbook) -> Iterable[PurchaseOrderItemRow]:
    """Iterate over every purchase order line regardless of its order."""

    for raw in _iter_rows(workbook, PURCHASE_ORDER_ITEMS_SHEET):
        yield deserialize_order_item(raw)


def iter_stock_movements(workbook: Workbook) -> Iterable[StockMovementRow]:
    """Stream stock movement records from the ``StockMovements`` worksheet.

    Numeric columns become :class:`~decimal.Decimal` instances and optional
    text columns stay ``None`` when blank.
    """

    for raw in _iter_rows(workbook, STOCK_MOVEMENTS_SHEET):
        yield deserialize_stock_movement(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_supplier(workbook: Workbook, record: SupplierRow) -> None:
    """Append a supplier record to the ``Suppliers`` worksheet."""

    workbook[SUPPLIERS_SHEET].append(serialize_supplier(record))


def append_purchase_order(workbook: Workbook, record: PurchaseOrderRow) -> None:
    """Append a purchase order header to the ``PurchaseOrders`` worksheet."""

    workbook[PURCHASE_ORDERS_SHEET].append(serialize_purchase_order(record))


def append_order_item(workbook: Workbook, record: PurchaseOrderItemRow) -> None:
    """Append a purchase order line to the ``PurchaseOrderItems`` worksheet."""

    workbook[PURCHASE_ORDER_ITEMS_SHEET].append(serialize_order_item(record))


def append_stock_movement(workbook: Workbook, record: StockMovementRow) -> None:
    """Append a stock movement to the ``StockMovements`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization so Excel keeps their precision when the workbook is saved.
    """

    workbook[STOCK_MOVEMENTS_SHEET].append(serialize_stock_movement(record))


def _header_map(sheet: Any) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _update_fields(workbook: Workbook, sheet_name: str, key_column: str, key_value: str,
                   field_values: dict[str, Any], *, label: str) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {label.lower()} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_fields(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values, label="Product")


def update_supplier(workbook: Workbook, supplier_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing supplier.

    Raises:
        KeyError: If the supplier or any referenced column is missing.
    """

    _update_fields(workbook, SUPPLIERS_SHEET, "SupplierID", supplier_id, field_values, label="Supplier")


def update_purchase_order(workbook: Workbook, po_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected header columns for an existing purchase order.

    Raises:
        KeyError: If the order or any referenced column is missing.
    """

    _update_fields(workbook, PURCHASE_ORDERS_SHEET, "POID", po_id, field_values, label="Purchase order")


def update_order_item(workbook: Workbook, line_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing purchase order line.

    Raises:
        KeyError: If the line or any referenced column is missing.
    """

    _update_fields(workbook, PURCHASE_ORDER_ITEMS_SHEET, "LineID", line_id, field_values, label="Order item")


def delete_order_items(workbook: Workbook, po_id: str, *, line_id: Optional[str] = None) -> int:
    """Delete the lines belonging to ``po_id`` and return how many were removed.

    When ``line_id`` is given only that line is removed. Rows are deleted from
    the bottom up so earlier row indices stay valid while iterating.
    """

    sheet = workbook[PURCHASE_ORDER_ITEMS_SHEET]
    header_map = _header_map(sheet)
    po_col = header_map["POID"] - 1
    line_col = header_map["LineID"] - 1

    targets = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[po_col] == po_id and (line_id is None or row[line_col] == line_id)
    ]
    for row_idx in reversed(targets):
        sheet.delete_rows(row_idx)
    log.debug("Deleted %d order line(s) for purchase order '%s'", len(targets), po_id)
    return len(targets)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

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
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.base_unit,
        record.purchase_unit,
        record.conversion_to_unit,
        record.buy_price,
        record.sell_price,
        record.discount,
        record.discount_type,
        record.stock,
        record.is_active,
    ]


def serialize_supplier(record: SupplierRow) -> list[object]:
    """Convert a supplier dataclass into the worksheet column ordering."""

    return [record.supplier_id, record.supplier_name, record.phone, record.address, record.is_active]


def serialize_purchase_order(record: PurchaseOrderRow) -> list[object]:
    """Convert a purchase order header into the worksheet column ordering."""

    return [
        record.po_id,
        record.date_iso,
        record.supplier_id,
        record.supplier_name,
        record.status,
        record.total_amount,
        record.notes,
    ]


def serialize_order_item(record: PurchaseOrderItemRow) -> list[object]:
    """Convert a purchase order line into the worksheet column ordering."""

    return [
        record.line_id,
        record.po_id,
        record.product_id,
        record.product_name,
        record.qty,
        record.qty_base,
        record.buy_price,
        record.subtotal,
    ]


def serialize_stock_movement(record: StockMovementRow) -> list[object]:
    """Convert a stock movement into the worksheet column ordering."""

    return [
        record.movement_id,
        record.timestamp_iso,
        record.movement_type,
        record.product_id,
        record.quantity,
        record.unit_cost,
        record.previous_buy_price,
        record.reference_id,
        record.note,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a numeric cell value: {raw!r}") from exc


def _to_optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric cells become :class:`~decimal.Decimal` values, an empty
    ``PurchaseUnit`` becomes ``None`` and a blank ``ConversionToUnit`` stays
    ``None`` so the receiving layer can tell "no conversion" apart from zero.
    """

    (
        product_id,
        product_name,
        base_unit,
        purchase_unit,
        conversion_raw,
        buy_raw,
        sell_raw,
        discount_raw,
        discount_type,
        stock_raw,
        is_active,
    ) = raw_row

    conversion = None if conversion_raw in (None, "") else _to_decimal(conversion_raw)
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name),
        base_unit=_to_optional_text(base_unit) or DEFAULT_BASE_UNIT,
        purchase_unit=_to_optional_text(purchase_unit),
        conversion_to_unit=conversion,
        buy_price=_to_decimal(buy_raw),
        sell_price=_to_decimal(sell_raw),
        discount=_to_decimal(discount_raw),
        discount_type=_to_optional_text(discount_type) or "percent",
        stock=_to_decimal(stock_raw),
        is_active=bool(is_active),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    """Convert a raw worksheet row into a strongly typed supplier record."""

    supplier_id, supplier_name, phone, address, is_active = raw_row
    return SupplierRow(
        supplier_id=str(supplier_id),
        supplier_name=str(supplier_name),
        phone=_to_optional_text(phone),
        address=_to_optional_text(address),
        is_active=bool(is_active),
    )


def deserialize_purchase_order(raw_row: Sequence[object]) -> PurchaseOrderRow:
    """Convert a raw worksheet row into a purchase order header."""

    po_id, date_iso, supplier_id, supplier_name, status, total_raw, notes = raw_row
    return PurchaseOrderRow(
        po_id=str(po_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        supplier_id=str(supplier_id) if supplier_id is not None else "",
        supplier_name=str(supplier_name) if supplier_name is not None else "",
        status=str(status) if status is not None else "",
        total_amount=_to_decimal(total_raw),
        notes=_to_optional_text(notes),
    )


def deserialize_order_item(raw_row: Sequence[object]) -> PurchaseOrderItemRow:
    """Convert a raw worksheet row into a purchase order line."""

    line_id, po_id, product_id, product_name, qty_raw, qty_base_raw, price_raw, subtotal_raw = raw_row
    return PurchaseOrderItemRow(
        line_id=str(line_id),
        po_id=str(po_id),
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        qty=_to_decimal(qty_raw),
        qty_base=_to_decimal(qty_base_raw),
        buy_price=_to_decimal(price_raw),
        subtotal=_to_decimal(subtotal_raw),
    )


def deserialize_stock_movement(raw_row: Sequence[object]) -> StockMovementRow:
    """Convert a raw worksheet row into a stock movement record."""

    (
        movement_id,
        timestamp_iso,
        movement_type,
        product_id,
        quantity_raw,
        unit_cost_raw,
        previous_raw,
        reference_id,
        note,
    ) = raw_row

    return StockMovementRow(
        movement_id=str(movement_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        movement_type=str(movement_type) if movement_type is not None else "",
        product_id=str(product_id),
        quantity=_to_decimal(quantity_raw),
        unit_cost=_to_decimal(unit_cost_raw),
        previous_buy_price=_to_decimal(previous_raw),
        reference_id=_to_optional_text(reference_id),
        note=_to_optional_text(note),
    )


