"""Business logic layer for POS ERP.

This module holds the purchasing rules: the product catalog and supplier
records, purchase order authoring and lifecycle, and the workbook-backed
collaborators the receiving engine commits through. It consumes the Data
Access Layer (DAL) for all I/O while ensuring every mutation passes through
the domain rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_CEILING, Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, receiving
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    STATUS_TRANSITIONS,
    DiscountType,
    MovementType,
    PurchaseOrderStatus,
)
from .exceptions import (
    BusinessRuleViolation,
    InvalidStatusTransition,
    MissingReferenceError,
    OrderUpdateError,
    ReceivingError,
    StockReceiptError,
)
from .notifications import Notifier


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class CreatePurchaseOrderCommand:
    """User intent for opening a new draft purchase order."""

    supplier_id: str
    date: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AddOrderItemCommand:
    """User intent for adding a product to a draft purchase order."""

    po_id: str
    product_id: str
    qty: Decimal = Decimal("1")


@dataclass(frozen=True)
class UpdateOrderItemCommand:
    """User intent for editing one line of a draft purchase order.

    ``qty`` and ``qty_base`` are linked through the product's conversion
    factor, so at most one of them should be supplied.
    """

    po_id: str
    line_id: str
    qty: Optional[object] = None
    qty_base: Optional[object] = None
    buy_price: Optional[object] = None


# Attribute name -> worksheet column, for partial updates.
PRODUCT_COLUMNS: Dict[str, str] = {
    "product_name": "ProductName",
    "base_unit": "BaseUnit",
    "purchase_unit": "PurchaseUnit",
    "conversion_to_unit": "ConversionToUnit",
    "buy_price": "BuyPrice",
    "sell_price": "SellPrice",
    "discount": "Discount",
    "discount_type": "DiscountType",
    "is_active": "IsActive",
}

SUPPLIER_COLUMNS: Dict[str, str] = {
    "supplier_name": "SupplierName",
    "phone": "Phone",
    "address": "Address",
    "is_active": "IsActive",
}

ORDER_SORT_KEYS = ("date_iso", "po_id", "supplier_name", "status", "total_amount")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries keyed by domain area (products, suppliers,
    orders, ...) that store precomputed query results so repeated reads do
    not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, ``active``
            products, and a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_suppliers_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the supplier cache bucket with the same shape as products."""

    bucket = _get_cache_bucket(context, "suppliers")
    if "all" not in bucket:
        all_suppliers = list(data_manager.iter_suppliers(context.workbook))
        bucket["all"] = all_suppliers
        bucket["active"] = [supplier for supplier in all_suppliers if supplier.is_active]
        bucket["by_id"] = {supplier.supplier_id: supplier for supplier in all_suppliers}
        log.debug("Populated suppliers cache with %d entries", len(all_suppliers))
    return bucket


def _ensure_orders_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the purchase order header cache (``all`` and ``by_id``)."""

    bucket = _get_cache_bucket(context, "purchase_orders")
    if "all" not in bucket:
        all_orders = list(data_manager.iter_purchase_orders(context.workbook))
        bucket["all"] = all_orders
        bucket["by_id"] = {order.po_id: order for order in all_orders}
        log.debug("Populated purchase orders cache with %d entries", len(all_orders))
    return bucket


def _ensure_order_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the order line cache, grouped by purchase order id."""

    bucket = _get_cache_bucket(context, "order_items")
    if "by_po" not in bucket:
        by_po: Dict[str, List[data_manager.PurchaseOrderItemRow]] = {}
        for item in data_manager.iter_order_items(context.workbook):
            by_po.setdefault(item.po_id, []).append(item)
        bucket["by_po"] = by_po
        log.debug("Populated order items cache for %d orders", len(by_po))
    return bucket


def _ensure_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the stock movement cache (``all`` and ``by_reference``)."""

    bucket = _get_cache_bucket(context, "stock_movements")
    if "all" not in bucket:
        all_movements = list(data_manager.iter_stock_movements(context.workbook))
        by_reference: Dict[str, List[data_manager.StockMovementRow]] = {}
        for movement in all_movements:
            if movement.reference_id is not None:
                by_reference.setdefault(movement.reference_id, []).append(movement)
        bucket["all"] = all_movements
        bucket["by_reference"] = by_reference
        log.debug("Populated stock movements cache with %d entries", len(all_movements))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook. The resulting :class:`RuntimeContext` bundles the immutable
    settings with a mutable workbook handle and an empty cache store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
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


def generate_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


# ---------------------------------------------------------------------------
# Catalog and suppliers
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows, active ones only unless asked otherwise."""
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def find_product(context: RuntimeContext, product_id: str) -> Optional[data_manager.ProductRow]:
    """Return the product with ``product_id`` or ``None`` when it is unknown."""
    return _ensure_products_cache(context)["by_id"].get(product_id)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    product = find_product(context, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    base_unit: Optional[str] = None,
    purchase_unit: Optional[str] = None,
    conversion_to_unit: Optional[Decimal] = None,
    buy_price: Decimal = Decimal("0"),
    sell_price: Decimal = Decimal("0"),
    discount: Decimal = Decimal("0"),
    discount_type: str = DiscountType.PERCENT.value,
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Validate and append a new product with zero stock.

    Stock only changes through stock receipts, so it cannot be set here.

    Raises:
        BusinessRuleViolation: If the identifier is already taken.
        ValueError: If a price, discount or conversion is negative, or the
            discount type is unknown.
    """
    if find_product(context, product_id) is not None:
        log.error("Duplicate product id '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product_id}' already exists")
    require_nonnegative_money(buy_price)
    require_nonnegative_money(sell_price)
    require_nonnegative_money(discount)
    if conversion_to_unit is not None:
        require_nonnegative_money(conversion_to_unit)
    kind = DiscountType(discount_type)

    record = data_manager.ProductRow(
        product_id=product_id,
        product_name=product_name,
        base_unit=base_unit or context.settings.default_base_unit,
        purchase_unit=purchase_unit or None,
        conversion_to_unit=conversion_to_unit,
        buy_price=buy_price,
        sell_price=sell_price,
        discount=discount,
        discount_type=kind.value,
        stock=Decimal("0"),
        is_active=is_active,
    )
    data_manager.append_product(context.workbook, record)
    _invalidate_cache(context, "products")
    log.info("Added product '%s' (%s)", product_id, product_name)
    return record


def update_product(context: RuntimeContext, product_id: str, **changes: Any) -> data_manager.ProductRow:
    """Apply a partial update to a product and return the refreshed record.

    Raises:
        MissingReferenceError: If the product is unknown.
        KeyError: If a change names a field that cannot be edited.
    """
    get_product(context, product_id)
    unknown = set(changes) - set(PRODUCT_COLUMNS)
    if unknown:
        raise KeyError(f"Unknown product field: {', '.join(sorted(unknown))}")
    if "discount_type" in changes:
        changes["discount_type"] = DiscountType(changes["discount_type"]).value
    for name in ("buy_price", "sell_price", "discount", "conversion_to_unit"):
        if changes.get(name) is not None:
            require_nonnegative_money(changes[name])

    data_manager.update_product(
        context.workbook,
        product_id,
        field_values={PRODUCT_COLUMNS[name]: value for name, value in changes.items()},
    )
    _invalidate_cache(context, "products")
    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(changes)))
    return get_product(context, product_id)


def list_suppliers(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.SupplierRow]:
    cache = _ensure_suppliers_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_supplier(context: RuntimeContext, supplier_id: str) -> data_manager.SupplierRow:
    """Resolve a supplier record by its identifier.

    Raises:
        MissingReferenceError: If ``supplier_id`` cannot be located.
    """
    try:
        return _ensure_suppliers_cache(context)["by_id"][supplier_id]
    except KeyError as exc:
        log.warning("Supplier lookup failed for id '%s'", supplier_id)
        raise MissingReferenceError(f"Unknown supplier id: {supplier_id}") from exc


def add_supplier(
    context: RuntimeContext,
    *,
    supplier_id: str,
    supplier_name: str,
    phone: Optional[str] = None,
    address: Optional[str] = None,
    is_active: bool = True,
) -> data_manager.SupplierRow:
    """Append a new supplier record.

    Raises:
        BusinessRuleViolation: If the identifier is already taken.
    """
    if supplier_id in _ensure_suppliers_cache(context)["by_id"]:
        log.error("Duplicate supplier id '%s'", supplier_id)
        raise BusinessRuleViolation(f"Supplier '{supplier_id}' already exists")

    record = data_manager.SupplierRow(
        supplier_id=supplier_id,
        supplier_name=supplier_name,
        phone=phone,
        address=address,
        is_active=is_active,
    )
    data_manager.append_supplier(context.workbook, record)
    _invalidate_cache(context, "suppliers")
    log.info("Added supplier '%s' (%s)", supplier_id, supplier_name)
    return record


def update_supplier(context: RuntimeContext, supplier_id: str, **changes: Any) -> data_manager.SupplierRow:
    """Apply a partial update to a supplier and return the refreshed record."""
    get_supplier(context, supplier_id)
    unknown = set(changes) - set(SUPPLIER_COLUMNS)
    if unknown:
        raise KeyError(f"Unknown supplier field: {', '.join(sorted(unknown))}")

    data_manager.update_supplier(
        context.workbook,
        supplier_id,
        field_values={SUPPLIER_COLUMNS[name]: value for name, value in changes.items()},
    )
    _invalidate_cache(context, "suppliers")
    log.info("Updated supplier '%s': %s", supplier_id, ", ".join(sorted(changes)))
    return get_supplier(context, supplier_id)


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------


def list_stock_movements(context: RuntimeContext) -> List[data_manager.StockMovementRow]:
    """Return a snapshot of the stock movement ledger in workbook order."""
    return list(_ensure_movements_cache(context)["all"])


def calculate_inventory(context: RuntimeContext) -> Dict[str, Decimal]:
    """Return the on-hand stock of every product, keyed by ``ProductID``."""
    inventory = {product.product_id: product.stock for product in list_products(context, include_inactive=True)}
    log.debug("Calculated inventory balances for %d products", len(inventory))
    return inventory


# ---------------------------------------------------------------------------
# Purchase orders
# ---------------------------------------------------------------------------


def list_purchase_orders(
    context: RuntimeContext,
    *,
    status: Optional[PurchaseOrderStatus] = None,
    sort_key: str = "date_iso",
    descending: bool = True,
) -> List[data_manager.PurchaseOrderRow]:
    """Return purchase orders, optionally filtered by status, sorted by ``sort_key``.

    Raises:
        ValueError: If ``sort_key`` is not one of ``ORDER_SORT_KEYS``.
    """
    if sort_key not in ORDER_SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {sort_key}")
    orders = _ensure_orders_cache(context)["all"]
    if status is not None:
        orders = [order for order in orders if order.status == status.value]
    return sorted(orders, key=lambda order: (getattr(order, sort_key), order.po_id), reverse=descending)


def get_purchase_order(context: RuntimeContext, po_id: str) -> data_manager.PurchaseOrderRow:
    """Resolve a purchase order header by its identifier.

    Raises:
        MissingReferenceError: If ``po_id`` is unknown.
    """
    try:
        return _ensure_orders_cache(context)["by_id"][po_id]
    except KeyError as exc:
        log.warning("Purchase order lookup failed for id '%s'", po_id)
        raise MissingReferenceError(f"Unknown purchase order id: {po_id}") from exc


def list_order_items(context: RuntimeContext, po_id: str) -> List[data_manager.PurchaseOrderItemRow]:
    """Return the lines of ``po_id`` in the order they were added."""
    return list(_ensure_order_items_cache(context)["by_po"].get(po_id, []))


def get_order_item(context: RuntimeContext, po_id: str, line_id: str) -> data_manager.PurchaseOrderItemRow:
    for item in list_order_items(context, po_id):
        if item.line_id == line_id:
            return item
    raise MissingReferenceError(f"Unknown line '{line_id}' on purchase order '{po_id}'")


def order_status(order: data_manager.PurchaseOrderRow) -> PurchaseOrderStatus:
    """Parse the status stored on an order header.

    Raises:
        BusinessRuleViolation: If the workbook holds an unknown status.
    """
    try:
        return PurchaseOrderStatus(order.status)
    except ValueError as exc:
        raise BusinessRuleViolation(f"Purchase order '{order.po_id}' has unknown status '{order.status}'") from exc


def validate_status_transition(order: data_manager.PurchaseOrderRow, target: PurchaseOrderStatus) -> None:
    """Ensure ``order`` may move to ``target``.

    Raises:
        InvalidStatusTransition: If the lifecycle forbids the move.
    """
    current = order_status(order)
    if target not in STATUS_TRANSITIONS[current]:
        log.error(
            "Purchase order '%s' cannot move from '%s' to '%s'",
            order.po_id,
            current.value,
            target.value,
        )
        raise InvalidStatusTransition(
            f"Purchase order '{order.po_id}' is {current.value} and cannot become {target.value}"
        )


def _require_draft(order: data_manager.PurchaseOrderRow) -> None:
    if order_status(order) is not PurchaseOrderStatus.DRAFT:
        log.error("Attempted to edit purchase order '%s' in status '%s'", order.po_id, order.status)
        raise InvalidStatusTransition(f"Purchase order '{order.po_id}' is {order.status} and can no longer be edited")


def create_purchase_order(context: RuntimeContext, command: CreatePurchaseOrderCommand) -> data_manager.PurchaseOrderRow:
    """Open a new draft order for an active supplier.

    The supplier name is copied onto the order so it survives later renames.

    Raises:
        MissingReferenceError: If the supplier is unknown.
        BusinessRuleViolation: If the supplier is inactive.
    """
    supplier = get_supplier(context, command.supplier_id)
    if not supplier.is_active:
        log.warning("Attempted purchase order for inactive supplier '%s'", command.supplier_id)
        raise BusinessRuleViolation(f"Supplier '{command.supplier_id}' is inactive")

    timestamp = _resolve_timestamp(command.date)
    po_id = generate_id(prefix="PO", when=timestamp)
    known = _ensure_orders_cache(context)["by_id"]
    if po_id in known:
        po_id = f"{po_id}-{len(known)}"
    order = data_manager.PurchaseOrderRow(
        po_id=po_id,
        date_iso=timestamp.isoformat(),
        supplier_id=supplier.supplier_id,
        supplier_name=supplier.supplier_name,
        status=PurchaseOrderStatus.DRAFT.value,
        total_amount=Decimal("0"),
        notes=command.notes,
    )
    data_manager.append_purchase_order(context.workbook, order)
    _invalidate_cache(context, "purchase_orders")
    log.info("Created draft purchase order '%s' for supplier '%s'", order.po_id, supplier.supplier_id)
    return order


def conversion_for(context: RuntimeContext, product_id: str) -> receiving.UnitConversion:
    """Resolve the unit conversion for a product id, tolerating unknown ids."""
    return receiving.resolve_conversion(
        find_product(context, product_id),
        default_base_unit=context.settings.default_base_unit,
    )


def suggest_order_quantity(suggested_base_qty: Decimal, conversion: receiving.UnitConversion) -> Tuple[Decimal, Decimal]:
    """Round a base-unit suggestion up to whole purchase units.

    Returns:
        tuple[Decimal, Decimal]: ``(qty, qty_base)`` where ``qty`` counts
            purchase units and ``qty_base`` the base units they contain.
    """
    if not conversion.converts:
        return suggested_base_qty, suggested_base_qty
    qty = (suggested_base_qty / conversion.factor).to_integral_value(rounding=ROUND_CEILING)
    return qty, qty * conversion.factor


def _base_price_of_line(
    context: RuntimeContext,
    item: data_manager.PurchaseOrderItemRow,
    status: PurchaseOrderStatus,
) -> Decimal:
    # Received lines carry the price per purchase unit.
    if status is not PurchaseOrderStatus.RECEIVED:
        return item.buy_price
    if item.qty > 0 and item.qty_base > 0:
        factor = item.qty_base / item.qty
    else:
        factor = conversion_for(context, item.product_id).factor
    if factor > 1:
        return (item.buy_price / factor).to_integral_value(rounding=ROUND_CEILING)
    return item.buy_price


def last_supplier_price(context: RuntimeContext, supplier_id: str, product_id: str) -> Optional[Decimal]:
    """Return the base-unit price last agreed with a supplier for a product.

    Only ``ordered`` and ``received`` orders count. ``None`` means there is
    no history and the catalog buy price should be used.
    """
    for order in list_purchase_orders(context):
        if order.supplier_id != supplier_id:
            continue
        status = order_status(order)
        if status not in (PurchaseOrderStatus.ORDERED, PurchaseOrderStatus.RECEIVED):
            continue
        for item in list_order_items(context, order.po_id):
            if item.product_id == product_id:
                return _base_price_of_line(context, item, status)
    return None


def _next_line_id(context: RuntimeContext, po_id: str) -> str:
    # Unique among the order's current lines.
    used = [item.line_id for item in list_order_items(context, po_id)]
    sequence = 1
    for line_id in used:
        suffix = line_id.rsplit("-", 1)[-1]
        if suffix.isdigit():
            sequence = max(sequence, int(suffix) + 1)
    return f"{po_id}-{sequence:03d}"


def _refresh_order_total(context: RuntimeContext, po_id: str) -> Decimal:
    total = sum((item.subtotal for item in list_order_items(context, po_id)), Decimal("0"))
    data_manager.update_purchase_order(context.workbook, po_id, field_values={"TotalAmount": total})
    _invalidate_cache(context, "purchase_orders")
    return total


def add_order_item(context: RuntimeContext, command: AddOrderItemCommand) -> data_manager.PurchaseOrderItemRow:
    """Add a product line to a draft order.

    The price is the last one paid to the same supplier for the product when
    such history exists, otherwise the catalog buy price, and is always
    expressed per base unit. ``qty`` counts purchase units.

    Raises:
        InvalidStatusTransition: If the order is no longer a draft.
        MissingReferenceError: If the order or product is unknown.
        BusinessRuleViolation: If the product is inactive or already listed.
        ValueError: If ``qty`` is not positive.
    """
    order = get_purchase_order(context, command.po_id)
    _require_draft(order)
    product = get_product(context, command.product_id)
    if not product.is_active:
        log.warning("Attempted to order inactive product '%s'", command.product_id)
        raise BusinessRuleViolation(f"Product '{command.product_id}' is inactive")
    if any(item.product_id == product.product_id for item in list_order_items(context, order.po_id)):
        raise BusinessRuleViolation(f"Product '{product.product_id}' is already on purchase order '{order.po_id}'")
    require_positive_quantity(command.qty)

    conversion = conversion_for(context, product.product_id)
    history_price = last_supplier_price(context, order.supplier_id, product.product_id)
    price = history_price if history_price is not None else product.buy_price
    qty_base = receiving.to_base_quantity(command.qty, conversion)

    item = data_manager.PurchaseOrderItemRow(
        line_id=_next_line_id(context, order.po_id),
        po_id=order.po_id,
        product_id=product.product_id,
        product_name=product.product_name,
        qty=command.qty,
        qty_base=qty_base,
        buy_price=price,
        subtotal=qty_base * price,
    )
    data_manager.append_order_item(context.workbook, item)
    _invalidate_cache(context, "order_items")
    total = _refresh_order_total(context, order.po_id)
    log.info(
        "Added '%s' to purchase order '%s' (qty=%s, price=%s%s, total=%s)",
        product.product_id,
        order.po_id,
        command.qty,
        price,
        " from supplier history" if history_price is not None else "",
        total,
    )
    return item


def update_order_item(context: RuntimeContext, command: UpdateOrderItemCommand) -> data_manager.PurchaseOrderItemRow:
    """Edit the quantity or price of one draft line and recompute its subtotal.

    Editing ``qty`` (purchase units) derives ``qty_base``; editing
    ``qty_base`` derives ``qty`` rounded up to whole purchase units. Empty or
    negative input counts as zero. The subtotal is ``qty_base * buy_price``.

    Raises:
        InvalidStatusTransition: If the order is no longer a draft.
        MissingReferenceError: If the order or line is unknown.
        ValueError: If both ``qty`` and ``qty_base`` are supplied.
    """
    if command.qty is not None and command.qty_base is not None:
        raise ValueError("Edit either qty or qty_base, not both")
    order = get_purchase_order(context, command.po_id)
    _require_draft(order)
    item = get_order_item(context, order.po_id, command.line_id)
    conversion = conversion_for(context, item.product_id)

    qty, qty_base, price = item.qty, item.qty_base, item.buy_price
    if command.qty is not None:
        qty = receiving.normalize_amount(command.qty)
        qty_base = receiving.to_base_quantity(qty, conversion)
    elif command.qty_base is not None:
        qty_base = receiving.normalize_amount(command.qty_base)
        qty = (qty_base / conversion.factor).to_integral_value(rounding=ROUND_CEILING)
    if command.buy_price is not None:
        price = receiving.normalize_amount(command.buy_price)

    subtotal = qty_base * price
    data_manager.update_order_item(
        context.workbook,
        item.line_id,
        field_values={"Qty": qty, "QtyBase": qty_base, "BuyPrice": price, "Subtotal": subtotal},
    )
    _invalidate_cache(context, "order_items")
    total = _refresh_order_total(context, order.po_id)
    log.info("Updated line '%s' on purchase order '%s' (subtotal=%s, total=%s)", item.line_id, order.po_id, subtotal, total)
    return get_order_item(context, order.po_id, item.line_id)


def remove_order_item(context: RuntimeContext, po_id: str, line_id: str) -> None:
    """Remove one line from a draft order and recompute the order total."""
    order = get_purchase_order(context, po_id)
    _require_draft(order)
    get_order_item(context, po_id, line_id)
    data_manager.delete_order_items(context.workbook, po_id, line_id=line_id)
    _invalidate_cache(context, "order_items")
    total = _refresh_order_total(context, po_id)
    log.info("Removed line '%s' from purchase order '%s' (total=%s)", line_id, po_id, total)


def _set_status(context: RuntimeContext, order: data_manager.PurchaseOrderRow, target: PurchaseOrderStatus) -> data_manager.PurchaseOrderRow:
    validate_status_transition(order, target)
    data_manager.update_purchase_order(context.workbook, order.po_id, field_values={"Status": target.value})
    _invalidate_cache(context, "purchase_orders")
    log.info("Purchase order '%s' moved from '%s' to '%s'", order.po_id, order.status, target.value)
    return get_purchase_order(context, order.po_id)


def place_purchase_order(context: RuntimeContext, po_id: str) -> data_manager.PurchaseOrderRow:
    """Send a draft order to its supplier (``draft`` -> ``ordered``).

    Raises:
        InvalidStatusTransition: If the order is not a draft.
        BusinessRuleViolation: If the order has no lines or its supplier is
            inactive.
    """
    order = get_purchase_order(context, po_id)
    validate_status_transition(order, PurchaseOrderStatus.ORDERED)
    if not list_order_items(context, po_id):
        log.error("Attempted to place empty purchase order '%s'", po_id)
        raise BusinessRuleViolation(f"Purchase order '{po_id}' has no items")
    if not get_supplier(context, order.supplier_id).is_active:
        raise BusinessRuleViolation(f"Supplier '{order.supplier_id}' is inactive")
    return _set_status(context, order, PurchaseOrderStatus.ORDERED)


def cancel_purchase_order(context: RuntimeContext, po_id: str) -> data_manager.PurchaseOrderRow:
    """Cancel a draft or ordered purchase order."""
    order = get_purchase_order(context, po_id)
    return _set_status(context, order, PurchaseOrderStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Receiving collaborators
# ---------------------------------------------------------------------------


class WorkbookGateway:
    """Workbook-backed stock ledger, order repository and product lookup.

    All writes land in the in-memory workbook; nothing reaches disk until the
    caller persists the context.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self._context = context

    def get_product(self, product_id: str) -> Optional[data_manager.ProductRow]:
        return find_product(self._context, product_id)

    def apply_stock_receipt(self, adjustments: Sequence[receiving.StockAdjustment], *, reference: str) -> str:
        """Increment stock and record the base-unit cost of every product.

        Every product is validated before the first write so a rejected
        receipt leaves the workbook untouched. Lines with nothing received
        leave stock and cost alone. Products missing from the catalog are
        skipped with a warning unless ``StrictProductLookup`` is enabled.

        Returns:
            str: Receipt identifier referenced by the written movements.

        Raises:
            MissingReferenceError: If an adjustment names an unknown product
                while ``StrictProductLookup`` is enabled.
            ValueError: If a quantity or cost is negative.
        """
        context = self._context
        state: Dict[str, Tuple[Decimal, Decimal]] = {}
        for adjustment in adjustments:
            require_nonnegative_money(adjustment.quantity_base_units)
            require_nonnegative_money(adjustment.unit_cost_base_units)
            product = find_product(context, adjustment.product_id)
            if product is None:
                if context.settings.strict_product_lookup:
                    log.error("Stock receipt for '%s' names unknown product '%s'", reference, adjustment.product_id)
                    raise MissingReferenceError(f"Unknown product id: {adjustment.product_id}")
                log.warning(
                    "Product '%s' not found; stock receipt for '%s' leaves it out",
                    adjustment.product_id,
                    reference,
                )
                continue
            state.setdefault(product.product_id, (product.stock, product.buy_price))

        timestamp = _resolve_timestamp(None)
        receipt_id = generate_id(prefix="R", when=timestamp)
        existing = _ensure_movements_cache(context)["by_reference"]
        empty_receipts = _get_cache_bucket(context, "empty_receipts")
        if receipt_id in existing or receipt_id in empty_receipts:
            receipt_id = f"{receipt_id}-{len(existing) + len(empty_receipts)}"
        touched = []
        sequence = 0
        for adjustment in adjustments:
            if adjustment.product_id not in state:
                continue
            if adjustment.quantity_base_units == 0:
                log.debug("Skipping zero receipt for product '%s'", adjustment.product_id)
                continue
            stock, previous_price = state[adjustment.product_id]
            sequence += 1
            data_manager.append_stock_movement(
                context.workbook,
                data_manager.StockMovementRow(
                    movement_id=f"{receipt_id}-{sequence:03d}",
                    timestamp_iso=timestamp.isoformat(),
                    movement_type=MovementType.IN.value,
                    product_id=adjustment.product_id,
                    quantity=adjustment.quantity_base_units,
                    unit_cost=adjustment.unit_cost_base_units,
                    previous_buy_price=previous_price,
                    reference_id=receipt_id,
                    note=f"Purchase order {reference}",
                ),
            )
            state[adjustment.product_id] = (
                stock + adjustment.quantity_base_units,
                adjustment.unit_cost_base_units,
            )
            if adjustment.product_id not in touched:
                touched.append(adjustment.product_id)

        for product_id in touched:
            stock, price = state[product_id]
            data_manager.update_product(
                context.workbook,
                product_id,
                field_values={"Stock": stock, "BuyPrice": price},
            )
        if not sequence:
            empty_receipts[receipt_id] = reference
        _invalidate_cache(context, "products", "stock_movements")
        log.info("Applied stock receipt '%s' for '%s' (%d movements)", receipt_id, reference, sequence)
        return receipt_id

    def revert_stock_receipt(self, receipt_id: str) -> None:
        """Undo a stock receipt by appending reversal movements.

        Movements are unwound newest first so each product ends with the
        stock and buy price it had before the receipt. A receipt that wrote
        no movements has nothing to undo.

        Raises:
            MissingReferenceError: If the receipt is unknown.
            BusinessRuleViolation: If the receipt was already reverted.
        """
        context = self._context
        empty_receipts = _get_cache_bucket(context, "empty_receipts")
        if receipt_id in empty_receipts:
            empty_receipts.pop(receipt_id)
            log.info("Stock receipt '%s' wrote no movements; nothing to revert", receipt_id)
            return
        cache = _ensure_movements_cache(context)
        movements = cache["by_reference"].get(receipt_id, [])
        if not movements:
            raise MissingReferenceError(f"Unknown stock receipt: {receipt_id}")
        if any(movement.movement_type == MovementType.REVERSAL.value for movement in movements):
            raise BusinessRuleViolation(f"Stock receipt '{receipt_id}' was already reverted")

        timestamp = _resolve_timestamp(None)
        reversal_id = generate_id(prefix="V", when=timestamp)
        known_ids = {movement.movement_id for movement in cache["all"]}
        if f"{reversal_id}-001" in known_ids:
            reversal_id = f"{reversal_id}-{len(known_ids)}"
        state: Dict[str, Tuple[Decimal, Decimal]] = {}
        for sequence, movement in enumerate(reversed(movements), start=1):
            if movement.product_id not in state:
                product = get_product(context, movement.product_id)
                state[movement.product_id] = (product.stock, product.buy_price)
            stock, _ = state[movement.product_id]
            state[movement.product_id] = (stock - movement.quantity, movement.previous_buy_price)
            data_manager.append_stock_movement(
                context.workbook,
                data_manager.StockMovementRow(
                    movement_id=f"{reversal_id}-{sequence:03d}",
                    timestamp_iso=timestamp.isoformat(),
                    movement_type=MovementType.REVERSAL.value,
                    product_id=movement.product_id,
                    quantity=-movement.quantity,
                    unit_cost=movement.unit_cost,
                    previous_buy_price=movement.previous_buy_price,
                    reference_id=receipt_id,
                    note=f"Reversal of {movement.movement_id}",
                ),
            )

        for product_id, (stock, price) in state.items():
            data_manager.update_product(
                context.workbook,
                product_id,
                field_values={"Stock": stock, "BuyPrice": price},
            )
        _invalidate_cache(context, "products", "stock_movements")
        log.info("Reverted stock receipt '%s' (%d movements)", receipt_id, len(movements))

    def update_order(self, po_id: str, update: receiving.OrderUpdate) -> None:
        """Replace the order's lines and write its new total and status.

        Raises:
            MissingReferenceError: If the order is unknown.
            InvalidStatusTransition: If the order cannot take ``update.status``.
        """
        context = self._context
        order = get_purchase_order(context, po_id)
        validate_status_transition(order, update.status)

        data_manager.delete_order_items(context.workbook, po_id)
        for item in update.items:
            data_manager.append_order_item(context.workbook, item)
        data_manager.update_purchase_order(
            context.workbook,
            po_id,
            field_values={"TotalAmount": update.total_amount, "Status": update.status.value},
        )
        _invalidate_cache(context, "purchase_orders", "order_items")
        log.info(
            "Purchase order '%s' updated to '%s' with total %s",
            po_id,
            update.status.value,
            update.total_amount,
        )


# ---------------------------------------------------------------------------
# Receiving orchestration
# ---------------------------------------------------------------------------


def _require_receivable(order: data_manager.PurchaseOrderRow) -> None:
    if order_status(order) is not PurchaseOrderStatus.ORDERED:
        log.error("Purchase order '%s' is '%s' and cannot be received", order.po_id, order.status)
        raise InvalidStatusTransition(
            f"Purchase order '{order.po_id}' is {order.status}; only ordered purchase orders can be received"
        )


def build_receiving_form(context: RuntimeContext, po_id: str) -> receiving.ReceivingForm:
    """Seed the receiving form for an ``ordered`` purchase order.

    Raises:
        InvalidStatusTransition: If the order is not ``ordered``.
        MissingReferenceError: If the order is unknown, or a product is
            missing while ``StrictProductLookup`` is enabled.
    """
    order = get_purchase_order(context, po_id)
    _require_receivable(order)
    return receiving.build_receiving_form(
        order,
        list_order_items(context, po_id),
        lambda product_id: find_product(context, product_id),
        default_base_unit=context.settings.default_base_unit,
        strict=context.settings.strict_product_lookup,
    )


def receive_purchase_order(
    context: RuntimeContext,
    form: receiving.ReceivingForm,
    *,
    notifier: Notifier,
) -> receiving.ReceivingOutcome:
    """Commit a confirmed receiving form against the workbook.

    The order must still be ``ordered`` and the form must cover exactly its
    current lines. Stock is applied first and the order second; see
    :func:`receiving.submit_reconciliation` for failure handling.

    Raises:
        InvalidStatusTransition: If the order is no longer receivable.
        BusinessRuleViolation: If the form does not match the order's lines.
        StockReceiptError: If the stock receipt was rejected.
        OrderUpdateError: If the order update failed after the stock receipt.
    """
    order = get_purchase_order(context, form.po_id)
    _require_receivable(order)
    expected = [item.line_id for item in list_order_items(context, order.po_id)]
    if [line.line_id for line in form.lines] != expected:
        log.error("Receiving form for '%s' does not match the order lines", order.po_id)
        raise BusinessRuleViolation(f"Receiving form is out of date for purchase order '{order.po_id}'")

    plan = receiving.reconcile(form)
    gateway = WorkbookGateway(context)
    return receiving.submit_reconciliation(plan, stock_ledger=gateway, orders=gateway, notifier=notifier)


def open_receiving_session(context: RuntimeContext, po_id: str, *, notifier: Notifier) -> receiving.ReceivingSession:
    """Open the single receiving session allowed for an ``ordered`` order.

    Raises:
        BusinessRuleViolation: If a session for the same order is still open.
    """
    sessions = _get_cache_bucket(context, "receiving_sessions")
    if po_id in sessions:
        raise BusinessRuleViolation(f"Purchase order '{po_id}' is already being received")

    form = build_receiving_form(context, po_id)
    session = receiving.ReceivingSession(
        form,
        submit=lambda confirmed: receive_purchase_order(context, confirmed, notifier=notifier),
        on_close=lambda closed: sessions.pop(closed.po_id, None),
    )
    sessions[po_id] = session
    log.info("Opened receiving session for purchase order '%s' (%d lines)", po_id, len(form.lines))
    return session


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidStatusTransition",
    "ReceivingError",
    "StockReceiptError",
    "OrderUpdateError",
    "RuntimeContext",
    "CreatePurchaseOrderCommand",
    "AddOrderItemCommand",
    "UpdateOrderItemCommand",
    "WorkbookGateway",
]
