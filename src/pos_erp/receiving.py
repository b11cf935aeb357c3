"""Purchase order receiving and unit-conversion reconciliation.

Suppliers ship in purchase units (a sack, a carton) while the store counts
stock in base units (kilograms, pieces). Receiving an order means recording
what physically arrived and what was actually paid, then pushing two effects
out of the purchasing area:

* a stock receipt, expressed in base units, that increments on-hand stock and
  records the per-base-unit cost of every product;
* an update of the order document with the corrected lines, the new grand
  total and the ``received`` status.

The module is layered bottom-up:

1. :func:`resolve_conversion` turns a product record into a conversion factor.
2. :class:`ReceivingForm` holds one editable, immutable line per order line.
3. :func:`reconcile` converts a confirmed form into a
   :class:`ReconciliationPlan` without touching any collaborator.
4. :func:`submit_reconciliation` pushes the plan through the stock ledger and
   order repository collaborators, reverting the stock receipt if the order
   update fails.
5. :class:`ReceivingSession` wraps a form with the open/busy/closed
   lifecycle of an interactive receiving dialog.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, Optional, Protocol, Sequence, Tuple

from . import data_manager, log
from .constants import DEFAULT_BASE_UNIT, PurchaseOrderStatus, Severity
from .exceptions import (
    BusinessRuleViolation,
    MissingReferenceError,
    OrderUpdateError,
    StockReceiptError,
)
from .notifications import Notification, Notifier


ZERO = Decimal("0")
ONE = Decimal("1")


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


def normalize_amount(raw: object) -> Decimal:
    """Coerce a user-entered quantity or price into a nonnegative Decimal.

    Empty input (``None`` or a blank string) means zero rather than "unset",
    and negative values are clamped to zero at the point of entry.

    Args:
        raw (object): Value typed by the operator. Strings, ints, floats and
            Decimals are accepted.

    Returns:
        Decimal: The normalized amount, never negative.

    Raises:
        ValueError: If ``raw`` is not numeric (including booleans, ``NaN`` and
            infinities).
    """

    if raw is None:
        return ZERO
    if isinstance(raw, bool):
        raise ValueError(f"Not a numeric amount: {raw!r}")
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return ZERO
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"Not a numeric amount: {raw!r}") from exc
    else:
        raise ValueError(f"Not a numeric amount: {raw!r}")

    if not value.is_finite():
        raise ValueError(f"Not a finite amount: {raw!r}")
    return value if value > ZERO else ZERO


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnitConversion:
    """Effective conversion between a product's purchase and base units.

    ``purchase_unit_label`` is ``None`` whenever no conversion applies, in
    which case the product is bought in its base unit.
    """

    factor: Decimal
    purchase_unit_label: Optional[str]
    base_unit_label: str

    @property
    def purchase_unit(self) -> str:
        return self.purchase_unit_label or self.base_unit_label

    @property
    def converts(self) -> bool:
        return self.factor != ONE


def resolve_conversion(
    product: Optional[data_manager.ProductRow],
    *,
    default_base_unit: str = DEFAULT_BASE_UNIT,
) -> UnitConversion:
    """Return the conversion factor and unit labels for ``product``.

    The factor is ``conversion_to_unit`` only when the product names a
    purchase unit *and* the conversion is positive. Anything else, including
    a product that no longer exists, yields a factor of one.

    Args:
        product (data_manager.ProductRow | None): Product referenced by an
            order line, or ``None`` when it could not be found.
        default_base_unit (str): Base unit label used for missing products.

    Returns:
        UnitConversion: Factor and labels to use for the line.
    """

    if product is None:
        return UnitConversion(factor=ONE, purchase_unit_label=None, base_unit_label=default_base_unit)

    conversion = product.conversion_to_unit
    if product.purchase_unit and conversion is not None and conversion > ZERO:
        return UnitConversion(
            factor=conversion,
            purchase_unit_label=product.purchase_unit,
            base_unit_label=product.base_unit,
        )
    return UnitConversion(factor=ONE, purchase_unit_label=None, base_unit_label=product.base_unit)


def to_base_quantity(quantity: Decimal, conversion: UnitConversion) -> Decimal:
    """Express a purchase-unit quantity in base units. No rounding is applied."""

    return quantity * conversion.factor


def to_base_unit_cost(unit_price: Decimal, conversion: UnitConversion) -> Decimal:
    """Express a purchase-unit price per base unit.

    Converted costs are rounded up to the next whole currency unit so stock is
    never valued below what was paid for it.
    """

    if conversion.factor > ONE:
        return (unit_price / conversion.factor).to_integral_value(rounding=ROUND_CEILING)
    return unit_price


# ---------------------------------------------------------------------------
# Receiving form state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceivingLine:
    """One editable row of the receiving form, in purchase-unit terms."""

    line_id: str
    product_id: str
    product_name: str
    ordered_qty: Decimal
    ordered_unit_price: Decimal
    received_qty: Decimal
    received_unit_price: Decimal
    conversion: UnitConversion
    source: data_manager.PurchaseOrderItemRow = field(repr=False, compare=False)

    @property
    def line_total(self) -> Decimal:
        return self.received_qty * self.received_unit_price

    @property
    def base_quantity(self) -> Decimal:
        return to_base_quantity(self.received_qty, self.conversion)


def seed_receiving_line(
    item: data_manager.PurchaseOrderItemRow,
    conversion: UnitConversion,
) -> ReceivingLine:
    """Build a receiving line from a planned order line.

    Planned prices are stored per base unit, so the seeded price is
    re-expressed per purchase unit with the resolved factor.
    """

    ordered_price = item.buy_price * conversion.factor
    return ReceivingLine(
        line_id=item.line_id,
        product_id=item.product_id,
        product_name=item.product_name,
        ordered_qty=item.qty,
        ordered_unit_price=ordered_price,
        received_qty=item.qty,
        received_unit_price=ordered_price,
        conversion=conversion,
        source=item,
    )


@dataclass(frozen=True)
class ReceivingForm:
    """Immutable snapshot of the receiving form for one purchase order.

    Every edit returns a new form in which only the addressed line differs;
    lines are addressed by their stable ``line_id``, never by position.
    """

    po_id: str
    lines: Tuple[ReceivingLine, ...]

    def line(self, line_id: str) -> ReceivingLine:
        for candidate in self.lines:
            if candidate.line_id == line_id:
                return candidate
        raise MissingReferenceError(f"Unknown order line: {line_id}")

    def with_received_qty(self, line_id: str, raw: object) -> "ReceivingForm":
        return self._replace_line(line_id, received_qty=normalize_amount(raw))

    def with_received_unit_price(self, line_id: str, raw: object) -> "ReceivingForm":
        return self._replace_line(line_id, received_unit_price=normalize_amount(raw))

    @property
    def preview_total(self) -> Decimal:
        """Grand total the order would carry if confirmed as-is."""
        return sum((line.line_total for line in self.lines), ZERO)

    def _replace_line(self, line_id: str, **changes: Decimal) -> "ReceivingForm":
        target = self.line(line_id)
        updated = replace(target, **changes)
        lines = tuple(updated if line.line_id == line_id else line for line in self.lines)
        return replace(self, lines=lines)


def build_receiving_form(
    order: data_manager.PurchaseOrderRow,
    items: Iterable[data_manager.PurchaseOrderItemRow],
    lookup_product: Callable[[str], Optional[data_manager.ProductRow]],
    *,
    default_base_unit: str = DEFAULT_BASE_UNIT,
    strict: bool = False,
) -> ReceivingForm:
    """Seed a receiving form from an order and its planned lines.

    Args:
        order (data_manager.PurchaseOrderRow): Order being received.
        items (Iterable[data_manager.PurchaseOrderItemRow]): Its lines in
            display order.
        lookup_product (Callable[[str], ProductRow | None]): Product lookup
            returning ``None`` for unknown identifiers.
        default_base_unit (str): Unit label used for missing products.
        strict (bool): When ``True`` a missing product blocks the receipt
            instead of degrading to a factor of one.

    Returns:
        ReceivingForm: Form with received values defaulted to the plan.

    Raises:
        MissingReferenceError: If ``strict`` is set and a product is missing.
    """

    lines = []
    for item in items:
        product = lookup_product(item.product_id)
        if product is None:
            if strict:
                log.error(
                    "Order '%s' line '%s' references missing product '%s'",
                    order.po_id,
                    item.line_id,
                    item.product_id,
                )
                raise MissingReferenceError(f"Unknown product id: {item.product_id}")
            log.warning(
                "Product '%s' on order '%s' not found; receiving without unit conversion",
                item.product_id,
                order.po_id,
            )
        conversion = resolve_conversion(product, default_base_unit=default_base_unit)
        lines.append(seed_receiving_line(item, conversion))
    return ReceivingForm(po_id=order.po_id, lines=tuple(lines))


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockAdjustment:
    """Stock increment for one product, expressed in base units."""

    product_id: str
    quantity_base_units: Decimal
    unit_cost_base_units: Decimal


@dataclass(frozen=True)
class OrderUpdate:
    """Replacement lines, total and status for a received order."""

    po_id: str
    items: Tuple[data_manager.PurchaseOrderItemRow, ...]
    total_amount: Decimal
    status: PurchaseOrderStatus = PurchaseOrderStatus.RECEIVED


@dataclass(frozen=True)
class ReconciliationPlan:
    """Everything a confirmed receipt will commit, computed up front."""

    adjustments: Tuple[StockAdjustment, ...]
    order_update: OrderUpdate

    @property
    def po_id(self) -> str:
        return self.order_update.po_id


def reconcile_line(line: ReceivingLine) -> Tuple[StockAdjustment, data_manager.PurchaseOrderItemRow]:
    """Convert one confirmed line into its stock adjustment and updated order line."""

    base_qty = to_base_quantity(line.received_qty, line.conversion)
    adjustment = StockAdjustment(
        product_id=line.product_id,
        quantity_base_units=base_qty,
        unit_cost_base_units=to_base_unit_cost(line.received_unit_price, line.conversion),
    )
    updated = replace(
        line.source,
        qty=line.received_qty,
        qty_base=base_qty,
        buy_price=line.received_unit_price,
        subtotal=line.line_total,
    )
    return adjustment, updated


def reconcile(form: ReceivingForm) -> ReconciliationPlan:
    """Turn a confirmed receiving form into stock adjustments and an order update.

    Line totals stay in purchase-unit pricing, matching what was physically
    paid, and the new grand total is their exact sum regardless of the total
    the order carried before.
    """

    adjustments = []
    items = []
    total = ZERO
    for line in form.lines:
        adjustment, updated = reconcile_line(line)
        adjustments.append(adjustment)
        items.append(updated)
        total += updated.subtotal

    log.debug("Reconciled order '%s': %d lines, total=%s", form.po_id, len(items), total)
    return ReconciliationPlan(
        adjustments=tuple(adjustments),
        order_update=OrderUpdate(po_id=form.po_id, items=tuple(items), total_amount=total),
    )


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class StockLedger(Protocol):
    """Collaborator that applies stock receipts all-or-nothing."""

    def apply_stock_receipt(self, adjustments: Sequence[StockAdjustment], *, reference: str) -> str:
        """Apply every adjustment and return an identifier for the receipt."""
        ...

    def revert_stock_receipt(self, receipt_id: str) -> None:
        """Undo a receipt previously returned by :meth:`apply_stock_receipt`."""
        ...


class OrderRepository(Protocol):
    """Collaborator that persists the received order document."""

    def update_order(self, po_id: str, update: OrderUpdate) -> None:
        ...


@dataclass(frozen=True)
class ReceivingOutcome:
    """Result of a successfully committed receipt."""

    po_id: str
    receipt_id: str
    plan: ReconciliationPlan

    @property
    def total_amount(self) -> Decimal:
        return self.plan.order_update.total_amount


def submit_reconciliation(
    plan: ReconciliationPlan,
    *,
    stock_ledger: StockLedger,
    orders: OrderRepository,
    notifier: Notifier,
) -> ReceivingOutcome:
    """Commit ``plan`` through the collaborators, stock first, order second.

    The stock receipt is submitted as one request. If it fails the order is
    never touched. If the order update fails afterwards the stock receipt is
    reverted; a failed reversal is reported separately because inventory and
    the order then disagree.

    Every failure is reported through ``notifier`` with the collaborator's
    message before being raised to the caller.

    Args:
        plan (ReconciliationPlan): Output of :func:`reconcile`.
        stock_ledger (StockLedger): Collaborator applying stock receipts.
        orders (OrderRepository): Collaborator updating the order document.
        notifier (Notifier): Destination for operator notifications.

    Returns:
        ReceivingOutcome: Receipt identifier and the committed plan.

    Raises:
        StockReceiptError: If the stock receipt was rejected.
        OrderUpdateError: If the order update failed after stock was applied.
    """

    po_id = plan.po_id
    try:
        receipt_id = stock_ledger.apply_stock_receipt(plan.adjustments, reference=po_id)
    except Exception as exc:
        log.error("Stock receipt for order '%s' failed: %s", po_id, exc)
        notifier.notify(Notification("Receiving failed", str(exc), Severity.ERROR))
        raise StockReceiptError(str(exc)) from exc

    try:
        orders.update_order(po_id, plan.order_update)
    except Exception as exc:
        log.error("Order update for '%s' failed after stock receipt '%s': %s", po_id, receipt_id, exc)
        notifier.notify(Notification("Receiving failed", str(exc), Severity.ERROR))
        reverted = _revert_receipt(stock_ledger, receipt_id, po_id=po_id, notifier=notifier)
        raise OrderUpdateError(str(exc), stock_reverted=reverted) from exc

    log.info(
        "Received order '%s' (receipt '%s', %d lines, total=%s)",
        po_id,
        receipt_id,
        len(plan.adjustments),
        plan.order_update.total_amount,
    )
    notifier.notify(
        Notification("Stock received", f"Order {po_id} received and stock updated.", Severity.SUCCESS)
    )
    return ReceivingOutcome(po_id=po_id, receipt_id=receipt_id, plan=plan)


def _revert_receipt(stock_ledger: StockLedger, receipt_id: str, *, po_id: str, notifier: Notifier) -> bool:
    try:
        stock_ledger.revert_stock_receipt(receipt_id)
    except Exception as exc:
        log.error("Reverting stock receipt '%s' for order '%s' failed: %s", receipt_id, po_id, exc)
        notifier.notify(
            Notification(
                "Inventory out of sync",
                f"Stock for order {po_id} was added but the order still shows as ordered: {exc}",
                Severity.ERROR,
            )
        )
        return False
    log.info("Reverted stock receipt '%s' for order '%s'", receipt_id, po_id)
    return True


# ---------------------------------------------------------------------------
# Interactive session
# ---------------------------------------------------------------------------


class ReceivingSession:
    """Lifecycle of one receiving dialog: open, busy while confirming, closed.

    Edits are local until :meth:`confirm`. :meth:`cancel` drops them with no
    side effect. Once confirmation starts the session refuses further edits
    and a second confirmation; it closes whether the receipt succeeds or
    fails, and a failed receipt is retried from a fresh session.
    """

    def __init__(
        self,
        form: ReceivingForm,
        *,
        submit: Callable[[ReceivingForm], ReceivingOutcome],
        on_close: Optional[Callable[["ReceivingSession"], None]] = None,
    ) -> None:
        self._form = form
        self._submit = submit
        self._on_close = on_close
        self._busy = False
        self._closed = False

    @property
    def po_id(self) -> str:
        return self._form.po_id

    @property
    def form(self) -> ReceivingForm:
        return self._form

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def closed(self) -> bool:
        return self._closed

    def set_received_qty(self, line_id: str, raw: object) -> ReceivingLine:
        self._ensure_editable()
        self._form = self._form.with_received_qty(line_id, raw)
        return self._form.line(line_id)

    def set_received_unit_price(self, line_id: str, raw: object) -> ReceivingLine:
        self._ensure_editable()
        self._form = self._form.with_received_unit_price(line_id, raw)
        return self._form.line(line_id)

    def line_totals(self) -> Dict[str, Decimal]:
        return {line.line_id: line.line_total for line in self._form.lines}

    def cancel(self) -> None:
        self._ensure_editable()
        log.info("Receiving for order '%s' cancelled; edits discarded", self.po_id)
        self._close()

    def confirm(self) -> ReceivingOutcome:
        self._ensure_editable()
        self._busy = True
        try:
            return self._submit(self._form)
        finally:
            self._busy = False
            self._close()

    def _ensure_editable(self) -> None:
        if self._closed:
            raise BusinessRuleViolation(f"Receiving session for order '{self.po_id}' is closed")
        if self._busy:
            raise BusinessRuleViolation(f"Receiving for order '{self.po_id}' is already being confirmed")

    def _close(self) -> None:
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)
