"""Unit tests for unit conversion, receiving forms and reconciliation."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from conftest import RecordingNotifier, make_item, make_order, make_product
from pos_erp import constants, receiving
from pos_erp.exceptions import (
    BusinessRuleViolation,
    MissingReferenceError,
    OrderUpdateError,
    StockReceiptError,
)


def _sack_product(**overrides):
    values = dict(
        product_id="P1",
        base_unit="Kg",
        purchase_unit="Sack",
        conversion_to_unit=Decimal("50"),
        buy_price=Decimal("200"),
    )
    values.update(overrides)
    return make_product(**values)


def _plain_product(**overrides):
    values = dict(
        product_id="P2",
        product_name="Soap",
        base_unit="Pcs",
        purchase_unit=None,
        conversion_to_unit=None,
        buy_price=Decimal("5000"),
    )
    values.update(overrides)
    return make_product(**values)


def _form(*pairs):
    """Build a receiving form from (item, product) pairs."""

    products = {item.product_id: product for item, product in pairs}
    return receiving.build_receiving_form(
        make_order(),
        [item for item, _ in pairs],
        products.get,
    )


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, Decimal("0")),
        ("", Decimal("0")),
        ("   ", Decimal("0")),
        ("-5", Decimal("0")),
        (-3, Decimal("0")),
        ("12.5", Decimal("12.5")),
        (7, Decimal("7")),
        (Decimal("10001"), Decimal("10001")),
    ],
)
def test_normalize_amount_clamps_and_defaults(raw, expected):
    """Empty input counts as zero and negatives are clamped at entry."""

    assert receiving.normalize_amount(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "NaN", "inf", True, object()])
def test_normalize_amount_rejects_non_numeric(raw):
    """Garbage input is refused instead of silently becoming zero."""

    with pytest.raises(ValueError):
        receiving.normalize_amount(raw)


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------


def test_resolve_conversion_uses_factor_when_purchase_unit_and_positive_factor():
    """A named purchase unit with a positive factor yields that factor."""

    conversion = receiving.resolve_conversion(_sack_product())

    assert conversion.factor == Decimal("50")
    assert conversion.purchase_unit == "Sack"
    assert conversion.base_unit_label == "Kg"
    assert conversion.converts is True


@pytest.mark.parametrize(
    ("purchase_unit", "factor"),
    [
        (None, Decimal("50")),
        ("", Decimal("50")),
        ("Sack", None),
        ("Sack", Decimal("0")),
        ("Sack", Decimal("-2")),
    ],
)
def test_resolve_conversion_falls_back_to_one(purchase_unit, factor):
    """Without both a purchase unit and a positive factor nothing converts."""

    product = _sack_product(purchase_unit=purchase_unit, conversion_to_unit=factor)

    conversion = receiving.resolve_conversion(product)

    assert conversion.factor == Decimal("1")
    assert conversion.purchase_unit_label is None
    assert conversion.purchase_unit == "Kg"


def test_resolve_conversion_for_missing_product_defaults_to_base_unit():
    """A deleted product degrades to factor one labelled with the default unit."""

    conversion = receiving.resolve_conversion(None, default_base_unit="Unit")

    assert conversion.factor == Decimal("1")
    assert conversion.purchase_unit == "Unit"
    assert conversion.base_unit_label == "Unit"


def test_base_unit_cost_rounds_up_only_when_converting():
    """Converted costs are ceiled; unconverted prices pass through untouched."""

    sack = receiving.resolve_conversion(_sack_product())
    plain = receiving.resolve_conversion(_plain_product())

    assert receiving.to_base_unit_cost(Decimal("10001"), sack) == Decimal("201")
    assert receiving.to_base_unit_cost(Decimal("10000"), sack) == Decimal("200")
    assert receiving.to_base_unit_cost(Decimal("4999.5"), plain) == Decimal("4999.5")


def test_base_quantity_is_not_rounded():
    """Fractional purchase quantities keep their exact base equivalent."""

    sack = receiving.resolve_conversion(_sack_product(conversion_to_unit=Decimal("2.5")))

    assert receiving.to_base_quantity(Decimal("1.5"), sack) == Decimal("3.75")


# ---------------------------------------------------------------------------
# Receiving form state
# ---------------------------------------------------------------------------


def test_form_seeds_received_values_from_plan():
    """Received qty defaults to ordered qty and the price is re-expressed per purchase unit."""

    item = make_item("L1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))

    form = _form((item, _sack_product()))
    line = form.line("L1")

    assert line.ordered_qty == Decimal("2")
    assert line.received_qty == Decimal("2")
    assert line.ordered_unit_price == Decimal("10000")
    assert line.received_unit_price == Decimal("10000")
    assert line.line_total == Decimal("20000")
    assert form.po_id == "PO1"


def test_editing_one_line_leaves_other_lines_untouched():
    """Copy-on-write edits replace only the addressed line."""

    first = make_item("L1", product_id="P1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    second = make_item("L2", product_id="P2", qty=Decimal("10"), buy_price=Decimal("5000"))
    form = _form((first, _sack_product()), (second, _plain_product()))

    edited = form.with_received_qty("L1", "3").with_received_unit_price("L1", "9500")

    assert edited.line("L1").received_qty == Decimal("3")
    assert edited.line("L1").received_unit_price == Decimal("9500")
    assert edited.line("L1").line_total == Decimal("28500")
    assert edited.line("L2") == form.line("L2")
    assert form.line("L1").received_qty == Decimal("2")


def test_empty_received_qty_zeroes_only_that_line():
    """Clearing a quantity makes that line total zero while others keep theirs."""

    first = make_item("L1", product_id="P1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    second = make_item("L2", product_id="P2", qty=Decimal("10"), buy_price=Decimal("5000"))
    form = _form((first, _sack_product()), (second, _plain_product()))

    edited = form.with_received_qty("L1", "")

    assert edited.line("L1").received_qty == Decimal("0")
    assert edited.line("L1").base_quantity == Decimal("0")
    assert edited.line("L1").line_total == Decimal("0")
    assert edited.line("L2").line_total == Decimal("50000")
    assert edited.preview_total == Decimal("50000")


def test_negative_price_is_clamped_on_entry():
    """Negative prices become zero as soon as they are typed."""

    form = _form((make_item("L1", product_id="P2", qty=Decimal("1"), buy_price=Decimal("5000")), _plain_product()))

    edited = form.with_received_unit_price("L1", "-100")

    assert edited.line("L1").received_unit_price == Decimal("0")


def test_editing_unknown_line_raises():
    """Lines are addressed by id; an unknown id is an error, not a no-op."""

    form = _form((make_item("L1", product_id="P2"), _plain_product()))

    with pytest.raises(MissingReferenceError):
        form.with_received_qty("L9", "1")


def test_missing_product_degrades_to_factor_one(caplog):
    """A line whose product vanished is received without conversion and logged."""

    item = make_item("L1", product_id="GONE", qty=Decimal("4"), buy_price=Decimal("700"))

    form = receiving.build_receiving_form(make_order(), [item], lambda _: None, default_base_unit="Pcs")

    line = form.line("L1")
    assert line.conversion.factor == Decimal("1")
    assert line.received_unit_price == Decimal("700")
    assert "GONE" in caplog.text


def test_missing_product_blocks_receipt_in_strict_mode():
    """Strict lookups refuse to seed a form for a missing product."""

    item = make_item("L1", product_id="GONE")

    with pytest.raises(MissingReferenceError):
        receiving.build_receiving_form(make_order(), [item], lambda _: None, strict=True)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def test_scenario_unconverted_product():
    """10 units at 5,000 each become 10 base units at 5,000 and a 50,000 total."""

    form = _form((make_item("L1", product_id="P2", qty=Decimal("10"), buy_price=Decimal("5000")), _plain_product()))

    plan = receiving.reconcile(form)

    adjustment = plan.adjustments[0]
    assert adjustment == receiving.StockAdjustment("P2", Decimal("10"), Decimal("5000"))
    assert plan.order_update.items[0].subtotal == Decimal("50000")
    assert plan.order_update.total_amount == Decimal("50000")


def test_scenario_converted_product():
    """2 sacks of 50 Kg at 10,000 per sack add 100 Kg at 200 per Kg."""

    item = make_item("L1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    form = _form((item, _sack_product()))

    plan = receiving.reconcile(form)

    assert plan.adjustments == (receiving.StockAdjustment("P1", Decimal("100"), Decimal("200")),)
    updated = plan.order_update.items[0]
    assert updated.qty == Decimal("2")
    assert updated.qty_base == Decimal("100")
    assert updated.buy_price == Decimal("10000")
    assert updated.subtotal == Decimal("20000")
    assert updated.line_id == "L1"
    assert updated.product_name == "Rice"


def test_scenario_converted_cost_rounds_up():
    """A sack price of 10,001 costs 201 per Kg, never 200."""

    item = make_item("L1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    form = _form((item, _sack_product())).with_received_unit_price("L1", "10001")

    plan = receiving.reconcile(form)

    assert plan.adjustments[0].unit_cost_base_units == Decimal("201")
    assert plan.order_update.total_amount == Decimal("20002")


def test_scenario_total_ignores_previous_order_total():
    """The new total is the exact sum of line totals."""

    first = make_item("L1", product_id="P1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    second = make_item("L2", product_id="P2", qty=Decimal("7"), buy_price=Decimal("5000"))
    form = receiving.build_receiving_form(
        make_order(total_amount=Decimal("999999")),
        [first, second],
        {"P1": _sack_product(), "P2": _plain_product()}.get,
    )

    plan = receiving.reconcile(form)

    assert [item.subtotal for item in plan.order_update.items] == [Decimal("20000"), Decimal("35000")]
    assert plan.order_update.total_amount == Decimal("55000")
    assert plan.order_update.status is constants.PurchaseOrderStatus.RECEIVED
    assert plan.po_id == "PO1"


def test_reconcile_keeps_zero_lines_in_plan():
    """A line received as zero still appears with zero quantity and total."""

    item = make_item("L1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    form = _form((item, _sack_product())).with_received_qty("L1", None)

    plan = receiving.reconcile(form)

    assert plan.adjustments[0].quantity_base_units == Decimal("0")
    assert plan.order_update.items[0].qty_base == Decimal("0")
    assert plan.order_update.total_amount == Decimal("0")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def _plan():
    item = make_item("L1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    return receiving.reconcile(_form((item, _sack_product())))


def test_submit_applies_stock_then_updates_order():
    """On success both collaborators run in order and a success toast is shown."""

    calls = []
    ledger = Mock()
    ledger.apply_stock_receipt.side_effect = lambda adjustments, reference: calls.append("stock") or "R1"
    orders = Mock()
    orders.update_order.side_effect = lambda po_id, update: calls.append("order")
    notifier = RecordingNotifier()
    plan = _plan()

    outcome = receiving.submit_reconciliation(plan, stock_ledger=ledger, orders=orders, notifier=notifier)

    assert calls == ["stock", "order"]
    ledger.apply_stock_receipt.assert_called_once_with(plan.adjustments, reference="PO1")
    orders.update_order.assert_called_once_with("PO1", plan.order_update)
    assert outcome.receipt_id == "R1"
    assert outcome.total_amount == Decimal("20000")
    assert notifier.notifications[-1].severity is constants.Severity.SUCCESS


def test_scenario_stock_failure_skips_order_update():
    """A rejected stock receipt never touches the order and is reported."""

    ledger = Mock()
    ledger.apply_stock_receipt.side_effect = ConnectionError("network down")
    orders = Mock()
    notifier = RecordingNotifier()

    with pytest.raises(StockReceiptError, match="network down"):
        receiving.submit_reconciliation(_plan(), stock_ledger=ledger, orders=orders, notifier=notifier)

    orders.update_order.assert_not_called()
    ledger.revert_stock_receipt.assert_not_called()
    assert notifier.titles == ["Receiving failed"]
    assert notifier.notifications[0].description == "network down"
    assert notifier.notifications[0].severity is constants.Severity.ERROR


def test_order_failure_reverts_stock_receipt():
    """If the order update fails the stock receipt is compensated."""

    ledger = Mock()
    ledger.apply_stock_receipt.return_value = "R1"
    orders = Mock()
    orders.update_order.side_effect = RuntimeError("order locked")
    notifier = RecordingNotifier()

    with pytest.raises(OrderUpdateError) as excinfo:
        receiving.submit_reconciliation(_plan(), stock_ledger=ledger, orders=orders, notifier=notifier)

    assert excinfo.value.stock_reverted is True
    ledger.revert_stock_receipt.assert_called_once_with("R1")
    assert notifier.titles == ["Receiving failed"]


def test_failed_reversal_reports_inventory_out_of_sync():
    """A failed compensation is surfaced separately and flagged on the error."""

    ledger = Mock()
    ledger.apply_stock_receipt.return_value = "R1"
    ledger.revert_stock_receipt.side_effect = RuntimeError("ledger offline")
    orders = Mock()
    orders.update_order.side_effect = RuntimeError("order locked")
    notifier = RecordingNotifier()

    with pytest.raises(OrderUpdateError) as excinfo:
        receiving.submit_reconciliation(_plan(), stock_ledger=ledger, orders=orders, notifier=notifier)

    assert excinfo.value.stock_reverted is False
    assert notifier.titles == ["Receiving failed", "Inventory out of sync"]


# ---------------------------------------------------------------------------
# Interactive session
# ---------------------------------------------------------------------------


def _session(submit=None, on_close=None):
    item = make_item("L1", qty=Decimal("2"), qty_base=Decimal("100"), buy_price=Decimal("200"))
    form = _form((item, _sack_product()))
    return receiving.ReceivingSession(form, submit=submit or Mock(), on_close=on_close)


def test_session_edits_stay_local_until_confirm():
    """Edits update previews without calling the submitter."""

    submit = Mock()
    session = _session(submit)

    line = session.set_received_qty("L1", "3")

    assert line.line_total == Decimal("30000")
    assert session.line_totals() == {"L1": Decimal("30000")}
    submit.assert_not_called()


def test_session_cancel_discards_without_side_effects():
    """Cancelling closes the session and never submits."""

    submit = Mock()
    closed = []
    session = _session(submit, on_close=closed.append)

    session.cancel()

    assert session.closed is True
    assert closed == [session]
    submit.assert_not_called()
    with pytest.raises(BusinessRuleViolation):
        session.set_received_qty("L1", "1")


def test_session_confirm_submits_current_form_and_closes():
    """Confirmation sends the edited form and closes the session."""

    submit = Mock(return_value="outcome")
    session = _session(submit)
    session.set_received_unit_price("L1", "10001")

    result = session.confirm()

    assert result == "outcome"
    submitted = submit.call_args.args[0]
    assert submitted.line("L1").received_unit_price == Decimal("10001")
    assert session.closed is True
    assert session.busy is False


def test_session_refuses_edits_while_busy():
    """While confirmation runs the session rejects edits and a second confirm."""

    observed = {}

    def submit(form):
        observed["busy"] = session.busy
        with pytest.raises(BusinessRuleViolation):
            session.set_received_qty("L1", "1")
        with pytest.raises(BusinessRuleViolation):
            session.confirm()
        return "done"

    session = _session(submit)

    assert session.confirm() == "done"
    assert observed["busy"] is True


def test_session_closes_even_when_submission_fails():
    """A failed receipt closes the session; retrying needs a fresh one."""

    submit = Mock(side_effect=StockReceiptError("rejected"))
    session = _session(submit)

    with pytest.raises(StockReceiptError):
        session.confirm()

    assert session.closed is True
    with pytest.raises(BusinessRuleViolation):
        session.confirm()
