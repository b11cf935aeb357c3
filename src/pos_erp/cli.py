"""Command-line entry points for the POS ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, pricing
from .constants import DiscountType, PurchaseOrderStatus
from .notifications import LoggingNotifier


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class LineOverride:
    """Received quantity and/or unit price typed for one order line."""

    line_id: str
    qty: Optional[str] = None
    price: Optional[str] = None


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the POS ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as order authoring and receiving."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "create-po": register_create_po_command(subparsers),
        "add-po-item": register_add_po_item_command(subparsers),
        "update-po-item": register_update_po_item_command(subparsers),
        "remove-po-item": register_remove_po_item_command(subparsers),
        "place-po": register_place_po_command(subparsers),
        "cancel-po": register_cancel_po_command(subparsers),
        "receive-po": register_receive_po_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and previews."""
    specs = {
        "stock": register_stock_command(subparsers),
        "orders": register_orders_command(subparsers),
        "price-preview": register_price_preview_command(subparsers),
        "bundle-preview": register_bundle_preview_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--base-unit", default=None)
        parser.add_argument("--purchase-unit", default=None)
        parser.add_argument("--conversion", default=None, help="Base units per purchase unit.")
        parser.add_argument("--buy-price", default="0", help="Cost per base unit.")
        parser.add_argument("--sell-price", required=True)
        parser.add_argument("--discount", default="0")
        parser.add_argument(
            "--discount-type",
            choices=[member.value for member in DiscountType],
            default=DiscountType.PERCENT.value,
        )
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-supplier``."""
    name = "add-supplier"
    help_text = "Register a new supplier in the Suppliers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--inactive", action="store_true", help="Mark the supplier as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_supplier)


def register_create_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-po``."""
    name = "create-po"
    help_text = "Open a new draft purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_po)


def register_add_po_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-po-item``."""
    name = "add-po-item"
    help_text = "Add a product line to a draft purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--qty", default="1", help="Quantity in purchase units.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_po_item)


def register_update_po_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-po-item``."""
    name = "update-po-item"
    help_text = "Edit the quantity or price of a draft purchase order line."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.add_argument("--line-id", required=True)
        quantity = parser.add_mutually_exclusive_group()
        quantity.add_argument("--qty", default=None, help="Quantity in purchase units.")
        quantity.add_argument("--qty-base", default=None, help="Quantity in base units.")
        parser.add_argument("--buy-price", default=None, help="Price per base unit.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_po_item)


def register_remove_po_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-po-item``."""
    name = "remove-po-item"
    help_text = "Remove a line from a draft purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.add_argument("--line-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_po_item)


def register_place_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``place-po``."""
    name = "place-po"
    help_text = "Send a draft purchase order to its supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_place_po)


def register_cancel_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-po``."""
    name = "cancel-po"
    help_text = "Cancel a draft or ordered purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel_po)


def register_receive_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive-po``."""
    name = "receive-po"
    help_text = "Receive an ordered purchase order into stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            default=[],
            metavar="LINE_ID=QTY@PRICE",
            help="Received quantity and/or price per purchase unit for a line, e.g. L1=4@350000 or L1=@360000.",
        )
        parser.add_argument("--dry-run", action="store_true", help="Print the reconciled totals without committing.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive_po)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List purchase orders, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--status",
            choices=[member.value for member in PurchaseOrderStatus],
            default=None,
        )
        parser.add_argument("--sort", choices=core_logic.ORDER_SORT_KEYS, default="date_iso")
        parser.add_argument("--ascending", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_price_preview_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``price-preview``."""
    name = "price-preview"
    help_text = "Show the selling price after discount."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None, help="Preview a catalog product's own discount.")
        parser.add_argument("--price", default=None)
        parser.add_argument("--discount", default="0")
        parser.add_argument(
            "--discount-type",
            choices=[member.value for member in DiscountType],
            default=DiscountType.PERCENT.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_price_preview)


def register_bundle_preview_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bundle-preview``."""
    name = "bundle-preview"
    help_text = "Show savings and margin for a bundle of products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", dest="product_ids", action="append", required=True)
        parser.add_argument("--bundle-price", default=None, help="Defaults to 10%% off the regular total.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bundle_preview)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def _optional_decimal(raw: Optional[str]) -> Optional[Decimal]:
    return Decimal(raw) if raw is not None else None


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "product_name": args.product_name,
        "base_unit": args.base_unit,
        "purchase_unit": args.purchase_unit,
        "conversion_to_unit": _optional_decimal(args.conversion),
        "buy_price": Decimal(args.buy_price),
        "sell_price": Decimal(args.sell_price),
        "discount": Decimal(args.discount),
        "discount_type": args.discount_type,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_add_supplier(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-supplier request."""
    return {
        "supplier_id": args.supplier_id,
        "supplier_name": args.supplier_name,
        "phone": args.phone,
        "address": args.address,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_create_po(args: argparse.Namespace) -> core_logic.CreatePurchaseOrderCommand:
    return core_logic.CreatePurchaseOrderCommand(supplier_id=args.supplier_id, notes=args.notes)


def translate_add_po_item(args: argparse.Namespace) -> core_logic.AddOrderItemCommand:
    return core_logic.AddOrderItemCommand(
        po_id=args.po_id,
        product_id=args.product_id,
        qty=Decimal(args.qty),
    )


def translate_update_po_item(args: argparse.Namespace) -> core_logic.UpdateOrderItemCommand:
    """Translate CLI args into an order line edit; raw strings are normalized downstream."""
    return core_logic.UpdateOrderItemCommand(
        po_id=args.po_id,
        line_id=args.line_id,
        qty=args.qty,
        qty_base=args.qty_base,
        buy_price=args.buy_price,
    )


def parse_line_override(raw: str) -> LineOverride:
    """Parse ``LINE_ID=QTY@PRICE`` where either side of ``@`` may be omitted.

    Raises:
        ValueError: If the line id or both values are missing.
    """
    line_id, separator, values = raw.partition("=")
    line_id = line_id.strip()
    if not separator or not line_id:
        raise ValueError(f"Expected LINE_ID=QTY@PRICE, got {raw!r}")
    qty, _, price = values.partition("@")
    qty, price = qty.strip(), price.strip()
    if not qty and not price:
        raise ValueError(f"No received quantity or price given for line {line_id!r}")
    return LineOverride(line_id=line_id, qty=qty or None, price=price or None)


def translate_receive_po(args: argparse.Namespace) -> Tuple[str, List[LineOverride]]:
    return args.po_id, [parse_line_override(raw) for raw in args.lines]


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    payload = translate_add_product(args)
    core_logic.add_product(context, **payload)
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-supplier workflow in the BLL."""
    payload = translate_add_supplier(args)
    core_logic.add_supplier(context, **payload)
    return 0


def run_create_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Open a draft order and print its identifier."""
    order = core_logic.create_purchase_order(context, translate_create_po(args))
    print(order.po_id)
    return 0


def run_add_po_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.add_order_item(context, translate_add_po_item(args))
    print(f"{item.line_id}\t{item.product_id}\tqty={item.qty}\tqty_base={item.qty_base}\tprice={item.buy_price}")
    return 0


def run_update_po_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.update_order_item(context, translate_update_po_item(args))
    print(f"{item.line_id}\tqty={item.qty}\tqty_base={item.qty_base}\tsubtotal={item.subtotal}")
    return 0


def run_remove_po_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.remove_order_item(context, args.po_id, args.line_id)
    return 0


def run_place_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.place_purchase_order(context, args.po_id)
    return 0


def run_cancel_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.cancel_purchase_order(context, args.po_id)
    return 0


def run_receive_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Apply line overrides to a receiving session, then confirm or discard it."""
    po_id, overrides = translate_receive_po(args)
    session = core_logic.open_receiving_session(context, po_id, notifier=LoggingNotifier())
    try:
        for override in overrides:
            if override.qty is not None:
                session.set_received_qty(override.line_id, override.qty)
            if override.price is not None:
                session.set_received_unit_price(override.line_id, override.price)
    except Exception:
        session.cancel()
        raise

    for line in session.form.lines:
        print(
            f"{line.line_id}\t{line.product_name}\t{line.received_qty} {line.conversion.purchase_unit}"
            f" x {line.received_unit_price} = {line.line_total}"
        )
    print(f"Total\t{session.form.preview_total}")

    if args.dry_run:
        session.cancel()
        return 0
    outcome = session.confirm()
    print(f"Received {outcome.po_id} (receipt {outcome.receipt_id})")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    inventory = core_logic.calculate_inventory(context)
    for product_id, quantity in sorted(inventory.items()):
        print(f"{product_id}\t{quantity}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    status = PurchaseOrderStatus(args.status) if args.status else None
    orders = core_logic.list_purchase_orders(
        context,
        status=status,
        sort_key=args.sort,
        descending=not args.ascending,
    )
    for order in orders:
        print(f"{order.po_id}\t{order.date_iso}\t{order.supplier_name}\t{order.status}\t{order.total_amount}")
    return 0


def run_price_preview(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the discounted price of a catalog product or of ad-hoc values."""
    if args.product_id is not None:
        final = pricing.product_final_price(core_logic.get_product(context, args.product_id))
    elif args.price is not None:
        final = pricing.final_price(Decimal(args.price), Decimal(args.discount), args.discount_type)
    else:
        raise ValueError("Provide --product-id or --price")
    print(final)
    return 0


def run_bundle_preview(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    products = [core_logic.get_product(context, product_id) for product_id in args.product_ids]
    if args.bundle_price is not None:
        bundle_price = Decimal(args.bundle_price)
    else:
        bundle_price = pricing.suggest_bundle_price(sum((product.sell_price for product in products), Decimal("0")))
    summary = pricing.bundle_pricing(products, bundle_price)
    print(f"Normal total\t{summary.normal_total}")
    print(f"Bundle price\t{summary.bundle_price}")
    print(f"Savings\t{summary.savings}")
    print(f"Cost\t{summary.cost_total}")
    print(f"Profit\t{summary.profit}")
    print(f"Margin %\t{summary.margin_percent}")
    if summary.is_loss:
        log.warning("Bundle price %s is below cost %s", summary.bundle_price, summary.cost_total)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
