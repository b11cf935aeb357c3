"""Price previews used by the product and promotion forms.

These helpers are pure: they take the current input values and return the
numbers to display. Nothing here reads or writes the workbook.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence, Union

from . import data_manager, log
from .constants import DiscountType
from .exceptions import BusinessRuleViolation


ZERO = Decimal("0")
HUNDRED = Decimal("100")
BUNDLE_SUGGESTION_RATE = Decimal("0.9")
MIN_BUNDLE_ITEMS = 2


def final_price(
    price: Decimal,
    discount: Decimal,
    discount_type: Union[DiscountType, str] = DiscountType.PERCENT,
) -> Decimal:
    """Return the price after discount, never below zero.

    Args:
        price (Decimal): Regular selling price.
        discount (Decimal): Discount amount, read as a percentage or as a
            nominal amount depending on ``discount_type``.
        discount_type (DiscountType | str): ``percent`` or ``nominal``.

    Returns:
        Decimal: ``max(0, price - reduction)``.

    Raises:
        ValueError: If ``discount_type`` is not a known discount type.
    """

    kind = DiscountType(discount_type)
    if kind is DiscountType.PERCENT:
        reduction = price * discount / HUNDRED
    else:
        reduction = discount
    return max(ZERO, price - reduction)


def product_final_price(product: data_manager.ProductRow) -> Decimal:
    """Apply a product's own discount settings to its selling price."""

    return final_price(product.sell_price, product.discount, product.discount_type)


@dataclass(frozen=True)
class BundlePricing:
    """Figures shown next to a bundle promotion while it is being edited."""

    normal_total: Decimal
    bundle_price: Decimal
    savings: Decimal
    cost_total: Decimal
    profit: Decimal
    margin_percent: Decimal

    @property
    def is_loss(self) -> bool:
        return self.profit < ZERO


def suggest_bundle_price(normal_total: Decimal) -> Decimal:
    """Default bundle price: ten percent off the sum of regular prices."""

    return normal_total * BUNDLE_SUGGESTION_RATE


def bundle_pricing(products: Sequence[data_manager.ProductRow], bundle_price: Decimal) -> BundlePricing:
    """Compute savings, cost basis and margin for a bundle of products.

    ``cost_total`` sums each product's base-unit buy price once, matching a
    bundle made of one unit of every product. The margin is relative to the
    bundle price and is zero when the bundle is free.

    Raises:
        BusinessRuleViolation: If fewer than two products are bundled.
    """

    if len(products) < MIN_BUNDLE_ITEMS:
        log.error("Bundle rejected: %d product(s) selected", len(products))
        raise BusinessRuleViolation(f"A bundle needs at least {MIN_BUNDLE_ITEMS} products")

    normal_total = sum((product.sell_price for product in products), ZERO)
    cost_total = sum((product.buy_price for product in products), ZERO)
    profit = bundle_price - cost_total
    if bundle_price > ZERO:
        margin = (profit / bundle_price * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    else:
        margin = ZERO

    return BundlePricing(
        normal_total=normal_total,
        bundle_price=bundle_price,
        savings=normal_total - bundle_price,
        cost_total=cost_total,
        profit=profit,
        margin_percent=margin,
    )
