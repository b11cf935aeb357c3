"""Enumerations shared across the POS ERP modules.

Purchasing, receiving, pricing and the workbook data layer all refer to the
same order statuses, movement types and sheet names. Keeping them here gives
every layer one source of truth for the identifiers written to the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Unit label used when neither the product nor the config names one.
DEFAULT_BASE_UNIT = "Pcs"


class PurchaseOrderStatus(str, Enum):
    """Enumerate the lifecycle states of a purchase order."""

    DRAFT = "draft"
    ORDERED = "ordered"
    RECEIVED = "received"
    CANCELLED = "cancelled"


# Allowed lifecycle moves. RECEIVED is only reachable through receiving.
STATUS_TRANSITIONS: dict[PurchaseOrderStatus, frozenset[PurchaseOrderStatus]] = {
    PurchaseOrderStatus.DRAFT: frozenset(
        {PurchaseOrderStatus.ORDERED, PurchaseOrderStatus.CANCELLED}
    ),
    PurchaseOrderStatus.ORDERED: frozenset(
        {PurchaseOrderStatus.RECEIVED, PurchaseOrderStatus.CANCELLED}
    ),
    PurchaseOrderStatus.RECEIVED: frozenset(),
    PurchaseOrderStatus.CANCELLED: frozenset(),
}


class DiscountType(str, Enum):
    """Enumerate how a product or promotion discount is expressed."""

    PERCENT = "percent"
    NOMINAL = "nominal"


class MovementType(str, Enum):
    """Enumerate the stock movement kinds recorded in the ledger sheet."""

    IN = "IN"
    REVERSAL = "REVERSAL"


class Severity(str, Enum):
    """Enumerate notification severities surfaced to the operator."""

    SUCCESS = "success"
    INFO = "info"
    ERROR = "error"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SUPPLIERS = "Suppliers"
    PURCHASE_ORDERS = "PurchaseOrders"
    PURCHASE_ORDER_ITEMS = "PurchaseOrderItems"
    STOCK_MOVEMENTS = "StockMovements"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_BASE_UNIT",
    "PurchaseOrderStatus",
    "STATUS_TRANSITIONS",
    "DiscountType",
    "MovementType",
    "Severity",
    "SheetName",
]
