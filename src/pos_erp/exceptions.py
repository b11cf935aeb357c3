"""Domain exceptions shared by the business logic and receiving layers."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, supplier, order or line is unknown."""


class InvalidStatusTransition(BusinessRuleViolation):
    """Raised when a purchase order cannot move to the requested status."""


class ReceivingError(BusinessRuleViolation):
    """Raised when a confirmed receipt could not be committed."""


class StockReceiptError(ReceivingError):
    """The stock adjustment request was rejected; the order was left untouched."""


class OrderUpdateError(ReceivingError):
    """Stock was applied but the order document could not be updated.

    ``stock_reverted`` tells whether the compensating stock reversal
    succeeded. When it is ``False`` inventory and the order disagree.
    """

    def __init__(self, message: str, *, stock_reverted: bool) -> None:
        super().__init__(message)
        self.stock_reverted = stock_reverted


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidStatusTransition",
    "ReceivingError",
    "StockReceiptError",
    "OrderUpdateError",
]
