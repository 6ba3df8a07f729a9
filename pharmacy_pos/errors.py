"""
Error taxonomy for the order engine.

Raised errors either prevent a write entirely (validation, not found,
conflict) or abort a unit of work mid-flight (storage). Warnings are
plain records attached to an otherwise successful result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class OrderEngineError(Exception):
    status_code = 500
    code = "order_engine_error"

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class ValidationError(OrderEngineError):
    status_code = 400
    code = "validation_error"


class NotFoundError(OrderEngineError):
    status_code = 404
    code = "not_found"


class ConflictError(OrderEngineError):
    status_code = 409
    code = "conflict"


class InsufficientStockError(ConflictError):
    code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"product {product_id} has {available} in stock, {requested} requested",
            field="quantity",
        )


class StorageError(OrderEngineError):
    status_code = 500
    code = "storage_error"


@dataclass(frozen=True)
class SideEffectWarning:
    """A best-effort side effect failed after its order was committed."""

    code: str
    message: str
    order_id: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class MissingProductWarning(SideEffectWarning):
    product_id: Optional[int] = None
