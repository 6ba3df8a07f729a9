"""
Inventory ledger: signed stock deltas against the products table.

Every delta is a single conditional UPDATE, so concurrent sales of the same
product serialize on the row instead of racing through a read-compute-write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from pharmacy_pos.errors import InsufficientStockError, MissingProductWarning, NotFoundError
from pharmacy_pos.models import (
    InventoryMovement,
    MovementStatus,
    MovementType,
    Product,
    RestockHistory,
    Supplier,
)
from pharmacy_pos.schemas import ProductPatch, apply_patch
from pharmacy_pos.timeutil import now

logger = logging.getLogger(__name__)


@dataclass
class LedgerOutcome:
    product_id: int
    delta: int
    applied: bool
    warning: Optional[MissingProductWarning] = None


class InventoryLedger:
    def __init__(self, db: Session):
        self.db = db

    def apply(
        self,
        product_id: int,
        delta: int,
        movement_type: MovementType,
        order_id: Optional[int] = None,
        order_line_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> LedgerOutcome:
        movement = InventoryMovement(
            product_id=product_id,
            order_id=order_id,
            order_line_id=order_line_id,
            movement_type=movement_type,
            status=MovementStatus.APPLIED,
            qty_delta=delta,
            reason=reason,
            occurred_at=now(),
        )
        self.db.add(movement)
        # The unique (order_line_id, movement_type) index rejects a second
        # application here, before the stock row is touched.
        self.db.flush()

        values = {"quantity": Product.quantity + delta, "updated_at": now()}
        if movement_type is MovementType.SALE:
            values["sales_count"] = Product.sales_count - delta
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.quantity + delta >= 0)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 1:
            return LedgerOutcome(product_id=product_id, delta=delta, applied=True)

        available = self.db.execute(
            select(Product.quantity).where(Product.id == product_id)
        ).scalar_one_or_none()
        if available is not None:
            raise InsufficientStockError(product_id, -delta, available)

        movement.status = MovementStatus.SKIPPED
        self.db.flush()
        warning = MissingProductWarning(
            code="product_not_found",
            message=f"product {product_id} not found, {movement_type.value.lower()} delta {delta} skipped",
            order_id=order_id,
            product_id=product_id,
        )
        logger.warning("Inventory movement skipped: %s", warning.message)
        return LedgerOutcome(product_id=product_id, delta=delta, applied=False, warning=warning)

    def quantity_of(self, product_id: int) -> int:
        quantity = self.db.execute(
            select(Product.quantity).where(Product.id == product_id)
        ).scalar_one_or_none()
        if quantity is None:
            raise NotFoundError("product not found", field="product_id")
        return quantity

    def restock(
        self,
        product_id: int,
        quantity: int,
        cost_price: Decimal,
        supplier_id: int,
        batch_number: Optional[str] = None,
    ) -> dict:
        product = self.db.get(Product, product_id)
        if not product:
            raise NotFoundError("product not found", field="product_id")
        supplier = self.db.get(Supplier, supplier_id)
        if not supplier:
            raise NotFoundError("supplier not found", field="supplier_id")

        self.apply(product_id, quantity, MovementType.RESTOCK, reason="restock")
        new_quantity = self.quantity_of(product_id)
        previous_quantity = new_quantity - quantity
        restocked_at = now()
        apply_patch(
            product,
            ProductPatch(cost_price=cost_price, supplier_id=supplier_id, last_restocked=restocked_at),
        )
        history = RestockHistory(
            product_id=product_id,
            product_name=product.name,
            supplier_id=supplier_id,
            supplier_name=supplier.name,
            cost_price=cost_price,
            quantity=quantity,
            restock_date=restocked_at,
            batch_number=batch_number or f"RESTOCK-{int(restocked_at.timestamp() * 1000)}",
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
        )
        self.db.add(history)
        self.db.flush()
        logger.info(
            "Restocked product %s from %s to %s (supplier %s)",
            product_id,
            previous_quantity,
            new_quantity,
            supplier_id,
        )
        return {
            "product": {
                "id": product_id,
                "name": product.name,
                "previous_quantity": previous_quantity,
                "new_quantity": new_quantity,
                "added_quantity": quantity,
            },
            "supplier": {"id": supplier_id, "name": supplier.name},
            "cost_price": float(cost_price),
            "batch_number": history.batch_number,
            "restock_history_id": history.id,
        }
