"""
Order service: owns the unit of work around every order-affecting call.

Inside one unit:
    create / process  -> order row, lines, stock deltas, sale entry, outbox task
    refund            -> transition, stock reversal, refund entry, outbox task
    hold / cancel     -> order row and lines / transition only

Customer analytics run after the unit commits, each in a unit of its own.
A failure there is reported as a warning and left pending for retry.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pharmacy_pos.accounting import AccountingWriter, EntryKind
from pharmacy_pos.config import settings
from pharmacy_pos.customers import CustomerAnalyticsUpdater
from pharmacy_pos.errors import (
    ConflictError,
    NotFoundError,
    OrderEngineError,
    SideEffectWarning,
    StorageError,
    ValidationError,
)
from pharmacy_pos.inventory import InventoryLedger
from pharmacy_pos.models import (
    AnalyticsTaskKind,
    Customer,
    MovementType,
    Order,
    OrderLine,
    OrderStatus,
)
from pharmacy_pos.orders import (
    OrderNumberGenerator,
    OrderRepository,
    refund_amount,
    select_refund_lines,
    validate_cart,
)
from pharmacy_pos.schemas import (
    CartInput,
    CustomerPatch,
    OrderResult,
    PaymentInput,
    RefundInput,
    RestockInput,
)
from pharmacy_pos.timeutil import now

logger = logging.getLogger(__name__)

HELD_NOT_FOUND = "held order not found or already processed"


@dataclass
class UnitOutcome:
    order: Optional[Order] = None
    task_ids: list[int] = field(default_factory=list)
    warnings: list[SideEffectWarning] = field(default_factory=list)


class OrderService:
    def __init__(
        self,
        session_factory: sessionmaker,
        numbers: Optional[OrderNumberGenerator] = None,
        analytics_max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.numbers = numbers or OrderNumberGenerator()
        self.analytics_max_attempts = analytics_max_attempts or settings.analytics_max_attempts
        self._seeded = False

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except OrderEngineError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Unit of work rolled back: %s", exc)
            raise StorageError(f"storage failure: {exc.__class__.__name__}") from exc
        finally:
            db.close()

    def _next_order_number(self, db: Session) -> int:
        if not self._seeded:
            self.numbers.seed(OrderRepository(db).max_order_number())
            self._seeded = True
        return self.numbers.next()

    def create_sale(self, cart: CartInput) -> OrderResult:
        validate_cart(cart, require_payment=True)
        with self.unit_of_work() as db:
            orders = OrderRepository(db)
            customer = orders.resolve_customer(cart.customer_id)
            order_number = self._next_order_number(db)
            ref_number = cart.ref_number or f"REF-{order_number}"
            order, lines = orders.insert(
                cart, OrderStatus.COMPLETED, order_number, ref_number, customer
            )
            outcome = self._complete(db, order, lines, f"Sale - Order #{order_number}")
            result = self._result(order, outcome.warnings)
        logger.info("Sale %s committed (order #%s, %s lines)", result.id, result.order_number, len(cart.items))
        result.warnings.extend(str(w) for w in self._run_analytics(outcome.task_ids, result.id))
        return result

    def hold_order(self, cart: CartInput) -> OrderResult:
        validate_cart(cart, require_payment=False)
        if cart.customer_id is None:
            raise ValidationError(
                "hold orders require a registered customer", field="customer_id"
            )
        with self.unit_of_work() as db:
            orders = OrderRepository(db)
            customer = orders.resolve_customer(cart.customer_id)
            order_number = self._next_order_number(db)
            ref_number = cart.ref_number or f"HOLD-{order_number}"
            order, lines = orders.insert(
                cart, OrderStatus.HELD, order_number, ref_number, customer
            )
            result = self._result(order, [])
        logger.info("Order %s held for customer %s", result.id, cart.customer_id)
        return result

    def process_held_order(self, order_id: int, payment: PaymentInput) -> OrderResult:
        with self.unit_of_work() as db:
            orders = OrderRepository(db)
            held = orders.get(order_id)
            if held.status is not OrderStatus.HELD:
                raise NotFoundError(HELD_NOT_FOUND, field="order_id")
            values = orders.payment_values(held, payment)
            try:
                order = orders.transition(order_id, OrderStatus.HELD, OrderStatus.COMPLETED, **values)
            except ConflictError as exc:
                # another terminal processed or cancelled it first
                raise NotFoundError(HELD_NOT_FOUND, field="order_id") from exc
            lines = orders.lines(order_id)
            outcome = self._complete(
                db, order, lines, f"Sale - Order #{order.order_number} (from hold)"
            )
            result = self._result(order, outcome.warnings)
        result.warnings.extend(str(w) for w in self._run_analytics(outcome.task_ids, order_id))
        return result

    def refund_order(self, order_id: int, refund: RefundInput) -> OrderResult:
        if not refund.user_id or not refund.user_name:
            raise ValidationError("user information required for refund", field="user_id")
        with self.unit_of_work() as db:
            orders = OrderRepository(db)
            original = orders.get(order_id)
            lines = orders.lines(order_id)
            pairs = select_refund_lines(lines, refund.items)
            full = not refund.items or (
                len(pairs) == len(lines)
                and all(quantity == line.quantity for line, quantity in pairs)
            )
            amount = refund_amount(original, pairs, full)
            order = orders.transition(
                order_id,
                OrderStatus.COMPLETED,
                OrderStatus.REFUNDED,
                refund_reason=refund.reason,
                refunded_at=now(),
            )
            outcome = UnitOutcome(order=order)
            ledger = InventoryLedger(db)
            for line, quantity in pairs:
                applied = ledger.apply(
                    line.product_id,
                    quantity,
                    MovementType.REFUND,
                    order_id=order_id,
                    order_line_id=line.id,
                    reason=refund.reason or "refund",
                )
                if applied.warning:
                    outcome.warnings.append(applied.warning)
            description = f"Refund - Order #{order.order_number}"
            if refund.reason:
                description += f" - {refund.reason}"
            AccountingWriter(db).record(
                EntryKind.REFUND,
                amount,
                order.payment_type,
                order.ref_number,
                description,
                order_id=order_id,
            )
            if order.customer_id is not None:
                task = CustomerAnalyticsUpdater(db).enqueue(
                    order_id,
                    order.customer_id,
                    AnalyticsTaskKind.REVERSAL,
                    amount,
                    order_delta=1 if full else 0,
                )
                outcome.task_ids.append(task.id)
            result = self._result(order, outcome.warnings)
        logger.info("Order %s refunded (%s, amount %s)", order_id, "full" if full else "partial", amount)
        result.warnings.extend(str(w) for w in self._run_analytics(outcome.task_ids, order_id))
        return result

    def cancel_held_order(self, order_id: int) -> OrderResult:
        with self.unit_of_work() as db:
            order = OrderRepository(db).transition(
                order_id, OrderStatus.HELD, OrderStatus.CANCELLED
            )
            result = self._result(order, [])
        return result

    def get_order(self, order_id: int) -> dict:
        with self.unit_of_work() as db:
            order = OrderRepository(db).get(order_id, with_lines=True)
            return serialize_order(order, include_lines=True)

    def list_orders(self, status: Optional[OrderStatus], limit: int, cursor: Optional[int]) -> tuple[list[dict], Optional[int]]:
        with self.unit_of_work() as db:
            rows = OrderRepository(db).list_by_status(status, limit, cursor)
            next_cursor = None
            if len(rows) > limit:
                next_cursor = rows[limit - 1].id
                rows = rows[:limit]
            return [serialize_order(row) for row in rows], next_cursor

    def retry_customer_analytics(self, limit: int = 100) -> dict:
        with self.unit_of_work() as db:
            task_ids = CustomerAnalyticsUpdater(db).pending_task_ids(limit)
        warnings = self._run_analytics(task_ids, None)
        return {
            "attempted": len(task_ids),
            "failed": len(warnings),
            "warnings": [str(w) for w in warnings],
        }

    def restock_product(self, product_id: int, restock: RestockInput) -> dict:
        with self.unit_of_work() as db:
            return InventoryLedger(db).restock(
                product_id,
                restock.quantity,
                restock.cost_price,
                restock.supplier_id,
                restock.batch_number,
            )

    def recalculate_segment(self, customer_id: int) -> dict:
        with self.unit_of_work() as db:
            previous, current = CustomerAnalyticsUpdater(db).recalculate_segment(customer_id)
        return {
            "customer_id": customer_id,
            "previous_segment": previous.value,
            "segment": current.value,
            "changed": previous != current,
        }

    def recalculate_all_segments(self) -> dict:
        with self.unit_of_work() as db:
            return CustomerAnalyticsUpdater(db).recalculate_all_segments()

    def update_customer(self, customer_id: int, patch: CustomerPatch) -> dict:
        with self.unit_of_work() as db:
            customer = CustomerAnalyticsUpdater(db).update_profile(customer_id, patch)
            return serialize_customer(customer)

    def _complete(self, db: Session, order: Order, lines: list[OrderLine], description: str) -> UnitOutcome:
        outcome = UnitOutcome(order=order)
        ledger = InventoryLedger(db)
        for line in lines:
            applied = ledger.apply(
                line.product_id,
                -line.quantity,
                MovementType.SALE,
                order_id=order.id,
                order_line_id=line.id,
                reason="sale",
            )
            if applied.warning:
                outcome.warnings.append(applied.warning)
        AccountingWriter(db).record(
            EntryKind.SALE,
            order.total,
            order.payment_type,
            order.ref_number,
            description,
            order_id=order.id,
        )
        if order.customer_id is not None:
            task = CustomerAnalyticsUpdater(db).enqueue(
                order.id, order.customer_id, AnalyticsTaskKind.CREDIT, order.total
            )
            outcome.task_ids.append(task.id)
        return outcome

    def _run_analytics(self, task_ids: list[int], order_id: Optional[int]) -> list[SideEffectWarning]:
        warnings = []
        for task_id in task_ids:
            try:
                with self.unit_of_work() as db:
                    CustomerAnalyticsUpdater(db).apply_task(task_id)
            except OrderEngineError as exc:
                logger.warning("Customer analytics deferred for task %s: %s", task_id, exc.message)
                error = exc.message
            except Exception as exc:
                # the order already committed; never let this reach the caller
                logger.exception("Customer analytics task %s crashed", task_id)
                error = f"{exc.__class__.__name__}: {exc}"
            else:
                continue
            warnings.append(
                SideEffectWarning(
                    code="customer_analytics_failed",
                    message=f"task {task_id}: {error}",
                    order_id=order_id,
                )
            )
            self._record_analytics_failure(task_id, error)
        return warnings

    def _record_analytics_failure(self, task_id: int, error: str) -> None:
        try:
            with self.unit_of_work() as db:
                CustomerAnalyticsUpdater(db).record_failure(
                    task_id, error, self.analytics_max_attempts
                )
        except StorageError:
            logger.exception("Could not record failure for analytics task %s", task_id)

    @staticmethod
    def _result(order: Order, warnings: list[SideEffectWarning]) -> OrderResult:
        return OrderResult(
            id=order.id,
            order_number=order.order_number,
            ref_number=order.ref_number,
            status=order.status.value,
            warnings=[str(w) for w in warnings],
        )


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_order(order: Order, include_lines: bool = False) -> dict:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "ref_number": order.ref_number,
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "status": order.status.value,
        "subtotal": _money(order.subtotal),
        "discount": _money(order.discount),
        "tax": _money(order.tax),
        "total": _money(order.total),
        "paid": _money(order.paid),
        "change_amount": _money(order.change_amount),
        "payment_type": order.payment_type,
        "payment_info": order.payment_info,
        "till": order.till,
        "user_id": order.user_id,
        "user_name": order.user_name,
        "refund_reason": order.refund_reason,
        "refunded_at": order.refunded_at.isoformat() if order.refunded_at else None,
        "created_at": order.created_at.isoformat(),
    }
    if include_lines:
        data["items"] = [serialize_line(line) for line in order.lines]
    return data


def serialize_line(line: OrderLine) -> dict:
    return {
        "order_line_id": line.id,
        "product_id": line.product_id,
        "product_name": line.product_name,
        "price": _money(line.price),
        "quantity": line.quantity,
        "category": line.category,
    }


def serialize_customer(customer: Customer) -> dict:
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "phone": customer.phone,
        "email": customer.email,
        "address": customer.address,
        "store": customer.store,
        "total_spent": _money(customer.total_spent),
        "total_orders": customer.total_orders,
        "average_order_value": _money(customer.average_order_value),
        "loyalty_points": customer.loyalty_points,
        "last_order_date": customer.last_order_date.isoformat() if customer.last_order_date else None,
        "segment": customer.segment.value,
    }
