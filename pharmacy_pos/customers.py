"""
Customer analytics: spend aggregates, loyalty points and segments.

Aggregates move through storage-level increments. Derived fields (average
order value, segment) are recomputed from the row after the increment,
inside the same transaction that holds the row lock.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from pharmacy_pos.config import settings
from pharmacy_pos.errors import ConflictError, NotFoundError
from pharmacy_pos.models import (
    AnalyticsTaskKind,
    AnalyticsTaskStatus,
    Customer,
    CustomerAnalyticsTask,
    CustomerSegment,
)
from pharmacy_pos.schemas import CustomerPatch, apply_patch
from pharmacy_pos.timeutil import as_utc, now

logger = logging.getLogger(__name__)

VIP_SPEND = Decimal("1000000")
VIP_POINTS = 1000
VIP_ORDERS = 50
LOYAL_ORDERS = 10
LOYAL_POINTS = 200
LOYAL_MAX_DAYS = 60
REGULAR_ORDERS = 3
REGULAR_MAX_DAYS = 90
INACTIVE_MIN_DAYS = 180


def classify_segment(
    total_spent: Decimal,
    total_orders: int,
    loyalty_points: int,
    days_since_last_order: float,
) -> CustomerSegment:
    """Return the loyalty segment for the given aggregates.

    Rules are evaluated top to bottom and the first match wins. A customer
    with no recorded order has ``days_since_last_order == math.inf``.
    """
    if total_spent >= VIP_SPEND or loyalty_points >= VIP_POINTS or total_orders >= VIP_ORDERS:
        return CustomerSegment.VIP
    if (
        total_orders >= LOYAL_ORDERS
        and loyalty_points >= LOYAL_POINTS
        and days_since_last_order <= LOYAL_MAX_DAYS
    ):
        return CustomerSegment.LOYAL
    if total_orders >= REGULAR_ORDERS and days_since_last_order <= REGULAR_MAX_DAYS:
        return CustomerSegment.REGULAR
    if total_orders > 0 and days_since_last_order > INACTIVE_MIN_DAYS:
        return CustomerSegment.INACTIVE
    return CustomerSegment.NEW


def days_since(value: Optional[datetime], reference: Optional[datetime] = None) -> float:
    if value is None:
        return math.inf
    reference = reference or now()
    return (reference - as_utc(value)).total_seconds() / 86400


def segment_for(customer: Customer, reference: Optional[datetime] = None) -> CustomerSegment:
    return classify_segment(
        Decimal(customer.total_spent or 0),
        customer.total_orders or 0,
        customer.loyalty_points or 0,
        days_since(customer.last_order_date, reference),
    )


def loyalty_points_for(amount: Decimal, unit: Optional[int] = None) -> int:
    unit = unit or settings.loyalty_points_unit
    return int(abs(Decimal(amount)) // unit)


def _floored(expression):
    return case((expression < 0, 0), else_=expression)


class CustomerAnalyticsUpdater:
    def __init__(self, db: Session, points_unit: Optional[int] = None):
        self.db = db
        self.points_unit = points_unit or settings.loyalty_points_unit

    def get(self, customer_id: int) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("customer not found", field="customer_id")
        return customer

    def on_order_completed(self, customer_id: int, order_total: Decimal) -> Customer:
        points = loyalty_points_for(order_total, self.points_unit)
        timestamp = now()
        stmt = (
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                total_spent=Customer.total_spent + order_total,
                total_orders=Customer.total_orders + 1,
                loyalty_points=Customer.loyalty_points + points,
                last_order_date=timestamp,
                updated_at=timestamp,
            )
            .execution_options(synchronize_session=False)
        )
        return self._refresh_derived(customer_id, self.db.execute(stmt).rowcount)

    def on_order_refunded(self, customer_id: int, amount: Decimal, order_delta: int) -> Customer:
        points = loyalty_points_for(amount, self.points_unit)
        stmt = (
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                total_spent=_floored(Customer.total_spent - amount),
                total_orders=_floored(Customer.total_orders - order_delta),
                loyalty_points=_floored(Customer.loyalty_points - points),
                updated_at=now(),
            )
            .execution_options(synchronize_session=False)
        )
        return self._refresh_derived(customer_id, self.db.execute(stmt).rowcount)

    def _refresh_derived(self, customer_id: int, rowcount: int) -> Customer:
        if rowcount != 1:
            raise NotFoundError("customer not found", field="customer_id")
        customer = self.db.execute(
            select(Customer)
            .where(Customer.id == customer_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        spent = Decimal(customer.total_spent or 0)
        orders = customer.total_orders or 0
        customer.average_order_value = spent / orders if orders else Decimal("0")
        customer.segment = segment_for(customer)
        self.db.flush()
        return customer

    def enqueue(
        self,
        order_id: int,
        customer_id: int,
        kind: AnalyticsTaskKind,
        amount: Decimal,
        order_delta: int = 1,
    ) -> CustomerAnalyticsTask:
        task = CustomerAnalyticsTask(
            order_id=order_id,
            customer_id=customer_id,
            kind=kind,
            amount=amount,
            order_delta=order_delta,
            status=AnalyticsTaskStatus.PENDING,
            attempts=0,
            created_at=now(),
        )
        self.db.add(task)
        self.db.flush()
        return task

    def apply_task(self, task_id: int) -> Optional[Customer]:
        """Apply one outbox task; a task already applied is a no-op.

        Claiming the task and mutating the customer share one transaction,
        so a failure leaves the task pending for the next attempt. A reversal
        waits until the credit for the same order has been applied; the
        floor at zero would otherwise absorb part of it.
        """
        row = self.db.execute(
            select(
                CustomerAnalyticsTask.kind,
                CustomerAnalyticsTask.order_id,
                CustomerAnalyticsTask.status,
            ).where(CustomerAnalyticsTask.id == task_id)
        ).one_or_none()
        if row is None:
            raise NotFoundError("analytics task not found", field="task_id")
        kind, order_id, status = row
        if kind is AnalyticsTaskKind.REVERSAL and status is not AnalyticsTaskStatus.DONE:
            credit_status = self.db.execute(
                select(CustomerAnalyticsTask.status).where(
                    CustomerAnalyticsTask.order_id == order_id,
                    CustomerAnalyticsTask.kind == AnalyticsTaskKind.CREDIT,
                )
            ).scalar_one_or_none()
            if credit_status not in (None, AnalyticsTaskStatus.DONE):
                raise ConflictError(
                    f"credit for order {order_id} is {credit_status.value}; reversal waits",
                    field="task_id",
                )
        claimed = self.db.execute(
            update(CustomerAnalyticsTask)
            .where(
                CustomerAnalyticsTask.id == task_id,
                CustomerAnalyticsTask.status != AnalyticsTaskStatus.DONE,
            )
            .values(
                status=AnalyticsTaskStatus.DONE,
                attempts=CustomerAnalyticsTask.attempts + 1,
                processed_at=now(),
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            logger.debug("Analytics task %s already applied", task_id)
            return None
        task = self.db.execute(
            select(CustomerAnalyticsTask)
            .where(CustomerAnalyticsTask.id == task_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        if task.kind is AnalyticsTaskKind.CREDIT:
            customer = self.on_order_completed(task.customer_id, Decimal(task.amount))
        else:
            customer = self.on_order_refunded(task.customer_id, Decimal(task.amount), task.order_delta)
        logger.info(
            "Customer %s analytics updated from order %s (%s): segment=%s",
            customer.id,
            task.order_id,
            task.kind.value,
            customer.segment.value,
        )
        return customer

    def record_failure(self, task_id: int, error: str, max_attempts: int) -> CustomerAnalyticsTask:
        task = self.db.get(CustomerAnalyticsTask, task_id)
        if not task:
            raise NotFoundError("analytics task not found", field="task_id")
        task.attempts = (task.attempts or 0) + 1
        task.last_error = error
        if task.attempts >= max_attempts:
            task.status = AnalyticsTaskStatus.FAILED
        self.db.flush()
        return task

    def pending_task_ids(self, limit: int = 100) -> list[int]:
        rows = self.db.execute(
            select(CustomerAnalyticsTask.id)
            .where(CustomerAnalyticsTask.status == AnalyticsTaskStatus.PENDING)
            .order_by(CustomerAnalyticsTask.id)
            .limit(limit)
        ).scalars()
        return list(rows)

    def recalculate_segment(self, customer_id: int) -> tuple[CustomerSegment, CustomerSegment]:
        customer = self.get(customer_id)
        previous = customer.segment
        customer.segment = segment_for(customer)
        if customer.segment != previous:
            customer.updated_at = now()
        self.db.flush()
        return previous, customer.segment

    def recalculate_all_segments(self) -> dict:
        updated = 0
        customers = self.db.execute(select(Customer).order_by(Customer.id)).scalars().all()
        reference = now()
        for customer in customers:
            segment = segment_for(customer, reference)
            if segment != customer.segment:
                logger.info(
                    "Customer %s segment %s -> %s", customer.id, customer.segment.value, segment.value
                )
                customer.segment = segment
                customer.updated_at = reference
                updated += 1
        self.db.flush()
        return {"updated": updated, "total": len(customers)}

    def update_profile(self, customer_id: int, patch: CustomerPatch) -> Customer:
        customer = self.get(customer_id)
        changes = patch.model_dump(exclude_unset=True)
        for field in ("phone", "email"):
            value = changes.get(field)
            if not value:
                continue
            clash = self.db.execute(
                select(Customer.id).where(
                    getattr(Customer, field) == value, Customer.id != customer_id
                )
            ).first()
            if clash:
                raise ConflictError(f"customer with this {field} already exists", field=field)
        apply_patch(customer, patch)
        customer.updated_at = now()
        self.db.flush()
        return customer
