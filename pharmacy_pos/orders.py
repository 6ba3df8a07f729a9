"""
Order aggregate: header plus immutable lines, and the status machine.

    (new) --create--> COMPLETED --refund--> REFUNDED
    (new) --hold----> HELD --process--> COMPLETED
                      HELD --cancel---> CANCELLED

Transitions are applied with a conditional UPDATE on the expected status,
so two terminals racing on the same held order cannot both win.
"""

from __future__ import annotations

import logging
import threading
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from pharmacy_pos.errors import ConflictError, NotFoundError, ValidationError
from pharmacy_pos.models import Customer, Order, OrderLine, OrderStatus
from pharmacy_pos.schemas import CartInput, PaymentInput, RefundLineInput
from pharmacy_pos.timeutil import now

logger = logging.getLogger(__name__)

MONEY_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")
WALK_IN_NAME = "Walk-in Customer"

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.HELD: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


class OrderNumberGenerator:
    """Strictly increasing, time-derived order numbers.

    Numbers follow the wall clock in seconds but never repeat: when two
    orders land in the same second the later one takes ``last + 1``.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def seed(self, floor: int) -> None:
        with self._lock:
            self._last = max(self._last, floor)

    def next(self) -> int:
        with self._lock:
            candidate = max(int(self._clock()), self._last + 1)
            self._last = candidate
            return candidate

    @property
    def last(self) -> int:
        return self._last


def check_totals(subtotal: Decimal, discount: Decimal, tax: Decimal, total: Decimal) -> None:
    expected = subtotal - discount + tax
    if abs(expected - total) > MONEY_TOLERANCE:
        raise ValidationError(
            f"total {total} does not equal subtotal - discount + tax ({expected})",
            field="total",
        )


def validate_cart(cart: CartInput, require_payment: bool = True) -> None:
    missing = []
    if not cart.subtotal:
        missing.append("subtotal")
    if not cart.total:
        missing.append("total")
    if require_payment and not cart.paid:
        missing.append("paid")
    if not cart.user_id:
        missing.append("user_id")
    if not cart.user_name:
        missing.append("user_name")
    if not cart.items:
        missing.append("items")
    if missing:
        raise ValidationError(
            "missing required fields: " + ", ".join(missing), field=missing[0]
        )
    if isinstance(cart.customer_id, str):
        raise ValidationError("customer_id must be numeric", field="customer_id")
    check_totals(cart.subtotal, cart.discount, cart.tax, cart.total)


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: int, with_lines: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if with_lines:
            stmt = stmt.options(selectinload(Order.lines))
        order = self.db.execute(stmt).scalar_one_or_none()
        if not order:
            raise NotFoundError("order not found", field="order_id")
        return order

    def lines(self, order_id: int) -> list[OrderLine]:
        return list(
            self.db.execute(
                select(OrderLine).where(OrderLine.order_id == order_id).order_by(OrderLine.id)
            ).scalars()
        )

    def list_by_status(self, status: Optional[OrderStatus], limit: int, cursor: Optional[int]) -> list[Order]:
        stmt = select(Order)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        if cursor is not None:
            stmt = stmt.where(Order.id > cursor)
        return list(self.db.execute(stmt.order_by(Order.id).limit(limit + 1)).scalars())

    def max_order_number(self) -> int:
        return self.db.execute(select(func.max(Order.order_number))).scalar() or 0

    def resolve_customer(self, customer_id: Optional[int]) -> Optional[Customer]:
        if customer_id is None:
            return None
        customer = self.db.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("customer not found", field="customer_id")
        return customer

    def insert(
        self,
        cart: CartInput,
        status: OrderStatus,
        order_number: int,
        ref_number: str,
        customer: Optional[Customer],
    ) -> tuple[Order, list[OrderLine]]:
        created_at = now()
        paid = cart.paid or Decimal("0")
        if cart.change_amount is not None:
            change = cart.change_amount
        else:
            change = max(paid - cart.total, Decimal("0")) if status is OrderStatus.COMPLETED else Decimal("0")
        order = Order(
            order_number=order_number,
            ref_number=ref_number,
            customer_id=customer.id if customer else None,
            customer_name=cart.customer_name or (customer.name if customer else WALK_IN_NAME),
            status=status,
            subtotal=cart.subtotal,
            discount=cart.discount,
            tax=cart.tax,
            total=cart.total,
            paid=paid,
            change_amount=change,
            payment_type=cart.payment_type or ("Due" if status is OrderStatus.HELD else "Cash"),
            payment_info=cart.payment_info or "",
            till=cart.till,
            user_id=cart.user_id,
            user_name=cart.user_name,
            created_at=created_at,
            updated_at=created_at,
        )
        self.db.add(order)
        self.db.flush()
        lines = []
        for item in cart.items:
            line = OrderLine(
                order_id=order.id,
                product_id=item.product_id,
                product_name=item.product_name,
                price=item.price,
                quantity=item.quantity,
                category=item.category or "Uncategorized",
            )
            self.db.add(line)
            lines.append(line)
        self.db.flush()
        return order, lines

    def transition(
        self,
        order_id: int,
        expected: OrderStatus,
        target: OrderStatus,
        **values,
    ) -> Order:
        if not can_transition(expected, target):
            raise ConflictError(f"order cannot move from {expected.value} to {target.value}")
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, updated_at=now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.db.execute(
                select(Order.status).where(Order.id == order_id)
            ).scalar_one_or_none()
            if current is None:
                raise NotFoundError("order not found", field="order_id")
            raise ConflictError(
                f"order {order_id} is {current.value}, expected {expected.value}",
                field="status",
            )
        order = self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        ).scalar_one()
        check_totals(
            Decimal(order.subtotal), Decimal(order.discount), Decimal(order.tax), Decimal(order.total)
        )
        logger.info("Order %s %s -> %s", order_id, expected.value, target.value)
        return order

    def payment_values(self, order: Order, payment: PaymentInput) -> dict:
        if payment.paid < 0:
            raise ValidationError("paid must not be negative", field="paid")
        change = payment.change_amount
        if change is None:
            change = max(payment.paid - Decimal(order.total), Decimal("0"))
        return {
            "paid": payment.paid,
            "change_amount": change,
            "payment_type": payment.payment_type,
            "payment_info": payment.payment_info or "",
        }


def select_refund_lines(
    lines: Iterable[OrderLine], requested: list[RefundLineInput]
) -> list[tuple[OrderLine, int]]:
    """Pair each requested refund item with the order line it reverses.

    An empty request means the whole order. Requested quantities may not
    exceed what the order sold for that product.
    """
    lines = list(lines)
    if not requested:
        return [(line, line.quantity) for line in lines]

    remaining = {}
    for line in lines:
        remaining.setdefault(line.product_id, []).append([line, line.quantity])
    selected: dict[int, list] = {}
    for item in requested:
        candidates = remaining.get(item.product_id)
        if not candidates:
            raise ValidationError(
                f"product {item.product_id} is not part of this order", field="items"
            )
        quantity = item.quantity
        for candidate in candidates:
            if quantity == 0:
                break
            take = min(candidate[1], quantity)
            if take == 0:
                continue
            candidate[1] -= take
            quantity -= take
            entry = selected.setdefault(candidate[0].id, [candidate[0], 0])
            entry[1] += take
        if quantity:
            raise ValidationError(
                f"refund quantity for product {item.product_id} exceeds the quantity sold",
                field="items",
            )
    return [(line, quantity) for line, quantity in selected.values()]


def refund_amount(order: Order, pairs: list[tuple[OrderLine, int]], full: bool) -> Decimal:
    """Money returned for the given lines, at the price the customer actually paid.

    A partial refund takes the list value of the returned items and scales it
    by total / subtotal, so discount and tax are shared out pro rata. It never
    exceeds the order total.
    """
    total = Decimal(order.total)
    if full:
        return total
    gross = sum((Decimal(line.price) * quantity for line, quantity in pairs), Decimal("0"))
    subtotal = Decimal(order.subtotal)
    if subtotal > 0:
        gross = gross * total / subtotal
    return min(gross.quantize(CENT, rounding=ROUND_HALF_UP), total)
