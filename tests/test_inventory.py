from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from pharmacy_pos.errors import InsufficientStockError, NotFoundError
from pharmacy_pos.inventory import InventoryLedger
from pharmacy_pos.models import MovementType, Order, OrderLine, OrderStatus, RestockHistory
from pharmacy_pos.schemas import RestockInput
from pharmacy_pos.timeutil import now


def _order_line(db, product_id, quantity=1) -> OrderLine:
    order = Order(
        order_number=1,
        ref_number="REF-1",
        customer_name="Walk-in Customer",
        status=OrderStatus.COMPLETED,
        subtotal=Decimal("1000"),
        total=Decimal("1000"),
        payment_type="Cash",
        user_id=1,
        user_name="cashier01",
        created_at=now(),
    )
    db.add(order)
    db.flush()
    line = OrderLine(
        order_id=order.id,
        product_id=product_id,
        product_name="Paracetamol 500mg",
        price=Decimal("1000"),
        quantity=quantity,
    )
    db.add(line)
    db.flush()
    return line


def test_apply_sale_and_refund_deltas(session_factory, make_product, store) -> None:
    product_id = make_product(quantity=10)

    with session_factory() as db:
        line = _order_line(db, product_id, quantity=3)
        ledger = InventoryLedger(db)
        sold = ledger.apply(product_id, -3, MovementType.SALE, line.order_id, line.id)
        returned = ledger.apply(product_id, 3, MovementType.REFUND, line.order_id, line.id)
        db.commit()

    assert sold.applied and returned.applied
    product = store.product(product_id)
    assert product.quantity == 10
    assert product.sales_count == 3


def test_same_line_cannot_be_applied_twice(session_factory, make_product) -> None:
    product_id = make_product(quantity=10)

    with session_factory() as db:
        line = _order_line(db, product_id)
        ledger = InventoryLedger(db)
        ledger.apply(product_id, -1, MovementType.SALE, line.order_id, line.id)
        with pytest.raises(IntegrityError):
            ledger.apply(product_id, -1, MovementType.SALE, line.order_id, line.id)
        db.rollback()


def test_stock_never_goes_negative(session_factory, make_product, store) -> None:
    product_id = make_product(quantity=2)

    with session_factory() as db:
        with pytest.raises(InsufficientStockError) as exc_info:
            InventoryLedger(db).apply(product_id, -3, MovementType.SALE)
        db.rollback()

    assert exc_info.value.requested == 3
    assert store.quantity(product_id) == 2


def test_missing_product_returns_warning(session_factory) -> None:
    with session_factory() as db:
        outcome = InventoryLedger(db).apply(31337, -1, MovementType.SALE, reason="sale")

    assert not outcome.applied
    assert outcome.warning.product_id == 31337
    assert outcome.warning.code == "product_not_found"


def test_restock_records_history(service, make_product, make_supplier, store, session_factory) -> None:
    product_id = make_product(quantity=4)
    supplier_id = make_supplier()

    data = service.restock_product(
        product_id, RestockInput(quantity=20, cost_price=Decimal("450"), supplier_id=supplier_id)
    )

    assert data["product"]["previous_quantity"] == 4
    assert data["product"]["new_quantity"] == 24
    assert data["batch_number"].startswith("RESTOCK-")
    product = store.product(product_id)
    assert product.quantity == 24
    assert product.cost_price == Decimal("450")
    assert product.supplier_id == supplier_id
    assert product.last_restocked is not None
    with session_factory() as db:
        history = db.execute(select(RestockHistory)).scalar_one()
        assert history.supplier_name == "Emzor Pharmaceuticals"
        assert history.new_quantity == 24


def test_restock_unknown_supplier(service, make_product, store) -> None:
    product_id = make_product(quantity=4)

    with pytest.raises(NotFoundError):
        service.restock_product(
            product_id, RestockInput(quantity=5, cost_price=Decimal("450"), supplier_id=99)
        )
    assert store.quantity(product_id) == 4
