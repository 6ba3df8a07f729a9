from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pharmacy_pos.db import Base
from pharmacy_pos.main import app, get_order_service
from pharmacy_pos.models import AccountingEntry, Customer, Order, Product, Supplier
from pharmacy_pos.orders import OrderNumberGenerator
from pharmacy_pos.service import OrderService
from pharmacy_pos.timeutil import now


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield TestingSessionLocal
    engine.dispose()


@pytest.fixture
def service(session_factory) -> OrderService:
    return OrderService(session_factory, numbers=OrderNumberGenerator())


@pytest.fixture
def client(service):
    app.dependency_overrides[get_order_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(session_factory):
    def _make(name="Paracetamol 500mg", quantity=10, price="1000"):
        with session_factory() as db:
            product = Product(
                name=name,
                category="Analgesics",
                quantity=quantity,
                price=Decimal(price),
                cost_price=Decimal(price) / 2,
                sales_count=0,
                updated_at=now(),
            )
            db.add(product)
            db.commit()
            return product.id

    return _make


@pytest.fixture
def make_customer(session_factory):
    def _make(name="Amina Yusuf", **fields):
        with session_factory() as db:
            customer = Customer(name=name, created_at=now(), **fields)
            db.add(customer)
            db.commit()
            return customer.id

    return _make


@pytest.fixture
def make_supplier(session_factory):
    def _make(name="Emzor Pharmaceuticals"):
        with session_factory() as db:
            supplier = Supplier(name=name, created_at=now())
            db.add(supplier)
            db.commit()
            return supplier.id

    return _make


@pytest.fixture
def store(session_factory):
    """Small read helpers against a fresh session."""

    class _Store:
        def quantity(self, product_id):
            with session_factory() as db:
                return db.get(Product, product_id).quantity

        def product(self, product_id):
            with session_factory() as db:
                return db.get(Product, product_id)

        def customer(self, customer_id):
            with session_factory() as db:
                return db.get(Customer, customer_id)

        def order(self, order_id):
            with session_factory() as db:
                return db.get(Order, order_id)

        def entries(self):
            with session_factory() as db:
                return list(db.execute(select(AccountingEntry).order_by(AccountingEntry.id)).scalars())

        def order_count(self):
            with session_factory() as db:
                return db.execute(select(func.count(Order.id))).scalar()

    return _Store()


@pytest.fixture
def cart_for():
    return build_cart


def build_cart(product_id, quantity=5, price=1000, customer_id=None, **overrides):
    total = price * quantity
    cart = {
        "customer_id": customer_id,
        "subtotal": total,
        "discount": 0,
        "tax": 0,
        "total": total,
        "paid": total,
        "payment_type": "Cash",
        "user_id": 1,
        "user_name": "cashier01",
        "items": [
            {
                "product_id": product_id,
                "product_name": "Paracetamol 500mg",
                "price": price,
                "quantity": quantity,
                "category": "Analgesics",
            }
        ],
    }
    cart.update(overrides)
    return cart
