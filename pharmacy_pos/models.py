import enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmacy_pos.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY = Numeric(14, 2)


class OrderStatus(str, enum.Enum):
    HELD = "HELD"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class CustomerSegment(str, enum.Enum):
    NEW = "new"
    REGULAR = "regular"
    LOYAL = "loyal"
    VIP = "vip"
    INACTIVE = "inactive"


class MovementType(str, enum.Enum):
    SALE = "SALE"
    REFUND = "REFUND"
    RESTOCK = "RESTOCK"


class MovementStatus(str, enum.Enum):
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"


class AnalyticsTaskKind(str, enum.Enum):
    CREDIT = "CREDIT"
    REVERSAL = "REVERSAL"


class AnalyticsTaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class Supplier(Base):
    __tablename__ = "suppliers"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_stock: Mapped[int | None] = mapped_column(Integer)
    reorder_level: Mapped[int | None] = mapped_column(Integer)
    cost_price: Mapped[Numeric | None] = mapped_column(MONEY)
    price: Mapped[Numeric | None] = mapped_column(MONEY)
    supplier_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("suppliers.id")
    )
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_restocked: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text, unique=True)
    email: Mapped[str | None] = mapped_column(Text, unique=True)
    address: Mapped[str | None] = mapped_column(Text)
    store: Mapped[str | None] = mapped_column(Text)
    total_spent: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_order_value: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    loyalty_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_order_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    segment: Mapped[CustomerSegment] = mapped_column(
        Enum(CustomerSegment, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=CustomerSegment.NEW,
    )
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_order_number_unique", "order_number", unique=True),
        Index("ix_orders_status", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ref_number: Mapped[str] = mapped_column(Text, nullable=False)
    customer_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("customers.id")
    )
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False), nullable=False
    )
    subtotal: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    discount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    tax: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    total: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    paid: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    change_amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    payment_type: Mapped[str] = mapped_column(Text, nullable=False)
    payment_info: Mapped[str | None] = mapped_column(Text)
    till: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_name: Mapped[str] = mapped_column(Text, nullable=False)
    refund_reason: Mapped[str | None] = mapped_column(Text)
    refunded_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))

    lines: Mapped[list["OrderLine"]] = relationship(
        back_populates="order", order_by="OrderLine.id"
    )


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id"), nullable=False, index=True
    )
    # No FK: lines keep pointing at products that were later removed.
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="Uncategorized")

    order: Mapped[Order] = relationship(back_populates="lines")


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"
    __table_args__ = (
        Index(
            "ix_inventory_movements_line_type_unique",
            "order_line_id",
            "movement_type",
            unique=True,
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("orders.id"))
    order_line_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("order_lines.id")
    )
    movement_type: Mapped[MovementType] = mapped_column(
        Enum(MovementType, native_enum=False), nullable=False
    )
    status: Mapped[MovementStatus] = mapped_column(
        Enum(MovementStatus, native_enum=False), nullable=False
    )
    qty_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class AccountingEntry(Base):
    __tablename__ = "accounting"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(Text)
    reference: Mapped[str | None] = mapped_column(Text)
    order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("orders.id"))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class CustomerAnalyticsTask(Base):
    __tablename__ = "customer_analytics_tasks"
    __table_args__ = (
        Index("ix_customer_analytics_tasks_order_kind_unique", "order_id", "kind", unique=True),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id"), nullable=False
    )
    customer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customers.id"), nullable=False
    )
    kind: Mapped[AnalyticsTaskKind] = mapped_column(
        Enum(AnalyticsTaskKind, native_enum=False), nullable=False
    )
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    order_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[AnalyticsTaskStatus] = mapped_column(
        Enum(AnalyticsTaskStatus, native_enum=False),
        nullable=False,
        default=AnalyticsTaskStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class RestockHistory(Base):
    __tablename__ = "restock_history"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False
    )
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    supplier_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("suppliers.id"), nullable=False
    )
    supplier_name: Mapped[str] = mapped_column(Text, nullable=False)
    cost_price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    restock_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    batch_number: Mapped[str | None] = mapped_column(Text)
    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    new_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
