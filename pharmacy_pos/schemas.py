from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

WALK_IN_CUSTOMER = "walkin_customer"


class CartLineInput(BaseModel):
    product_id: int
    product_name: str
    price: Decimal
    quantity: int = Field(gt=0)
    category: Optional[str] = None


class CartInput(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_id": 7,
                "customer_name": "Amina Yusuf",
                "subtotal": 5000.0,
                "discount": 0.0,
                "tax": 0.0,
                "total": 5000.0,
                "paid": 5000.0,
                "change_amount": 0.0,
                "payment_type": "Cash",
                "user_id": 1,
                "user_name": "cashier01",
                "items": [
                    {
                        "product_id": 1,
                        "product_name": "Paracetamol 500mg",
                        "price": 1000.0,
                        "quantity": 5,
                        "category": "Analgesics",
                    }
                ],
            }
        }
    }
    customer_id: Optional[Union[int, str]] = None
    customer_name: Optional[str] = None
    discount: Decimal = Decimal("0")
    subtotal: Optional[Decimal] = None
    tax: Decimal = Decimal("0")
    total: Optional[Decimal] = None
    paid: Optional[Decimal] = None
    change_amount: Optional[Decimal] = None
    payment_type: Optional[str] = None
    payment_info: Optional[str] = None
    till: int = 1
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    ref_number: Optional[str] = None
    items: list[CartLineInput] = Field(default_factory=list)

    @field_validator("customer_id", mode="before")
    @classmethod
    def _normalize_walk_in(cls, value):
        # 0, "" and the walk-in token all mean an anonymous customer
        if value in (None, 0, "", WALK_IN_CUSTOMER):
            return None
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return value


class PaymentInput(BaseModel):
    paid: Decimal
    change_amount: Optional[Decimal] = None
    payment_type: str
    payment_info: Optional[str] = None


class RefundLineInput(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class RefundInput(BaseModel):
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    reason: Optional[str] = None
    items: list[RefundLineInput] = Field(default_factory=list)


class RestockInput(BaseModel):
    quantity: int = Field(gt=0)
    cost_price: Decimal
    supplier_id: int
    batch_number: Optional[str] = None


class ProductPatch(BaseModel):
    """Named optional fields; only the fields a caller sets are written."""

    name: Optional[str] = None
    category: Optional[str] = None
    min_stock: Optional[int] = None
    reorder_level: Optional[int] = None
    cost_price: Optional[Decimal] = None
    price: Optional[Decimal] = None
    supplier_id: Optional[int] = None
    last_restocked: Optional[datetime] = None


class CustomerPatch(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    store: Optional[str] = None


class OrderResult(BaseModel):
    id: int
    order_number: int
    ref_number: str
    status: str
    warnings: list[str] = Field(default_factory=list)


def apply_patch(row, patch: BaseModel) -> dict:
    changes = patch.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(row, field, value)
    return changes
