from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from pharmacy_pos.config import settings
from pharmacy_pos.db import SessionLocal, init_db
from pharmacy_pos.errors import OrderEngineError, StorageError
from pharmacy_pos.models import OrderStatus
from pharmacy_pos.schemas import (
    CartInput,
    CustomerPatch,
    OrderResult,
    PaymentInput,
    RefundInput,
    RestockInput,
)
from pharmacy_pos.service import OrderService

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Pharmacy POS")

_order_service: Optional[OrderService] = None


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _order_envelope(result: OrderResult) -> dict:
    data = result.model_dump(exclude={"warnings"})
    data["order_id"] = data.pop("id")
    return {"data": data, "meta": _meta(warnings=result.warnings)}


def get_order_service() -> OrderService:
    global _order_service
    if _order_service is None:
        init_db()
        _order_service = OrderService(SessionLocal)
    return _order_service


@app.exception_handler(OrderEngineError)
async def order_engine_error_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "field": exc.field,
            "status_code": exc.status_code,
        },
    )


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.post("/api/v1/orders", tags=["Orders"], status_code=201)
def create_sale(payload: CartInput, service: OrderService = Depends(get_order_service)) -> dict:
    return _order_envelope(service.create_sale(payload))


@app.post("/api/v1/orders/hold", tags=["Orders"], status_code=201)
def hold_order(payload: CartInput, service: OrderService = Depends(get_order_service)) -> dict:
    return _order_envelope(service.hold_order(payload))


@app.put("/api/v1/orders/{order_id}/process-hold", tags=["Orders"])
def process_held_order(
    order_id: int,
    payload: PaymentInput,
    service: OrderService = Depends(get_order_service),
) -> dict:
    return _order_envelope(service.process_held_order(order_id, payload))


@app.put("/api/v1/orders/{order_id}/refund", tags=["Orders"])
def refund_order(
    order_id: int,
    payload: RefundInput,
    service: OrderService = Depends(get_order_service),
) -> dict:
    return _order_envelope(service.refund_order(order_id, payload))


@app.post("/api/v1/orders/{order_id}/cancel", tags=["Orders"])
def cancel_held_order(order_id: int, service: OrderService = Depends(get_order_service)) -> dict:
    return _order_envelope(service.cancel_held_order(order_id))


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(order_id: int, service: OrderService = Depends(get_order_service)) -> dict:
    return {"data": service.get_order(order_id), "meta": _meta()}


@app.get("/api/v1/orders/{order_id}/items", tags=["Orders"])
def list_order_items(order_id: int, service: OrderService = Depends(get_order_service)) -> dict:
    order = service.get_order(order_id)
    return {"data": order["items"], "meta": _meta()}


@app.get("/api/v1/orders", tags=["Orders"])
def list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    service: OrderService = Depends(get_order_service),
) -> dict:
    data, next_cursor = service.list_orders(status, limit, cursor)
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/products/{product_id}/restock", tags=["Inventory"])
def restock_product(
    product_id: int,
    payload: RestockInput,
    service: OrderService = Depends(get_order_service),
) -> dict:
    return {"data": service.restock_product(product_id, payload), "meta": _meta()}


@app.patch("/api/v1/customers/{customer_id}", tags=["Customers"])
def update_customer(
    customer_id: int,
    payload: CustomerPatch,
    service: OrderService = Depends(get_order_service),
) -> dict:
    return {"data": service.update_customer(customer_id, payload), "meta": _meta()}


@app.post("/api/v1/customers/{customer_id}/segment:recalculate", tags=["Customers"])
def recalculate_customer_segment(
    customer_id: int, service: OrderService = Depends(get_order_service)
) -> dict:
    return {"data": service.recalculate_segment(customer_id), "meta": _meta()}


@app.post("/api/v1/customers/segments:recalculate", tags=["Customers"])
def recalculate_all_segments(service: OrderService = Depends(get_order_service)) -> dict:
    return {"data": service.recalculate_all_segments(), "meta": _meta()}


@app.post("/api/v1/customer-analytics:retry", tags=["Customers"])
def retry_customer_analytics(
    limit: int = Query(default=100, ge=1, le=1000),
    service: OrderService = Depends(get_order_service),
) -> dict:
    summary = service.retry_customer_analytics(limit)
    return {"data": summary, "meta": _meta(warnings=summary["warnings"])}
