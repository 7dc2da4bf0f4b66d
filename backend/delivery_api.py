"""
Delivery API

Endpoints:
- POST /products                           - Register a product
- POST /orders                             - Create a purchase order with items
- GET  /orders/{id}/delivery-summary       - Derived delivery progress of an order
- POST /orders/{id}/deliveries             - Submit a delivery
- POST /deliveries/{id}/allocate           - Retry allocation of a recorded delivery
- POST /deliveries/resume-pending          - Allocate every recorded-but-unallocated delivery
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field
from datetime import date, datetime
import logging

from database import get_db
from delivery_errors import (
    DeliveryError, DeliveryValidationError, DeliveryNotFoundError, DeliveryWriteError, PartialDeliveryError
)
from delivery_service import DeliveryService
from delivery_validator import DeliveryRequest
from order_service import (
    OrderNotFoundError, create_product, create_purchase_order, get_delivery_summary
)

logger = logging.getLogger(__name__)


router = APIRouter(tags=["deliveries"])


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST / RESPONSE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class ProductCreate(BaseModel):
    product_code: str
    product_name: str
    purchase_price: float = 0.0
    selling_price: float = 0.0


class ProductResponse(BaseModel):
    id: int
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    purchase_price: float = 0.0
    selling_price: float = 0.0
    current_stock: float = 0.0

    class Config:
        from_attributes = True


class OrderItemCreate(BaseModel):
    product_id: int
    quantity: float
    unit_price: float


class OrderCreate(BaseModel):
    order_no: str
    partner_id: Optional[int] = None
    delivery_deadline: Optional[date] = None
    memo: Optional[str] = None
    items: List[OrderItemCreate]


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    quantity: float
    unit_price: float
    total_amount: float

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    order_no: str
    partner_id: Optional[int] = None
    total_amount: float
    remaining_amount: float
    delivery_deadline: Optional[date] = None
    status: str
    created_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class DeliverySubmission(BaseModel):
    amount: Optional[float] = None
    mode: str = "amount_only"
    quantities: Dict[int, float] = Field(default_factory=dict)
    scheduled_date: Optional[date] = None
    reason_code: Optional[str] = None
    memo: Optional[str] = None
    idempotency_key: Optional[str] = None


class DeliveryResponse(BaseModel):
    delivery_id: str
    order_id: int
    delivery_sequence: int
    amount: float
    mode: str
    pipeline_state: str
    remaining_amount: float
    order_status: str
    memo: Optional[str] = None
    replayed: bool = False
    movements_created: int = 0
    allocations_created: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR MAPPING
# ═══════════════════════════════════════════════════════════════════════════════

def error_status(error: DeliveryError) -> int:
    if isinstance(error, DeliveryNotFoundError):
        return 404
    if isinstance(error, DeliveryWriteError):
        return 500
    if isinstance(error, DeliveryValidationError):
        return 404 if error.code == "ORDER_NOT_FOUND" else 422
    return 409


def partial_response(error: PartialDeliveryError) -> JSONResponse:
    """Money is recorded, stock is not: accepted, with allocation still owed."""
    body = error.to_dict()
    body["delivery_id"] = error.delivery_id
    body["allocation_pending"] = True
    return JSONResponse(status_code=202, content=body)


# ═══════════════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/products", response_model=ProductResponse, status_code=201)
def register_product(payload: ProductCreate, db: Session = Depends(get_db)):
    return create_product(
        db,
        product_code=payload.product_code,
        product_name=payload.product_name,
        purchase_price=payload.purchase_price,
        selling_price=payload.selling_price,
    )


@router.post("/orders", response_model=OrderResponse, status_code=201)
def create_order(payload: OrderCreate, db: Session = Depends(get_db)):
    try:
        return create_purchase_order(
            db,
            order_no=payload.order_no,
            items=[item.model_dump() for item in payload.items],
            partner_id=payload.partner_id,
            delivery_deadline=payload.delivery_deadline,
            memo=payload.memo,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/orders/{order_id}/delivery-summary")
def delivery_summary(order_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return get_delivery_summary(db, order_id).to_dict()
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/orders/{order_id}/deliveries", response_model=DeliveryResponse, status_code=201)
def submit_delivery(order_id: int, payload: DeliverySubmission, db: Session = Depends(get_db)):
    """
    Validate, record and allocate a delivery.

    422/404/409 mean nothing was written. 202 means the delivery is recorded
    but stock allocation failed and must be retried.
    """
    request = DeliveryRequest(
        order_id=order_id,
        amount=payload.amount,
        mode=payload.mode,
        quantities=payload.quantities,
        scheduled_date=payload.scheduled_date,
        reason_code=payload.reason_code,
        memo=payload.memo,
        idempotency_key=payload.idempotency_key,
    )
    try:
        outcome = DeliveryService(db).submit(request)
    except PartialDeliveryError as e:
        return partial_response(e)
    except DeliveryError as e:
        raise HTTPException(status_code=error_status(e), detail=e.to_dict())

    if outcome.replayed:
        return JSONResponse(status_code=200, content=outcome.to_dict())
    return outcome.to_dict()


@router.post("/deliveries/{delivery_id}/allocate", response_model=DeliveryResponse)
def allocate_delivery(delivery_id: str, db: Session = Depends(get_db)):
    try:
        return DeliveryService(db).retry_allocation(delivery_id).to_dict()
    except PartialDeliveryError as e:
        return partial_response(e)
    except DeliveryError as e:
        raise HTTPException(status_code=error_status(e), detail=e.to_dict())


@router.post("/deliveries/resume-pending")
def resume_pending(db: Session = Depends(get_db)) -> Dict[str, Any]:
    return DeliveryService(db).resume_pending_allocations()
