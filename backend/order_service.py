"""
Order Service

Creating purchase orders and reporting their delivery progress. All figures
in the summary are derived from the ledger, not read from caches.
"""

from typing import Dict, Any, List, Optional
from datetime import date
from dataclasses import dataclass, field, asdict
from sqlalchemy.orm import Session
import logging

import models
from derivations import (
    derive_delivered_amount, derive_item_delivered_quantities, derive_next_sequence,
    derive_order_status
)
from ledger_config import ReconciliationConfig
from ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class OrderNotFoundError(Exception):
    pass


@dataclass
class OrderDeliverySummary:
    order_id: int
    order_no: str
    status: str
    total_amount: float
    delivered_amount: float
    remaining_amount: float
    completion_rate: float
    delivery_count: int
    next_sequence: int
    can_add_delivery: bool
    items: List[Dict[str, Any]] = field(default_factory=list)
    deliveries: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def create_product(
    db: Session,
    product_code: str,
    product_name: str,
    purchase_price: float = 0.0,
    selling_price: float = 0.0,
) -> models.Product:
    product = models.Product(
        product_code=product_code,
        product_name=product_name,
        purchase_price=purchase_price,
        selling_price=selling_price,
        current_stock=0.0,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def create_purchase_order(
    db: Session,
    order_no: str,
    items: List[Dict[str, Any]],
    partner_id: Optional[int] = None,
    delivery_deadline: Optional[date] = None,
    memo: Optional[str] = None,
) -> models.PurchaseOrder:
    """
    Create an order from line items. Each item total is quantity x unit_price
    and the order total is their sum; remaining starts at the total.

    Raises:
        ValueError: duplicate order number, no items, unknown product or bad quantity/price
    """
    if not items:
        raise ValueError("A purchase order needs at least one item")
    if db.query(models.PurchaseOrder.id).filter(models.PurchaseOrder.order_no == order_no).first():
        raise ValueError(f"Order number {order_no} already exists")

    order = models.PurchaseOrder(
        order_no=order_no,
        partner_id=partner_id,
        delivery_deadline=delivery_deadline,
        memo=memo,
        status=models.OrderStatus.UNDELIVERED.value,
    )

    total = 0.0
    for line in items:
        product = db.get(models.Product, line["product_id"])
        if not product:
            raise ValueError(f"Product {line['product_id']} not found")
        quantity = float(line["quantity"])
        unit_price = float(line["unit_price"])
        if quantity <= 0:
            raise ValueError(f"Quantity for product {product.product_code} must be positive")
        if unit_price < 0:
            raise ValueError(f"Unit price for product {product.product_code} cannot be negative")

        item_total = quantity * unit_price
        total += item_total
        order.items.append(models.PurchaseOrderItem(
            product_id=product.id,
            quantity=quantity,
            unit_price=unit_price,
            total_amount=item_total,
        ))

    order.total_amount = total
    order.remaining_amount = total
    db.add(order)
    db.commit()
    db.refresh(order)

    logger.info(f"Created order {order.order_no} with {len(order.items)} item(s), total {total:.2f}")
    return order


def get_delivery_summary(
    db: Session,
    order_id: int,
    config: Optional[ReconciliationConfig] = None
) -> OrderDeliverySummary:
    config = config or ReconciliationConfig()
    order = LedgerStore(db).get_order(order_id)
    if not order:
        raise OrderNotFoundError(f"Purchase order {order_id} not found")

    total = float(order.total_amount or 0.0)
    delivered = derive_delivered_amount(db, order.id)
    remaining = total - delivered
    status = derive_order_status(order, remaining, config.amount_tolerance)

    delivered_qty = derive_item_delivered_quantities(db, [item.id for item in order.items])
    items = []
    for item in order.items:
        done = delivered_qty.get(item.id, 0.0)
        items.append({
            "item_id": item.id,
            "product_id": item.product_id,
            "product_code": item.product.product_code if item.product else None,
            "product_name": item.product.product_name if item.product else None,
            "quantity": float(item.quantity),
            "unit_price": float(item.unit_price),
            "delivered_quantity": done,
            "remaining_quantity": float(item.quantity) - done,
        })

    deliveries = [
        {
            "delivery_id": d.id,
            "delivery_sequence": d.delivery_sequence,
            "amount": float(d.total_amount),
            "mode": d.delivery_mode,
            "pipeline_state": d.pipeline_state,
            "transaction_date": d.transaction_date.isoformat() if d.transaction_date else None,
            "scheduled_date": d.scheduled_date.isoformat() if d.scheduled_date else None,
            "memo": d.memo,
        }
        for d in LedgerStore(db).confirmed_deliveries(order.id)
    ]

    return OrderDeliverySummary(
        order_id=order.id,
        order_no=order.order_no,
        status=status,
        total_amount=total,
        delivered_amount=delivered,
        remaining_amount=remaining,
        completion_rate=round(delivered / total * 100, 2) if total else 0.0,
        delivery_count=len(deliveries),
        next_sequence=derive_next_sequence(db, order.id),
        can_add_delivery=status != models.OrderStatus.CANCELLED.value and remaining > config.amount_tolerance,
        items=items,
        deliveries=deliveries,
    )
