"""
Ledger Derivations

The single source of truth for every cached figure in the ledger:

- PurchaseOrder.remaining_amount  = total_amount - sum(confirmed delivery amounts)
- item remaining quantity         = item.quantity - sum(in movements attributed to the item)
- Product.current_stock           = sum(in movements) - sum(out movements)
- next delivery sequence          = count(confirmed deliveries for the order) + 1

The delivery pipeline, the integrity engine and the correction engine all
re-derive through these functions; stored values are only display caches.
"""

from typing import Dict, Iterable, Optional
from sqlalchemy import func, case
from sqlalchemy.orm import Session

import models


def signed_quantity():
    """SQL expression: +quantity for 'in' movements, -quantity for 'out'."""
    return case(
        (models.InventoryMovement.movement_type == models.MovementType.IN.value, models.InventoryMovement.quantity),
        (models.InventoryMovement.movement_type == models.MovementType.OUT.value, -models.InventoryMovement.quantity),
        else_=0.0,
    )


def derive_delivered_amount(db: Session, order_id: int) -> float:
    total = db.query(func.coalesce(func.sum(models.Delivery.total_amount), 0.0)).filter(
        models.Delivery.parent_order_id == order_id,
        models.Delivery.status == models.DeliveryStatus.CONFIRMED.value,
    ).scalar()
    return float(total or 0.0)


def derive_remaining_amount(db: Session, order: models.PurchaseOrder) -> float:
    """Order total minus every confirmed delivery; never read from the cache."""
    return float(order.total_amount or 0.0) - derive_delivered_amount(db, order.id)


def derive_delivered_amounts_by_order(db: Session) -> Dict[int, float]:
    rows = db.query(
        models.Delivery.parent_order_id,
        func.sum(models.Delivery.total_amount),
    ).filter(
        models.Delivery.status == models.DeliveryStatus.CONFIRMED.value
    ).group_by(models.Delivery.parent_order_id).all()
    return {order_id: float(total or 0.0) for order_id, total in rows}


def derive_item_delivered_quantities(db: Session, item_ids: Iterable[int]) -> Dict[int, float]:
    item_ids = list(item_ids)
    if not item_ids:
        return {}
    rows = db.query(
        models.InventoryMovement.purchase_order_item_id,
        func.sum(models.InventoryMovement.quantity),
    ).filter(
        models.InventoryMovement.purchase_order_item_id.in_(item_ids),
        models.InventoryMovement.movement_type == models.MovementType.IN.value,
    ).group_by(models.InventoryMovement.purchase_order_item_id).all()
    delivered = {item_id: 0.0 for item_id in item_ids}
    for item_id, qty in rows:
        delivered[item_id] = float(qty or 0.0)
    return delivered


def derive_remaining_quantities(db: Session, order: models.PurchaseOrder) -> Dict[int, float]:
    """{item_id: ordered quantity - delivered quantity} for every item of the order."""
    items = list(order.items)
    delivered = derive_item_delivered_quantities(db, [item.id for item in items])
    return {
        item.id: float(item.quantity or 0.0) - delivered.get(item.id, 0.0)
        for item in items
    }


def derive_product_stock(db: Session, product_id: int) -> float:
    total = db.query(func.coalesce(func.sum(signed_quantity()), 0.0)).filter(
        models.InventoryMovement.product_id == product_id
    ).scalar()
    return float(total or 0.0)


def derive_all_product_stock(db: Session) -> Dict[int, float]:
    """{product_id: derived stock} for every product, including ones with no movements."""
    rows = db.query(
        models.InventoryMovement.product_id,
        func.sum(signed_quantity()),
    ).group_by(models.InventoryMovement.product_id).all()
    derived = {product_id: 0.0 for (product_id,) in db.query(models.Product.id).all()}
    for product_id, total in rows:
        if product_id in derived:
            derived[product_id] = float(total or 0.0)
    return derived


def derive_next_sequence(db: Session, order_id: int) -> int:
    count = db.query(func.count(models.Delivery.id)).filter(
        models.Delivery.parent_order_id == order_id,
        models.Delivery.status == models.DeliveryStatus.CONFIRMED.value,
    ).scalar()
    return int(count or 0) + 1


def derive_order_status(
    order: models.PurchaseOrder,
    remaining_amount: float,
    tolerance: float = 0.01,
) -> str:
    if order.status == models.OrderStatus.CANCELLED.value:
        return models.OrderStatus.CANCELLED.value
    if remaining_amount <= tolerance:
        return models.OrderStatus.COMPLETED.value
    if remaining_amount < float(order.total_amount or 0.0) - tolerance:
        return models.OrderStatus.PARTIAL.value
    return models.OrderStatus.UNDELIVERED.value


def refresh_order_cache(
    db: Session,
    order: models.PurchaseOrder,
    tolerance: float = 0.01,
    remaining_amount: Optional[float] = None,
) -> bool:
    """
    Rewrite remaining_amount and status from the ledger. Does not commit.

    Returns True if either cached field changed.
    """
    if remaining_amount is None:
        remaining_amount = derive_remaining_amount(db, order)
    status = derive_order_status(order, remaining_amount, tolerance)

    changed = (
        abs(float(order.remaining_amount or 0.0) - remaining_amount) > tolerance
        or order.status != status
    )
    if changed:
        order.remaining_amount = remaining_amount
        order.status = status
    return changed
