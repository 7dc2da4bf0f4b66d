"""
Ledger Store

Thin wrapper around the transactional store: parameterised row queries plus
the procedures the pipeline and the correction engine rely on (atomic stock
increment and re-derivation, an opaque diagnostic record), plus the
per-order writer locks.
"""

from typing import Dict, Any, Iterable, Iterator, List, Optional
from contextlib import contextmanager
from datetime import datetime
from sqlalchemy import func, select
from sqlalchemy.orm import Session
import threading
import logging

import models
from derivations import signed_quantity

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# PER-ORDER LOCKS
# ═══════════════════════════════════════════════════════════════════════════════

# Orders hash onto a fixed pool so the registry never grows
ORDER_LOCK_STRIPES = 64

_order_locks: List[threading.Lock] = [threading.Lock() for _ in range(ORDER_LOCK_STRIPES)]


def order_lock(order_id: int) -> threading.Lock:
    """The single lock every writer for this order must hold."""
    return _order_locks[hash(order_id) % ORDER_LOCK_STRIPES]


@contextmanager
def order_locks(order_ids: Iterable[int]) -> Iterator[None]:
    """
    Hold the locks of several orders at once. Stripes are taken once each,
    in index order.
    """
    stripes = sorted({hash(order_id) % ORDER_LOCK_STRIPES for order_id in order_ids})
    acquired = []
    try:
        for stripe in stripes:
            _order_locks[stripe].acquire()
            acquired.append(stripe)
        yield
    finally:
        for stripe in reversed(acquired):
            _order_locks[stripe].release()


class LedgerStore:
    """Query and procedure interface over one database session."""

    LEDGER_TABLES = (
        models.PurchaseOrder,
        models.PurchaseOrderItem,
        models.Delivery,
        models.InventoryMovement,
        models.AccountingAllocation,
        models.Product,
    )

    def __init__(self, db: Session):
        self.db = db

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════════

    def get_order(self, order_id: int, for_update: bool = False) -> Optional[models.PurchaseOrder]:
        """
        Load an order. With for_update the row is locked until the transaction
        ends (ignored by SQLite, which serialises writers itself).
        """
        query = self.db.query(models.PurchaseOrder).filter(models.PurchaseOrder.id == order_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_delivery(self, delivery_id: str) -> Optional[models.Delivery]:
        return self.db.query(models.Delivery).filter(models.Delivery.id == delivery_id).first()

    def get_delivery_by_idempotency_key(self, key: str) -> Optional[models.Delivery]:
        return self.db.query(models.Delivery).filter(models.Delivery.idempotency_key == key).first()

    def confirmed_deliveries(
        self,
        order_id: int,
        created_since: Optional[datetime] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[models.Delivery]:
        query = self.db.query(models.Delivery).filter(
            models.Delivery.parent_order_id == order_id,
            models.Delivery.status == models.DeliveryStatus.CONFIRMED.value,
        )
        if created_since is not None:
            query = query.filter(models.Delivery.created_at >= created_since)
        if newest_first:
            query = query.order_by(models.Delivery.created_at.desc())
        else:
            query = query.order_by(models.Delivery.delivery_sequence.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def movements_for_delivery(self, delivery_id: str) -> List[models.InventoryMovement]:
        return self.db.query(models.InventoryMovement).filter(
            models.InventoryMovement.delivery_id == delivery_id
        ).all()

    def has_materialized(self, delivery_id: str) -> bool:
        """True if any movement or allocation already references the delivery."""
        movement = self.db.query(models.InventoryMovement.id).filter(
            models.InventoryMovement.delivery_id == delivery_id
        ).first()
        if movement:
            return True
        allocation = self.db.query(models.AccountingAllocation.id).filter(
            models.AccountingAllocation.delivery_id == delivery_id
        ).first()
        return allocation is not None

    def pending_allocations(self) -> List[models.Delivery]:
        return self.db.query(models.Delivery).filter(
            models.Delivery.status == models.DeliveryStatus.CONFIRMED.value,
            models.Delivery.pipeline_state == models.PipelineState.RECORDED.value,
        ).order_by(models.Delivery.created_at.asc()).all()

    # ═══════════════════════════════════════════════════════════════════════════
    # PROCEDURES
    # ═══════════════════════════════════════════════════════════════════════════

    def increment_stock(self, product_id: int, delta: float) -> float:
        """
        Atomically add delta to a product's stock cache and return the new value.

        Runs as a single UPDATE ... SET current_stock = current_stock + :delta so
        concurrent writers never lose an increment. Does not commit.
        """
        updated = self.db.query(models.Product).filter(
            models.Product.id == product_id
        ).update(
            {models.Product.current_stock: models.Product.current_stock + delta},
            synchronize_session=False,
        )
        if updated == 0:
            raise ValueError(f"Product {product_id} not found")

        new_value = self.db.query(models.Product.current_stock).filter(
            models.Product.id == product_id
        ).scalar()
        self._expire_stock({product_id})
        return float(new_value or 0.0)

    def rederive_stock(self, product_ids: Iterable[int]) -> int:
        """
        Overwrite the stock cache of the given products with their movement sum.

        Locks the product rows first, then writes with one correlated
        UPDATE ... SET current_stock = (SELECT sum(signed quantity) ...), so an
        increment committed in between is never overwritten. Does not commit.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return 0

        self.db.query(models.Product.id).filter(
            models.Product.id.in_(ids)
        ).with_for_update().all()

        derived = select(
            func.coalesce(func.sum(signed_quantity()), 0.0)
        ).where(
            models.InventoryMovement.product_id == models.Product.id
        ).scalar_subquery()

        updated = self.db.query(models.Product).filter(
            models.Product.id.in_(ids)
        ).update(
            {models.Product.current_stock: derived},
            synchronize_session=False,
        )
        self._expire_stock(set(ids))
        return updated

    def _expire_stock(self, product_ids) -> None:
        # Keep any loaded instance in step with the row
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, models.Product) and obj.id in product_ids:
                self.db.expire(obj, ["current_stock"])

    def diagnostics(self) -> Dict[str, Any]:
        """Opaque health record for operators."""
        counts = {}
        for model in self.LEDGER_TABLES:
            counts[model.__tablename__] = self.db.query(func.count()).select_from(model).scalar() or 0

        pending = self.db.query(func.count(models.Delivery.id)).filter(
            models.Delivery.pipeline_state == models.PipelineState.RECORDED.value
        ).scalar() or 0

        bind = self.db.get_bind()
        return {
            "status": "ok",
            "dialect": bind.dialect.name,
            "table_counts": counts,
            "pending_allocations": pending,
            "checked_at": models.utcnow().isoformat(),
        }
