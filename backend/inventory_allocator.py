"""
Inventory Allocator

Materialises a recorded delivery into physical stock movements and
money-side accounting allocations.

Modes:
- amount_only:          allocations only, stock untouched
- amount_and_quantity:  one 'in' movement per requested item, at the item's real unit price
- full:                 one 'in' movement per item for its whole remaining quantity

All writes for one delivery commit as a single batch together with the
pipeline transition recorded -> allocated. A failure rolls the batch back,
leaves the delivery 'recorded' and is reported as a PartialDeliveryError;
calling allocate() again is safe because a delivery that already has
movements or allocations is treated as materialised.
"""

from typing import Dict, List, Optional, Union
from dataclasses import dataclass, field
from sqlalchemy.orm import Session
import logging

import models
from delivery_errors import DeliveryNotFoundError, PartialDeliveryError
from ledger_config import ReconciliationConfig
from ledger_store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class PlannedMovement:
    item: models.PurchaseOrderItem
    quantity: float


@dataclass
class PlannedAllocation:
    item: models.PurchaseOrderItem
    allocated_amount: float
    allocation_ratio: float


@dataclass
class AllocationResult:
    delivery_id: str
    already_materialized: bool = False
    movements_created: int = 0
    allocations_created: int = 0
    stock_levels: Dict[int, float] = field(default_factory=dict)


def allocation_ratio(delivered_amount: float, order_total: float) -> float:
    if not order_total:
        return 0.0
    return float(delivered_amount) / float(order_total)


def prorate(item_total: float, ratio: float) -> float:
    """Allocated amount for one item: item total scaled by the delivery ratio, rounded to whole units."""
    return float(round(float(item_total) * ratio))


class InventoryAllocator:
    """Turns a recorded delivery into movements and allocations, exactly once."""

    def __init__(self, db: Session, config: Optional[ReconciliationConfig] = None):
        self.db = db
        self.config = config or ReconciliationConfig()
        self.store = LedgerStore(db)

    def allocate(self, delivery: Union[models.Delivery, str]) -> AllocationResult:
        """
        Allocate a delivery. Idempotent by delivery id.

        Raises:
            DeliveryNotFoundError: unknown delivery id
            PartialDeliveryError: the batch failed; the delivery stays recorded
        """
        if isinstance(delivery, str):
            delivery_id = delivery
            delivery = self.store.get_delivery(delivery_id)
            if not delivery:
                raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
        delivery_id = delivery.id

        if delivery.pipeline_state == models.PipelineState.ALLOCATED.value:
            return AllocationResult(delivery_id=delivery_id, already_materialized=True)

        if self.store.has_materialized(delivery_id):
            logger.info(f"Delivery {delivery_id} already has inventory records; marking allocated")
            self._mark_allocated(delivery)
            self.db.commit()
            return AllocationResult(delivery_id=delivery_id, already_materialized=True)

        try:
            result = self._write_batch(delivery)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Inventory allocation failed for delivery {delivery_id}: {e}")
            self._note_failure(delivery_id, str(e))
            raise PartialDeliveryError(
                f"Delivery {delivery_id} is recorded but inventory allocation failed: {e}. "
                f"Retry allocation for this delivery.",
                delivery_id=delivery_id,
                details={"error": str(e)}
            ) from e

        logger.info(
            f"Allocated delivery {delivery_id}: {result.movements_created} movement(s), "
            f"{result.allocations_created} allocation(s)"
        )
        return result

    # ═══════════════════════════════════════════════════════════════════════════
    # PLANNING
    # ═══════════════════════════════════════════════════════════════════════════

    def plan_movements(self, delivery: models.Delivery) -> List[PlannedMovement]:
        mode = models.DeliveryMode(delivery.delivery_mode)
        if mode == models.DeliveryMode.AMOUNT_ONLY:
            return []

        requested = {int(k): float(v) for k, v in (delivery.requested_quantities or {}).items()}
        planned = []
        for item in delivery.order.items:
            qty = requested.get(item.id, 0.0)
            if qty <= 0:
                continue
            planned.append(PlannedMovement(item=item, quantity=qty))
        return planned

    def plan_allocations(self, delivery: models.Delivery) -> List[PlannedAllocation]:
        order = delivery.order
        ratio = allocation_ratio(delivery.total_amount, order.total_amount)
        mode = models.DeliveryMode(delivery.delivery_mode)

        if mode == models.DeliveryMode.AMOUNT_AND_QUANTITY:
            requested = {int(k) for k, v in (delivery.requested_quantities or {}).items() if float(v) > 0}
            items = [item for item in order.items if item.id in requested]
        else:
            items = list(order.items)

        return [
            PlannedAllocation(
                item=item,
                allocated_amount=prorate(item.total_amount, ratio),
                allocation_ratio=ratio,
            )
            for item in items
        ]

    # ═══════════════════════════════════════════════════════════════════════════
    # WRITING
    # ═══════════════════════════════════════════════════════════════════════════

    def _write_batch(self, delivery: models.Delivery) -> AllocationResult:
        result = AllocationResult(delivery_id=delivery.id)

        for move in self.plan_movements(delivery):
            item = move.item
            product = item.product
            label = f"{product.product_name} ({product.product_code})" if product else f"product {item.product_id}"
            self.db.add(models.InventoryMovement(
                product_id=item.product_id,
                purchase_order_item_id=item.id,
                movement_type=models.MovementType.IN.value,
                quantity=move.quantity,
                unit_price=float(item.unit_price),
                total_amount=move.quantity * float(item.unit_price),
                delivery_id=delivery.id,
                delivery_sequence=delivery.delivery_sequence,
                memo=f"{delivery.memo or ''} - {label}".strip(" -"),
            ))
            self.db.flush()
            result.stock_levels[item.product_id] = self.store.increment_stock(item.product_id, move.quantity)
            result.movements_created += 1

        for planned in self.plan_allocations(delivery):
            self.db.add(models.AccountingAllocation(
                delivery_id=delivery.id,
                product_id=planned.item.product_id,
                purchase_order_item_id=planned.item.id,
                allocated_amount=planned.allocated_amount,
                allocation_ratio=planned.allocation_ratio,
                method=models.AllocationMethod.RATIO.value,
            ))
            result.allocations_created += 1

        self._mark_allocated(delivery)
        self.db.flush()
        return result

    def _mark_allocated(self, delivery: models.Delivery):
        delivery.pipeline_state = models.PipelineState.ALLOCATED.value
        delivery.allocated_at = models.utcnow()
        delivery.allocation_error = None

    def _note_failure(self, delivery_id: str, error: str):
        """Best effort: keep the last allocation error on the delivery for operators."""
        try:
            delivery = self.store.get_delivery(delivery_id)
            if delivery:
                delivery.allocation_error = error[:1000]
                self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Could not store allocation error for delivery {delivery_id}: {e}")
