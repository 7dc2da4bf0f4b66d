"""
Delivery Service

Runs the delivery pipeline for one submission:

    validate -> guard (replay / duplicate / sequence) -> record -> allocate

Pipeline state is explicit (validated -> recorded -> allocated) and stored on
the delivery once recorded, so a retried or resumed submission skips the
steps that already completed.

Submissions for the same order are serialised: a process-wide per-order lock
plus a row lock on the order inside the store transaction, with the
UNIQUE(parent_order_id, delivery_sequence) constraint as the final backstop.
"""

from typing import Dict, Any, Optional, Callable
from datetime import datetime
from dataclasses import dataclass, asdict
from sqlalchemy.orm import Session
import logging

import models
from delivery_errors import DeliveryError, DeliveryNotFoundError, PartialDeliveryError
from delivery_guard import DeliveryGuard
from delivery_recorder import DeliveryRecorder
from delivery_validator import DeliveryRequest, DeliveryValidator
from inventory_allocator import AllocationResult, InventoryAllocator
from ledger_config import ReconciliationConfig
from ledger_store import LedgerStore, order_lock

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryOutcome:
    """Result of a successful (or replayed) submission."""
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

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

class DeliveryService:
    """Entry point for delivery submission and allocation retries."""

    def __init__(
        self,
        db: Session,
        config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], datetime] = models.utcnow
    ):
        self.db = db
        self.config = config or ReconciliationConfig()
        self.store = LedgerStore(db)
        self.validator = DeliveryValidator(db, self.config)
        self.guard = DeliveryGuard(db, self.config, clock=clock)
        self.recorder = DeliveryRecorder(db, self.config, clock=clock)
        self.allocator = InventoryAllocator(db, self.config)

    def submit(self, request: DeliveryRequest) -> DeliveryOutcome:
        """
        Validate, record and allocate one delivery.

        Raises:
            DeliveryValidationError / DuplicateSubmissionError / SequenceConflictError /
            DeliveryWriteError:
                nothing was written
            PartialDeliveryError: the delivery is recorded, stock is not
        """
        with order_lock(request.order_id):
            try:
                order = self.store.get_order(request.order_id, for_update=True)
                replay = self.guard.find_replay(request)
                if replay is None:
                    normalized = self.validator.validate(request, order=order)
                    self.guard.check_recent_duplicates(normalized)
                    sequence = self.guard.next_sequence(normalized.order_id)
            except DeliveryError as e:
                self.db.rollback()
                logger.info(f"Delivery rejected for order {request.order_id}: [{e.code}] {e.message}")
                raise

            if replay is not None:
                return self._finish(replay, replayed=True)

            delivery = self.recorder.record(normalized, sequence, order)
            return self._finish(delivery)

    def retry_allocation(self, delivery_id: str) -> DeliveryOutcome:
        """Allocate a recorded delivery again. Safe to call any number of times."""
        delivery = self.store.get_delivery(delivery_id)
        if not delivery:
            raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
        with order_lock(delivery.parent_order_id):
            return self._finish(delivery)

    def resume_pending_allocations(self) -> Dict[str, Any]:
        """
        Finish every delivery stuck between recorded and allocated.

        Failures are collected, not raised.
        """
        pending = [(d.id, d.parent_order_id) for d in self.store.pending_allocations()]
        resumed, failed = [], []

        for delivery_id, order_id in pending:
            with order_lock(order_id):
                try:
                    self.allocator.allocate(delivery_id)
                    resumed.append(delivery_id)
                except PartialDeliveryError as e:
                    failed.append({"delivery_id": delivery_id, "error": e.details.get("error", e.message)})

        if pending:
            logger.info(f"Resumed {len(resumed)}/{len(pending)} pending allocation(s)")
        return {
            "pending": len(pending),
            "resumed": resumed,
            "failed": failed,
        }

    def _finish(self, delivery: models.Delivery, replayed: bool = False) -> DeliveryOutcome:
        allocation: Optional[AllocationResult] = None
        if delivery.pipeline_state != models.PipelineState.ALLOCATED.value:
            allocation = self.allocator.allocate(delivery)

        delivery = self.store.get_delivery(delivery.id)
        order = delivery.order
        return DeliveryOutcome(
            delivery_id=delivery.id,
            order_id=delivery.parent_order_id,
            delivery_sequence=delivery.delivery_sequence,
            amount=float(delivery.total_amount),
            mode=delivery.delivery_mode,
            pipeline_state=delivery.pipeline_state,
            remaining_amount=float(order.remaining_amount or 0.0),
            order_status=order.status,
            memo=delivery.memo,
            replayed=replayed,
            movements_created=allocation.movements_created if allocation else 0,
            allocations_created=allocation.allocations_created if allocation else 0,
        )
