"""
Delivery Recorder

Persists a validated delivery as an immutable ledger row. The commit here is
the point of no return: later allocation failures never undo it.
"""

from typing import Callable, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

import models
from derivations import refresh_order_cache
from delivery_errors import DeliveryWriteError, DuplicateSubmissionError, SequenceConflictError
from delivery_validator import NormalizedDelivery
from ledger_config import ReconciliationConfig

logger = logging.getLogger(__name__)


REASON_LABELS = {
    models.DeliveryReason.READY_PARTIAL: "partial quantity ready",
    models.DeliveryReason.INVENTORY_LIMITED: "limited inventory",
    models.DeliveryReason.CUSTOMER_REQUEST: "customer request",
    models.DeliveryReason.QUALITY_CHECK: "quality check",
    models.DeliveryReason.PRODUCTION_DELAY: "production delay",
    models.DeliveryReason.SHIPPING_ARRANGEMENT: "shipping arrangement",
    models.DeliveryReason.CASH_FLOW: "cash flow",
    models.DeliveryReason.OTHER: "other",
}

MODE_LABELS = {
    models.DeliveryMode.AMOUNT_ONLY: "amount only",
    models.DeliveryMode.AMOUNT_AND_QUANTITY: "amount and quantity",
    models.DeliveryMode.FULL: "full delivery",
}


SEQUENCE_CONSTRAINT = "uq_delivery_order_sequence"
IDEMPOTENCY_CONSTRAINT = "uq_delivery_idempotency_key"

# SQLite reports the columns, PostgreSQL the constraint name
_UNIQUE_COLUMNS = {
    "deliveries.parent_order_id, deliveries.delivery_sequence": SEQUENCE_CONSTRAINT,
    "deliveries.idempotency_key": IDEMPOTENCY_CONSTRAINT,
}


def violated_unique_constraint(error: IntegrityError) -> Optional[str]:
    """Name of the delivery unique constraint behind an IntegrityError, if any."""
    message = str(error.orig) if error.orig is not None else str(error)
    for name in (SEQUENCE_CONSTRAINT, IDEMPOTENCY_CONSTRAINT):
        if name in message:
            return name
    if "UNIQUE constraint failed" in message:
        columns = message.split("UNIQUE constraint failed:", 1)[1].strip()
        return _UNIQUE_COLUMNS.get(columns)
    return None


def build_memo(delivery: NormalizedDelivery, sequence: int) -> str:
    """e.g. 'PO-0001 delivery #2 [amount and quantity] reason: quality check - note'"""
    memo = f"{delivery.order_no} delivery #{sequence} [{MODE_LABELS[delivery.mode]}]"
    if delivery.reason:
        memo += f" reason: {REASON_LABELS[delivery.reason]}"
    if delivery.memo:
        memo += f" - {delivery.memo}"
    return memo


class DeliveryRecorder:
    """Writes Delivery rows and refreshes the order's remaining-amount cache."""

    def __init__(
        self,
        db: Session,
        config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], datetime] = models.utcnow
    ):
        self.db = db
        self.config = config or ReconciliationConfig()
        self.clock = clock

    def record(
        self,
        delivery: NormalizedDelivery,
        sequence: int,
        order: models.PurchaseOrder
    ) -> models.Delivery:
        """
        Insert the delivery (status confirmed, pipeline state recorded) and
        commit it together with the order cache refresh.

        Raises:
            SequenceConflictError: another writer already used this sequence
            DuplicateSubmissionError: the idempotency key is already taken
            DeliveryWriteError: any other constraint refused the row
        """
        now = self.clock()
        row = models.Delivery(
            id=models.new_uuid(),
            transaction_type="purchase",
            parent_order_id=delivery.order_id,
            partner_id=delivery.partner_id,
            total_amount=delivery.amount,
            delivery_sequence=sequence,
            transaction_date=now.date(),
            scheduled_date=delivery.scheduled_date,
            status=models.DeliveryStatus.CONFIRMED.value,
            delivery_mode=delivery.mode.value,
            reason_code=delivery.reason.value if delivery.reason else None,
            memo=build_memo(delivery, sequence),
            requested_quantities={str(k): v for k, v in delivery.quantities.items()},
            idempotency_key=delivery.idempotency_key,
            pipeline_state=models.PipelineState.RECORDED.value,
            created_at=now,
        )
        self.db.add(row)

        try:
            self.db.flush()
            refresh_order_cache(
                self.db,
                order,
                tolerance=self.config.amount_tolerance,
                remaining_amount=delivery.remaining_after
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            violated = violated_unique_constraint(e)
            if violated == IDEMPOTENCY_CONSTRAINT:
                raise DuplicateSubmissionError(
                    f"Idempotency key {delivery.idempotency_key} is already recorded",
                    code="IDEMPOTENCY_KEY_REUSED",
                    details={"idempotency_key": delivery.idempotency_key}
                )
            if violated == SEQUENCE_CONSTRAINT:
                raise SequenceConflictError(
                    f"Delivery sequence {sequence} for order {delivery.order_no} was taken by a concurrent submission",
                    details={"order_id": delivery.order_id, "sequence": sequence}
                )
            logger.error(f"Store rejected delivery for order {delivery.order_no}: {e.orig}")
            raise DeliveryWriteError(
                f"The ledger rejected delivery #{sequence} for order {delivery.order_no}",
                details={"order_id": delivery.order_id, "sequence": sequence, "error": str(e.orig)}
            )

        logger.info(
            f"Recorded delivery {row.id} for order {delivery.order_no}: "
            f"#{sequence}, {delivery.amount:.2f} ({delivery.mode.value}), "
            f"remaining {delivery.remaining_after:.2f}"
        )
        return row
