"""
Sequence & Duplicate Guard

Computes the next delivery sequence for an order and rejects repeated
submissions. A client-supplied idempotency key is the primary defence; the
amount/time-window heuristic is kept as a secondary safety net for callers
that do not send one.

Sequence computation is a read followed by an insert; callers must hold the
per-order lock (see delivery_service) for it to be race-free.
"""

from typing import Callable, Optional
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
import logging

import models
from derivations import derive_next_sequence
from delivery_errors import DuplicateSubmissionError
from delivery_validator import DeliveryRequest, NormalizedDelivery
from ledger_config import ReconciliationConfig
from ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class DeliveryGuard:
    """Sequence numbering and duplicate suppression for one order at a time."""

    def __init__(
        self,
        db: Session,
        config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], datetime] = models.utcnow
    ):
        self.db = db
        self.config = config or ReconciliationConfig()
        self.clock = clock
        self.store = LedgerStore(db)

    def next_sequence(self, order_id: int) -> int:
        return derive_next_sequence(self.db, order_id)

    def find_replay(self, request: DeliveryRequest) -> Optional[models.Delivery]:
        """
        Look up an earlier submission with the same idempotency key. Runs before
        validation so a replay of a settling delivery is not rejected for
        exceeding the balance it already consumed.

        Returns:
            The existing Delivery if this is a replay of the same submission

        Raises:
            DuplicateSubmissionError: if the key was used for a different submission
        """
        if not request.idempotency_key:
            return None

        existing = self.store.get_delivery_by_idempotency_key(request.idempotency_key)
        if not existing:
            return None

        mode = getattr(request.mode, "value", request.mode)
        if mode == models.DeliveryMode.FULL.value:
            same_payload = existing.delivery_mode == models.DeliveryMode.FULL.value
        else:
            same_payload = (
                request.amount is not None
                and abs(float(existing.total_amount) - float(request.amount)) <= self.config.amount_tolerance
            )

        if existing.parent_order_id == request.order_id and same_payload:
            logger.info(
                f"Replayed submission {request.idempotency_key} for order {request.order_id}: "
                f"returning delivery {existing.id}"
            )
            return existing

        raise DuplicateSubmissionError(
            f"Idempotency key {request.idempotency_key} was already used for a different submission",
            code="IDEMPOTENCY_KEY_REUSED",
            details={
                "idempotency_key": request.idempotency_key,
                "existing_delivery_id": existing.id,
            }
        )

    def check_recent_duplicates(self, delivery: NormalizedDelivery) -> None:
        """
        Reject a submission matching a confirmed delivery for the same order
        created moments ago with (nearly) the same amount.

        Raises:
            DuplicateSubmissionError
        """
        now = self.clock()
        lookback_start = now - timedelta(seconds=self.config.duplicate_lookback_seconds)
        window_start = now - timedelta(seconds=self.config.duplicate_window_seconds)

        recent = self.store.confirmed_deliveries(
            delivery.order_id,
            created_since=lookback_start,
            newest_first=True
        )

        for existing in recent:
            if existing.created_at is None or existing.created_at < window_start:
                continue
            if abs(float(existing.total_amount) - delivery.amount) <= self.config.duplicate_amount_tolerance:
                age = (now - existing.created_at).total_seconds()
                logger.warning(
                    f"Duplicate submission rejected for order {delivery.order_no}: "
                    f"amount {delivery.amount:.2f} matches delivery {existing.id} from {age:.1f}s ago"
                )
                raise DuplicateSubmissionError(
                    f"A delivery of {float(existing.total_amount):.2f} was recorded for this order "
                    f"{age:.0f} seconds ago; do not resubmit the same delivery",
                    code="DUPLICATE_SUBMISSION",
                    details={
                        "existing_delivery_id": existing.id,
                        "existing_sequence": existing.delivery_sequence,
                        "seconds_ago": age,
                    }
                )
