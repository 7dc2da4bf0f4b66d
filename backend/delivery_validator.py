"""
Delivery Validator

Checks a proposed delivery against re-derived order state before anything
is written. Produces a NormalizedDelivery or raises DeliveryValidationError
naming the exact constraint that failed.
"""

from typing import Dict, Any, Optional, Union
from datetime import date
from dataclasses import dataclass, field
from sqlalchemy.orm import Session
import logging
import math

import models
from derivations import derive_remaining_amount, derive_remaining_quantities
from delivery_errors import DeliveryValidationError
from ledger_config import ReconciliationConfig
from ledger_store import LedgerStore

logger = logging.getLogger(__name__)

# Quantities are floats; anything closer than this counts as equal
QUANTITY_EPSILON = 1e-9

# Amounts are accepted in whole cents
CURRENCY_PLACES = 2


@dataclass
class DeliveryRequest:
    """A delivery submission as received from the caller."""
    order_id: int
    # Ignored in full mode, which settles the whole remaining balance
    amount: Optional[float] = None
    mode: Union[str, models.DeliveryMode] = models.DeliveryMode.AMOUNT_ONLY
    quantities: Dict[int, float] = field(default_factory=dict)
    scheduled_date: Optional[date] = None
    reason_code: Optional[str] = None
    memo: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class NormalizedDelivery:
    """A request that passed validation, with everything the recorder needs."""
    order_id: int
    order_no: str
    partner_id: Optional[int]
    amount: float
    mode: models.DeliveryMode
    quantities: Dict[int, float]
    scheduled_date: date
    reason: Optional[models.DeliveryReason]
    memo: Optional[str]
    idempotency_key: Optional[str]
    remaining_before: float
    remaining_after: float


class DeliveryValidator:
    """
    Validates deliveries against the ledger, never against cached fields.
    """

    def __init__(self, db: Session, config: Optional[ReconciliationConfig] = None):
        self.db = db
        self.config = config or ReconciliationConfig()
        self.store = LedgerStore(db)

    def validate(
        self,
        request: DeliveryRequest,
        order: Optional[models.PurchaseOrder] = None
    ) -> NormalizedDelivery:
        """
        Validate a delivery request.

        Args:
            request: The submission
            order: Already-loaded (and possibly locked) order row

        Returns:
            NormalizedDelivery ready for recording

        Raises:
            DeliveryValidationError: with a specific code per violated constraint
        """
        if request.scheduled_date is None:
            raise DeliveryValidationError(
                "A scheduled delivery date is required",
                code="MISSING_SCHEDULED_DATE"
            )

        mode = self._parse_mode(request.mode)
        reason = self._parse_reason(request.reason_code)

        if order is None:
            order = self.store.get_order(request.order_id)
        if not order:
            raise DeliveryValidationError(
                f"Purchase order {request.order_id} not found",
                code="ORDER_NOT_FOUND",
                details={"order_id": request.order_id}
            )
        if order.status == models.OrderStatus.CANCELLED.value:
            raise DeliveryValidationError(
                f"Purchase order {order.order_no} is cancelled",
                code="ORDER_CLOSED",
                details={"order_id": order.id, "status": order.status}
            )

        remaining_amount = derive_remaining_amount(self.db, order)
        remaining_quantities = derive_remaining_quantities(self.db, order)

        if mode == models.DeliveryMode.FULL:
            amount, quantities = self._validate_full(order, remaining_amount, remaining_quantities)
        else:
            amount = self._validate_amount(request.amount, remaining_amount)
            if mode == models.DeliveryMode.AMOUNT_AND_QUANTITY:
                quantities = self._validate_quantities(
                    request.quantities, amount, remaining_amount, remaining_quantities
                )
            else:
                quantities = {}

        return NormalizedDelivery(
            order_id=order.id,
            order_no=order.order_no,
            partner_id=order.partner_id,
            amount=amount,
            mode=mode,
            quantities=quantities,
            scheduled_date=request.scheduled_date,
            reason=reason,
            memo=(request.memo or "").strip() or None,
            idempotency_key=request.idempotency_key,
            remaining_before=remaining_amount,
            remaining_after=remaining_amount - amount,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # FIELD PARSING
    # ═══════════════════════════════════════════════════════════════════════════

    def _parse_mode(self, mode) -> models.DeliveryMode:
        try:
            return models.DeliveryMode(mode)
        except ValueError:
            raise DeliveryValidationError(
                f"Unknown delivery mode: {mode}",
                code="INVALID_MODE",
                details={"allowed": [m.value for m in models.DeliveryMode]}
            )

    def _parse_reason(self, reason_code: Optional[str]) -> Optional[models.DeliveryReason]:
        if not reason_code:
            return None
        try:
            return models.DeliveryReason(reason_code)
        except ValueError:
            raise DeliveryValidationError(
                f"Unknown delivery reason: {reason_code}",
                code="INVALID_REASON",
                details={"allowed": [r.value for r in models.DeliveryReason]}
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # AMOUNT
    # ═══════════════════════════════════════════════════════════════════════════

    def _validate_amount(self, amount: Optional[float], remaining_amount: float) -> float:
        if amount is None or not math.isfinite(float(amount)):
            raise DeliveryValidationError(
                "Delivery amount must be a finite number",
                code="INVALID_AMOUNT",
                details={"amount": None if amount is None else str(amount)}
            )
        amount = round(float(amount), CURRENCY_PLACES)
        if amount <= 0:
            raise DeliveryValidationError(
                "Delivery amount must be greater than zero",
                code="INVALID_AMOUNT",
                details={"amount": amount}
            )

        excess = round(amount - remaining_amount, CURRENCY_PLACES)
        if excess > 0:
            raise DeliveryValidationError(
                f"Amount exceeds remaining balance by {excess:.2f} "
                f"(amount {amount:.2f}, remaining {remaining_amount:.2f})",
                code="AMOUNT_EXCEEDED",
                details={
                    "amount": amount,
                    "remaining_amount": remaining_amount,
                    "excess": excess,
                }
            )
        return amount

    # ═══════════════════════════════════════════════════════════════════════════
    # AMOUNT + QUANTITY
    # ═══════════════════════════════════════════════════════════════════════════

    def _validate_quantities(
        self,
        requested: Optional[Dict[Any, float]],
        amount: float,
        remaining_amount: float,
        remaining_quantities: Dict[int, float]
    ) -> Dict[int, float]:
        quantities: Dict[int, float] = {}
        for item_id, qty in (requested or {}).items():
            qty = float(qty or 0)
            if not math.isfinite(qty) or qty < 0:
                raise DeliveryValidationError(
                    f"Requested quantity for item {item_id} must be a non-negative number",
                    code="INVALID_QUANTITY",
                    details={"item_id": item_id, "quantity": str(qty)}
                )
            if qty > 0:
                quantities[int(item_id)] = qty

        if not quantities:
            raise DeliveryValidationError(
                "At least one item needs a positive quantity",
                code="NO_QUANTITY"
            )

        for item_id, qty in quantities.items():
            if item_id not in remaining_quantities:
                raise DeliveryValidationError(
                    f"Item {item_id} does not belong to this order",
                    code="UNKNOWN_ITEM",
                    details={"item_id": item_id}
                )
            remaining = remaining_quantities[item_id]
            if qty > remaining + QUANTITY_EPSILON:
                raise DeliveryValidationError(
                    f"Requested quantity {qty:g} for item {item_id} exceeds remaining quantity {remaining:g}",
                    code="QUANTITY_EXCEEDED",
                    details={"item_id": item_id, "requested": qty, "remaining": remaining}
                )

        completes_all = all(
            remaining_quantities[item_id] - qty <= QUANTITY_EPSILON
            for item_id, qty in quantities.items()
        )
        settles_balance = abs(amount - remaining_amount) <= self.config.settlement_tolerance

        if completes_all != settles_balance:
            if completes_all:
                message = (
                    f"Every requested item is fully delivered but the amount {amount:.2f} "
                    f"does not settle the remaining balance {remaining_amount:.2f}"
                )
            else:
                message = (
                    f"The amount {amount:.2f} settles the remaining balance but some "
                    f"requested items still have quantity outstanding"
                )
            raise DeliveryValidationError(
                message,
                code="SETTLEMENT_INCONSISTENT",
                details={
                    "amount": amount,
                    "remaining_amount": remaining_amount,
                    "tolerance": self.config.settlement_tolerance,
                    "items_completed": completes_all,
                }
            )

        return quantities

    # ═══════════════════════════════════════════════════════════════════════════
    # FULL
    # ═══════════════════════════════════════════════════════════════════════════

    def _validate_full(
        self,
        order: models.PurchaseOrder,
        remaining_amount: float,
        remaining_quantities: Dict[int, float]
    ):
        if remaining_amount <= self.config.amount_tolerance:
            raise DeliveryValidationError(
                f"Purchase order {order.order_no} has no remaining balance",
                code="INVALID_AMOUNT",
                details={"remaining_amount": remaining_amount}
            )

        quantities = {
            item_id: qty for item_id, qty in remaining_quantities.items() if qty > QUANTITY_EPSILON
        }

        shortages = []
        for item in order.items:
            needed = quantities.get(item.id)
            if not needed:
                continue
            stock = float(item.product.current_stock or 0.0) if item.product else 0.0
            if stock < needed:
                shortages.append({
                    "item_id": item.id,
                    "product_id": item.product_id,
                    "required": needed,
                    "current_stock": stock,
                })

        if shortages:
            raise DeliveryValidationError(
                f"Insufficient stock for {len(shortages)} item(s); full delivery is not possible",
                code="INSUFFICIENT_STOCK",
                details={"shortages": shortages}
            )

        return remaining_amount, quantities
