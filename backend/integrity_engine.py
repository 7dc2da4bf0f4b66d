"""
Integrity Engine

Read-only audit of the ledger. Every cached figure is re-derived from the
append-mostly tables and compared to what is stored.

Categories:
1. financial:      item totals == order total; delivered <= order total; remaining cache
2. inventory:      sum(in) - sum(out) == current_stock; duplicated movements
3. delivery:       remaining cache cross-check; contiguous sequences; pending allocations
4. reference:      orphaned foreign keys
5. business_rule:  negative stock, future-dated deliveries, empty orders, overdue orders
6. data_quality:   duplicate product codes, empty required fields, negative prices

A category that fails to run is reported as a critical entry naming the
category; the other categories still run.
"""

from typing import Dict, Any, List, Optional, Callable
from datetime import datetime, timedelta
from collections import defaultdict
from sqlalchemy.orm import Session, aliased
from sqlalchemy import func, or_, text
import time
import logging

from integrity_models import (
    IntegrityCategory, IntegritySeverity, OverallStatus,
    IntegrityCheckResult, IntegrityCheckSummary, IntegrityCheckConfig, IntegrityReport
)
from derivations import (
    derive_all_product_stock, derive_delivered_amounts_by_order, signed_quantity
)
from ledger_config import ReconciliationConfig
import models

logger = logging.getLogger(__name__)


class IntegrityEngine:
    """
    Engine for running integrity checks against the ledger.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[IntegrityCheckConfig] = None,
        ledger_config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], datetime] = models.utcnow
    ):
        self.db = db
        self.config = config or IntegrityCheckConfig()
        self.ledger_config = ledger_config or ReconciliationConfig()
        self.clock = clock

        # Tolerance for floating point comparisons
        self.TOLERANCE = self.ledger_config.amount_tolerance

        self._checks: Dict[IntegrityCategory, Callable[[], List[IntegrityCheckResult]]] = {
            IntegrityCategory.FINANCIAL: self._check_financial,
            IntegrityCategory.INVENTORY: self._check_inventory,
            IntegrityCategory.DELIVERY: self._check_delivery,
            IntegrityCategory.REFERENCE: self._check_references,
            IntegrityCategory.BUSINESS_RULE: self._check_business_rules,
            IntegrityCategory.DATA_QUALITY: self._check_data_quality,
        }

    def run_complete_check(self) -> IntegrityReport:
        """
        Run every enabled category.

        Returns:
            IntegrityReport with the summary and all result entries
        """
        start_time = time.time()
        deadline = start_time + self.config.timeout_ms / 1000.0

        results: List[IntegrityCheckResult] = []
        for category in self.config.enabled_categories:
            category = IntegrityCategory(category)
            if time.time() > deadline:
                results.append(self._timed_out(category))
                continue
            results.extend(self._run_category(category))

        execution_time_ms = (time.time() - start_time) * 1000
        summary = self.summarize(results, execution_time_ms)

        logger.info(
            f"Integrity check finished: {summary.overall_status.value} "
            f"({summary.critical_issues} critical, {summary.warning_issues} warning, "
            f"{summary.info_issues} info) in {execution_time_ms:.0f}ms"
        )
        return IntegrityReport(summary=summary, results=results)

    def run_category_check(self, category) -> List[IntegrityCheckResult]:
        """Run a single category."""
        category = IntegrityCategory(category)
        return self._run_category(category)

    def summarize(self, results: List[IntegrityCheckResult], execution_time_ms: float = 0.0) -> IntegrityCheckSummary:
        counts = defaultdict(int)
        for result in results:
            counts[result.severity] += 1

        if counts[IntegritySeverity.CRITICAL]:
            overall = OverallStatus.CRITICAL
        elif counts[IntegritySeverity.WARNING]:
            overall = OverallStatus.NEEDS_ATTENTION
        else:
            overall = OverallStatus.HEALTHY

        return IntegrityCheckSummary(
            total_checks=len(results),
            critical_issues=counts[IntegritySeverity.CRITICAL],
            warning_issues=counts[IntegritySeverity.WARNING],
            info_issues=counts[IntegritySeverity.INFO],
            success_checks=counts[IntegritySeverity.SUCCESS],
            overall_status=overall,
            last_check_at=self.clock(),
            execution_time_ms=execution_time_ms,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # PLUMBING
    # ═══════════════════════════════════════════════════════════════════════════

    def _run_category(self, category: IntegrityCategory) -> List[IntegrityCheckResult]:
        try:
            self._apply_statement_timeout()
            return self._checks[category]()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Integrity check '{category.value}' failed: {e}")
            return [self._result(
                category, "error", IntegritySeverity.CRITICAL,
                title=f"{category.value} check failed",
                description=f"The {category.value} check could not complete: {e}",
                suggested_actions=["Check database connectivity", "Re-run the check"],
            )]

    def _timed_out(self, category: IntegrityCategory) -> IntegrityCheckResult:
        logger.warning(f"Integrity check '{category.value}' skipped: run exceeded {self.config.timeout_ms}ms")
        return self._result(
            category, "timeout", IntegritySeverity.CRITICAL,
            title=f"{category.value} check timed out",
            description=f"The run exceeded {self.config.timeout_ms}ms before the {category.value} check could start",
            suggested_actions=["Run this category on its own", "Raise the timeout"],
        )

    def _apply_statement_timeout(self):
        """PostgreSQL only: bound every query of the current transaction."""
        if self.db.get_bind().dialect.name == "postgresql":
            self.db.execute(text(f"SET LOCAL statement_timeout = {int(self.config.timeout_ms)}"))

    def _sample(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not self.config.include_sample_data:
            return []
        return rows[:self.config.max_sample_records]

    def _result(
        self,
        category: IntegrityCategory,
        name: str,
        severity: IntegritySeverity,
        title: str,
        description: str,
        affected_records: int = 0,
        sample_data: Optional[List[Dict[str, Any]]] = None,
        suggested_actions: Optional[List[str]] = None,
        query_used: Optional[str] = None
    ) -> IntegrityCheckResult:
        return IntegrityCheckResult(
            id=f"{category.value}_{name}",
            category=category,
            severity=severity,
            title=title,
            description=description,
            affected_records=affected_records,
            sample_data=self._sample(sample_data or []),
            suggested_actions=suggested_actions or [],
            query_used=query_used,
            checked_at=self.clock(),
        )

    def _all_clear(self, category: IntegrityCategory, title: str, description: str) -> IntegrityCheckResult:
        return self._result(category, "ok", IntegritySeverity.SUCCESS, title=title, description=description)

    @staticmethod
    def _has_issues(results: List[IntegrityCheckResult], *severities: IntegritySeverity) -> bool:
        severities = severities or (IntegritySeverity.CRITICAL, IntegritySeverity.WARNING)
        return any(r.severity in severities for r in results)

    # ═══════════════════════════════════════════════════════════════════════════
    # CATEGORY 1: FINANCIAL
    # ═══════════════════════════════════════════════════════════════════════════

    def _check_financial(self) -> List[IntegrityCheckResult]:
        """
        Check: sum(item totals) == order total, and confirmed deliveries never
        exceed the order total.
        """
        category = IntegrityCategory.FINANCIAL
        results = []

        item_sums = self.db.query(
            models.PurchaseOrderItem.purchase_order_id.label("order_id"),
            func.sum(models.PurchaseOrderItem.total_amount).label("item_total"),
        ).group_by(models.PurchaseOrderItem.purchase_order_id).subquery()

        query = self.db.query(
            models.PurchaseOrder.id,
            models.PurchaseOrder.order_no,
            models.PurchaseOrder.total_amount,
            func.coalesce(item_sums.c.item_total, 0.0),
        ).outerjoin(item_sums, item_sums.c.order_id == models.PurchaseOrder.id)

        mismatches = []
        for order_id, order_no, total, item_total in query.all():
            difference = float(total or 0.0) - float(item_total or 0.0)
            if abs(difference) > self.TOLERANCE:
                mismatches.append({
                    "order_id": order_id,
                    "order_no": order_no,
                    "order_total": float(total or 0.0),
                    "item_total": float(item_total or 0.0),
                    "difference": difference,
                })

        if mismatches:
            results.append(self._result(
                category, "order_totals", IntegritySeverity.CRITICAL,
                title="Order totals do not match their items",
                description=f"{len(mismatches)} order(s) have a total different from the sum of their line items",
                affected_records=len(mismatches),
                sample_data=mismatches,
                suggested_actions=[
                    "Recompute order totals from their items",
                    "Review recently edited line items",
                ],
                query_used=str(query.statement),
            ))

        delivered = derive_delivered_amounts_by_order(self.db)
        over_delivered = []
        remaining_drift = []
        for order in self.db.query(models.PurchaseOrder).all():
            total = float(order.total_amount or 0.0)
            derived_remaining = total - delivered.get(order.id, 0.0)
            if derived_remaining < -self.TOLERANCE:
                over_delivered.append({
                    "order_id": order.id,
                    "order_no": order.order_no,
                    "order_total": total,
                    "delivered_amount": delivered.get(order.id, 0.0),
                    "over_amount": -derived_remaining,
                })
            stored = float(order.remaining_amount or 0.0)
            if abs(stored - derived_remaining) > self.TOLERANCE:
                remaining_drift.append({
                    "order_id": order.id,
                    "order_no": order.order_no,
                    "stored_remaining": stored,
                    "derived_remaining": derived_remaining,
                    "difference": derived_remaining - stored,
                })

        if over_delivered:
            results.append(self._result(
                category, "over_delivered", IntegritySeverity.CRITICAL,
                title="Deliveries exceed order total",
                description=f"{len(over_delivered)} order(s) have confirmed deliveries worth more than the order",
                affected_records=len(over_delivered),
                sample_data=over_delivered,
                suggested_actions=[
                    "Review the confirmed deliveries of these orders",
                    "Book a compensating entry for the excess",
                ],
            ))

        if remaining_drift:
            results.append(self._result(
                category, "remaining_balance", IntegritySeverity.CRITICAL,
                title="Stored remaining balance differs from the ledger",
                description=f"{len(remaining_drift)} order(s) show a remaining balance that does not equal "
                            f"total minus confirmed deliveries",
                affected_records=len(remaining_drift),
                sample_data=remaining_drift,
                suggested_actions=["Recompute remaining amounts"],
            ))

        if not self._has_issues(results):
            results.append(self._all_clear(
                category,
                title="Order amounts consistent",
                description="Every order total matches its items and its confirmed deliveries",
            ))
        return results

    # ═══════════════════════════════════════════════════════════════════════════
    # CATEGORY 2: INVENTORY
    # ═══════════════════════════════════════════════════════════════════════════

    def _check_inventory(self) -> List[IntegrityCheckResult]:
        """
        Check: current_stock == sum(in) - sum(out) for every product
        """
        category = IntegrityCategory.INVENTORY
        results = []

        derived = derive_all_product_stock(self.db)
        mismatches = []
        for product in self.db.query(models.Product).order_by(models.Product.id).all():
            stored = float(product.current_stock or 0.0)
            expected = derived.get(product.id, 0.0)
            if abs(stored - expected) > self.TOLERANCE:
                mismatches.append({
                    "product_id": product.id,
                    "product_code": product.product_code,
                    "product_name": product.product_name,
                    "stored_stock": stored,
                    "derived_stock": expected,
                    "difference": expected - stored,
                })

        if mismatches:
            results.append(self._result(
                category, "stock_mismatch", IntegritySeverity.WARNING,
                title="Stock does not match movement history",
                description=f"{len(mismatches)} product(s) have a current stock different from "
                            f"the sum of their movements",
                affected_records=len(mismatches),
                sample_data=mismatches,
                suggested_actions=[
                    "Recompute stock from movements",
                    "Look for movements written outside a delivery",
                ],
                query_used=str(
                    self.db.query(
                        models.InventoryMovement.product_id, func.sum(signed_quantity())
                    ).group_by(models.InventoryMovement.product_id).statement
                ),
            ))

        duplicates = self._duplicate_movement_groups()
        if duplicates:
            extra = sum(d["count"] - 1 for d in duplicates)
            results.append(self._result(
                category, "duplicate_movements", IntegritySeverity.WARNING,
                title="Duplicated delivery movements",
                description=f"{len(duplicates)} delivery line(s) were materialised more than once "
                            f"({extra} extra movement(s))",
                affected_records=extra,
                sample_data=duplicates,
                suggested_actions=["Remove duplicated movements, keeping the earliest"],
            ))

        if not self._has_issues(results):
            results.append(self._all_clear(
                category,
                title="Stock consistent",
                description="Every product's stock equals the sum of its movements",
            ))
        return results

    def _duplicate_movement_groups(self) -> List[Dict[str, Any]]:
        rows = self.db.query(
            models.InventoryMovement.delivery_id,
            models.InventoryMovement.product_id,
            models.InventoryMovement.purchase_order_item_id,
            func.count(models.InventoryMovement.id),
            func.sum(models.InventoryMovement.quantity),
        ).filter(
            models.InventoryMovement.delivery_id.isnot(None)
        ).group_by(
            models.InventoryMovement.delivery_id,
            models.InventoryMovement.product_id,
            models.InventoryMovement.purchase_order_item_id,
        ).having(func.count(models.InventoryMovement.id) > 1).all()

        return [
            {
                "delivery_id": delivery_id,
                "product_id": product_id,
                "purchase_order_item_id": item_id,
                "count": int(count),
                "total_quantity": float(quantity or 0.0),
            }
            for delivery_id, product_id, item_id, count, quantity in rows
        ]

    # ═══════════════════════════════════════════════════════════════════════════
    # CATEGORY 3: DELIVERY
    # ═══════════════════════════════════════════════════════════════════════════

    def _check_delivery(self) -> List[IntegrityCheckResult]:
        """
        Cross-check remaining balances with a per-order query independent of
        the financial check, then sequences and in-flight allocations.
        """
        category = IntegrityCategory.DELIVERY
        results = []

        delivered = self.db.query(
            func.coalesce(func.sum(models.Delivery.total_amount), 0.0)
        ).filter(
            models.Delivery.parent_order_id == models.PurchaseOrder.id,
            models.Delivery.status == models.DeliveryStatus.CONFIRMED.value,
        ).correlate(models.PurchaseOrder).scalar_subquery()

        query = self.db.query(
            models.PurchaseOrder.id,
            models.PurchaseOrder.order_no,
            models.PurchaseOrder.total_amount,
            models.PurchaseOrder.remaining_amount,
            delivered,
        )

        mismatches = []
        for order_id, order_no, total, stored, delivered_amount in query.all():
            derived_remaining = float(total or 0.0) - float(delivered_amount or 0.0)
            if abs(float(stored or 0.0) - derived_remaining) > self.TOLERANCE:
                mismatches.append({
                    "order_id": order_id,
                    "order_no": order_no,
                    "order_total": float(total or 0.0),
                    "delivered_amount": float(delivered_amount or 0.0),
                    "stored_remaining": float(stored or 0.0),
                    "derived_remaining": derived_remaining,
                })

        if mismatches:
            results.append(self._result(
                category, "amount_mismatch", IntegritySeverity.CRITICAL,
                title="Delivered amounts do not reconcile",
                description=f"{len(mismatches)} order(s) have a remaining balance that does not match "
                            f"their confirmed deliveries",
                affected_records=len(mismatches),
                sample_data=mismatches,
                suggested_actions=[
                    "Recompute remaining amounts",
                    "Review deliveries recorded for these orders",
                ],
                query_used=str(query.statement),
            ))

        gaps = self._sequence_gaps()
        if gaps:
            results.append(self._result(
                category, "sequence_gaps", IntegritySeverity.WARNING,
                title="Delivery sequence gaps or repeats",
                description=f"{len(gaps)} order(s) have delivery numbers that are not 1..n",
                affected_records=len(gaps),
                sample_data=gaps,
                suggested_actions=["Review the delivery history of these orders"],
            ))

        results.extend(self._pending_allocations(category))

        if not self._has_issues(results):
            results.append(self._all_clear(
                category,
                title="Deliveries consistent",
                description="Every order's remaining balance matches its confirmed deliveries",
            ))
        return results

    def _sequence_gaps(self) -> List[Dict[str, Any]]:
        rows = self.db.query(
            models.Delivery.parent_order_id,
            models.Delivery.delivery_sequence,
        ).filter(
            models.Delivery.status == models.DeliveryStatus.CONFIRMED.value
        ).order_by(models.Delivery.parent_order_id, models.Delivery.delivery_sequence).all()

        by_order = defaultdict(list)
        for order_id, sequence in rows:
            by_order[order_id].append(sequence)

        gaps = []
        for order_id, sequences in by_order.items():
            expected = list(range(1, len(sequences) + 1))
            if sequences != expected:
                gaps.append({
                    "order_id": order_id,
                    "sequences": sequences,
                    "missing": sorted(set(expected) - set(sequences)),
                    "repeated": sorted({s for s in sequences if sequences.count(s) > 1}),
                })
        return gaps

    def _pending_allocations(self, category: IntegrityCategory) -> List[IntegrityCheckResult]:
        """Recorded-but-unallocated deliveries: in progress while young, stalled once old."""
        pending = self.db.query(models.Delivery).filter(
            models.Delivery.status == models.DeliveryStatus.CONFIRMED.value,
            models.Delivery.pipeline_state == models.PipelineState.RECORDED.value,
        ).order_by(models.Delivery.created_at).all()
        if not pending:
            return []

        stale_before = self.clock() - timedelta(minutes=self.ledger_config.stale_allocation_minutes)
        in_progress, stalled = [], []
        for delivery in pending:
            row = {
                "delivery_id": delivery.id,
                "order_id": delivery.parent_order_id,
                "delivery_sequence": delivery.delivery_sequence,
                "created_at": delivery.created_at.isoformat() if delivery.created_at else None,
                "allocation_error": delivery.allocation_error,
            }
            if delivery.created_at is not None and delivery.created_at < stale_before:
                stalled.append(row)
            else:
                in_progress.append(row)

        results = []
        if in_progress:
            results.append(self._result(
                category, "allocation_in_progress", IntegritySeverity.INFO,
                title="Deliveries awaiting allocation",
                description=f"{len(in_progress)} delivery(ies) are recorded and still being allocated to stock",
                affected_records=len(in_progress),
                sample_data=in_progress,
                suggested_actions=["Re-run the check once allocation finishes"],
            ))
        if stalled:
            results.append(self._result(
                category, "allocation_stalled", IntegritySeverity.WARNING,
                title="Deliveries stuck before allocation",
                description=f"{len(stalled)} delivery(ies) were recorded more than "
                            f"{self.ledger_config.stale_allocation_minutes:g} minutes ago but never reached stock",
                affected_records=len(stalled),
                sample_data=stalled,
                suggested_actions=["Resume pending allocations", "Inspect the stored allocation error"],
            ))
        return results

    # ═══════════════════════════════════════════════════════════════════════════
    # CATEGORY 4: REFERENCE
    # ═══════════════════════════════════════════════════════════════════════════

    REFERENCES = (
        (models.PurchaseOrderItem, "purchase_order_id", models.PurchaseOrder),
        (models.PurchaseOrderItem, "product_id", models.Product),
        (models.Delivery, "parent_order_id", models.PurchaseOrder),
        (models.InventoryMovement, "product_id", models.Product),
        (models.InventoryMovement, "purchase_order_item_id", models.PurchaseOrderItem),
        (models.InventoryMovement, "delivery_id", models.Delivery),
        (models.AccountingAllocation, "delivery_id", models.Delivery),
        (models.AccountingAllocation, "product_id", models.Product),
        (models.AccountingAllocation, "purchase_order_item_id", models.PurchaseOrderItem),
    )

    def _check_references(self) -> List[IntegrityCheckResult]:
        """
        Check: every non-null foreign key points at an existing row
        """
        category = IntegrityCategory.REFERENCE
        results = []

        for source, column_name, target in self.REFERENCES:
            fk = getattr(source, column_name)
            ref = aliased(target)
            query = self.db.query(source.id, fk).outerjoin(
                ref, ref.id == fk
            ).filter(fk.isnot(None), ref.id.is_(None))

            orphans = query.all()
            if orphans:
                label = f"{source.__tablename__}.{column_name}"
                results.append(self._result(
                    category, f"{source.__tablename__}_{column_name}", IntegritySeverity.CRITICAL,
                    title=f"Orphaned references: {source.__tablename__}",
                    description=f"{label} has {len(orphans)} row(s) pointing at a missing "
                                f"{target.__tablename__} record",
                    affected_records=len(orphans),
                    sample_data=[{"id": row_id, column_name: ref_id} for row_id, ref_id in orphans],
                    suggested_actions=[
                        "Restore the referenced records",
                        "Remove the orphaned rows",
                        "Enable foreign key enforcement",
                    ],
                    query_used=str(query.statement),
                ))

        if not self._has_issues(results):
            results.append(self._all_clear(
                category,
                title="References intact",
                description="Every foreign key points at an existing record",
            ))
        return results

    # ═══════════════════════════════════════════════════════════════════════════
    # CATEGORY 5: BUSINESS RULES
    # ═══════════════════════════════════════════════════════════════════════════

    def _check_business_rules(self) -> List[IntegrityCheckResult]:
        category = IntegrityCategory.BUSINESS_RULE
        today = self.clock().date()
        results = []

        delivered = derive_delivered_amounts_by_order(self.db)
        open_statuses = (models.OrderStatus.UNDELIVERED.value, models.OrderStatus.PARTIAL.value)
        overdue = [
            {
                "order_id": order.id,
                "order_no": order.order_no,
                "delivery_deadline": order.delivery_deadline.isoformat(),
                "remaining_amount": float(order.total_amount or 0.0) - delivered.get(order.id, 0.0),
            }
            for order in self.db.query(models.PurchaseOrder).filter(
                models.PurchaseOrder.delivery_deadline < today,
                models.PurchaseOrder.status.in_(open_statuses),
            ).all()
            if float(order.total_amount or 0.0) - delivered.get(order.id, 0.0) > self.TOLERANCE
        ]

        rules = [
            (
                "negative_stock", "Negative stock",
                "Products with a stock level below zero",
                [
                    {"product_id": p.id, "product_code": p.product_code, "current_stock": p.current_stock}
                    for p in self.db.query(models.Product).filter(models.Product.current_stock < 0).all()
                ],
            ),
            (
                "future_dated_deliveries", "Future-dated deliveries",
                "Deliveries dated after today",
                [
                    {"delivery_id": d.id, "order_id": d.parent_order_id,
                     "transaction_date": d.transaction_date.isoformat()}
                    for d in self.db.query(models.Delivery).filter(models.Delivery.transaction_date > today).all()
                ],
            ),
            (
                "non_positive_order_totals", "Zero or negative order totals",
                "Orders whose total is zero or negative",
                [
                    {"order_id": o.id, "order_no": o.order_no, "total_amount": o.total_amount}
                    for o in self.db.query(models.PurchaseOrder).filter(models.PurchaseOrder.total_amount <= 0).all()
                ],
            ),
            (
                "overdue_open_orders", "Overdue open orders",
                "Orders past their delivery deadline with a balance still outstanding",
                overdue,
            ),
        ]

        for name, title, description, violations in rules:
            if violations:
                results.append(self._result(
                    category, name, IntegritySeverity.WARNING,
                    title=f"Business rule violated: {title}",
                    description=f"{description} ({len(violations)})",
                    affected_records=len(violations),
                    sample_data=violations,
                    suggested_actions=["Correct the data", "Review the business rule"],
                ))

        if not self._has_issues(results):
            results.append(self._all_clear(
                category,
                title="Business rules satisfied",
                description="No record breaks a business rule",
            ))
        return results

    # ═══════════════════════════════════════════════════════════════════════════
    # CATEGORY 6: DATA QUALITY
    # ═══════════════════════════════════════════════════════════════════════════

    def _check_data_quality(self) -> List[IntegrityCheckResult]:
        category = IntegrityCategory.DATA_QUALITY
        results = []

        duplicate_codes = [
            {"product_code": code, "count": int(count)}
            for code, count in self.db.query(
                models.Product.product_code, func.count(models.Product.id)
            ).filter(
                models.Product.product_code.isnot(None),
                models.Product.product_code != "",
            ).group_by(models.Product.product_code).having(func.count(models.Product.id) > 1).all()
        ]

        empty_fields = [
            {"product_id": p.id, "product_code": p.product_code, "product_name": p.product_name}
            for p in self.db.query(models.Product).filter(or_(
                models.Product.product_code.is_(None),
                models.Product.product_code == "",
                models.Product.product_name.is_(None),
                models.Product.product_name == "",
            )).all()
        ]

        negative_prices = [
            {"product_id": p.id, "product_code": p.product_code,
             "purchase_price": p.purchase_price, "selling_price": p.selling_price}
            for p in self.db.query(models.Product).filter(or_(
                models.Product.purchase_price < 0,
                models.Product.selling_price < 0,
            )).all()
        ] + [
            {"purchase_order_item_id": i.id, "order_id": i.purchase_order_id, "unit_price": i.unit_price}
            for i in self.db.query(models.PurchaseOrderItem).filter(models.PurchaseOrderItem.unit_price < 0).all()
        ]

        checks = [
            ("duplicate_product_codes", "Duplicate product codes", "Product codes used by more than one product", duplicate_codes),
            ("empty_required_fields", "Empty required fields", "Products missing a code or name", empty_fields),
            ("negative_prices", "Negative prices", "Products or order lines with a negative price", negative_prices),
        ]

        for name, title, description, findings in checks:
            if findings:
                results.append(self._result(
                    category, name, IntegritySeverity.INFO,
                    title=f"Data quality: {title}",
                    description=f"{description} ({len(findings)})",
                    affected_records=len(findings),
                    sample_data=findings,
                    suggested_actions=["Clean up the affected records"],
                ))

        if not results:
            results.append(self._all_clear(
                category,
                title="Data quality good",
                description="No data quality findings",
            ))
        return results
