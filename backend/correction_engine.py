"""
Correction Engine

Rewrites cached ledger figures from their derivations. Corrections are
irreversible apart from the backup taken before the first write, so:

- only one correction runs at a time (process-wide lock, never waited on)
- nothing is backed up or written when there is nothing to fix
- each fix commits on its own; a failing fix is reported and the rest still run
- order caches are rewritten under the delivery pipeline's per-order locks, stock
  with a single locked UPDATE, so concurrent deliveries are never overwritten

Fixes, in the order fix_all() applies them:
1. duplicate_movements: delete repeated movements of one delivery line, keep the earliest
2. order_totals:        total_amount = sum(item totals)
3. remaining_amounts:   remaining_amount and status re-derived from confirmed deliveries
4. inventory:           current_stock = sum(in) - sum(out)
"""

from typing import Dict, Any, List, Optional, Callable
from datetime import datetime
from dataclasses import dataclass, field, asdict
from sqlalchemy.orm import Session
from sqlalchemy import func
import threading
import time
import logging

from derivations import derive_all_product_stock, refresh_order_cache, derive_remaining_amount, derive_order_status
from ledger_store import LedgerStore, order_locks
from ledger_config import ReconciliationConfig
import models

logger = logging.getLogger(__name__)

FIXES = ("duplicate_movements", "order_totals", "remaining_amounts", "inventory")

_correction_lock = threading.Lock()


class CorrectionInProgressError(Exception):
    """Another correction or restore currently holds the lock."""


class BackupNotFoundError(Exception):
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class FixResult:
    fix: str
    fixed_count: int = 0
    error_count: int = 0
    error: Optional[str] = None
    execution_time_ms: float = 0.0


@dataclass
class CorrectionReport:
    backup_id: Optional[str]
    backup_created_at: Optional[datetime]
    results: List[FixResult] = field(default_factory=list)

    @property
    def total_fixed(self) -> int:
        return sum(r.fixed_count for r in self.results)

    @property
    def total_errors(self) -> int:
        return sum(r.error_count for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "backup_created_at": self.backup_created_at.isoformat() if self.backup_created_at else None,
            "total_fixed": self.total_fixed,
            "total_errors": self.total_errors,
            "results": [asdict(r) for r in self.results],
        }


# ═══════════════════════════════════════════════════════════════════════════════
# CORRECTION ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class CorrectionEngine:
    """
    Engine for repairing cache drift found by the integrity engine.
    """

    def __init__(
        self,
        db: Session,
        ledger_config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], datetime] = models.utcnow
    ):
        self.db = db
        self.ledger_config = ledger_config or ReconciliationConfig()
        self.clock = clock
        self.TOLERANCE = self.ledger_config.amount_tolerance
        self.store = LedgerStore(db)

        self._fixers: Dict[str, Callable[[], int]] = {
            "duplicate_movements": self._fix_duplicate_movements,
            "order_totals": self._fix_order_totals,
            "remaining_amounts": self._fix_remaining_amounts,
            "inventory": self._fix_inventory,
        }

    def fix_category(self, fix: str) -> CorrectionReport:
        """Run a single fix. Unknown names raise ValueError."""
        if fix not in self._fixers:
            raise ValueError(f"Unknown correction '{fix}'. Available: {', '.join(FIXES)}")
        return self._run([fix], reason=f"before {fix} correction")

    def fix_all(self) -> CorrectionReport:
        """Run every fix in order."""
        return self._run(list(FIXES), reason="before full correction")

    # ═══════════════════════════════════════════════════════════════════════════
    # PREVIEW
    # ═══════════════════════════════════════════════════════════════════════════

    def preview(self, fixes=FIXES) -> Dict[str, int]:
        """Rows each fix would change right now."""
        counters = {
            "duplicate_movements": lambda: len(self._duplicate_movement_ids()),
            "order_totals": lambda: len(self._order_total_changes()),
            "remaining_amounts": self._count_remaining_changes,
            "inventory": lambda: len(self._stock_changes()),
        }
        return {fix: counters[fix]() for fix in fixes}

    def _duplicate_movement_ids(self) -> List[int]:
        groups = self.db.query(
            models.InventoryMovement.delivery_id,
            models.InventoryMovement.product_id,
            models.InventoryMovement.purchase_order_item_id,
        ).filter(
            models.InventoryMovement.delivery_id.isnot(None)
        ).group_by(
            models.InventoryMovement.delivery_id,
            models.InventoryMovement.product_id,
            models.InventoryMovement.purchase_order_item_id,
        ).having(func.count(models.InventoryMovement.id) > 1).all()

        extra = []
        for delivery_id, product_id, item_id in groups:
            query = self.db.query(models.InventoryMovement.id).filter(
                models.InventoryMovement.delivery_id == delivery_id,
                models.InventoryMovement.product_id == product_id,
            )
            if item_id is None:
                query = query.filter(models.InventoryMovement.purchase_order_item_id.is_(None))
            else:
                query = query.filter(models.InventoryMovement.purchase_order_item_id == item_id)
            ids = [row_id for (row_id,) in query.order_by(
                models.InventoryMovement.created_at, models.InventoryMovement.id
            ).all()]
            extra.extend(ids[1:])
        return extra

    def _order_total_changes(self) -> Dict[int, float]:
        rows = self.db.query(
            models.PurchaseOrderItem.purchase_order_id,
            func.sum(models.PurchaseOrderItem.total_amount),
        ).group_by(models.PurchaseOrderItem.purchase_order_id).all()
        item_totals = {order_id: float(total or 0.0) for order_id, total in rows}

        changes = {}
        for order in self.db.query(models.PurchaseOrder).all():
            if order.id not in item_totals:
                continue
            if abs(float(order.total_amount or 0.0) - item_totals[order.id]) > self.TOLERANCE:
                changes[order.id] = item_totals[order.id]
        return changes

    def _count_remaining_changes(self) -> int:
        count = 0
        for order in self.db.query(models.PurchaseOrder).all():
            remaining = derive_remaining_amount(self.db, order)
            status = derive_order_status(order, remaining, self.TOLERANCE)
            if abs(float(order.remaining_amount or 0.0) - remaining) > self.TOLERANCE or order.status != status:
                count += 1
        return count

    def _stock_changes(self) -> Dict[int, float]:
        derived = derive_all_product_stock(self.db)
        changes = {}
        for product in self.db.query(models.Product).all():
            expected = derived.get(product.id, 0.0)
            if abs(float(product.current_stock or 0.0) - expected) > self.TOLERANCE:
                changes[product.id] = expected
        return changes

    # ═══════════════════════════════════════════════════════════════════════════
    # BACKUP / RESTORE
    # ═══════════════════════════════════════════════════════════════════════════

    def create_backup(self, reason: Optional[str] = None) -> models.IntegrityBackup:
        """
        Snapshot every field a correction can overwrite, plus the movements a
        duplicate cleanup could delete. Commits.
        """
        orders = [
            {
                "id": o.id,
                "total_amount": o.total_amount,
                "remaining_amount": o.remaining_amount,
                "status": o.status,
            }
            for o in self.db.query(models.PurchaseOrder).order_by(models.PurchaseOrder.id).all()
        ]
        products = [
            {"id": p.id, "current_stock": p.current_stock}
            for p in self.db.query(models.Product).order_by(models.Product.id).all()
        ]

        duplicate_ids = self._duplicate_movement_ids()
        movements = []
        if duplicate_ids:
            for m in self.db.query(models.InventoryMovement).filter(
                models.InventoryMovement.id.in_(duplicate_ids)
            ).all():
                movements.append({
                    "id": m.id,
                    "product_id": m.product_id,
                    "purchase_order_item_id": m.purchase_order_item_id,
                    "movement_type": m.movement_type,
                    "quantity": m.quantity,
                    "unit_price": m.unit_price,
                    "total_amount": m.total_amount,
                    "delivery_id": m.delivery_id,
                    "delivery_sequence": m.delivery_sequence,
                    "memo": m.memo,
                    "created_at": m.created_at.isoformat() if m.created_at else None,
                })

        backup = models.IntegrityBackup(
            backup_id=models.new_uuid(),
            created_at=self.clock(),
            reason=reason,
            tables_json={
                "purchase_orders": orders,
                "products": products,
                "inventory_movements": movements,
            },
            record_counts_json={
                "purchase_orders": len(orders),
                "products": len(products),
                "inventory_movements": len(movements),
            },
        )
        self.db.add(backup)
        self.db.commit()

        logger.warning(
            f"Integrity backup {backup.backup_id} created: {len(orders)} order(s), "
            f"{len(products)} product(s), {len(movements)} movement(s)"
        )
        return backup

    def restore_backup(self, backup_id: str) -> Dict[str, int]:
        """
        Put every backed-up field back and re-insert deleted movements.

        Raises:
            BackupNotFoundError
            CorrectionInProgressError
        """
        if not _correction_lock.acquire(blocking=False):
            raise CorrectionInProgressError("A correction is already running")
        try:
            backup = self.db.query(models.IntegrityBackup).filter(
                models.IntegrityBackup.backup_id == backup_id
            ).first()
            if not backup:
                raise BackupNotFoundError(f"Backup {backup_id} not found")

            tables = backup.tables_json or {}
            restored = {"purchase_orders": 0, "products": 0, "inventory_movements": 0}

            try:
                for row in tables.get("purchase_orders", []):
                    order = self.db.get(models.PurchaseOrder, row["id"])
                    if order:
                        order.total_amount = row["total_amount"]
                        order.remaining_amount = row["remaining_amount"]
                        order.status = row["status"]
                        restored["purchase_orders"] += 1

                for row in tables.get("products", []):
                    product = self.db.get(models.Product, row["id"])
                    if product:
                        product.current_stock = row["current_stock"]
                        restored["products"] += 1

                for row in tables.get("inventory_movements", []):
                    if self.db.get(models.InventoryMovement, row["id"]):
                        continue
                    data = dict(row)
                    if data.get("created_at"):
                        data["created_at"] = datetime.fromisoformat(data["created_at"])
                    self.db.add(models.InventoryMovement(**data))
                    restored["inventory_movements"] += 1

                backup.restored_at = self.clock()
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            logger.warning(f"Integrity backup {backup_id} restored: {restored}")
            return restored
        finally:
            _correction_lock.release()

    # ═══════════════════════════════════════════════════════════════════════════
    # RUNNING
    # ═══════════════════════════════════════════════════════════════════════════

    def _run(self, fixes: List[str], reason: str) -> CorrectionReport:
        if not _correction_lock.acquire(blocking=False):
            raise CorrectionInProgressError("A correction is already running")
        try:
            pending = self.preview(fixes)
            if not any(pending.values()):
                logger.info(f"Nothing to correct for {', '.join(fixes)}")
                return CorrectionReport(
                    backup_id=None,
                    backup_created_at=None,
                    results=[FixResult(fix=fix) for fix in fixes],
                )

            backup = self.create_backup(reason=reason)
            report = CorrectionReport(backup_id=backup.backup_id, backup_created_at=backup.created_at)
            for fix in fixes:
                report.results.append(self._apply(fix))

            logger.warning(
                f"Correction finished: {report.total_fixed} row(s) fixed, {report.total_errors} error(s); "
                f"backup {backup.backup_id}"
            )
            return report
        finally:
            _correction_lock.release()

    def _apply(self, fix: str) -> FixResult:
        start_time = time.time()
        try:
            fixed = self._fixers[fix]()
            self.db.commit()
            result = FixResult(fix=fix, fixed_count=fixed)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Correction '{fix}' failed: {e}")
            result = FixResult(fix=fix, error_count=1, error=str(e))
        result.execution_time_ms = (time.time() - start_time) * 1000
        return result

    # ═══════════════════════════════════════════════════════════════════════════
    # FIXES
    # ═══════════════════════════════════════════════════════════════════════════

    def _fix_duplicate_movements(self) -> int:
        ids = self._duplicate_movement_ids()
        if not ids:
            return 0

        movements = self.db.query(models.InventoryMovement).filter(
            models.InventoryMovement.id.in_(ids)
        ).all()
        products = {m.product_id for m in movements}
        for movement in movements:
            self.db.delete(movement)
        self.db.flush()

        # Keep the stock cache in step with the shortened movement log
        self.store.rederive_stock(products)

        logger.warning(f"Deleted {len(movements)} duplicated movement(s) across {len(products)} product(s)")
        return len(movements)

    def _fix_order_totals(self) -> int:
        changes = self._order_total_changes()
        for order in self.db.query(models.PurchaseOrder).filter(
            models.PurchaseOrder.id.in_(list(changes))
        ).all():
            logger.warning(f"Order {order.order_no}: total {order.total_amount} -> {changes[order.id]}")
            order.total_amount = changes[order.id]
        return len(changes)

    def _fix_remaining_amounts(self) -> int:
        """
        Re-derive under the same per-order locks and row locks the delivery
        pipeline takes, committing before they are released.
        """
        order_ids = [order_id for (order_id,) in self.db.query(models.PurchaseOrder.id).all()]
        fixed = 0
        with order_locks(order_ids):
            for order_id in order_ids:
                order = self.store.get_order(order_id, for_update=True)
                if refresh_order_cache(self.db, order, tolerance=self.TOLERANCE):
                    fixed += 1
            self.db.commit()
        return fixed

    def _fix_inventory(self) -> int:
        changes = self._stock_changes()
        if not changes:
            return 0
        for product_id, expected in changes.items():
            logger.warning(f"Product {product_id}: stock -> {expected} (re-derived from movements)")
        self.store.rederive_stock(changes)
        return len(changes)
