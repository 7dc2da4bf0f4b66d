"""
Integrity Engine Tests

Each category re-derives cached figures from the ledger and reports
mismatches with the severity its category carries.
"""

import pytest
from datetime import date, timedelta
from unittest.mock import patch

import models
from conftest import item_for
from delivery_errors import PartialDeliveryError
from delivery_service import DeliveryService
from delivery_validator import DeliveryRequest
from integrity_engine import IntegrityEngine
from integrity_models import (
    IntegrityCategory, IntegritySeverity, OverallStatus, IntegrityCheckConfig
)
from ledger_store import LedgerStore
from order_service import create_product


def submit(db_session, ledger_config, clock, order, **kwargs):
    clock.advance(seconds=60)
    kwargs.setdefault("scheduled_date", date(2026, 3, 10))
    return DeliveryService(db_session, ledger_config, clock=clock).submit(
        DeliveryRequest(order_id=order.id, **kwargs)
    )


def engine_for(db_session, ledger_config, clock, **config):
    return IntegrityEngine(
        db_session,
        config=IntegrityCheckConfig(**config),
        ledger_config=ledger_config,
        clock=clock,
    )


def ids(results):
    return {r.id for r in results}


def by_id(results, result_id):
    return next(r for r in results if r.id == result_id)


def corrupted_stock_product(db_session):
    """Scenario E: in 10, 5, 2 and out 4, stored stock overwritten to 0."""
    product = create_product(db_session, "SCN-E", "Scenario E", purchase_price=10.0)
    for movement_type, qty in (("in", 10), ("in", 5), ("in", 2), ("out", 4)):
        db_session.add(models.InventoryMovement(
            product_id=product.id,
            movement_type=movement_type,
            quantity=qty,
            unit_price=10.0,
            total_amount=qty * 10.0,
        ))
    product.current_stock = 0.0
    db_session.commit()
    return product


@pytest.mark.unit
class TestCleanLedger:

    def test_scenario_a_reports_success(self, db_session, ledger_config, clock, sample_order):
        submit(db_session, ledger_config, clock, sample_order, amount=4000.0)

        report = engine_for(db_session, ledger_config, clock).run_complete_check()

        assert ids(report.results) == {
            "financial_ok", "inventory_ok", "delivery_ok",
            "reference_ok", "business_rule_ok", "data_quality_ok",
        }
        assert report.summary.overall_status == OverallStatus.HEALTHY
        assert report.summary.success_checks == 6
        assert report.summary.total_checks == 6

    def test_empty_database_is_healthy(self, db_session, ledger_config, clock):
        report = engine_for(db_session, ledger_config, clock).run_complete_check()
        assert report.summary.overall_status == OverallStatus.HEALTHY

    def test_single_category(self, db_session, ledger_config, clock, sample_order):
        results = engine_for(db_session, ledger_config, clock).run_category_check("financial")
        assert [r.id for r in results] == ["financial_ok"]
        assert results[0].severity == IntegritySeverity.SUCCESS

    def test_unknown_category(self, db_session, ledger_config, clock):
        with pytest.raises(ValueError):
            engine_for(db_session, ledger_config, clock).run_category_check("weather")

    def test_report_serializes(self, db_session, ledger_config, clock, sample_order):
        data = engine_for(db_session, ledger_config, clock).run_complete_check().to_dict()
        assert data["summary"]["overall_status"] == "healthy"
        assert data["results"][0]["category"] == "financial"
        assert data["results"][0]["severity"] == "success"


@pytest.mark.unit
class TestFinancialAndDelivery:

    def test_remaining_cache_drift(self, db_session, ledger_config, clock, sample_order):
        submit(db_session, ledger_config, clock, sample_order, amount=4000.0)
        order = db_session.get(models.PurchaseOrder, sample_order.id)
        order.remaining_amount = 10000.0
        db_session.commit()

        report = engine_for(db_session, ledger_config, clock).run_complete_check()

        drift = by_id(report.results, "financial_remaining_balance")
        assert drift.severity == IntegritySeverity.CRITICAL
        assert drift.sample_data[0]["derived_remaining"] == pytest.approx(6000.0)
        assert drift.sample_data[0]["difference"] == pytest.approx(-4000.0)

        mismatch = by_id(report.results, "delivery_amount_mismatch")
        assert mismatch.severity == IntegritySeverity.CRITICAL
        assert mismatch.sample_data[0]["delivered_amount"] == pytest.approx(4000.0)
        assert "financial_ok" not in ids(report.results)
        assert report.summary.overall_status == OverallStatus.CRITICAL

    def test_order_total_differs_from_items(self, db_session, ledger_config, clock, sample_order):
        order = db_session.get(models.PurchaseOrder, sample_order.id)
        order.total_amount = 12000.0
        order.remaining_amount = 12000.0
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check(IntegrityCategory.FINANCIAL)

        entry = by_id(results, "financial_order_totals")
        assert entry.affected_records == 1
        assert entry.sample_data[0]["difference"] == pytest.approx(2000.0)
        assert entry.query_used

    def test_over_delivery(self, db_session, ledger_config, clock, sample_order):
        submit(db_session, ledger_config, clock, sample_order, amount=9000.0)
        # Items and total shrink after the fact
        order = db_session.get(models.PurchaseOrder, sample_order.id)
        for item in order.items:
            item.total_amount = item.total_amount / 2
        order.total_amount = 5000.0
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check("financial")
        entry = by_id(results, "financial_over_delivered")
        assert entry.sample_data[0]["over_amount"] == pytest.approx(4000.0)

    def test_sequence_gap(self, db_session, ledger_config, clock, sample_order):
        submit(db_session, ledger_config, clock, sample_order, amount=1000.0)
        submit(db_session, ledger_config, clock, sample_order, amount=1500.0)
        db_session.query(models.Delivery).filter(
            models.Delivery.delivery_sequence == 1
        ).update({models.Delivery.status: models.DeliveryStatus.CANCELLED.value}, synchronize_session=False)
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check("delivery")
        gap = by_id(results, "delivery_sequence_gaps")
        assert gap.severity == IntegritySeverity.WARNING
        assert gap.sample_data[0]["missing"] == [1]


@pytest.mark.unit
class TestPendingAllocations:

    def record_without_allocation(self, db_session, ledger_config, clock, order):
        with patch.object(LedgerStore, "increment_stock", side_effect=RuntimeError("down")):
            with pytest.raises(PartialDeliveryError):
                submit(db_session, ledger_config, clock, order, mode="full")

    def test_young_pending_is_info(self, db_session, ledger_config, clock, sample_order):
        self.record_without_allocation(db_session, ledger_config, clock, sample_order)
        clock.advance(minutes=2)

        results = engine_for(db_session, ledger_config, clock).run_category_check("delivery")

        entry = by_id(results, "delivery_allocation_in_progress")
        assert entry.severity == IntegritySeverity.INFO
        assert entry.sample_data[0]["allocation_error"] == "down"
        # Info alone still counts as clean
        assert "delivery_ok" in ids(results)

    def test_old_pending_is_stalled(self, db_session, ledger_config, clock, sample_order):
        self.record_without_allocation(db_session, ledger_config, clock, sample_order)
        clock.advance(minutes=30)

        results = engine_for(db_session, ledger_config, clock).run_category_check("delivery")

        assert by_id(results, "delivery_allocation_stalled").severity == IntegritySeverity.WARNING
        assert "delivery_allocation_in_progress" not in ids(results)
        assert "delivery_ok" not in ids(results)


@pytest.mark.unit
class TestInventory:

    def test_scenario_e_stock_mismatch(self, db_session, ledger_config, clock):
        product = corrupted_stock_product(db_session)

        results = engine_for(db_session, ledger_config, clock).run_category_check("inventory")

        entry = by_id(results, "inventory_stock_mismatch")
        assert entry.severity == IntegritySeverity.WARNING
        assert entry.affected_records == 1
        sample = entry.sample_data[0]
        assert sample["product_id"] == product.id
        assert sample["stored_stock"] == 0.0
        assert sample["derived_stock"] == 13.0
        assert sample["difference"] == 13.0

    def test_duplicate_movements(self, db_session, ledger_config, clock, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        outcome = submit(db_session, ledger_config, clock, sample_order,
                         amount=1200.0, mode="amount_and_quantity", quantities={widget_item.id: 2})
        movement = db_session.query(models.InventoryMovement).filter(
            models.InventoryMovement.delivery_id == outcome.delivery_id
        ).one()
        db_session.add(models.InventoryMovement(
            product_id=movement.product_id,
            purchase_order_item_id=movement.purchase_order_item_id,
            movement_type="in",
            quantity=movement.quantity,
            unit_price=movement.unit_price,
            total_amount=movement.total_amount,
            delivery_id=movement.delivery_id,
        ))
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check("inventory")

        duplicate = by_id(results, "inventory_duplicate_movements")
        assert duplicate.affected_records == 1
        assert duplicate.sample_data[0]["count"] == 2
        # The extra movement also pushes derived stock past the cache
        assert "inventory_stock_mismatch" in ids(results)

    def test_sample_data_is_capped(self, db_session, ledger_config, clock):
        for n in range(4):
            product = create_product(db_session, f"P-{n}", f"Part {n}")
            product.current_stock = 5.0
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock, max_sample_records=2).run_category_check("inventory")
        entry = by_id(results, "inventory_stock_mismatch")
        assert entry.affected_records == 4
        assert len(entry.sample_data) == 2

    def test_sample_data_can_be_disabled(self, db_session, ledger_config, clock):
        corrupted_stock_product(db_session)
        results = engine_for(db_session, ledger_config, clock, include_sample_data=False).run_category_check("inventory")
        assert by_id(results, "inventory_stock_mismatch").sample_data == []


@pytest.mark.unit
class TestReferences:

    def test_orphaned_movement_and_allocation(self, db_session, ledger_config, clock, products):
        db_session.add(models.InventoryMovement(
            product_id=products["widget"].id, movement_type="in", quantity=1.0, delivery_id="ghost-delivery"
        ))
        db_session.add(models.AccountingAllocation(
            delivery_id="ghost-delivery", product_id=products["widget"].id,
            allocated_amount=10.0, allocation_ratio=0.1
        ))
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check("reference")

        assert ids(results) == {
            "reference_inventory_movements_delivery_id",
            "reference_accounting_allocations_delivery_id",
        }
        assert all(r.severity == IntegritySeverity.CRITICAL for r in results)
        entry = by_id(results, "reference_inventory_movements_delivery_id")
        assert entry.sample_data[0]["delivery_id"] == "ghost-delivery"

    def test_orphaned_item_and_product_links(self, db_session, ledger_config, clock, sample_order, products):
        outcome = submit(db_session, ledger_config, clock, sample_order, amount=1000.0)
        db_session.add(models.InventoryMovement(
            product_id=products["widget"].id, movement_type="in", quantity=1.0, purchase_order_item_id=9999
        ))
        db_session.add(models.AccountingAllocation(
            delivery_id=outcome.delivery_id, product_id=8888, purchase_order_item_id=9999,
            allocated_amount=10.0, allocation_ratio=0.1
        ))
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check("reference")

        assert ids(results) == {
            "reference_inventory_movements_purchase_order_item_id",
            "reference_accounting_allocations_product_id",
            "reference_accounting_allocations_purchase_order_item_id",
        }
        entry = by_id(results, "reference_accounting_allocations_product_id")
        assert entry.sample_data[0]["product_id"] == 8888


@pytest.mark.unit
class TestBusinessRulesAndDataQuality:

    def test_business_rule_violations(self, db_session, ledger_config, clock, make_order, products):
        make_order("PO-LATE", deadline=clock.now.date() - timedelta(days=3))
        products["gadget"].current_stock = -2.0
        db_session.commit()

        results = engine_for(db_session, ledger_config, clock).run_category_check("business_rule")

        assert {"business_rule_overdue_open_orders", "business_rule_negative_stock"} <= ids(results)
        assert all(r.severity == IntegritySeverity.WARNING for r in results)
        assert by_id(results, "business_rule_overdue_open_orders").sample_data[0]["order_no"] == "PO-LATE"

    def test_settled_order_past_deadline_is_not_overdue(self, db_session, ledger_config, clock, make_order):
        order = make_order("PO-DONE", deadline=date(2026, 3, 1))
        submit(db_session, ledger_config, clock, order, mode="full")
        results = engine_for(db_session, ledger_config, clock).run_category_check("business_rule")
        assert ids(results) == {"business_rule_ok"}

    def test_future_dated_delivery(self, db_session, ledger_config, clock, sample_order):
        outcome = submit(db_session, ledger_config, clock, sample_order, amount=500.0)
        clock.advance(minutes=-60 * 24 * 2)

        results = engine_for(db_session, ledger_config, clock).run_category_check("business_rule")

        entry = by_id(results, "business_rule_future_dated_deliveries")
        assert entry.sample_data[0]["delivery_id"] == outcome.delivery_id

    def test_data_quality_findings_are_info(self, db_session, ledger_config, clock, products):
        create_product(db_session, "WID-001", "Widget copy")
        create_product(db_session, "", "No code", purchase_price=-1.0)

        report = engine_for(db_session, ledger_config, clock).run_complete_check()
        quality = [r for r in report.results if r.category == IntegrityCategory.DATA_QUALITY]

        assert ids(quality) == {
            "data_quality_duplicate_product_codes",
            "data_quality_empty_required_fields",
            "data_quality_negative_prices",
        }
        assert all(r.severity == IntegritySeverity.INFO for r in quality)
        assert report.summary.info_issues == 3
        assert report.summary.overall_status == OverallStatus.HEALTHY


@pytest.mark.unit
class TestFailureIsolation:

    def test_failing_category_becomes_critical_entry(self, db_session, ledger_config, clock, sample_order):
        with patch.object(IntegrityEngine, "_check_inventory", side_effect=RuntimeError("disk on fire")):
            report = engine_for(db_session, ledger_config, clock).run_complete_check()

        failed = by_id(report.results, "inventory_error")
        assert failed.severity == IntegritySeverity.CRITICAL
        assert "disk on fire" in failed.description
        # Every other category still ran
        assert {"financial_ok", "delivery_ok", "reference_ok", "business_rule_ok", "data_quality_ok"} <= ids(report.results)
        assert report.summary.overall_status == OverallStatus.CRITICAL

    def test_deadline_skips_remaining_categories(self, db_session, ledger_config, clock):
        ticks = iter([0.0, 0.5, 2.0])

        def fake_time():
            return next(ticks, 2.0)

        with patch("integrity_engine.time") as mock_time:
            mock_time.time.side_effect = fake_time
            report = engine_for(db_session, ledger_config, clock, timeout_ms=1000).run_complete_check()

        assert by_id(report.results, "financial_ok").severity == IntegritySeverity.SUCCESS
        timed_out = [r for r in report.results if r.id.endswith("_timeout")]
        assert len(timed_out) == 5
        assert all(r.severity == IntegritySeverity.CRITICAL for r in timed_out)

    def test_enabled_categories(self, db_session, ledger_config, clock):
        report = engine_for(
            db_session, ledger_config, clock,
            enabled_categories=[IntegrityCategory.INVENTORY, IntegrityCategory.REFERENCE]
        ).run_complete_check()
        assert ids(report.results) == {"inventory_ok", "reference_ok"}
