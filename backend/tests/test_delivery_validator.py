"""
Delivery Validator Tests

Every rejection names the exact constraint that failed and writes nothing.
"""

import pytest
from datetime import date

import models
from conftest import item_for
from delivery_errors import DeliveryValidationError
from delivery_validator import DeliveryRequest, DeliveryValidator
from delivery_service import DeliveryService


SCHEDULED = date(2026, 3, 10)


def request_for(order, **kwargs):
    kwargs.setdefault("scheduled_date", SCHEDULED)
    kwargs.setdefault("amount", 1000.0)
    return DeliveryRequest(order_id=order.id, **kwargs)


def deliver(db_session, ledger_config, clock, order, **kwargs):
    clock.advance(seconds=60)
    return DeliveryService(db_session, ledger_config, clock=clock).submit(request_for(order, **kwargs))


@pytest.mark.unit
class TestBasicConstraints:

    def test_missing_scheduled_date(self, db_session, ledger_config, sample_order):
        validator = DeliveryValidator(db_session, ledger_config)
        with pytest.raises(DeliveryValidationError) as exc:
            validator.validate(request_for(sample_order, scheduled_date=None))
        assert exc.value.code == "MISSING_SCHEDULED_DATE"

    def test_unknown_order(self, db_session, ledger_config, sample_order):
        validator = DeliveryValidator(db_session, ledger_config)
        with pytest.raises(DeliveryValidationError) as exc:
            validator.validate(DeliveryRequest(order_id=9999, amount=10.0, scheduled_date=SCHEDULED))
        assert exc.value.code == "ORDER_NOT_FOUND"
        assert not exc.value.is_user_fixable

    def test_cancelled_order(self, db_session, ledger_config, sample_order):
        sample_order.status = models.OrderStatus.CANCELLED.value
        db_session.commit()
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order))
        assert exc.value.code == "ORDER_CLOSED"

    def test_unknown_mode(self, db_session, ledger_config, sample_order):
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order, mode="partial"))
        assert exc.value.code == "INVALID_MODE"

    def test_unknown_reason(self, db_session, ledger_config, sample_order):
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(
                request_for(sample_order, reason_code="because")
            )
        assert exc.value.code == "INVALID_REASON"

    @pytest.mark.parametrize("amount", [0, -5.0, None])
    def test_non_positive_amount(self, db_session, ledger_config, sample_order, amount):
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order, amount=amount))
        assert exc.value.code == "INVALID_AMOUNT"

    def test_normalizes_memo_and_reason(self, db_session, ledger_config, sample_order):
        normalized = DeliveryValidator(db_session, ledger_config).validate(
            request_for(sample_order, reason_code="quality-check", memo="  first batch  ")
        )
        assert normalized.reason == models.DeliveryReason.QUALITY_CHECK
        assert normalized.memo == "first batch"
        assert normalized.remaining_before == 10000.0
        assert normalized.remaining_after == 9000.0


@pytest.mark.unit
class TestRemainingBalance:

    def test_exceeding_remaining_is_rejected_with_excess(self, db_session, ledger_config, clock, sample_order):
        """Scenario B: remaining 6,000, delivery of 7,000."""
        deliver(db_session, ledger_config, clock, sample_order, amount=4000.0)

        with pytest.raises(DeliveryValidationError) as exc:
            deliver(db_session, ledger_config, clock, sample_order, amount=7000.0)

        assert exc.value.code == "AMOUNT_EXCEEDED"
        assert "exceeds remaining balance by 1000.00" in exc.value.message
        assert exc.value.details["remaining_amount"] == pytest.approx(6000.0)
        assert db_session.query(models.Delivery).count() == 1

    def test_remaining_is_derived_not_cached(self, db_session, ledger_config, clock, sample_order):
        deliver(db_session, ledger_config, clock, sample_order, amount=4000.0)

        # A stale cache must not open up extra room
        sample_order.remaining_amount = 10000.0
        db_session.commit()

        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order, amount=6500.0))
        assert exc.value.code == "AMOUNT_EXCEEDED"

    def test_exact_remaining_is_accepted(self, db_session, ledger_config, sample_order):
        normalized = DeliveryValidator(db_session, ledger_config).validate(
            request_for(sample_order, amount=10000.0)
        )
        assert normalized.remaining_after == 0.0

    def test_one_cent_over_is_rejected(self, db_session, ledger_config, sample_order):
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order, amount=10000.01))
        assert exc.value.code == "AMOUNT_EXCEEDED"

    def test_amount_rounded_to_cents(self, db_session, ledger_config, sample_order):
        normalized = DeliveryValidator(db_session, ledger_config).validate(
            request_for(sample_order, amount=10000.004)
        )
        assert normalized.amount == 10000.0
        assert normalized.remaining_after == 0.0

    @pytest.mark.parametrize("amount", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_amount(self, db_session, ledger_config, clock, sample_order, amount):
        with pytest.raises(DeliveryValidationError) as exc:
            deliver(db_session, ledger_config, clock, sample_order, amount=amount)
        assert exc.value.code == "INVALID_AMOUNT"
        assert db_session.query(models.Delivery).count() == 0

    def test_full_mode_needs_no_amount(self, db_session, ledger_config, sample_order):
        normalized = DeliveryValidator(db_session, ledger_config).validate(
            DeliveryRequest(order_id=sample_order.id, mode="full", scheduled_date=SCHEDULED)
        )
        assert normalized.amount == 10000.0
        assert normalized.remaining_after == 0.0


@pytest.mark.unit
class TestAmountAndQuantity:

    def test_requires_a_positive_quantity(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, mode="amount_and_quantity", quantities={widget_item.id: 0}
            ))
        assert exc.value.code == "NO_QUANTITY"

    def test_negative_quantity(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, mode="amount_and_quantity", quantities={widget_item.id: -1}
            ))
        assert exc.value.code == "INVALID_QUANTITY"

    def test_nan_quantity(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, mode="amount_and_quantity", quantities={widget_item.id: float("nan")}
            ))
        assert exc.value.code == "INVALID_QUANTITY"

    def test_item_from_another_order(self, db_session, ledger_config, sample_order, make_order, products):
        other = make_order("PO-OTHER")
        foreign_item = item_for(other, products["widget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, mode="amount_and_quantity", quantities={foreign_item.id: 1}
            ))
        assert exc.value.code == "UNKNOWN_ITEM"

    def test_quantity_above_remaining(self, db_session, ledger_config, sample_order, products):
        gadget_item = item_for(sample_order, products["gadget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, mode="amount_and_quantity", quantities={gadget_item.id: 6}
            ))
        assert exc.value.code == "QUANTITY_EXCEEDED"
        assert exc.value.details["remaining"] == 5.0

    def test_partial_items_with_partial_amount(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        normalized = DeliveryValidator(db_session, ledger_config).validate(request_for(
            sample_order, amount=1800.0, mode="amount_and_quantity", quantities={str(widget_item.id): 3}
        ))
        assert normalized.quantities == {widget_item.id: 3.0}

    def test_completing_requested_items_requires_full_amount(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, amount=6000.0, mode="amount_and_quantity", quantities={widget_item.id: 10}
            ))
        assert exc.value.code == "SETTLEMENT_INCONSISTENT"
        assert exc.value.details["items_completed"] is True

    def test_full_amount_with_open_items_is_rejected(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                sample_order, amount=10000.0, mode="amount_and_quantity", quantities={widget_item.id: 4}
            ))
        assert exc.value.code == "SETTLEMENT_INCONSISTENT"
        assert exc.value.details["items_completed"] is False

    def test_settlement_within_tolerance(self, db_session, ledger_config, sample_order, products):
        widget_item = item_for(sample_order, products["widget"])
        gadget_item = item_for(sample_order, products["gadget"])
        normalized = DeliveryValidator(db_session, ledger_config).validate(request_for(
            sample_order, amount=9997.0, mode="amount_and_quantity",
            quantities={widget_item.id: 10, gadget_item.id: 5}
        ))
        assert normalized.amount == 9997.0

    def test_scenario_c_last_units_settle_balance(self, db_session, ledger_config, clock, make_order, products):
        """Item of 5 with 3 delivered: delivering the last 2 with the full balance."""
        order = make_order("PO-C", lines=[("gadget", 5, 800.0)])
        gadget_item = item_for(order, products["gadget"])
        deliver(db_session, ledger_config, clock, order, amount=2400.0,
                mode="amount_and_quantity", quantities={gadget_item.id: 3})

        normalized = DeliveryValidator(db_session, ledger_config).validate(request_for(
            order, amount=1600.0, mode="amount_and_quantity", quantities={gadget_item.id: 2}
        ))
        assert normalized.remaining_after == pytest.approx(0.0)

    def test_scenario_c_other_item_left_open(self, db_session, ledger_config, clock, make_order, products):
        """Same, but another requested item does not reach zero: inconsistent."""
        order = make_order("PO-C2")
        widget_item = item_for(order, products["widget"])
        gadget_item = item_for(order, products["gadget"])
        deliver(db_session, ledger_config, clock, order, amount=2400.0,
                mode="amount_and_quantity", quantities={gadget_item.id: 3})

        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(
                order, amount=7600.0, mode="amount_and_quantity",
                quantities={gadget_item.id: 2, widget_item.id: 4}
            ))
        assert exc.value.code == "SETTLEMENT_INCONSISTENT"


@pytest.mark.unit
class TestFullMode:

    def test_forces_amount_and_quantities(self, db_session, ledger_config, sample_order, products):
        normalized = DeliveryValidator(db_session, ledger_config).validate(
            request_for(sample_order, mode="full", amount=None)
        )
        assert normalized.amount == 10000.0
        assert normalized.quantities == {
            item_for(sample_order, products["widget"]).id: 10.0,
            item_for(sample_order, products["gadget"]).id: 5.0,
        }

    def test_insufficient_stock_rejects_outright(self, db_session, ledger_config, sample_order, products):
        products["gadget"].current_stock = 4.0
        db_session.commit()

        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order, mode="full"))
        assert exc.value.code == "INSUFFICIENT_STOCK"
        shortage = exc.value.details["shortages"][0]
        assert shortage["product_id"] == products["gadget"].id
        assert shortage["required"] == 5.0

    def test_nothing_left_to_deliver(self, db_session, ledger_config, clock, sample_order):
        deliver(db_session, ledger_config, clock, sample_order, amount=10000.0)
        with pytest.raises(DeliveryValidationError) as exc:
            DeliveryValidator(db_session, ledger_config).validate(request_for(sample_order, mode="full"))
        assert exc.value.code == "INVALID_AMOUNT"
