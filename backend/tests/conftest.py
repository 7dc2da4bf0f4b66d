"""
Pytest configuration and fixtures for the delivery ledger test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Integration tests requiring full stack
    - slow: Concurrency and stress tests (excluded by default)
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, date
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import models
from db_constraints import create_ledger_constraints
from ledger_config import ReconciliationConfig
from order_service import create_product, create_purchase_order


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Integration tests requiring full stack")
    config.addinivalue_line("markers", "slow: Concurrency/stress tests (excluded by default)")


def pytest_addoption(parser):
    """Add custom CLI options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests"
    )


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --run-slow is passed."""
    if config.getoption("--run-slow"):
        return

    skip_slow = pytest.mark.skip(reason="Need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ═══════════════════════════════════════════════════════════════════════════════
# CLOCK & CONFIG
# ═══════════════════════════════════════════════════════════════════════════════

class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0):
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def ledger_config():
    return ReconciliationConfig(
        settlement_tolerance=5.0,
        duplicate_lookback_seconds=30.0,
        duplicate_window_seconds=10.0,
        duplicate_amount_tolerance=1.0,
        amount_tolerance=0.01,
        stale_allocation_minutes=15.0,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def test_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    models.Base.metadata.create_all(bind=engine)
    create_ledger_constraints(engine)
    return engine


@pytest.fixture
def db_session(test_engine):
    """Create a fresh database session for each test"""
    Session = sessionmaker(bind=test_engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


# ═══════════════════════════════════════════════════════════════════════════════
# LEDGER FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def products(db_session):
    """Two products with enough stock for a full delivery."""
    widget = create_product(db_session, "WID-001", "Widget", purchase_price=600.0, selling_price=900.0)
    gadget = create_product(db_session, "GAD-001", "Gadget", purchase_price=800.0, selling_price=1200.0)
    for product, stock in ((widget, 20.0), (gadget, 10.0)):
        db_session.add(models.InventoryMovement(
            product_id=product.id,
            movement_type=models.MovementType.IN.value,
            quantity=stock,
            unit_price=product.purchase_price,
            total_amount=stock * product.purchase_price,
            memo="opening stock",
        ))
        product.current_stock = stock
    db_session.commit()
    return {"widget": widget, "gadget": gadget}


@pytest.fixture
def make_order(db_session, products):
    """Factory: make_order("PO-1", [("widget", qty, price), ...])"""
    counter = {"n": 0}

    def _make(order_no=None, lines=None, deadline=None):
        counter["n"] += 1
        lines = lines or [("widget", 10, 600.0), ("gadget", 5, 800.0)]
        return create_purchase_order(
            db_session,
            order_no=order_no or f"PO-{counter['n']:04d}",
            items=[
                {"product_id": products[name].id, "quantity": qty, "unit_price": price}
                for name, qty, price in lines
            ],
            delivery_deadline=deadline or date(2026, 6, 30),
        )

    return _make


@pytest.fixture
def sample_order(make_order):
    """Order total 10,000: widget 10 x 600 + gadget 5 x 800."""
    return make_order("PO-0001")


def item_for(order, product):
    """The order line for a product."""
    return next(item for item in order.items if item.product_id == product.id)
