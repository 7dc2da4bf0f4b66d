"""
Reconciliation Configuration

Business tunables for the delivery pipeline and the integrity engine.
Unset values are resolved from environment variables at construction time.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class ReconciliationConfig:
    """Configuration for delivery validation, duplicate suppression and audits"""
    # Full-settlement check: amount must match the remaining balance within this
    settlement_tolerance: Optional[float] = None

    # Duplicate heuristic: look back this far, reject within the narrower window
    duplicate_lookback_seconds: Optional[float] = None
    duplicate_window_seconds: Optional[float] = None
    duplicate_amount_tolerance: Optional[float] = None

    # Float comparison tolerance for derived vs stored values
    amount_tolerance: Optional[float] = None

    # Recorded-but-unallocated deliveries older than this are stalled, not in-progress
    stale_allocation_minutes: Optional[float] = None

    def __post_init__(self):
        if self.settlement_tolerance is None:
            self.settlement_tolerance = _env_float("LEDGER_SETTLEMENT_TOLERANCE", 5.0)
        if self.duplicate_lookback_seconds is None:
            self.duplicate_lookback_seconds = _env_float("LEDGER_DUPLICATE_LOOKBACK_SECONDS", 30.0)
        if self.duplicate_window_seconds is None:
            self.duplicate_window_seconds = _env_float("LEDGER_DUPLICATE_WINDOW_SECONDS", 10.0)
        if self.duplicate_amount_tolerance is None:
            self.duplicate_amount_tolerance = _env_float("LEDGER_DUPLICATE_AMOUNT_TOLERANCE", 1.0)
        if self.amount_tolerance is None:
            self.amount_tolerance = _env_float("LEDGER_AMOUNT_TOLERANCE", 0.01)
        if self.stale_allocation_minutes is None:
            self.stale_allocation_minutes = _env_float("LEDGER_STALE_ALLOCATION_MINUTES", 15.0)

        if self.duplicate_window_seconds > self.duplicate_lookback_seconds:
            raise ValueError(
                "duplicate_window_seconds cannot exceed duplicate_lookback_seconds "
                f"({self.duplicate_window_seconds} > {self.duplicate_lookback_seconds})"
            )
