"""
Integrity Engine Models

Result types for integrity runs. Runs are read-only and their results are
returned to the caller, not persisted.
"""

from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict
import datetime
import enum

import models


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class IntegrityCategory(str, enum.Enum):
    """The six independent audit dimensions."""
    FINANCIAL = "financial"
    INVENTORY = "inventory"
    DELIVERY = "delivery"
    REFERENCE = "reference"
    BUSINESS_RULE = "business_rule"
    DATA_QUALITY = "data_quality"


class IntegritySeverity(str, enum.Enum):
    """Severity of a single result entry."""
    CRITICAL = "critical"  # Ledger truth is wrong or unverifiable
    WARNING = "warning"    # Cache drift or a broken business rule
    INFO = "info"          # Data hygiene, in-progress pipeline state
    SUCCESS = "success"    # Category checked clean


class OverallStatus(str, enum.Enum):
    HEALTHY = "healthy"
    NEEDS_ATTENTION = "needs_attention"
    CRITICAL = "critical"


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class IntegrityCheckResult:
    """One finding (or one all-clear) from a category check."""
    id: str
    category: IntegrityCategory
    severity: IntegritySeverity
    title: str
    description: str
    affected_records: int = 0
    sample_data: List[Dict[str, Any]] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)
    query_used: Optional[str] = None
    checked_at: datetime.datetime = field(default_factory=models.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.value
        data["checked_at"] = self.checked_at.isoformat()
        return data


@dataclass
class IntegrityCheckSummary:
    total_checks: int
    critical_issues: int
    warning_issues: int
    info_issues: int
    success_checks: int
    overall_status: OverallStatus
    last_check_at: datetime.datetime
    execution_time_ms: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["overall_status"] = self.overall_status.value
        data["last_check_at"] = self.last_check_at.isoformat()
        return data


@dataclass
class IntegrityCheckConfig:
    """Which categories to run and how much evidence to keep."""
    enabled_categories: List[IntegrityCategory] = field(
        default_factory=lambda: list(IntegrityCategory)
    )
    include_sample_data: bool = True
    max_sample_records: int = 5
    timeout_ms: int = 30000


@dataclass
class IntegrityReport:
    summary: IntegrityCheckSummary
    results: List[IntegrityCheckResult]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }
