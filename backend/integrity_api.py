"""
Integrity Engine API

Expose endpoints for running integrity checks and applying corrections.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from pydantic import BaseModel
from datetime import datetime

from database import get_db
from correction_engine import (
    CorrectionEngine, CorrectionInProgressError, BackupNotFoundError, FIXES
)
from integrity_engine import IntegrityEngine
from integrity_models import IntegrityCategory, IntegrityCheckConfig


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTER
# ═══════════════════════════════════════════════════════════════════════════════

router = APIRouter(
    prefix="/integrity",
    tags=["integrity"]
)


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST / RESPONSE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class IntegrityRunRequest(BaseModel):
    categories: Optional[List[str]] = None
    include_sample_data: bool = True
    max_sample_records: int = 5
    timeout_ms: int = 30000


class IntegrityResultResponse(BaseModel):
    id: str
    category: str
    severity: str
    title: str
    description: str
    affected_records: int = 0
    sample_data: List[Dict[str, Any]] = []
    suggested_actions: List[str] = []
    query_used: Optional[str] = None
    checked_at: datetime


class IntegritySummaryResponse(BaseModel):
    total_checks: int
    critical_issues: int
    warning_issues: int
    info_issues: int
    success_checks: int
    overall_status: str
    last_check_at: datetime
    execution_time_ms: float


class IntegrityRunResponse(BaseModel):
    summary: IntegritySummaryResponse
    results: List[IntegrityResultResponse] = []


class BackupResponse(BaseModel):
    backup_id: str
    created_at: datetime
    reason: Optional[str] = None
    record_counts: Dict[str, int] = {}


class FixResultResponse(BaseModel):
    fix: str
    fixed_count: int
    error_count: int
    error: Optional[str] = None
    execution_time_ms: float


class CorrectionResponse(BaseModel):
    backup_id: Optional[str] = None
    backup_created_at: Optional[datetime] = None
    total_fixed: int
    total_errors: int
    results: List[FixResultResponse] = []


def parse_category(category: str) -> IntegrityCategory:
    try:
        return IntegrityCategory(category)
    except ValueError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown category '{category}'. Available: {[c.value for c in IntegrityCategory]}"
        )


# ═══════════════════════════════════════════════════════════════════════════════
# CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/run", response_model=IntegrityRunResponse)
def run_integrity_check(
    payload: Optional[IntegrityRunRequest] = None,
    db: Session = Depends(get_db)
):
    """
    Run the integrity checks.

    Category failures come back as critical result entries, never as errors.
    """
    payload = payload or IntegrityRunRequest()
    config = IntegrityCheckConfig(
        include_sample_data=payload.include_sample_data,
        max_sample_records=payload.max_sample_records,
        timeout_ms=payload.timeout_ms,
    )
    if payload.categories:
        config.enabled_categories = [parse_category(c) for c in payload.categories]

    return IntegrityEngine(db, config=config).run_complete_check().to_dict()


@router.get("/categories/{category}", response_model=List[IntegrityResultResponse])
def run_category(category: str, db: Session = Depends(get_db)):
    results = IntegrityEngine(db).run_category_check(parse_category(category))
    return [r.to_dict() for r in results]


# ═══════════════════════════════════════════════════════════════════════════════
# BACKUPS & CORRECTIONS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/backups", response_model=BackupResponse, status_code=201)
def create_backup(reason: Optional[str] = None, db: Session = Depends(get_db)):
    backup = CorrectionEngine(db).create_backup(reason=reason or "manual backup")
    return BackupResponse(
        backup_id=backup.backup_id,
        created_at=backup.created_at,
        reason=backup.reason,
        record_counts=backup.record_counts_json or {},
    )


@router.post("/backups/{backup_id}/restore")
def restore_backup(backup_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        restored = CorrectionEngine(db).restore_backup(backup_id)
    except BackupNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CorrectionInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"backup_id": backup_id, "restored": restored}


@router.post("/corrections", response_model=CorrectionResponse)
def fix_all(db: Session = Depends(get_db)):
    """
    Apply every correction. Irreversible apart from the returned backup;
    run outside normal traffic hours.
    """
    try:
        return CorrectionEngine(db).fix_all().to_dict()
    except CorrectionInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/corrections/{fix}", response_model=CorrectionResponse)
def fix_category(fix: str, db: Session = Depends(get_db)):
    if fix not in FIXES:
        raise HTTPException(status_code=404, detail=f"Unknown correction '{fix}'. Available: {list(FIXES)}")
    try:
        return CorrectionEngine(db).fix_category(fix).to_dict()
    except CorrectionInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
