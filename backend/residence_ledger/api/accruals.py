"""Rental accrual API endpoints.

Operational surface for the accrual engine: correct one tenancy after an
early lease end, audit all tenancies for accruals past their end date, and
post lease-start / monthly accruals.
"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.database import get_db
from residence_ledger.models.tenancy import LeaseApplication
from residence_ledger.services.error_logger import log_error
from residence_ledger.services.ledger import accrual_posting, bulk_auditor, correction
from residence_ledger.services.ledger.periods import AccrualPeriod, MalformedPeriodError
from residence_ledger.services.ledger.reversals import Actor

logger = logging.getLogger(__name__)
router = APIRouter()


# ===================================================================
# Pydantic Schemas
# ===================================================================

class EarlyLeaseEndRequest(BaseModel):
    actual_end_date: date
    reason: Optional[str] = None
    update_end_date: bool = True
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None


class ReversalOutcomeResponse(BaseModel):
    status: str
    accrual_id: str
    transaction_id: str
    month: int
    year: int
    amount: float
    description: Optional[str] = None
    reversal_entry_id: Optional[str] = None
    reversal_transaction_id: Optional[str] = None
    error: Optional[str] = None


class LeaseEndResponse(BaseModel):
    end_date_updated: bool
    previous_end_date: Optional[str] = None
    status_expired: bool
    debtor_expired: bool
    room_released: bool
    debtor_kept_for: Optional[str] = None
    warnings: list[str] = []


class CorrectionResponse(BaseModel):
    success: bool
    application_id: str
    message: str
    corrected_count: int
    corrected_accruals: list[ReversalOutcomeResponse] = []
    skipped_accruals: list[ReversalOutcomeResponse] = []
    errors: list[ReversalOutcomeResponse] = []
    lease_end: Optional[LeaseEndResponse] = None
    match_tier: int = 0
    student_name: Optional[str] = None
    email: Optional[str] = None
    original_end_date: Optional[str] = None
    actual_end_date: Optional[str] = None
    error: Optional[str] = None


class FlaggedAccrualResponse(BaseModel):
    accrual_id: str
    transaction_id: str
    month: int
    year: int
    amount: float
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    issue: str
    was_created_after_lease_update: bool

    model_config = {"from_attributes": True}


class TenancyIssueResponse(BaseModel):
    application_id: str
    student_id: Optional[str] = None
    student_name: str
    email: Optional[str] = None
    lease_start_date: Optional[date] = None
    lease_end_date: Optional[date] = None
    lease_was_updated: bool
    lease_created_at: Optional[datetime] = None
    lease_updated_at: Optional[datetime] = None
    incorrect_accruals_count: int
    accruals_created_after_update: int
    incorrect_accruals: list[FlaggedAccrualResponse]

    model_config = {"from_attributes": True}


class AuditReportResponse(BaseModel):
    year: int
    month: int
    count: int
    total_applications_checked: int
    issues: list[TenancyIssueResponse]

    model_config = {"from_attributes": True}


class MonthlyAccrualResponse(BaseModel):
    year: int
    month: int
    posted_count: int
    skipped_count: int
    posted: list[str]
    skipped: list[str]
    errors: list[dict]
    total_amount: float


class LeaseStartResponse(BaseModel):
    application_id: str
    created: bool
    transaction_id: Optional[str] = None
    total_amount: float = 0.0
    metadata: dict = Field(default_factory=dict)


def _period_or_400(year: int, month: int) -> AccrualPeriod:
    try:
        return AccrualPeriod(year, month)
    except MalformedPeriodError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ===================================================================
# Correction
# ===================================================================

@router.post(
    "/applications/{application_id}/correct-early-lease-end",
    response_model=CorrectionResponse,
)
async def correct_early_lease_end(
    application_id: str,
    data: EarlyLeaseEndRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await correction.correct_accruals_for_early_lease_end(
            db,
            application_id,
            data.actual_end_date,
            actor=Actor(id=data.actor_id, email=data.actor_email),
            reason=data.reason or correction.DEFAULT_REASON,
            update_end_date=data.update_end_date,
        )
        if not result.success and result.message == "Application not found":
            raise HTTPException(status_code=404, detail="Application not found")
        return result.to_dict()
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.accruals", function_name="correct_early_lease_end")
        raise


# ===================================================================
# Audit
# ===================================================================

@router.get("/audit/incorrect-accruals", response_model=AuditReportResponse)
async def audit_incorrect_accruals(
    year: Optional[int] = Query(None, ge=1900),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: AsyncSession = Depends(get_db),
):
    try:
        if (year is None) != (month is None):
            raise HTTPException(status_code=400, detail="year and month must be given together")
        report = await bulk_auditor.find_tenancies_with_incorrect_accruals(db, year=year, month=month)
        return AuditReportResponse.model_validate(report)
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.accruals", function_name="audit_incorrect_accruals")
        raise


# ===================================================================
# Posting
# ===================================================================

@router.post("/monthly", response_model=MonthlyAccrualResponse)
async def run_monthly(
    year: int = Query(..., ge=1900),
    month: int = Query(..., ge=1, le=12),
    db: AsyncSession = Depends(get_db),
):
    try:
        period = _period_or_400(year, month)
        summary = await accrual_posting.run_monthly_accruals(db, period.month, period.year)
        return summary.to_dict()
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.accruals", function_name="run_monthly")
        raise


@router.post("/applications/{application_id}/lease-start", response_model=LeaseStartResponse)
async def post_lease_start(
    application_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await db.execute(
            select(LeaseApplication).where(LeaseApplication.id == application_id)
        )
        application = result.scalar_one_or_none()
        if not application:
            raise HTTPException(status_code=404, detail="Application not found")
        try:
            entry = await accrual_posting.post_lease_start_accrual(db, application)
        except accrual_posting.AccrualPostingError as e:
            raise HTTPException(status_code=400, detail=str(e))
        await db.commit()
        if entry is None:
            return LeaseStartResponse(application_id=application_id, created=False)
        return LeaseStartResponse(
            application_id=application_id,
            created=True,
            transaction_id=entry.transaction_id,
            total_amount=float(entry.total_debit),
            metadata=entry.meta,
        )
    except HTTPException:
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.accruals", function_name="post_lease_start")
        raise
