"""Early lease end correction for one tenancy.

Pipeline: load tenancy -> identifier set -> matched accruals -> renewal
candidates -> incorrect accruals -> reversals -> lease-end side effects ->
summary audit row -> commit.  The whole run is one commit-or-abort scope;
an unexpected exception rolls everything back and is persisted to the error
log, and the caller gets a failure result rather than an exception.
"""

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.models.tenancy import LeaseApplication
from residence_ledger.services.audit_trail import record_audit
from residence_ledger.services.error_logger import log_error_standalone
from residence_ledger.services.ledger.identity import resolve_identifiers
from residence_ledger.services.ledger.lease_end import LeaseEndOutcome, apply_lease_end
from residence_ledger.services.ledger.matcher import annotate_accruals, find_accruals
from residence_ledger.services.ledger.overlap import (
    classify_incorrect_accruals,
    load_sibling_applications,
    select_renewals,
)
from residence_ledger.services.ledger.reversals import (
    Actor,
    ReversalContext,
    ReversalOutcome,
    ReversalStatus,
    reverse_accrual,
)

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Student left early - lease ended before expected"


@dataclass
class CorrectionResult:
    success: bool
    application_id: str
    message: str = ""
    corrected: list[ReversalOutcome] = field(default_factory=list)
    skipped: list[ReversalOutcome] = field(default_factory=list)
    errors: list[ReversalOutcome] = field(default_factory=list)
    lease_end: LeaseEndOutcome | None = None
    match_tier: int = 0
    student_name: str | None = None
    email: str | None = None
    original_end_date: date | None = None
    actual_end_date: date | None = None
    error: str | None = None

    @property
    def corrected_count(self) -> int:
        return len(self.corrected)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "application_id": self.application_id,
            "message": self.message,
            "corrected_count": self.corrected_count,
            "corrected_accruals": [o.to_dict() for o in self.corrected],
            "skipped_accruals": [o.to_dict() for o in self.skipped],
            "errors": [o.to_dict() for o in self.errors],
            "lease_end": self.lease_end.to_dict() if self.lease_end else None,
            "match_tier": self.match_tier,
            "student_name": self.student_name,
            "email": self.email,
            "original_end_date": self.original_end_date.isoformat() if self.original_end_date else None,
            "actual_end_date": self.actual_end_date.isoformat() if self.actual_end_date else None,
            "error": self.error,
        }


async def _load_application(db: AsyncSession, application_id: str) -> LeaseApplication | None:
    result = await db.execute(
        select(LeaseApplication).where(LeaseApplication.id == application_id)
    )
    return result.scalar_one_or_none()


async def correct_accruals_for_early_lease_end(
    db: AsyncSession,
    application_id: str,
    actual_end_date: date,
    *,
    actor: Actor | None = None,
    reason: str = DEFAULT_REASON,
    update_end_date: bool = True,
    today: date | None = None,
) -> CorrectionResult:
    actor = actor or Actor()
    result = CorrectionResult(
        success=False, application_id=application_id, actual_end_date=actual_end_date
    )

    try:
        application = await _load_application(db, application_id)
        if application is None:
            result.message = "Application not found"
            result.error = result.message
            return result

        result.student_name = application.full_name
        result.email = application.email
        result.original_end_date = application.end_date
        logger.info(
            "Correcting accruals for %s (%s): end %s -> %s",
            application.id, application.full_name, application.end_date, actual_end_date,
        )

        identifiers, _debtor = await resolve_identifiers(db, application)
        match = await find_accruals(db, identifiers)
        result.match_tier = match.tier
        accruals = annotate_accruals(match.entries)

        siblings = await load_sibling_applications(db, application.student_id, application.id)
        renewals = select_renewals(siblings, application.id, actual_end_date)
        if renewals:
            logger.info(
                "Application %s has %d renewal(s), their months are protected",
                application.id, len(renewals),
            )

        incorrect = classify_incorrect_accruals(
            accruals, application=application, end_date=actual_end_date,
            renewals=renewals, sibling_ids=[s.id for s in siblings],
        )
        context = ReversalContext(
            application=application,
            identifiers=identifiers,
            reason=reason,
            actual_end_date=actual_end_date,
            original_end_date=application.end_date,
            actor=actor,
        )
        for item in incorrect:
            outcome = await reverse_accrual(db, item, context)
            if outcome.status == ReversalStatus.REVERSED:
                result.corrected.append(outcome)
            elif outcome.status == ReversalStatus.ALREADY_REVERSED:
                result.skipped.append(outcome)
            else:
                result.errors.append(outcome)

        result.lease_end = await apply_lease_end(
            db,
            application,
            actual_end_date,
            actor=actor,
            reason=reason,
            update_end_date=update_end_date,
            today=today,
            renewals=renewals,
        )

        record_audit(
            db,
            entity_type="lease_application",
            entity_id=application.id,
            action="correct_accruals_early_lease_end",
            user_id=actor.id,
            old_values={"end_date": result.original_end_date},
            new_values={"end_date": application.end_date, "status": application.status},
            details={
                "reason": reason,
                "reversed": [o.to_dict() for o in result.corrected],
                "already_reversed": [o.accrual_id for o in result.skipped],
                "errors": [o.to_dict() for o in result.errors],
            },
        )
        await db.commit()
    except Exception as exc:
        await db.rollback()
        logger.exception("Accrual correction for %s aborted", application_id)
        await log_error_standalone(
            exc,
            module="services.ledger.correction",
            function_name="correct_accruals_for_early_lease_end",
            entity_type="lease_application",
            entity_id=application_id,
            user_id=actor.id,
        )
        result.corrected, result.skipped, result.errors = [], [], []
        result.lease_end = None
        result.message = "Correction aborted"
        result.error = str(exc)
        return result

    result.success = True
    if incorrect:
        result.message = f"Successfully corrected {result.corrected_count} incorrect accruals"
    else:
        result.message = "No incorrect accruals found"
    logger.info("%s for application %s", result.message, application_id)
    return result
