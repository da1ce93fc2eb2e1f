"""Renewal overlap detection and the incorrect-accrual decision.

A student may renew: the renewal is a separate approved/pending application
whose dates pick up where the expiring one ends.  Accruals found through the
student's id therefore include the renewal's legitimate accruals, and those
must never be reversed just because they fall after the old end date.

``classify_incorrect_accruals`` is the single decision used by both the
one-tenancy correction and the bulk auditor.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.models.ledger import LedgerSource
from residence_ledger.models.tenancy import ApplicationStatus, LeaseApplication
from residence_ledger.services.ledger.matcher import MatchedAccrual
from residence_ledger.services.ledger.periods import AccrualPeriod

logger = logging.getLogger(__name__)

RENEWAL_STATUSES = (ApplicationStatus.APPROVED, ApplicationStatus.PENDING)


@dataclass
class IncorrectAccrual:
    accrual: MatchedAccrual
    reason: str


def is_renewal_of(
    candidate: LeaseApplication, expiring_id: str, end_date: date
) -> bool:
    """Does *candidate* overlap or follow an application ending on *end_date*?"""
    if candidate.id == expiring_id or candidate.status not in RENEWAL_STATUSES:
        return False
    if candidate.start_date is None:
        return False
    if candidate.start_date >= end_date:
        return True
    return candidate.end_date is not None and candidate.end_date > end_date


def select_renewals(
    candidates: Iterable[LeaseApplication], expiring_id: str, end_date: date
) -> list[LeaseApplication]:
    renewals = [c for c in candidates if is_renewal_of(c, expiring_id, end_date)]
    return sorted(renewals, key=lambda r: r.start_date)


def is_covered_by_renewal(period: AccrualPeriod, renewals: Iterable[LeaseApplication]) -> bool:
    """A month is covered iff its first day falls inside a renewal's dates."""
    first_day = period.first_day
    for renewal in renewals:
        if renewal.start_date <= first_day and (
            renewal.end_date is None or first_day <= renewal.end_date
        ):
            return True
    return False


def owning_application(entry) -> str | None:
    """The application an accrual was posted for, when it records one."""
    owner = (entry.metadata_ or {}).get("applicationId") or entry.source_id
    return str(owner) if owner else None


async def load_sibling_applications(
    db: AsyncSession, student_id: str | None, exclude_id: str
) -> list[LeaseApplication]:
    """Every other application of the student, whatever its status.

    Renewals are picked from these by ``select_renewals``.  All of them
    own their accruals, which are never charged to the tenancy under
    correction.
    """
    if not student_id:
        return []
    result = await db.execute(
        select(LeaseApplication).where(
            LeaseApplication.student_id == student_id,
            LeaseApplication.id != exclude_id,
        )
    )
    return list(result.scalars().all())


def classify_incorrect_accruals(
    accruals: Iterable[MatchedAccrual],
    *,
    application: LeaseApplication,
    end_date: date,
    renewals: Iterable[LeaseApplication] = (),
    sibling_ids: Iterable[str] = (),
) -> list[IncorrectAccrual]:
    """Pick the accruals that should not exist given the corrected end date.

    Lease-start accruals are only reversed when the lease never began
    (corrected end date before the recorded start date), and then only the
    ones at or after the application's start month.  Accruals posted for
    another of the student's applications (*sibling_ids*) are never picked,
    whatever that application's status.
    """
    renewals = list(renewals)
    siblings = set(sibling_ids) - {application.id}
    end_period = AccrualPeriod.of(end_date)
    start = application.start_date
    never_began = start is not None and end_date < start
    start_period = AccrualPeriod.of(start) if start is not None else None

    incorrect = []
    for accrual in accruals:
        if accrual.entry.source != LedgerSource.RENTAL_ACCRUAL:
            continue
        if owning_application(accrual.entry) in siblings:
            logger.debug("Accrual %s belongs to another tenancy", accrual.id)
            continue
        if is_covered_by_renewal(accrual.period, renewals):
            logger.debug("Accrual %s (%s) covered by renewal", accrual.id, accrual.period)
            continue

        if accrual.is_lease_start:
            if never_began and accrual.period >= start_period:
                incorrect.append(IncorrectAccrual(
                    accrual,
                    f"Lease start accrual for {accrual.period} but lease ended "
                    f"{end_date.isoformat()} before it began {start.isoformat()}",
                ))
            continue

        if accrual.period.is_after(end_date):
            incorrect.append(IncorrectAccrual(
                accrual,
                f"Accrual for {accrual.period} is after lease end date ({end_period})",
            ))
    return incorrect
