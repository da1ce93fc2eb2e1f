"""Bulk auditor: every tenancy with accruals beyond its lease end.

A fixed handful of queries loads the whole working set (tenancies, their
students' other applications, debtors, accruals over the union of all
identifier values or ending in any raw id, and the reversals naming those
accruals).  The accruals are bucketed once by correlation key and by
account-code suffix, and each tenancy is then evaluated in memory with
the same decision the single-tenancy correction uses, so the two never
disagree.  Nothing is written.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from residence_ledger.config import settings
from residence_ledger.models.ledger import (
    LedgerEntry,
    LedgerEntryStatus,
    LedgerSource,
)
from residence_ledger.models.tenancy import ApplicationStatus, Debtor, LeaseApplication
from residence_ledger.services.ledger.identity import build_identifier_set
from residence_ledger.services.ledger.matcher import (
    account_pattern_clause,
    annotate_accruals,
    correlation_clause,
    entry_correlation_keys,
    expanded_identifiers,
    posted_accruals_query,
)
from residence_ledger.services.ledger.overlap import classify_incorrect_accruals, select_renewals
from residence_ledger.services.ledger.periods import AccrualPeriod
from residence_ledger.services.ledger.reversals import (
    is_flagged_reversed,
    is_reversed_by,
    reversal_targets,
)

logger = logging.getLogger(__name__)

AUDITED_STATUSES = (ApplicationStatus.APPROVED, ApplicationStatus.EXPIRED)


@dataclass
class FlaggedAccrual:
    accrual_id: str
    transaction_id: str
    month: int
    year: int
    amount: float
    description: str | None
    created_at: datetime | None
    issue: str
    was_created_after_lease_update: bool


@dataclass
class TenancyIssue:
    application_id: str
    student_id: str | None
    student_name: str
    email: str | None
    lease_start_date: date | None
    lease_end_date: date | None
    lease_was_updated: bool
    lease_created_at: datetime | None
    lease_updated_at: datetime | None
    incorrect_accruals: list[FlaggedAccrual] = field(default_factory=list)

    @property
    def incorrect_accruals_count(self) -> int:
        return len(self.incorrect_accruals)

    @property
    def accruals_created_after_update(self) -> int:
        return sum(1 for a in self.incorrect_accruals if a.was_created_after_lease_update)


@dataclass
class AuditReport:
    year: int
    month: int
    total_applications_checked: int = 0
    issues: list[TenancyIssue] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.issues)


# ---------------------------------------------------------------------------
# Bulk loaders, one query each
# ---------------------------------------------------------------------------

async def load_audited_applications(db: AsyncSession) -> list[LeaseApplication]:
    result = await db.execute(
        select(LeaseApplication).where(
            LeaseApplication.status.in_(AUDITED_STATUSES),
            LeaseApplication.end_date.is_not(None),
        )
    )
    return list(result.scalars().all())


async def load_student_applications(db: AsyncSession, student_ids: set[str]) -> list[LeaseApplication]:
    """Every application of the given students (renewal candidates and history)."""
    if not student_ids:
        return []
    result = await db.execute(
        select(LeaseApplication).where(LeaseApplication.student_id.in_(student_ids))
    )
    return list(result.scalars().all())


async def load_debtors(
    db: AsyncSession, debtor_ids: set[str], student_ids: set[str]
) -> list[Debtor]:
    if not debtor_ids and not student_ids:
        return []
    result = await db.execute(
        select(Debtor).where(
            or_(Debtor.id.in_(debtor_ids), Debtor.student_id.in_(student_ids))
        )
    )
    return list(result.scalars().all())


async def load_accruals(
    db: AsyncSession, values: set[str], raw_ids: set[str] = frozenset()
) -> list[LedgerEntry]:
    """Accruals matching any identifier, or with a line code ending in a raw id."""
    if not values and not raw_ids:
        return []
    clauses = []
    if values:
        clauses.append(correlation_clause(values))
    if raw_ids:
        clauses.append(account_pattern_clause(sorted(raw_ids)))
    result = await db.execute(posted_accruals_query().where(or_(*clauses)))
    return list(result.scalars().all())


async def load_reversals(db: AsyncSession, refs: set[str]) -> list[LedgerEntry]:
    if not refs:
        return []
    meta = LedgerEntry.metadata_
    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.source == LedgerSource.RENTAL_ACCRUAL_REVERSAL,
            LedgerEntry.status == LedgerEntryStatus.POSTED,
            or_(
                LedgerEntry.source_id.in_(refs),
                LedgerEntry.reference.in_(refs),
                meta["originalAccrualId"].as_string().in_(refs),
                meta["originalTransactionId"].as_string().in_(refs),
            ),
        )
        .options(selectinload(LedgerEntry.lines))
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# In-memory evaluation
# ---------------------------------------------------------------------------

def lease_was_updated(application: LeaseApplication) -> bool:
    if application.created_at is None or application.updated_at is None:
        return False
    delta = application.updated_at - application.created_at
    return delta.total_seconds() > settings.lease_update_threshold_seconds


class _Indexes:
    """Lookup tables built once over the bulk-loaded rows."""

    def __init__(
        self,
        student_applications: Iterable[LeaseApplication],
        debtors: Iterable[Debtor],
    ):
        self.applications_by_student: dict[str, list[LeaseApplication]] = defaultdict(list)
        for app in student_applications:
            self.applications_by_student[app.student_id].append(app)
        self.debtors_by_id: dict[str, Debtor] = {}
        self.debtors_by_student: dict[str, list[Debtor]] = defaultdict(list)
        for debtor in debtors:
            self.debtors_by_id[debtor.id] = debtor
            if debtor.student_id:
                self.debtors_by_student[debtor.student_id].append(debtor)

    def debtor_for(self, application: LeaseApplication) -> Debtor | None:
        if application.debtor_id and application.debtor_id in self.debtors_by_id:
            return self.debtors_by_id[application.debtor_id]
        if application.student_id and self.debtors_by_student.get(application.student_id):
            return self.debtors_by_student[application.student_id][0]
        return None

    def expanded_for(self, student_id: str) -> tuple[str, ...]:
        return expanded_identifiers(
            student_id,
            self.applications_by_student.get(student_id, []),
            self.debtors_by_student.get(student_id, []),
        )


class _AccrualIndex:
    """Accruals bucketed by correlation key and by line-code suffix.

    Built in one pass over the loaded rows; a tenancy's candidates are then
    the union of the buckets for its identifiers.
    """

    def __init__(self, accruals: Iterable[LedgerEntry]):
        self.by_key: dict[str, list[LedgerEntry]] = defaultdict(list)
        self.by_suffix: dict[str, list[LedgerEntry]] = defaultdict(list)
        for entry in accruals:
            for key in entry_correlation_keys(entry):
                self.by_key[key].append(entry)
            suffixes = {
                ln.account_code[i:]
                for ln in entry.lines if ln.account_code
                for i in range(len(ln.account_code))
            }
            for suffix in suffixes:
                self.by_suffix[suffix].append(entry)

    @staticmethod
    def _union(buckets) -> list[LedgerEntry]:
        found: dict[str, LedgerEntry] = {}
        for bucket in buckets:
            for entry in bucket:
                found.setdefault(entry.id, entry)
        return list(found.values())

    def correlated(self, values: Iterable[str]) -> list[LedgerEntry]:
        return self._union(self.by_key.get(v, ()) for v in values)

    def ending_in(self, raw_ids: Iterable[str]) -> list[LedgerEntry]:
        return self._union(self.by_suffix.get(r, ()) for r in raw_ids if r)


def _match_in_memory(identifiers, indexes: _Indexes, accruals: _AccrualIndex) -> list[LedgerEntry]:
    """Same three tiers as the database matcher, over pre-loaded rows."""
    found = accruals.correlated(identifiers.values)
    if found:
        return found
    found = accruals.ending_in(identifiers.raw_ids)
    if found:
        return found
    if identifiers.student_id:
        return accruals.correlated(indexes.expanded_for(identifiers.student_id))
    return []


def audit_applications(
    applications: Iterable[LeaseApplication],
    *,
    student_applications: Iterable[LeaseApplication],
    debtors: Iterable[Debtor],
    accruals: list[LedgerEntry],
    reversals: Iterable[LedgerEntry],
    target: AccrualPeriod,
) -> list[TenancyIssue]:
    """Evaluate every tenancy against the pre-loaded rows."""
    indexes = _Indexes(student_applications, debtors)
    accrual_index = _AccrualIndex(accruals)
    reversed_ids: set[str] = set()
    for reversal in reversals:
        reversed_ids |= reversal_targets(reversal)

    issues = []
    for app in applications:
        if app.end_date is None:
            continue
        identifiers = build_identifier_set(app, indexes.debtor_for(app))
        candidates = [
            e for e in _match_in_memory(identifiers, indexes, accrual_index)
            if not is_reversed_by(e, reversed_ids) and not is_flagged_reversed(e)
        ]
        siblings = [
            a for a in indexes.applications_by_student.get(app.student_id, [])
            if a.id != app.id
        ] if app.student_id else []
        renewals = select_renewals(siblings, app.id, app.end_date)
        incorrect = [
            item for item in classify_incorrect_accruals(
                annotate_accruals(candidates),
                application=app,
                end_date=app.end_date,
                renewals=renewals,
                sibling_ids=[a.id for a in siblings],
            )
            if item.accrual.period <= target
        ]
        if not incorrect:
            continue

        updated = lease_was_updated(app)
        issue = TenancyIssue(
            application_id=app.id,
            student_id=app.student_id,
            student_name=app.full_name,
            email=app.email,
            lease_start_date=app.start_date,
            lease_end_date=app.end_date,
            lease_was_updated=updated,
            lease_created_at=app.created_at,
            lease_updated_at=app.updated_at,
        )
        for item in sorted(incorrect, key=lambda i: i.accrual.period):
            created_at = item.accrual.entry.created_at
            issue.incorrect_accruals.append(FlaggedAccrual(
                accrual_id=item.accrual.id,
                transaction_id=item.accrual.transaction_id,
                month=item.accrual.period.month,
                year=item.accrual.period.year,
                amount=float(item.accrual.amount),
                description=item.accrual.entry.description,
                created_at=created_at,
                issue=item.reason,
                was_created_after_lease_update=bool(
                    updated and created_at and app.updated_at and created_at > app.updated_at
                ),
            ))
        issues.append(issue)
    return issues


async def find_tenancies_with_incorrect_accruals(
    db: AsyncSession, year: int | None = None, month: int | None = None
) -> AuditReport:
    """Scan every approved/expired tenancy for accruals past its end date."""
    today = date.today()
    target = AccrualPeriod(year, month) if year and month else AccrualPeriod.of(today)
    logger.info("Auditing accruals up to %s", target)

    applications = await load_audited_applications(db)
    student_ids = {a.student_id for a in applications if a.student_id}
    debtor_ids = {a.debtor_id for a in applications if a.debtor_id}

    student_applications = await load_student_applications(db, student_ids)
    debtor_ids |= {a.debtor_id for a in student_applications if a.debtor_id}
    debtors = await load_debtors(db, debtor_ids, student_ids)

    indexes = _Indexes(student_applications, debtors)
    values: set[str] = set()
    raw_ids: set[str] = set()
    for app in applications:
        identifiers = build_identifier_set(app, indexes.debtor_for(app))
        values.update(identifiers.values)
        raw_ids.update(r for r in identifiers.raw_ids if r)
        if app.student_id:
            values.update(indexes.expanded_for(app.student_id))

    accruals = await load_accruals(db, values, raw_ids)
    refs = {e.id for e in accruals} | {e.transaction_id for e in accruals if e.transaction_id}
    reversals = await load_reversals(db, refs)
    logger.info(
        "Loaded %d applications, %d accruals, %d reversals",
        len(applications), len(accruals), len(reversals),
    )

    issues = audit_applications(
        applications,
        student_applications=student_applications,
        debtors=debtors,
        accruals=accruals,
        reversals=reversals,
        target=target,
    )

    report = AuditReport(
        year=target.year,
        month=target.month,
        total_applications_checked=len(applications),
        issues=issues,
    )
    logger.info(
        "Audit %s: %d of %d tenancies have incorrect accruals",
        target, report.count, report.total_applications_checked,
    )
    for idx, issue in enumerate(issues[: settings.audit_verbose_limit], start=1):
        logger.info(
            "  %d. %s (%s) lease end %s, %d incorrect accrual(s)%s",
            idx, issue.student_name, issue.email, issue.lease_end_date,
            issue.incorrect_accruals_count,
            ", lease was updated after creation" if issue.lease_was_updated else "",
        )
    if report.count > settings.audit_verbose_limit:
        logger.info("  ... %d more not shown", report.count - settings.audit_verbose_limit)
    return report
