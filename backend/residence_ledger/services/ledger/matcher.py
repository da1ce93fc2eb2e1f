"""Accrual matcher.

Finds every posted ``rental_accrual`` entry that may belong to a tenancy,
given its identifier set.  Accruals were tagged inconsistently across a long
migration history, so the search widens in three tiers and each tier only
runs when the previous one came back empty:

1. every identifier against the entry ``source_id``, the metadata alias
   fields and the per-line account codes
2. account-code pattern: any line code ending in one of the raw ids
3. every application and debtor ever linked to the student, cross-multiplied
   into account codes, searched like tier 1

``entry_correlation_keys`` mirrors the tier 1 SQL positions so the bulk
auditor can index pre-loaded rows the same way.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from residence_ledger.models.ledger import (
    CORRELATION_METADATA_KEYS,
    AccrualType,
    LedgerEntry,
    LedgerEntryLine,
    LedgerEntryStatus,
    LedgerSource,
)
from residence_ledger.models.tenancy import Debtor, LeaseApplication
from residence_ledger.services.ledger.identity import IdentifierSet, receivable_code
from residence_ledger.services.ledger.periods import AccrualPeriod, MalformedPeriodError

logger = logging.getLogger(__name__)

_LEASE_START_PATTERN = re.compile(r"lease start", re.IGNORECASE)


@dataclass
class MatchedAccrual:
    """An accrual entry with its resolved accrual period."""

    entry: LedgerEntry
    period: AccrualPeriod

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def transaction_id(self) -> str:
        return self.entry.transaction_id

    @property
    def amount(self) -> Decimal:
        return self.entry.total_debit or self.entry.line_debits

    @property
    def is_lease_start(self) -> bool:
        return is_lease_start(self.entry)


@dataclass
class AccrualMatch:
    entries: list[LedgerEntry] = field(default_factory=list)
    tier: int = 0
    identifiers: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Predicates (shared by SQL and in-memory paths)
# ---------------------------------------------------------------------------

def is_lease_start(entry: LedgerEntry) -> bool:
    if (entry.metadata_ or {}).get("type") == AccrualType.LEASE_START.value:
        return True
    return bool(entry.description and _LEASE_START_PATTERN.search(entry.description))


def entry_correlation_keys(entry: LedgerEntry) -> set[str]:
    """Every identifier value an entry can be found by."""
    meta = entry.metadata_ or {}
    keys = {str(meta[k]) for k in CORRELATION_METADATA_KEYS if meta.get(k)}
    if entry.source_id:
        keys.add(str(entry.source_id))
    keys.update(ln.account_code for ln in entry.lines if ln.account_code)
    return keys


def correlation_clause(values: Iterable[str]):
    """SQL OR over all identifier positions."""
    values = list(values)
    meta = LedgerEntry.metadata_
    return or_(
        LedgerEntry.source_id.in_(values),
        *[meta[key].as_string().in_(values) for key in CORRELATION_METADATA_KEYS],
        LedgerEntry.lines.any(LedgerEntryLine.account_code.in_(values)),
    )


def account_pattern_clause(raw_ids: Iterable[str]):
    """SQL: any line whose account code ends in one of *raw_ids*."""
    return LedgerEntry.lines.any(or_(
        *[LedgerEntryLine.account_code.endswith(raw_id, autoescape=True) for raw_id in raw_ids]
    ))


def expanded_identifiers(
    student_id: str,
    applications: Iterable[LeaseApplication],
    debtors: Iterable[Debtor],
) -> tuple[str, ...]:
    """Cross product of a student's historical applications/debtors as codes."""
    values: dict[str, None] = {}

    def add(identifier):
        if identifier:
            values.setdefault(str(identifier), None)
            values.setdefault(receivable_code(str(identifier)), None)

    add(student_id)
    for application in applications:
        add(application.id)
        add(application.debtor_id)
    for debtor in debtors:
        add(debtor.id)
        if debtor.account_code:
            values.setdefault(debtor.account_code, None)
    return tuple(values)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def posted_accruals_query():
    return (
        select(LedgerEntry)
        .where(
            LedgerEntry.source == LedgerSource.RENTAL_ACCRUAL,
            LedgerEntry.status == LedgerEntryStatus.POSTED,
        )
        .options(selectinload(LedgerEntry.lines))
    )


async def query_by_correlation(db: AsyncSession, values: Iterable[str]) -> list[LedgerEntry]:
    values = list(values)
    if not values:
        return []
    result = await db.execute(posted_accruals_query().where(correlation_clause(values)))
    return list(result.scalars().all())


async def query_by_account_pattern(db: AsyncSession, raw_ids: Iterable[str]) -> list[LedgerEntry]:
    raw_ids = [r for r in raw_ids if r]
    if not raw_ids:
        return []
    result = await db.execute(posted_accruals_query().where(account_pattern_clause(raw_ids)))
    return list(result.scalars().all())


async def expand_student_identifiers(db: AsyncSession, student_id: str) -> tuple[str, ...]:
    apps = await db.execute(
        select(LeaseApplication).where(LeaseApplication.student_id == student_id)
    )
    debtors = await db.execute(select(Debtor).where(Debtor.student_id == student_id))
    return expanded_identifiers(
        student_id, apps.scalars().all(), debtors.scalars().all()
    )


def _dedupe(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    seen: dict[str, LedgerEntry] = {}
    for entry in entries:
        seen.setdefault(entry.id, entry)
    return list(seen.values())


async def find_accruals(db: AsyncSession, identifiers: IdentifierSet) -> AccrualMatch:
    """Run the three-tier search and return de-duplicated accrual entries."""
    entries = await query_by_correlation(db, identifiers)
    if entries:
        logger.info("Tier 1 matched %d accruals for %s", len(entries), identifiers.application_id)
        return AccrualMatch(_dedupe(entries), tier=1, identifiers=identifiers.values)

    logger.info("No accruals by correlation for %s, trying account code pattern", identifiers.application_id)
    entries = await query_by_account_pattern(db, identifiers.raw_ids)
    if entries:
        return AccrualMatch(_dedupe(entries), tier=2, identifiers=identifiers.values)

    if identifiers.student_id:
        expanded = await expand_student_identifiers(db, identifiers.student_id)
        logger.info(
            "No accruals by pattern for %s, widening to %d student-wide identifiers",
            identifiers.application_id, len(expanded),
        )
        entries = await query_by_correlation(db, expanded)
        if entries:
            return AccrualMatch(_dedupe(entries), tier=3, identifiers=expanded)

    return AccrualMatch(identifiers=identifiers.values)


def annotate_accruals(entries: Iterable[LedgerEntry]) -> list[MatchedAccrual]:
    """Attach an AccrualPeriod to each entry; malformed entries are dropped."""
    matched = []
    for entry in entries:
        try:
            period = AccrualPeriod.from_entry(entry)
        except MalformedPeriodError as exc:
            logger.warning("Skipping accrual %s: %s", entry.id, exc)
            continue
        matched.append(MatchedAccrual(entry=entry, period=period))
    return matched
