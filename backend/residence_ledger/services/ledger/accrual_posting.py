"""Rental accrual posting.

Records rent as income when it falls due, not when it is paid:

- Lease start: prorated first-month rent, the admin fee (only for
  residences matching the configured keyword) and a one-month security
  deposit held as a liability.
  DR Accounts Receivable (tenant code) / CR Rental Income, Admin Income,
  Tenant Deposits Held
- Monthly: full month rent for every active tenancy.
  DR Accounts Receivable (tenant code) / CR Rental Income

Both are idempotent: an existing posted accrual for the same tenancy (and
month) is left alone and nothing new is written.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.config import settings
from residence_ledger.models.ledger import (
    AccrualType,
    LedgerEntry,
    LedgerEntryStatus,
    LedgerSource,
)
from residence_ledger.models.residence import Residence, Room
from residence_ledger.models.tenancy import ApplicationStatus, LeaseApplication
from residence_ledger.services.ledger.identity import resolve_identifiers
from residence_ledger.services.ledger.journal import LedgerError, create_ledger_entry, to_amount
from residence_ledger.services.ledger.periods import AccrualPeriod

logger = logging.getLogger(__name__)


class AccrualPostingError(Exception):
    """Accrual could not be posted (missing room, price or dates)."""


@dataclass
class MonthlyAccrualSummary:
    year: int
    month: int
    posted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "posted_count": len(self.posted),
            "skipped_count": len(self.skipped),
            "posted": list(self.posted),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
            "total_amount": float(self.total_amount),
        }


def prorated_rent(monthly_price, start: date) -> Decimal:
    """Rent from *start* through month end, inclusive of the start day."""
    days_in_month = calendar.monthrange(start.year, start.month)[1]
    remaining = days_in_month - start.day + 1
    return to_amount(Decimal(str(monthly_price)) / days_in_month * remaining)


def charges_admin_fee(residence: Residence | None) -> bool:
    keyword = settings.admin_fee_residence_keyword.lower()
    return bool(residence and keyword and keyword in (residence.name or "").lower())


def is_active_in(application: LeaseApplication, period: AccrualPeriod) -> bool:
    if application.start_date is None or application.end_date is None:
        return False
    return AccrualPeriod.of(application.start_date) <= period <= AccrualPeriod.of(application.end_date)


async def _load_room(db: AsyncSession, application: LeaseApplication) -> Room:
    if not application.residence_id or not application.allocated_room:
        raise AccrualPostingError(f"Application {application.id} has no allocated room")
    result = await db.execute(
        select(Room).where(
            Room.residence_id == application.residence_id,
            Room.room_number == application.allocated_room,
        )
    )
    room = result.scalar_one_or_none()
    if room is None or not room.price:
        raise AccrualPostingError(
            f"Room price not found for {application.allocated_room} in residence {application.residence_id}"
        )
    return room


async def _load_residence(db: AsyncSession, residence_id: str) -> Residence | None:
    result = await db.execute(select(Residence).where(Residence.id == residence_id))
    return result.scalar_one_or_none()


async def find_lease_start_accrual(db: AsyncSession, application_id: str) -> LedgerEntry | None:
    meta = LedgerEntry.metadata_
    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.source == LedgerSource.RENTAL_ACCRUAL,
            LedgerEntry.status == LedgerEntryStatus.POSTED,
            meta["applicationId"].as_string() == application_id,
            meta["type"].as_string() == AccrualType.LEASE_START.value,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_monthly_accrual(
    db: AsyncSession, application_id: str, period: AccrualPeriod
) -> LedgerEntry | None:
    meta = LedgerEntry.metadata_
    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.source == LedgerSource.RENTAL_ACCRUAL,
            LedgerEntry.status == LedgerEntryStatus.POSTED,
            meta["applicationId"].as_string() == application_id,
            meta["type"].as_string() == AccrualType.MONTHLY_RENT.value,
            meta["accrualMonth"].as_integer() == period.month,
            meta["accrualYear"].as_integer() == period.year,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


def _correlation_metadata(application: LeaseApplication, identifiers) -> dict:
    return {
        "applicationId": application.id,
        "studentId": application.student_id or application.id,
        "debtorId": identifiers.debtor_id,
        "studentName": application.full_name,
        "residence": application.residence_id,
        "room": application.allocated_room,
    }


async def post_lease_start_accrual(
    db: AsyncSession, application: LeaseApplication
) -> LedgerEntry | None:
    """Post the lease-start entry; returns None when one already exists."""
    if application.start_date is None:
        raise AccrualPostingError(f"Application {application.id} has no start date")

    existing = await find_lease_start_accrual(db, application.id)
    if existing is not None:
        logger.info("Lease start accrual already exists for %s (%s)", application.id, existing.transaction_id)
        return None

    room = await _load_room(db, application)
    residence = await _load_residence(db, application.residence_id)
    identifiers, _debtor = await resolve_identifiers(db, application)
    receivable = identifiers.canonical_account_code
    receivable_name = f"Accounts Receivable - {application.full_name}"
    name = application.full_name
    start = application.start_date

    rent = prorated_rent(room.price, start)
    admin_fee = to_amount(settings.admin_fee_amount) if charges_admin_fee(residence) else Decimal("0.00")
    deposit = to_amount(room.price)

    lines = []
    if rent > 0:
        lines += [
            {"account_code": receivable, "account_name": receivable_name, "account_type": "asset",
             "debit_amount": rent, "credit_amount": 0,
             "description": f"Prorated rent due from {name} - {start.isoformat()} to month end"},
            {"account_code": settings.rental_income_account_code, "account_name": "Rental Income",
             "account_type": "income", "debit_amount": 0, "credit_amount": rent,
             "description": f"Prorated rental income accrued - {name}"},
        ]
    if admin_fee > 0:
        lines += [
            {"account_code": receivable, "account_name": receivable_name, "account_type": "asset",
             "debit_amount": admin_fee, "credit_amount": 0,
             "description": f"Admin fee due from {name}"},
            {"account_code": settings.admin_income_account_code, "account_name": "Administrative Income",
             "account_type": "income", "debit_amount": 0, "credit_amount": admin_fee,
             "description": f"Administrative income accrued - {name}"},
        ]
    lines += [
        {"account_code": receivable, "account_name": receivable_name, "account_type": "asset",
         "debit_amount": deposit, "credit_amount": 0,
         "description": f"Security deposit due from {name}"},
        {"account_code": settings.deposit_liability_account_code, "account_name": "Tenant Deposits Held",
         "account_type": "liability", "debit_amount": 0, "credit_amount": deposit,
         "description": f"Security deposit liability created - {name}"},
    ]

    period = AccrualPeriod.of(start)
    entry = await create_ledger_entry(
        db,
        lines=lines,
        source=LedgerSource.RENTAL_ACCRUAL,
        description=f"Lease start accounting entries: {name}",
        transaction_date=start,
        source_id=application.id,
        source_model="LeaseApplication",
        reference=application.id,
        residence_id=application.residence_id,
        created_by=settings.system_actor,
        metadata={
            **_correlation_metadata(application, identifiers),
            "type": AccrualType.LEASE_START.value,
            "leaseStartDate": start.isoformat(),
            "accrualMonth": period.month,
            "accrualYear": period.year,
            "proratedRent": float(rent),
            "adminFee": float(admin_fee),
            "securityDeposit": float(deposit),
        },
    )
    logger.info(
        "Lease start accrual %s for %s: rent=%s admin=%s deposit=%s",
        entry.transaction_id, name, rent, admin_fee, deposit,
    )
    return entry


async def post_monthly_accrual(
    db: AsyncSession, application: LeaseApplication, month: int, year: int
) -> LedgerEntry | None:
    """Post one month's rent; None when the month is not billable or already posted."""
    period = AccrualPeriod(year, month)
    if not is_active_in(application, period):
        logger.debug("Application %s not active in %s", application.id, period)
        return None
    if period == AccrualPeriod.of(application.start_date):
        # Start month is covered by the prorated lease-start entry
        return None

    existing = await find_monthly_accrual(db, application.id, period)
    if existing is not None:
        logger.debug("Monthly accrual for %s %s already posted", application.id, period)
        return None

    room = await _load_room(db, application)
    identifiers, _debtor = await resolve_identifiers(db, application)
    rent = to_amount(room.price)
    name = application.full_name

    entry = await create_ledger_entry(
        db,
        lines=[
            {"account_code": identifiers.canonical_account_code,
             "account_name": f"Accounts Receivable - {name}", "account_type": "asset",
             "debit_amount": rent, "credit_amount": 0,
             "description": f"Monthly rent due from {name} - {period}"},
            {"account_code": settings.rental_income_account_code, "account_name": "Rental Income",
             "account_type": "income", "debit_amount": 0, "credit_amount": rent,
             "description": f"Monthly rental income accrued - {name} - {period}"},
        ],
        source=LedgerSource.RENTAL_ACCRUAL,
        description=f"Monthly rent accrual: {name} - {period}",
        transaction_date=period.first_day,
        source_id=application.id,
        source_model="LeaseApplication",
        reference=application.id,
        residence_id=application.residence_id,
        created_by=settings.system_actor,
        metadata={
            **_correlation_metadata(application, identifiers),
            "type": AccrualType.MONTHLY_RENT.value,
            "accrualMonth": period.month,
            "accrualYear": period.year,
            "month": f"{period.year}-{period.month:02d}",
            "rentAmount": float(rent),
        },
    )
    logger.info("Monthly accrual %s for %s %s: %s", entry.transaction_id, name, period, rent)
    return entry


async def run_monthly_accruals(db: AsyncSession, month: int, year: int) -> MonthlyAccrualSummary:
    """Post the month's rent for every approved tenancy active in it."""
    period = AccrualPeriod(year, month)
    summary = MonthlyAccrualSummary(year=year, month=month)
    last_day = date(year, month, calendar.monthrange(year, month)[1])

    result = await db.execute(
        select(LeaseApplication).where(
            LeaseApplication.status == ApplicationStatus.APPROVED,
            LeaseApplication.start_date <= last_day,
            LeaseApplication.end_date >= period.first_day,
        )
    )
    applications = list(result.scalars().all())
    logger.info("Monthly accrual run %s: %d active tenancies", period, len(applications))

    for application in applications:
        try:
            async with db.begin_nested():
                entry = await post_monthly_accrual(db, application, month, year)
        except (AccrualPostingError, LedgerError) as exc:
            logger.warning("Monthly accrual failed for %s: %s", application.id, exc)
            summary.errors.append({"application_id": application.id, "error": str(exc)})
            continue
        if entry is None:
            summary.skipped.append(application.id)
        else:
            summary.posted.append(application.id)
            summary.total_amount += entry.total_debit

    await db.commit()
    logger.info(
        "Monthly accrual run %s complete: %d posted, %d skipped, %d errors, total %s",
        period, len(summary.posted), len(summary.skipped), len(summary.errors), summary.total_amount,
    )
    return summary
