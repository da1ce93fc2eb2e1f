"""Reversal generator.

Turns one confirmed-incorrect accrual into exactly one balanced
``rental_accrual_reversal`` entry.  Whether an accrual is already reversed
is always derived from the ledger itself (does a posted reversal name it?),
so running a correction twice never double-reverses.  The link is one-way:
the reversal points at the original, nothing is written back onto the
original entry.
"""

import enum
import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.config import settings
from residence_ledger.models.ledger import (
    LedgerEntry,
    LedgerEntryStatus,
    LedgerSource,
)
from residence_ledger.models.tenancy import LeaseApplication
from residence_ledger.services.audit_trail import record_audit
from residence_ledger.services.ledger.identity import IdentifierSet, is_receivable_code
from residence_ledger.services.ledger.journal import (
    BalanceError,
    LedgerError,
    create_ledger_entry,
    to_amount,
)
from residence_ledger.services.ledger.overlap import IncorrectAccrual

logger = logging.getLogger(__name__)

# Legacy metadata flags some older tooling set on reversed originals
_LEGACY_REVERSED_FLAGS = ("reversed", "isReversed", "reversalEntryId", "reversedBy")


class ReversalStatus(str, enum.Enum):
    REVERSED = "reversed"
    ALREADY_REVERSED = "already_reversed"
    FAILED = "failed"


@dataclass
class Actor:
    id: str | None = None
    email: str | None = None

    @property
    def label(self) -> str:
        return self.email or self.id or settings.system_actor


@dataclass
class ReversalContext:
    application: LeaseApplication
    identifiers: IdentifierSet
    reason: str
    actual_end_date: date
    original_end_date: date | None
    actor: Actor
    correction_type: str = "early_lease_end"

    @property
    def canonical_code(self) -> str:
        return self.identifiers.canonical_account_code

    @property
    def account_name(self) -> str:
        return f"Accounts Receivable - {self.application.full_name}"


@dataclass
class ReversalOutcome:
    status: ReversalStatus
    accrual_id: str
    transaction_id: str
    month: int
    year: int
    amount: float
    description: str | None = None
    reversal_entry_id: str | None = None
    reversal_transaction_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


# ---------------------------------------------------------------------------
# Derived "already reversed" predicate
# ---------------------------------------------------------------------------

def reversal_targets(reversal: LedgerEntry) -> set[str]:
    """Every original-entry identifier a reversal entry points at."""
    meta = reversal.metadata_ or {}
    targets = {
        reversal.source_id,
        reversal.reference,
        meta.get("originalAccrualId"),
        meta.get("originalTransactionId"),
    }
    return {str(t) for t in targets if t}


def is_flagged_reversed(entry: LedgerEntry) -> bool:
    meta = entry.metadata_ or {}
    return any(meta.get(flag) for flag in _LEGACY_REVERSED_FLAGS)


def is_reversed_by(entry: LedgerEntry, reversed_ids: set[str]) -> bool:
    return entry.id in reversed_ids or entry.transaction_id in reversed_ids


async def find_existing_reversal(db: AsyncSession, original: LedgerEntry) -> LedgerEntry | None:
    refs = [r for r in (original.id, original.transaction_id) if r]
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
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def build_reversal_lines(
    original: LedgerEntry,
    *,
    canonical_code: str,
    account_name: str,
    receivable_codes: Iterable[str] = (),
) -> list[dict]:
    """Mirror every line (debit <-> credit), re-pointing receivable lines."""
    receivable_codes = set(receivable_codes)
    lines = []
    for ln in original.lines:
        receivable = is_receivable_code(ln.account_code) or ln.account_code in receivable_codes
        lines.append({
            "account_code": canonical_code if receivable else ln.account_code,
            "account_name": account_name if receivable else ln.account_name,
            "account_type": ln.account_type,
            "debit_amount": to_amount(ln.credit_amount),
            "credit_amount": to_amount(ln.debit_amount),
            "description": f"Reversal: {ln.description or ''}".strip(),
        })
    return lines


def line_totals(lines: list[dict]) -> tuple[Decimal, Decimal]:
    total_dr = sum((to_amount(ln["debit_amount"]) for ln in lines), Decimal("0.00"))
    total_cr = sum((to_amount(ln["credit_amount"]) for ln in lines), Decimal("0.00"))
    return total_dr, total_cr


def _reversal_metadata(incorrect: IncorrectAccrual, context: ReversalContext) -> dict:
    original = incorrect.accrual.entry
    ids = context.identifiers
    return {
        "originalAccrualId": original.id,
        "originalTransactionId": original.transaction_id,
        "correctionReason": context.reason,
        "correctionType": context.correction_type,
        "issue": incorrect.reason,
        "originalLeaseEndDate": context.original_end_date.isoformat() if context.original_end_date else None,
        "actualLeaseEndDate": context.actual_end_date.isoformat(),
        "correctedBy": context.actor.id,
        "correctedByEmail": context.actor.email,
        "correctedAt": datetime.now(timezone.utc).isoformat(),
        "applicationId": ids.application_id,
        "studentId": ids.student_id or ids.application_id,
        "debtorId": ids.debtor_id,
        "studentName": context.application.full_name,
        "accrualMonth": incorrect.accrual.period.month,
        "accrualYear": incorrect.accrual.period.year,
    }


async def reverse_accrual(
    db: AsyncSession,
    incorrect: IncorrectAccrual,
    context: ReversalContext,
) -> ReversalOutcome:
    """Persist one reversal for *incorrect*, or report why none was written."""
    matched = incorrect.accrual
    original = matched.entry
    outcome = ReversalOutcome(
        status=ReversalStatus.REVERSED,
        accrual_id=original.id,
        transaction_id=original.transaction_id,
        month=matched.period.month,
        year=matched.period.year,
        amount=float(matched.amount),
        description=original.description,
    )

    existing = await find_existing_reversal(db, original)
    if existing is not None:
        logger.info("Accrual %s already reversed by %s", original.id, existing.transaction_id)
        outcome.status = ReversalStatus.ALREADY_REVERSED
        outcome.reversal_entry_id = existing.id
        outcome.reversal_transaction_id = existing.transaction_id
        return outcome
    if is_flagged_reversed(original):
        logger.info("Accrual %s is flagged as reversed, skipping", original.id)
        outcome.status = ReversalStatus.ALREADY_REVERSED
        return outcome

    lines = build_reversal_lines(
        original,
        canonical_code=context.canonical_code,
        account_name=context.account_name,
        receivable_codes=context.identifiers.values,
    )
    total_dr, total_cr = line_totals(lines)
    try:
        if total_dr != total_cr:
            raise BalanceError(
                f"Reversal of {original.transaction_id} is not balanced: "
                f"debits={total_dr}, credits={total_cr}"
            )
        reversal = await create_ledger_entry(
            db,
            lines=lines,
            source=LedgerSource.RENTAL_ACCRUAL_REVERSAL,
            description=f"Reversal (Early Lease End): {original.description}",
            source_id=original.id,
            source_model="LedgerEntry",
            reference=original.id,
            residence_id=original.residence_id,
            created_by=context.actor.label,
            metadata=_reversal_metadata(incorrect, context),
        )
    except LedgerError as exc:
        logger.error("Could not reverse accrual %s: %s", original.id, exc)
        outcome.status = ReversalStatus.FAILED
        outcome.error = str(exc)
        return outcome

    record_audit(
        db,
        entity_type="ledger_entry",
        entity_id=original.id,
        action="reverse_rental_accrual",
        user_id=context.actor.id,
        old_values={
            "transaction_id": original.transaction_id,
            "accrual_period": str(matched.period),
            "total_debit": original.total_debit,
            "status": original.status,
        },
        new_values={
            "reversal_entry_id": reversal.id,
            "reversal_transaction_id": reversal.transaction_id,
            "total": total_dr,
        },
        details={"reason": context.reason, "issue": incorrect.reason},
    )

    outcome.reversal_entry_id = reversal.id
    outcome.reversal_transaction_id = reversal.transaction_id
    logger.info(
        "Reversed accrual %s (%s) with %s",
        original.transaction_id, matched.period, reversal.transaction_id,
    )
    return outcome
