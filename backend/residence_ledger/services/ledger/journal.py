"""Ledger entry store.

Every accrual and reversal flows through ``create_ledger_entry``.  The
fundamental invariant is **total debits == total credits** for every entry,
enforced twice:

1. Application-level validation before persist (``validate_balance``)
2. Line totals recomputed from the lines, never copied from a caller

Entries are immutable once posted.  Corrections are appended as
``rental_accrual_reversal`` entries that name the original.
"""

import logging
import secrets
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.models.ledger import (
    LedgerEntry,
    LedgerEntryLine,
    LedgerEntryStatus,
    LedgerSource,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class LedgerError(Exception):
    """Base exception for ledger errors."""


class BalanceError(LedgerError):
    """Debits do not equal credits."""


def to_amount(value: Any) -> Decimal:
    """Coerce a float/str/Decimal/None amount to a cent-rounded Decimal."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_balance(lines: list[dict]) -> tuple[Decimal, Decimal]:
    """Ensure total debits == total credits.  Returns (total_dr, total_cr)."""
    total_dr = sum((to_amount(ln.get("debit_amount")) for ln in lines), Decimal("0.00"))
    total_cr = sum((to_amount(ln.get("credit_amount")) for ln in lines), Decimal("0.00"))
    if total_dr != total_cr:
        raise BalanceError(
            f"Entry is not balanced: debits={total_dr}, credits={total_cr}"
        )
    if total_dr == 0:
        raise BalanceError("Entry has zero total, at least one non-zero line required")
    return total_dr, total_cr


def new_transaction_id(prefix: str = "TXN") -> str:
    """Generate a unique correlation id: PREFIX-YYYYMMDDHHMMSS-XXXXXX."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{secrets.token_hex(3).upper()}"


async def create_ledger_entry(
    db: AsyncSession,
    *,
    lines: list[dict[str, Any]],
    source: LedgerSource,
    description: str,
    transaction_date: date | None = None,
    transaction_id: str | None = None,
    source_id: str | None = None,
    source_model: str | None = None,
    reference: str | None = None,
    residence_id: str | None = None,
    created_by: str | None = None,
    metadata: dict | None = None,
) -> LedgerEntry:
    """Create and flush a posted ledger entry.

    Parameters
    ----------
    lines : list of dicts
        Each dict must have ``account_code``, ``debit_amount``,
        ``credit_amount`` and optionally ``account_name``, ``account_type``,
        ``description``.
    """
    if not lines or len(lines) < 2:
        raise LedgerError("A ledger entry requires at least two lines")

    total_dr, total_cr = validate_balance(lines)

    prefix = "RVS" if source == LedgerSource.RENTAL_ACCRUAL_REVERSAL else "TXN"
    entry = LedgerEntry(
        transaction_id=transaction_id or new_transaction_id(prefix),
        transaction_date=transaction_date or date.today(),
        description=description,
        source=source,
        source_id=source_id,
        source_model=source_model,
        reference=reference,
        status=LedgerEntryStatus.POSTED,
        total_debit=total_dr,
        total_credit=total_cr,
        residence_id=residence_id,
        created_by=created_by,
        metadata_=metadata,
    )
    entry.lines = [
        LedgerEntryLine(
            line_number=idx,
            account_code=ln["account_code"],
            account_name=ln.get("account_name"),
            account_type=ln.get("account_type"),
            debit_amount=to_amount(ln.get("debit_amount")),
            credit_amount=to_amount(ln.get("credit_amount")),
            description=ln.get("description"),
        )
        for idx, ln in enumerate(lines, start=1)
    ]
    db.add(entry)
    await db.flush()

    logger.info(
        "Created ledger entry %s (source=%s, total=%s)",
        entry.transaction_id, source.value, total_dr,
    )
    return entry
