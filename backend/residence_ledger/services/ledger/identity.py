"""Identity resolver.

The same tenant obligation has been tagged with several identifier schemes
over the life of the data: the lease application id, the student id, the
debtor id, the ``1100-<id>`` receivable code built from each of those, and
the debtor's own assigned account code.  This module computes that set for
one lease application.  It is recomputed on every run because a debtor's
canonical code can change between runs.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.config import settings
from residence_ledger.models.tenancy import Debtor, LeaseApplication

logger = logging.getLogger(__name__)


def receivable_code(identifier: str) -> str:
    """Per-tenant receivable account code, e.g. ``1100-<id>``."""
    return f"{settings.receivable_prefix}{identifier}"


def is_receivable_code(code: str | None) -> bool:
    if not code:
        return False
    return code == settings.receivable_account_code or code.startswith(settings.receivable_prefix)


@dataclass(frozen=True)
class IdentifierSet:
    """Every value that may have tagged one tenancy's accruals, in order."""

    application_id: str
    student_id: str | None = None
    debtor_id: str | None = None
    debtor_account_code: str | None = None
    values: tuple[str, ...] = field(default_factory=tuple)

    def __iter__(self):
        return iter(self.values)

    def __contains__(self, item) -> bool:
        return item in self.values

    def __len__(self) -> int:
        return len(self.values)

    @property
    def raw_ids(self) -> list[str]:
        return [i for i in (self.application_id, self.student_id, self.debtor_id) if i]

    @property
    def canonical_account_code(self) -> str:
        """The receivable code reversals must land on today."""
        if self.debtor_account_code:
            return self.debtor_account_code
        if self.student_id:
            return receivable_code(self.student_id)
        return receivable_code(self.application_id)


def _ordered_unique(values) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(str(value), None)
    return tuple(seen)


def build_identifier_set(
    application: LeaseApplication, debtor: Debtor | None = None
) -> IdentifierSet:
    """Compute the identifier set from an application and its debtor, if any."""
    application_id = str(application.id)
    student_id = str(application.student_id) if application.student_id else None
    debtor_id = str(debtor.id) if debtor is not None else None
    debtor_code = debtor.account_code if debtor is not None else None

    values: list[str] = [application_id, receivable_code(application_id)]
    if student_id:
        values += [student_id, receivable_code(student_id)]
    if debtor_id:
        values += [debtor_id, receivable_code(debtor_id)]
    if debtor_code:
        values.append(debtor_code)

    return IdentifierSet(
        application_id=application_id,
        student_id=student_id,
        debtor_id=debtor_id,
        debtor_account_code=debtor_code,
        values=_ordered_unique(values),
    )


async def load_debtor(db: AsyncSession, application: LeaseApplication) -> Debtor | None:
    """Find the debtor by the application's link, falling back to the student."""
    if application.debtor_id:
        result = await db.execute(select(Debtor).where(Debtor.id == application.debtor_id))
        debtor = result.scalar_one_or_none()
        if debtor is not None:
            return debtor
    if application.student_id:
        result = await db.execute(
            select(Debtor).where(Debtor.student_id == application.student_id).limit(1)
        )
        return result.scalar_one_or_none()
    return None


async def resolve_identifiers(
    db: AsyncSession, application: LeaseApplication
) -> tuple[IdentifierSet, Debtor | None]:
    debtor = await load_debtor(db, application)
    identifiers = build_identifier_set(application, debtor)
    logger.debug(
        "Resolved %d identifiers for application %s: %s",
        len(identifiers), application.id, ", ".join(identifiers),
    )
    return identifiers, debtor
