"""Transient model builders and an in-memory ledger for service tests."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import residence_ledger.models  # noqa: F401  (configure all mappers)
from residence_ledger.models.audit import AuditLog
from residence_ledger.models.ledger import (
    AccrualType,
    LedgerEntry,
    LedgerEntryLine,
    LedgerEntryStatus,
    LedgerSource,
)
from residence_ledger.models.residence import Room, RoomStatus
from residence_ledger.models.tenancy import (
    ApplicationStatus,
    Debtor,
    DebtorStatus,
    LeaseApplication,
)
from residence_ledger.services.ledger.reversals import reversal_targets


class Savepoint:
    """Async context manager standing in for ``AsyncSession.begin_nested()``."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def make_db(add=None) -> AsyncMock:
    db = AsyncMock()
    db.add = add or MagicMock()
    db.begin_nested = MagicMock(side_effect=lambda: Savepoint())
    return db


def make_application(**overrides) -> LeaseApplication:
    values = dict(
        id="APP1",
        application_code="APP-2025-001",
        student_id="STU1",
        debtor_id="DEB1",
        first_name="Thandi",
        last_name="Moyo",
        email="thandi@example.com",
        residence_id="RES1",
        allocated_room="A101",
        start_date=date(2025, 1, 1),
        end_date=date(2025, 6, 30),
        status=ApplicationStatus.APPROVED,
        created_at=datetime(2024, 12, 1, 9, 0, tzinfo=timezone.utc),
        updated_at=datetime(2024, 12, 1, 9, 0, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return LeaseApplication(**values)


def make_debtor(**overrides) -> Debtor:
    values = dict(
        id="DEB1",
        debtor_code="DR0001",
        student_id="STU1",
        account_code="1100-DR0001",
        status=DebtorStatus.ACTIVE,
    )
    values.update(overrides)
    return Debtor(**values)


def make_room(**overrides) -> Room:
    values = dict(
        id=7,
        residence_id="RES1",
        room_number="A101",
        capacity=2,
        current_occupancy=2,
        price=Decimal("300.00"),
        status=RoomStatus.OCCUPIED,
    )
    values.update(overrides)
    return Room(**values)


def make_accrual(
    entry_id: str,
    month: int,
    year: int = 2025,
    *,
    amount: str = "300.00",
    receivable: str = "1100-STU1",
    lease_start: bool = False,
    metadata: dict | None = None,
    source: LedgerSource = LedgerSource.RENTAL_ACCRUAL,
    created_at: datetime | None = None,
) -> LedgerEntry:
    value = Decimal(amount)
    meta = {
        "type": (AccrualType.LEASE_START if lease_start else AccrualType.MONTHLY_RENT).value,
        "accrualMonth": month,
        "accrualYear": year,
        "studentId": "STU1",
    }
    if metadata is not None:
        meta = metadata
    entry = LedgerEntry(
        id=entry_id,
        transaction_id=f"TXN-{entry_id}",
        transaction_date=date(year, month, 1),
        description=(
            "Lease start accounting entries: Thandi Moyo" if lease_start
            else f"Monthly rent accrual: Thandi Moyo - {month}/{year}"
        ),
        source=source,
        source_id="APP1",
        status=LedgerEntryStatus.POSTED,
        total_debit=value,
        total_credit=value,
        residence_id="RES1",
        created_at=created_at,
        metadata_=meta,
    )
    entry.lines = [
        LedgerEntryLine(
            line_number=1, account_code=receivable, account_name="Accounts Receivable - Tenants",
            account_type="asset", debit_amount=value, credit_amount=Decimal("0.00"),
            description="Rent due",
        ),
        LedgerEntryLine(
            line_number=2, account_code="4000", account_name="Rental Income",
            account_type="income", debit_amount=Decimal("0.00"), credit_amount=value,
            description="Rental income accrued",
        ),
    ]
    return entry


def t1_accruals() -> list[LedgerEntry]:
    """Lease start in January plus monthly accruals February through June 2025."""
    return [make_accrual("ACC-01", 1, lease_start=True)] + [
        make_accrual(f"ACC-{m:02d}", m) for m in range(2, 7)
    ]


class FakeLedger:
    """Collects entries and audit rows staged on a mocked session."""

    def __init__(self, entries=()):
        self.entries: list[LedgerEntry] = list(entries)
        self.audits: list[AuditLog] = []
        self._seq = 0

    def add(self, obj):
        if isinstance(obj, LedgerEntry):
            if obj.id is None:
                self._seq += 1
                obj.id = f"RVS-ID-{self._seq}"
            self.entries.append(obj)
        elif isinstance(obj, AuditLog):
            self.audits.append(obj)

    @property
    def reversals(self) -> list[LedgerEntry]:
        return [e for e in self.entries if e.source == LedgerSource.RENTAL_ACCRUAL_REVERSAL]

    @property
    def accruals(self) -> list[LedgerEntry]:
        return [e for e in self.entries if e.source == LedgerSource.RENTAL_ACCRUAL]

    async def find_existing_reversal(self, db, original):
        for reversal in self.reversals:
            targets = reversal_targets(reversal)
            if original.id in targets or original.transaction_id in targets:
                return reversal
        return None
