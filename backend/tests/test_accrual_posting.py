"""Tests for lease-start and monthly rent accrual posting."""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from factories import FakeLedger, make_accrual, make_application, make_db, make_debtor, make_room

from residence_ledger.models.ledger import LedgerEntry
from residence_ledger.models.residence import Residence
from residence_ledger.services.ledger.accrual_posting import (
    AccrualPostingError,
    charges_admin_fee,
    is_active_in,
    post_lease_start_accrual,
    post_monthly_accrual,
    prorated_rent,
    run_monthly_accruals,
)
from residence_ledger.services.ledger.identity import build_identifier_set
from residence_ledger.services.ledger.periods import AccrualPeriod

POSTING = "residence_ledger.services.ledger.accrual_posting"


def _identity(app):
    debtor = make_debtor()
    return AsyncMock(return_value=(build_identifier_set(app, debtor), debtor))


class TestPureHelpers:

    def test_prorated_rent_includes_start_day(self):
        assert prorated_rent(Decimal("300"), date(2025, 1, 15)) == Decimal("164.52")
        assert prorated_rent(Decimal("300"), date(2025, 1, 1)) == Decimal("300.00")
        assert prorated_rent(Decimal("280"), date(2024, 2, 29)) == Decimal("9.66")

    def test_admin_fee_only_for_matching_residence(self):
        assert charges_admin_fee(Residence(id="R1", name="St Kilda Private Hostel"))
        assert not charges_admin_fee(Residence(id="R2", name="Belvedere"))
        assert not charges_admin_fee(None)

    def test_active_months_inclusive(self):
        app = make_application()
        assert is_active_in(app, AccrualPeriod(2025, 1))
        assert is_active_in(app, AccrualPeriod(2025, 6))
        assert not is_active_in(app, AccrualPeriod(2025, 7))
        assert not is_active_in(make_application(end_date=None), AccrualPeriod(2025, 3))


class TestLeaseStart:

    @pytest.mark.asyncio
    async def test_posts_rent_fee_and_deposit(self):
        app = make_application(start_date=date(2025, 1, 15))
        ledger = FakeLedger()
        db = make_db(add=ledger.add)
        with patch(f"{POSTING}.find_lease_start_accrual", AsyncMock(return_value=None)), \
             patch(f"{POSTING}._load_room", AsyncMock(return_value=make_room())), \
             patch(f"{POSTING}._load_residence", AsyncMock(return_value=Residence(id="RES1", name="St Kilda"))), \
             patch(f"{POSTING}.resolve_identifiers", _identity(app)):
            entry = await post_lease_start_accrual(db, app)

        assert entry.total_debit == entry.total_credit == Decimal("484.52")
        codes = [(ln.account_code, ln.debit_amount, ln.credit_amount) for ln in entry.lines]
        assert codes == [
            ("1100-DR0001", Decimal("164.52"), Decimal("0.00")),
            ("4000", Decimal("0.00"), Decimal("164.52")),
            ("1100-DR0001", Decimal("20.00"), Decimal("0.00")),
            ("4100", Decimal("0.00"), Decimal("20.00")),
            ("1100-DR0001", Decimal("300.00"), Decimal("0.00")),
            ("2020", Decimal("0.00"), Decimal("300.00")),
        ]
        assert entry.meta["type"] == "lease_start"
        assert (entry.meta["accrualMonth"], entry.meta["accrualYear"]) == (1, 2025)
        assert entry.meta["applicationId"] == "APP1"
        assert entry.transaction_date == date(2025, 1, 15)

    @pytest.mark.asyncio
    async def test_no_admin_fee_elsewhere(self):
        app = make_application(start_date=date(2025, 1, 1))
        db = make_db()
        with patch(f"{POSTING}.find_lease_start_accrual", AsyncMock(return_value=None)), \
             patch(f"{POSTING}._load_room", AsyncMock(return_value=make_room())), \
             patch(f"{POSTING}._load_residence", AsyncMock(return_value=Residence(id="RES1", name="Belvedere"))), \
             patch(f"{POSTING}.resolve_identifiers", _identity(app)):
            entry = await post_lease_start_accrual(db, app)
        assert len(entry.lines) == 4
        assert entry.total_debit == Decimal("600.00")

    @pytest.mark.asyncio
    async def test_existing_lease_start_is_left_alone(self):
        db = make_db()
        existing = make_accrual("LS", 1, lease_start=True)
        with patch(f"{POSTING}.find_lease_start_accrual", AsyncMock(return_value=existing)), \
             patch(f"{POSTING}._load_room", AsyncMock()) as load_room:
            assert await post_lease_start_accrual(db, make_application()) is None
        load_room.assert_not_awaited()
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_start_date(self):
        with pytest.raises(AccrualPostingError, match="no start date"):
            await post_lease_start_accrual(make_db(), make_application(start_date=None))


class TestMonthly:

    @pytest.mark.asyncio
    async def test_posts_full_month(self):
        app = make_application()
        db = make_db()
        with patch(f"{POSTING}.find_monthly_accrual", AsyncMock(return_value=None)), \
             patch(f"{POSTING}._load_room", AsyncMock(return_value=make_room())), \
             patch(f"{POSTING}.resolve_identifiers", _identity(app)):
            entry = await post_monthly_accrual(db, app, 4, 2025)
        assert entry.total_debit == Decimal("300.00")
        assert entry.transaction_date == date(2025, 4, 1)
        assert entry.meta["month"] == "2025-04"
        assert entry.meta["type"] == "monthly_rent_accrual"
        assert entry.lines[0].account_code == "1100-DR0001"
        assert entry.lines[1].account_code == "4000"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("month,year", [(1, 2025), (7, 2025), (12, 2024)])
    async def test_start_month_and_outside_lease_skipped(self, month, year):
        db = make_db()
        with patch(f"{POSTING}.find_monthly_accrual", AsyncMock()) as find:
            assert await post_monthly_accrual(db, make_application(), month, year) is None
        find.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_posted_month_skipped(self):
        db = make_db()
        with patch(f"{POSTING}.find_monthly_accrual", AsyncMock(return_value=make_accrual("M4", 4))):
            assert await post_monthly_accrual(db, make_application(), 4, 2025) is None
        db.add.assert_not_called()


class TestRunMonthly:

    @pytest.mark.asyncio
    async def test_collects_failures_and_continues(self):
        good, skipped, broken = (
            make_application(id="A1"), make_application(id="A2"), make_application(id="A3")
        )
        posted_entry = LedgerEntry(id="E1", total_debit=Decimal("300.00"))

        async def fake_post(db, application, month, year):
            if application.id == "A3":
                raise AccrualPostingError("Room price not found")
            return posted_entry if application.id == "A1" else None

        result = MagicMock()
        result.scalars.return_value.all.return_value = [good, skipped, broken]
        db = make_db()
        db.execute = AsyncMock(return_value=result)
        with patch(f"{POSTING}.post_monthly_accrual", fake_post):
            summary = await run_monthly_accruals(db, 4, 2025)

        assert summary.posted == ["A1"]
        assert summary.skipped == ["A2"]
        assert summary.errors == [{"application_id": "A3", "error": "Room price not found"}]
        assert summary.total_amount == Decimal("300.00")
        db.commit.assert_awaited_once()
