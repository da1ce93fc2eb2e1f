"""End-to-end tests for the early lease end correction.

The session is mocked; query helpers are patched and an in-memory ledger
records every staged entry so repeated runs see earlier reversals.
"""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from factories import (
    FakeLedger,
    make_accrual,
    make_application,
    make_db,
    make_debtor,
    make_room,
    t1_accruals,
)

from residence_ledger.models.residence import RoomStatus
from residence_ledger.models.tenancy import ApplicationStatus, DebtorStatus
from residence_ledger.services.ledger.correction import correct_accruals_for_early_lease_end
from residence_ledger.services.ledger.identity import build_identifier_set
from residence_ledger.services.ledger.matcher import AccrualMatch
from residence_ledger.services.ledger.reversals import Actor

CORRECTION = "residence_ledger.services.ledger.correction"
REVERSALS = "residence_ledger.services.ledger.reversals"
LEASE_END = "residence_ledger.services.ledger.lease_end"
TODAY = date(2025, 10, 1)


class Scenario:
    """A tenancy, its debtor and room, and a ledger holding its accruals."""

    def __init__(self, accruals=None, siblings=(), **app_overrides):
        self.app = make_application(**app_overrides)
        self.debtor = make_debtor()
        self.room = make_room()
        self.ledger = FakeLedger(accruals if accruals is not None else t1_accruals())
        self.siblings = list(siblings)
        self.db = make_db(add=self.ledger.add)

    async def _find_accruals(self, db, identifiers):
        return AccrualMatch(entries=list(self.ledger.accruals), tier=1, identifiers=identifiers.values)

    async def run(self, end_date=date(2025, 3, 15), **kwargs):
        identifiers = build_identifier_set(self.app, self.debtor)
        with patch(f"{CORRECTION}._load_application", AsyncMock(return_value=self.app)), \
             patch(f"{CORRECTION}.resolve_identifiers", AsyncMock(return_value=(identifiers, self.debtor))), \
             patch(f"{CORRECTION}.find_accruals", self._find_accruals), \
             patch(f"{CORRECTION}.load_sibling_applications", AsyncMock(return_value=self.siblings)), \
             patch(f"{REVERSALS}.find_existing_reversal", self.ledger.find_existing_reversal), \
             patch(f"{LEASE_END}._find_debtor", AsyncMock(return_value=self.debtor)), \
             patch(f"{LEASE_END}._find_room", AsyncMock(return_value=self.room)):
            return await correct_accruals_for_early_lease_end(
                self.db, self.app.id, end_date,
                actor=Actor(id="U1", email="admin@example.com"), today=TODAY, **kwargs,
            )


class TestEarlyLeaseEnd:

    @pytest.mark.asyncio
    async def test_t1_scenario(self):
        s = Scenario()
        result = await s.run()

        assert result.success
        assert sorted((o.year, o.month) for o in result.corrected) == [(2025, 4), (2025, 5), (2025, 6)]
        assert len(s.ledger.reversals) == 3
        for reversal in s.ledger.reversals:
            assert reversal.is_balanced
            assert reversal.total_debit == Decimal("300.00")
        assert s.app.end_date == date(2025, 3, 15)
        assert s.app.status == ApplicationStatus.EXPIRED
        assert s.debtor.status == DebtorStatus.EXPIRED
        assert s.room.current_occupancy == 1
        assert s.room.status == RoomStatus.RESERVED
        assert result.original_end_date == date(2025, 6, 30)
        assert result.message == "Successfully corrected 3 incorrect accruals"
        s.db.commit.assert_awaited_once()
        assert s.ledger.audits[-1].action == "correct_accruals_early_lease_end"

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing_new(self):
        s = Scenario()
        first = await s.run()
        second = await s.run()

        assert first.corrected_count == 3
        assert second.success
        assert second.corrected_count == 0
        assert len(second.skipped) == 3
        assert len(s.ledger.reversals) == 3
        assert s.room.current_occupancy == 1

    @pytest.mark.asyncio
    async def test_renewal_accruals_survive(self):
        renewal = make_application(
            id="APP2", start_date=date(2025, 7, 1), end_date=date(2025, 12, 31)
        )
        accruals = t1_accruals() + [make_accrual(f"B-{m:02d}", m) for m in (7, 8, 9)]
        s = Scenario(accruals=accruals, siblings=[renewal])
        result = await s.run()

        reversed_ids = {o.accrual_id for o in result.corrected}
        assert reversed_ids == {"ACC-04", "ACC-05", "ACC-06"}
        assert s.debtor.status == DebtorStatus.ACTIVE
        assert result.lease_end.debtor_kept_for == "APP2"
        assert not result.lease_end.debtor_expired

    @pytest.mark.asyncio
    async def test_expired_sibling_tenancy_accruals_survive(self):
        sibling = make_application(
            id="APP2", start_date=date(2025, 7, 1), end_date=date(2025, 9, 30),
            status=ApplicationStatus.EXPIRED,
        )
        sibling_accruals = [make_accrual(f"B-{m:02d}", m) for m in (7, 8, 9)]
        for entry in sibling_accruals:
            entry.source_id = "APP2"
        s = Scenario(accruals=t1_accruals() + sibling_accruals, siblings=[sibling])
        result = await s.run()

        assert {o.accrual_id for o in result.corrected} == {"ACC-04", "ACC-05", "ACC-06"}
        assert s.debtor.status == DebtorStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_nothing_to_correct_still_updates_lease(self):
        s = Scenario(accruals=[make_accrual("ACC-01", 1, lease_start=True)])
        result = await s.run()

        assert result.success
        assert result.message == "No incorrect accruals found"
        assert s.ledger.reversals == []
        assert s.app.status == ApplicationStatus.EXPIRED
        s.db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_end_date_left_alone_when_asked(self):
        s = Scenario()
        result = await s.run(update_end_date=False)
        assert result.corrected_count == 3
        assert s.app.end_date == date(2025, 6, 30)
        assert not result.lease_end.end_date_updated

    @pytest.mark.asyncio
    async def test_one_bad_accrual_does_not_block_others(self):
        accruals = t1_accruals()
        accruals[4].lines[1].credit_amount = Decimal("1.00")  # May is corrupt
        s = Scenario(accruals=accruals)
        result = await s.run()

        assert result.success
        assert [o.month for o in result.errors] == [5]
        assert sorted(o.month for o in result.corrected) == [4, 6]
        s.db.commit.assert_awaited_once()


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_application(self):
        db = make_db()
        with patch(f"{CORRECTION}._load_application", AsyncMock(return_value=None)):
            result = await correct_accruals_for_early_lease_end(db, "NOPE", date(2025, 3, 15))
        assert not result.success
        assert result.error == "Application not found"
        db.commit.assert_not_awaited()
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back_and_logs(self):
        db = make_db()
        app = make_application()
        with patch(f"{CORRECTION}._load_application", AsyncMock(return_value=app)), \
             patch(f"{CORRECTION}.resolve_identifiers", AsyncMock(side_effect=RuntimeError("connection reset"))), \
             patch(f"{CORRECTION}.log_error_standalone", AsyncMock()) as log_error:
            result = await correct_accruals_for_early_lease_end(db, "APP1", date(2025, 3, 15))
        assert not result.success
        assert result.error == "connection reset"
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()
        log_error.assert_awaited_once()
        assert log_error.await_args.kwargs["entity_id"] == "APP1"
