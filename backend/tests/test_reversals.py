"""Tests for the reversal generator.

Tests cover:
- Mirrored lines balance and re-point receivables at the canonical code
- Already-reversed originals are skipped (ledger-derived and legacy flags)
- A balance failure is a per-item error with no write
"""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.dialects import postgresql

from factories import FakeLedger, make_accrual, make_application, make_db, make_debtor

from residence_ledger.models.ledger import LedgerSource
from residence_ledger.services.ledger.identity import build_identifier_set
from residence_ledger.services.ledger.matcher import annotate_accruals
from residence_ledger.services.ledger.overlap import IncorrectAccrual
from residence_ledger.services.ledger.reversals import (
    Actor,
    ReversalContext,
    ReversalStatus,
    build_reversal_lines,
    find_existing_reversal,
    is_flagged_reversed,
    reversal_targets,
    reverse_accrual,
)

REVERSALS = "residence_ledger.services.ledger.reversals"


def _context():
    app = make_application()
    return ReversalContext(
        application=app,
        identifiers=build_identifier_set(app, make_debtor()),
        reason="Student left early",
        actual_end_date=date(2025, 3, 15),
        original_end_date=date(2025, 6, 30),
        actor=Actor(id="U1", email="admin@example.com"),
    )


def _incorrect(entry):
    return IncorrectAccrual(annotate_accruals([entry])[0], "after lease end")


class TestBuildLines:

    def test_swaps_and_repoints_receivable(self):
        original = make_accrual("A4", 4, receivable="1100-APP1")
        lines = build_reversal_lines(
            original, canonical_code="1100-DR0001", account_name="Accounts Receivable - Thandi Moyo"
        )
        assert lines[0]["account_code"] == "1100-DR0001"
        assert lines[0]["account_name"] == "Accounts Receivable - Thandi Moyo"
        assert lines[0]["credit_amount"] == Decimal("300.00")
        assert lines[0]["debit_amount"] == Decimal("0.00")
        assert lines[1]["account_code"] == "4000"
        assert lines[1]["debit_amount"] == Decimal("300.00")

    def test_debtor_code_outside_1100_family_repointed(self):
        original = make_accrual("A4", 4, receivable="DR0001")
        lines = build_reversal_lines(
            original, canonical_code="1100-DR0001", account_name="AR",
            receivable_codes=["DR0001"],
        )
        assert lines[0]["account_code"] == "1100-DR0001"

    def test_reversal_balances(self):
        original = make_accrual("A4", 4, amount="164.52")
        lines = build_reversal_lines(original, canonical_code="1100-STU1", account_name="AR")
        assert sum(ln["debit_amount"] for ln in lines) == sum(ln["credit_amount"] for ln in lines)


class TestAlreadyReversed:

    def test_targets_from_all_link_fields(self):
        reversal = make_accrual(
            "R1", 4, source=LedgerSource.RENTAL_ACCRUAL_REVERSAL,
            metadata={"originalAccrualId": "A4", "originalTransactionId": "TXN-A4"},
        )
        reversal.source_id = "A4"
        reversal.reference = "LEGACY-REF"
        assert reversal_targets(reversal) == {"A4", "TXN-A4", "LEGACY-REF"}

    def test_legacy_flags(self):
        assert is_flagged_reversed(make_accrual("A4", 4, metadata={"isReversed": True}))
        assert not is_flagged_reversed(make_accrual("A5", 5))

    @pytest.mark.asyncio
    async def test_existing_reversal_skips(self):
        original = make_accrual("A4", 4)
        ledger = FakeLedger([original])
        db = make_db(add=ledger.add)
        with patch(f"{REVERSALS}.find_existing_reversal", ledger.find_existing_reversal):
            first = await reverse_accrual(db, _incorrect(original), _context())
            second = await reverse_accrual(db, _incorrect(original), _context())
        assert first.status == ReversalStatus.REVERSED
        assert second.status == ReversalStatus.ALREADY_REVERSED
        assert second.reversal_entry_id == first.reversal_entry_id
        assert len(ledger.reversals) == 1

    @pytest.mark.asyncio
    async def test_legacy_flag_skips_without_write(self):
        original = make_accrual(
            "A4", 4,
            metadata={"accrualMonth": 4, "accrualYear": 2025, "reversed": True},
        )
        db = make_db()
        with patch(f"{REVERSALS}.find_existing_reversal", return_value=None):
            outcome = await reverse_accrual(db, _incorrect(original), _context())
        assert outcome.status == ReversalStatus.ALREADY_REVERSED
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_lookup_searches_every_back_reference(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        db = make_db()
        db.execute = AsyncMock(return_value=result)

        assert await find_existing_reversal(db, make_accrual("ACC-04", 4)) is None

        compiled = db.execute.await_args.args[0].compile(dialect=postgresql.dialect())
        sql = str(compiled)
        assert "ledger_entries.source_id IN" in sql
        assert "ledger_entries.reference IN" in sql
        assert sql.count("ledger_entries.metadata ->>") == 2
        params = list(compiled.params.values())
        assert "originalAccrualId" in params
        assert "originalTransactionId" in params
        assert ["ACC-04", "TXN-ACC-04"] in params
        assert LedgerSource.RENTAL_ACCRUAL_REVERSAL in params


class TestReverseAccrual:

    @pytest.mark.asyncio
    async def test_creates_linked_reversal_and_audit(self):
        original = make_accrual("A4", 4)
        ledger = FakeLedger([original])
        db = make_db(add=ledger.add)
        with patch(f"{REVERSALS}.find_existing_reversal", ledger.find_existing_reversal):
            outcome = await reverse_accrual(db, _incorrect(original), _context())

        reversal = ledger.reversals[0]
        assert outcome.status == ReversalStatus.REVERSED
        assert outcome.reversal_transaction_id == reversal.transaction_id
        assert reversal.source_id == reversal.reference == "A4"
        assert reversal.total_debit == reversal.total_credit == Decimal("300.00")
        assert reversal.meta["originalTransactionId"] == "TXN-A4"
        assert reversal.meta["accrualMonth"] == 4
        assert reversal.meta["studentId"] == "STU1"
        assert reversal.meta["debtorId"] == "DEB1"
        assert reversal.meta["correctionType"] == "early_lease_end"
        assert reversal.lines[0].account_code == "1100-DR0001"
        assert reversal.created_by == "admin@example.com"
        # original untouched
        assert original.lines[0].debit_amount == Decimal("300.00")
        assert "reversed" not in original.meta
        assert ledger.audits[0].action == "reverse_rental_accrual"

    @pytest.mark.asyncio
    async def test_unbalanced_original_fails_without_write(self):
        original = make_accrual("A4", 4)
        original.lines[1].credit_amount = Decimal("290.00")
        db = make_db()
        with patch(f"{REVERSALS}.find_existing_reversal", return_value=None):
            outcome = await reverse_accrual(db, _incorrect(original), _context())
        assert outcome.status == ReversalStatus.FAILED
        assert "not balanced" in outcome.error
        db.add.assert_not_called()
