"""Ledger entry models.

Implements the double-entry transaction store used for rent accruals:
- One header row per transaction with a free-form correlation ``metadata`` bag
- One line per account code (debit or credit)
- Entries are never edited once posted; corrections are appended as
  reversal entries that point back at the original
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    JSON,
    Index,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from residence_ledger.database import Base


# ===================================================================
# Enumerations
# ===================================================================


class LedgerSource(str, enum.Enum):
    RENTAL_ACCRUAL = "rental_accrual"
    RENTAL_ACCRUAL_REVERSAL = "rental_accrual_reversal"
    PAYMENT = "payment"
    MANUAL = "manual"
    ADJUSTMENT = "adjustment"


class LedgerEntryStatus(str, enum.Enum):
    POSTED = "posted"
    DELETED = "deleted"


class AccrualType(str, enum.Enum):
    LEASE_START = "lease_start"
    MONTHLY_RENT = "monthly_rent_accrual"


# Metadata keys that have carried tenancy/student/debtor ids over time
CORRELATION_METADATA_KEYS = ("applicationId", "studentId", "userId", "debtorId")


# ===================================================================
# Ledger entries
# ===================================================================


class LedgerEntry(Base):
    """Immutable double-entry transaction header."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_source_status", "source", "status"),
        Index("ix_ledger_source_id", "source_id"),
        Index("ix_ledger_reference", "reference"),
        Index("ix_ledger_transaction_date", "transaction_date"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: uuid.uuid4().hex
    )
    transaction_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    source: Mapped[LedgerSource] = mapped_column(Enum(LedgerSource), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_model: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[LedgerEntryStatus] = mapped_column(
        Enum(LedgerEntryStatus), default=LedgerEntryStatus.POSTED, nullable=False
    )
    total_debit: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00"), nullable=False
    )
    total_credit: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00"), nullable=False
    )

    residence_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    lines = relationship(
        "LedgerEntryLine",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="LedgerEntryLine.line_number",
    )

    @property
    def meta(self) -> dict:
        return self.metadata_ or {}

    @property
    def line_debits(self) -> Decimal:
        return sum((ln.debit_amount or Decimal("0")) for ln in self.lines)

    @property
    def line_credits(self) -> Decimal:
        return sum((ln.credit_amount or Decimal("0")) for ln in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.line_debits == self.line_credits

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.id} {self.transaction_id} {self.source.value if self.source else None}>"


class LedgerEntryLine(Base):
    """Individual debit or credit line within a ledger entry."""

    __tablename__ = "ledger_entry_lines"
    __table_args__ = (
        CheckConstraint(
            "debit_amount >= 0 AND credit_amount >= 0",
            name="ck_ledger_line_non_negative",
        ),
        Index("ix_ledger_line_account", "account_code"),
        Index("ix_ledger_line_entry", "entry_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="CASCADE"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    account_code: Mapped[str] = mapped_column(String(64), nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    account_type: Mapped[str | None] = mapped_column(String(30), nullable=True)

    debit_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00"), nullable=False
    )
    credit_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    entry = relationship("LedgerEntry", back_populates="lines")
