"""Lease application (tenancy), student and debtor models.

A lease application is one lease period for one student.  Renewals are
separate rows, never edits of an older application.
"""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import String, Date, DateTime, Enum, ForeignKey, Text, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from residence_ledger.database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class ApplicationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXPIRED = "expired"
    REJECTED = "rejected"
    FORFEITED = "forfeited"
    CANCELLED = "cancelled"


class DebtorStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OVERDUE = "overdue"
    DEFAULTED = "defaulted"
    PAID = "paid"
    EXPIRED = "expired"


class Student(Base):
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class LeaseApplication(Base):
    __tablename__ = "lease_applications"
    __table_args__ = (
        Index("ix_lease_app_student_status", "student_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    application_code: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Filled in once registration completes
    student_id: Mapped[str | None] = mapped_column(
        ForeignKey("students.id"), nullable=True, index=True
    )
    debtor_id: Mapped[str | None] = mapped_column(
        ForeignKey("debtors.id"), nullable=True
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    residence_id: Mapped[str | None] = mapped_column(
        ForeignKey("residences.id"), nullable=True
    )
    allocated_room: Mapped[str | None] = mapped_column(String(50), nullable=True)

    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus), default=ApplicationStatus.PENDING, nullable=False
    )
    expiry_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    student = relationship("Student", foreign_keys=[student_id])
    residence = relationship("Residence")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Debtor(Base):
    """Receivable holder for a student; owns the canonical AR account code."""

    __tablename__ = "debtors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    debtor_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    student_id: Mapped[str | None] = mapped_column(
        ForeignKey("students.id"), nullable=True, index=True
    )
    account_code: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )
    status: Mapped[DebtorStatus] = mapped_column(
        Enum(DebtorStatus), default=DebtorStatus.ACTIVE, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
