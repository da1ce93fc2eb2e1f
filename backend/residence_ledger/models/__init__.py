"""SQLAlchemy models for the residence ledger."""

from residence_ledger.models.tenancy import (
    Student,
    LeaseApplication,
    ApplicationStatus,
    Debtor,
    DebtorStatus,
)
from residence_ledger.models.residence import Residence, Room, RoomStatus
from residence_ledger.models.ledger import (
    LedgerEntry,
    LedgerEntryLine,
    LedgerSource,
    LedgerEntryStatus,
    AccrualType,
)
from residence_ledger.models.audit import AuditLog
from residence_ledger.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "Student",
    "LeaseApplication",
    "ApplicationStatus",
    "Debtor",
    "DebtorStatus",
    "Residence",
    "Room",
    "RoomStatus",
    "LedgerEntry",
    "LedgerEntryLine",
    "LedgerSource",
    "LedgerEntryStatus",
    "AccrualType",
    "AuditLog",
    "ErrorLog",
    "ErrorSeverity",
]
