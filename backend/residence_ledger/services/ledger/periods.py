"""Accrual period value object.

Accruals have recorded their month in three ways over time.  The parsing
order is fixed, first match wins:

1. numeric ``accrualMonth`` / ``accrualYear`` metadata fields
2. a ``"YYYY-MM"`` string in ``metadata.month``
3. the calendar month of the posting date
"""

import re
from dataclasses import dataclass
from datetime import date

from residence_ledger.services.ledger.journal import LedgerError

_MONTH_PATTERN = re.compile(r"(\d{4})-(\d{2})")


class MalformedPeriodError(LedgerError):
    """Accrual month/year could not be resolved to a valid calendar month."""


@dataclass(frozen=True, order=True)
class AccrualPeriod:
    year: int
    month: int

    def __post_init__(self):
        if not self.year or not 1 <= self.month <= 12:
            raise MalformedPeriodError(
                f"Invalid accrual period: month={self.month}, year={self.year}"
            )

    @classmethod
    def of(cls, day: date) -> "AccrualPeriod":
        return cls(day.year, day.month)

    @classmethod
    def from_entry(cls, entry) -> "AccrualPeriod":
        """Resolve the period an accrual entry was posted for."""
        meta = entry.metadata_ or {}

        month_raw = meta.get("accrualMonth")
        year_raw = meta.get("accrualYear")
        if month_raw not in (None, "") and year_raw not in (None, ""):
            try:
                return cls(int(year_raw), int(month_raw))
            except (TypeError, ValueError) as exc:
                raise MalformedPeriodError(
                    f"Unparseable accrualMonth/accrualYear: {month_raw!r}/{year_raw!r}"
                ) from exc

        month_str = meta.get("month")
        if isinstance(month_str, str):
            match = _MONTH_PATTERN.search(month_str)
            if match:
                return cls(int(match.group(1)), int(match.group(2)))

        if entry.transaction_date is None:
            raise MalformedPeriodError("Entry has no accrual metadata and no posting date")
        return cls.of(entry.transaction_date)

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def is_after(self, day: date) -> bool:
        """True when this period is a later calendar month than *day*'s."""
        return (self.year, self.month) > (day.year, day.month)

    def __str__(self) -> str:
        return f"{self.month}/{self.year}"
