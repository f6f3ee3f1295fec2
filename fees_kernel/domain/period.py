"""
Period -- the (month, year) billing period value object.

Responsibility:
    Validates a billing period at the boundary and derives the dates the
    engine needs from it: the representative date used to decide which
    subscriptions are active, and the due date of an allocation.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Failure modes:
    - InvalidPeriodError on a month outside 1..12, a non-integer component,
      or a year outside the configured bounds.
    - InvalidDateError on a due day outside 1..28.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from fees_kernel.exceptions import InvalidDateError, InvalidPeriodError

DEFAULT_MIN_YEAR = 2000
DEFAULT_MAX_YEAR = 2100
MAX_DUE_DAY = 28  # valid in every month


@dataclass(frozen=True, slots=True)
class BillingPeriod:
    """
    One calendar month that fees are billed for.

    Guarantees:
        - Immutable and hashable.
        - 1 <= month <= 12 and min_year <= year <= max_year at construction.
        - Orders chronologically.
    """

    month: int
    year: int

    def __post_init__(self) -> None:
        for value in (self.month, self.year):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidPeriodError(
                    self.month, self.year, "month and year must be integers",
                )
        if not 1 <= self.month <= 12:
            raise InvalidPeriodError(self.month, self.year, "month must be in 1..12")

    @classmethod
    def of(
        cls,
        month: int,
        year: int,
        min_year: int = DEFAULT_MIN_YEAR,
        max_year: int = DEFAULT_MAX_YEAR,
    ) -> BillingPeriod:
        """Build a period and check the year against the configured bounds."""
        period = cls(month, year)
        if not min_year <= year <= max_year:
            raise InvalidPeriodError(
                month, year, f"year must be in {min_year}..{max_year}",
            )
        return period

    @property
    def representative_date(self) -> date:
        """First day of the billing month."""
        return date(self.year, self.month, 1)

    def due_date(self, due_day: int) -> date:
        """Day ``due_day`` of the billing month."""
        if isinstance(due_day, bool) or not isinstance(due_day, int) or not 1 <= due_day <= MAX_DUE_DAY:
            raise InvalidDateError(str(due_day), f"due day must be in 1..{MAX_DUE_DAY}")
        return date(self.year, self.month, due_day)

    def next(self) -> BillingPeriod:
        if self.month == 12:
            return BillingPeriod(1, self.year + 1)
        return BillingPeriod(self.month + 1, self.year)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.year, self.month)

    def __lt__(self, other: BillingPeriod) -> bool:
        return self.sort_key < other.sort_key

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"
