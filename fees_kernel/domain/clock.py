"""
Clock -- the engine's only source of "now".

"Today" decides whether a payment date is in the future, whether an unpaid
allocation is OVERDUE, and which date a settled allocation records as its
paid_date.  Services receive a Clock instead of calling ``date.today()``, so
tests pin it with ``DeterministicClock.on(...)``.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone

from fees_kernel.domain.period import BillingPeriod


def _noon_utc(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Timezone-aware current time, with calendar helpers derived from it."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        return self.now().date()

    def current_period(self) -> BillingPeriod:
        """The billing period containing today."""
        today = self.today()
        return BillingPeriod(today.month, today.year)


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` returns the same instant on every call until ``advance``,
    ``advance_days`` or ``set_today`` moves it.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = fixed_time or _noon_utc(date(2024, 1, 1))

    @classmethod
    def on(cls, day: date) -> "DeterministicClock":
        """Clock fixed at noon UTC on ``day``."""
        return cls(_noon_utc(day))

    def now(self) -> datetime:
        return self._now

    def set_today(self, day: date) -> None:
        self._now = _noon_utc(day)

    def advance(self, seconds: int = 1) -> None:
        self._now += timedelta(seconds=seconds)

    def advance_days(self, days: int = 1) -> None:
        self._now += timedelta(days=days)
