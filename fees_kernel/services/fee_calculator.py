"""
FeeCalculator -- gross / discount / net for one student and one period.

Responsibility:
    Composes the Subscription Reader (through the Directory) and the
    DiscountResolver into a single FeeCalculation.

Architecture position:
    Kernel > Services.  Read-only: no session writes, no side effects.

Algorithm:
    gross    = sum of monthly unit amounts of the active subscriptions
    discount = subscription discounts + family discount share, clamped to gross
    net      = max(0, gross - discount)

    The calculation reads the CURRENT subscription and family state.
    Re-running it for a past period after the family changed gives a
    different answer; the AllocationStore refuses to apply such an answer
    to an allocation that payments were already reconciled against.

Failure modes:
    - InvalidPeriodError for a month outside 1..12 or a year outside the
      configured bounds.
    - StudentNotFoundError / FamilyNotFoundError propagated unchanged.
"""

from uuid import UUID

from fees_kernel.db.types import ZERO, round_money
from fees_kernel.domain.directory import Directory
from fees_kernel.domain.dtos import FeeCalculation
from fees_kernel.domain.fee_math import compute_net
from fees_kernel.domain.period import DEFAULT_MAX_YEAR, DEFAULT_MIN_YEAR, BillingPeriod
from fees_kernel.logging_config import get_logger
from fees_kernel.services.discount_resolver import DiscountResolver

logger = get_logger("services.fee_calculator")


class FeeCalculator:
    """
    Computes what a student owes for a billing period.

    Contract:
        ``calculate`` is a pure function of the directory state and the
        requested period.

    Guarantees:
        - gross >= 0 and net >= 0.
        - discount <= gross.
    """

    def __init__(
        self,
        directory: Directory,
        discount_resolver: DiscountResolver | None = None,
        min_year: int = DEFAULT_MIN_YEAR,
        max_year: int = DEFAULT_MAX_YEAR,
    ):
        self._directory = directory
        self._discounts = discount_resolver or DiscountResolver(directory)
        self._min_year = min_year
        self._max_year = max_year

    def period(self, month: int, year: int) -> BillingPeriod:
        """Validated billing period within the configured year bounds."""
        return BillingPeriod.of(month, year, self._min_year, self._max_year)

    def calculate(self, student_id: UUID, month: int, year: int) -> FeeCalculation:
        """
        Calculate one student's fee for (month, year).

        Raises:
            InvalidPeriodError: If the period is invalid.
            StudentNotFoundError: If the student does not exist.
            FamilyNotFoundError: If the student's family does not exist.
        """
        return self.calculate_for_period(student_id, self.period(month, year))

    def calculate_for_period(self, student_id: UUID, period: BillingPeriod) -> FeeCalculation:
        student = self._directory.get_student(student_id)
        lines = self._directory.get_active_subscriptions(student_id, period)

        sibling_count = self._directory.get_active_sibling_count(student.family_id, period)
        is_active_sibling = self._directory.is_active_sibling(student_id, period)
        breakdown = self._discounts.resolve(
            student_id=student_id,
            family_id=student.family_id,
            active_sibling_count=sibling_count,
            subscriptions=lines,
            is_active_sibling=is_active_sibling,
        )

        gross = round_money(sum((line.unit_amount for line in lines), ZERO))
        discount, net = compute_net(gross, breakdown.total)

        calculation = FeeCalculation(
            student_id=student_id,
            family_id=student.family_id,
            period=period,
            gross=gross,
            discount=discount,
            net=net,
            lines=tuple(lines),
            breakdown=breakdown,
        )
        logger.debug(
            "fee_calculated",
            extra={
                "student_id": str(student_id),
                "period": str(period),
                "gross": str(gross),
                "discount": str(discount),
                "net": str(net),
                "line_count": len(lines),
            },
        )
        return calculation

    def calculate_family(self, family_id: UUID, month: int, year: int) -> list[FeeCalculation]:
        """
        One calculation per active student of the family.

        Raises:
            InvalidPeriodError: If the period is invalid.
            FamilyNotFoundError: If the family does not exist.
        """
        period = self.period(month, year)
        students = self._directory.get_family_students(family_id, active_only=True)
        return [self.calculate_for_period(s.id, period) for s in students]
