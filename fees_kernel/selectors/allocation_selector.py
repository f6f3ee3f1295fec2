"""
Fee allocation query selector.

Provides read-only access to allocations: single lookups, filtered listings,
a family's outstanding balance and the overdue summary used for reminders.

Key design decisions:
- Listings order by year DESC, month DESC, due_date ASC (newest period
  first), matching what operators see on the fees screen.
- Outstanding allocations order oldest first by (year, month, due_date, id),
  the same order auto-apply consumes them in.
- Remaining amounts are derived as net - paid in SQL; paid_amount is the
  locked, denormalized sum of payment_allocations.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from fees_kernel.db.types import to_money
from fees_kernel.domain.dtos import AllocationFilter, AllocationInfo, OverdueSummary
from fees_kernel.domain.enums import AllocationStatus
from fees_kernel.domain.period import BillingPeriod
from fees_kernel.exceptions import AllocationNotFoundError
from fees_kernel.models.allocation import FeeAllocation
from fees_kernel.models.family import Student
from fees_kernel.selectors.base import BaseSelector


class AllocationSelector(BaseSelector[FeeAllocation]):
    """Read access to fee allocations."""

    def get(self, allocation_id: UUID) -> AllocationInfo:
        """
        Raises:
            AllocationNotFoundError: If no allocation has this id.
        """
        allocation = self._require(FeeAllocation, allocation_id, AllocationNotFoundError)
        return AllocationInfo.from_model(allocation)

    def find(self, student_id: UUID, period: BillingPeriod) -> AllocationInfo | None:
        stmt = select(FeeAllocation).where(
            FeeAllocation.student_id == student_id,
            FeeAllocation.month == period.month,
            FeeAllocation.year == period.year,
        )
        allocation = self.session.scalars(stmt).one_or_none()
        return AllocationInfo.from_model(allocation) if allocation else None

    def family_id_of(self, allocation_id: UUID) -> UUID:
        stmt = (
            select(Student.family_id)
            .select_from(Student)
            .join(FeeAllocation, FeeAllocation.student_id == Student.id)
            .where(FeeAllocation.id == allocation_id)
        )
        family_id = self.session.scalar(stmt)
        if family_id is None:
            raise AllocationNotFoundError(str(allocation_id))
        return family_id

    def list_allocations(self, filters: AllocationFilter | None = None) -> list[AllocationInfo]:
        filters = filters or AllocationFilter()
        stmt = select(FeeAllocation)
        if filters.family_id is not None:
            stmt = stmt.join(Student, Student.id == FeeAllocation.student_id).where(
                Student.family_id == filters.family_id
            )
        if filters.student_id is not None:
            stmt = stmt.where(FeeAllocation.student_id == filters.student_id)
        if filters.month is not None:
            stmt = stmt.where(FeeAllocation.month == filters.month)
        if filters.year is not None:
            stmt = stmt.where(FeeAllocation.year == filters.year)
        if filters.status is not None:
            stmt = stmt.where(FeeAllocation.status == AllocationStatus(filters.status).value)
        stmt = stmt.order_by(
            FeeAllocation.year.desc(),
            FeeAllocation.month.desc(),
            FeeAllocation.due_date.asc(),
            FeeAllocation.id,
        )
        return [AllocationInfo.from_model(a) for a in self.session.scalars(stmt)]

    def outstanding_for_family(self, family_id: UUID) -> list[AllocationInfo]:
        """Non-PAID allocations with something left to pay, oldest first."""
        stmt = (
            select(FeeAllocation)
            .join(Student, Student.id == FeeAllocation.student_id)
            .where(
                Student.family_id == family_id,
                FeeAllocation.status != AllocationStatus.PAID.value,
                FeeAllocation.net_amount > FeeAllocation.paid_amount,
            )
            .order_by(
                FeeAllocation.year,
                FeeAllocation.month,
                FeeAllocation.due_date,
                FeeAllocation.id,
            )
        )
        return [AllocationInfo.from_model(a) for a in self.session.scalars(stmt)]

    def outstanding_balance(self, family_id: UUID) -> Decimal:
        """Sum of remaining amounts across the family's allocations."""
        stmt = (
            select(
                func.coalesce(
                    func.sum(FeeAllocation.net_amount - FeeAllocation.paid_amount),
                    Decimal("0"),
                )
            )
            .select_from(FeeAllocation)
            .join(Student, Student.id == FeeAllocation.student_id)
            .where(
                Student.family_id == family_id,
                FeeAllocation.net_amount > FeeAllocation.paid_amount,
            )
        )
        return to_money(self.session.scalar(stmt))

    def overdue_summary(self, as_of: date) -> OverdueSummary:
        """
        Unpaid or part-paid allocations whose due date is before ``as_of``.

        total_amount is the outstanding remainder, not the net billed.
        """
        stmt = (
            select(
                func.count(FeeAllocation.id),
                func.coalesce(
                    func.sum(FeeAllocation.net_amount - FeeAllocation.paid_amount),
                    Decimal("0"),
                ),
                func.count(func.distinct(Student.family_id)),
                func.min(FeeAllocation.due_date),
            )
            .select_from(FeeAllocation)
            .join(Student, Student.id == FeeAllocation.student_id)
            .where(
                FeeAllocation.status != AllocationStatus.PAID.value,
                FeeAllocation.net_amount > FeeAllocation.paid_amount,
                FeeAllocation.due_date < as_of,
            )
        )
        count, total, families, oldest = self.session.execute(stmt).one()
        return OverdueSummary(
            as_of=as_of,
            total_overdue=count or 0,
            total_amount=to_money(total),
            affected_families=families or 0,
            oldest_due_date=oldest,
        )
