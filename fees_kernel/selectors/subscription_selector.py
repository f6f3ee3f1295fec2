"""
Subscription and directory selector.

Provides read-only access to a student's active subscriptions with their
resolved monthly unit amounts, and implements the Directory protocol the
Fee Calculator consumes.

Key design decisions:
- A subscription is active for a period when [start_date, end_date) contains
  the first day of the billing month.
- Unit amounts are converted from the fee structure's billing cycle to a
  monthly amount here, so the calculator only ever sums monthly figures.
- Subscriptions whose course/service has no fee structure contribute nothing
  (inner join on fee_structures).
- An active sibling is an active student with at least one subscription
  active on the period's representative date.
- Returns DTOs (frozen dataclasses), never ORM models.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, exists, func, or_, select

from fees_kernel.db.types import round_money
from fees_kernel.domain.dtos import StudentInfo, SubscriptionLine
from fees_kernel.domain.enums import BillingCycle, ItemKind
from fees_kernel.domain.fee_math import to_monthly_amount
from fees_kernel.domain.period import BillingPeriod
from fees_kernel.exceptions import FamilyNotFoundError, StudentNotFoundError
from fees_kernel.models.catalog import Course, FeeStructure, Service
from fees_kernel.models.family import Family, Student
from fees_kernel.models.subscription import Subscription
from fees_kernel.selectors.base import BaseSelector


def _active_on(on_date: date):
    return and_(
        Subscription.start_date <= on_date,
        or_(Subscription.end_date.is_(None), Subscription.end_date > on_date),
    )


class SubscriptionSelector(BaseSelector[Subscription]):
    """Subscription Reader: active subscriptions for a student and period."""

    def active_subscriptions(
        self, student_id: UUID, period: BillingPeriod,
    ) -> list[SubscriptionLine]:
        """
        Subscriptions active on the period's representative date.

        Raises:
            StudentNotFoundError: If the student does not exist.
        """
        self._require_student(student_id)
        on_date = period.representative_date

        stmt = (
            select(Subscription, FeeStructure, Course.name, Service.name)
            .join(
                FeeStructure,
                or_(
                    FeeStructure.course_id == Subscription.course_id,
                    FeeStructure.service_id == Subscription.service_id,
                ),
            )
            .outerjoin(Course, Course.id == Subscription.course_id)
            .outerjoin(Service, Service.id == Subscription.service_id)
            .where(Subscription.student_id == student_id, _active_on(on_date))
            .order_by(Subscription.start_date, Subscription.id)
        )

        lines = []
        for subscription, fee_structure, course_name, service_name in self.session.execute(stmt):
            if subscription.course_id is not None:
                kind, item_id, item_name = ItemKind.COURSE, subscription.course_id, course_name
            else:
                kind, item_id, item_name = ItemKind.SERVICE, subscription.service_id, service_name
            cycle = BillingCycle(fee_structure.billing_cycle)
            lines.append(
                SubscriptionLine(
                    subscription_id=subscription.id,
                    student_id=subscription.student_id,
                    item_kind=kind,
                    item_id=item_id,
                    item_name=item_name or "",
                    billing_cycle=cycle,
                    cycle_amount=round_money(fee_structure.amount),
                    unit_amount=to_monthly_amount(fee_structure.amount, cycle),
                    discount_amount=round_money(subscription.discount_amount),
                    start_date=subscription.start_date,
                    end_date=subscription.end_date,
                )
            )
        return lines

    def _require_student(self, student_id: UUID) -> Student:
        return self._require(Student, student_id, StudentNotFoundError)


class SqlDirectory(SubscriptionSelector):
    """
    Directory backed by the engine's own tables.

    Implements ``fees_kernel.domain.directory.Directory``.
    """

    def get_student(self, student_id: UUID) -> StudentInfo:
        return StudentInfo.from_model(self._require_student(student_id))

    def get_active_subscriptions(
        self, student_id: UUID, period: BillingPeriod,
    ) -> list[SubscriptionLine]:
        return self.active_subscriptions(student_id, period)

    def get_family_discount(self, family_id: UUID) -> Decimal:
        return round_money(self._require_family(family_id).discount_amount)

    def get_active_sibling_count(self, family_id: UUID, period: BillingPeriod) -> int:
        self._require_family(family_id)
        stmt = (
            select(func.count(Student.id))
            .where(
                Student.family_id == family_id,
                Student.is_active.is_(True),
                self._has_active_subscription(period),
            )
        )
        return self.session.scalar(stmt) or 0

    def is_active_sibling(self, student_id: UUID, period: BillingPeriod) -> bool:
        stmt = select(Student.id).where(
            Student.id == student_id,
            Student.is_active.is_(True),
            self._has_active_subscription(period),
        )
        return self.session.scalar(stmt) is not None

    def get_family_students(self, family_id: UUID, active_only: bool = True) -> list[StudentInfo]:
        self._require_family(family_id)
        stmt = select(Student).where(Student.family_id == family_id)
        if active_only:
            stmt = stmt.where(Student.is_active.is_(True))
        stmt = stmt.order_by(Student.name, Student.id)
        return [StudentInfo.from_model(s) for s in self.session.scalars(stmt)]

    def list_active_student_ids(self) -> list[UUID]:
        """Billing population: every active student, in a stable order."""
        stmt = (
            select(Student.id)
            .where(Student.is_active.is_(True))
            .order_by(Student.id)
        )
        return list(self.session.scalars(stmt))

    def _has_active_subscription(self, period: BillingPeriod):
        return exists().where(
            Subscription.student_id == Student.id,
            _active_on(period.representative_date),
        )

    def _require_family(self, family_id: UUID) -> Family:
        return self._require(Family, family_id, FamilyNotFoundError)
