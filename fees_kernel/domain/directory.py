"""
Directory -- the student/family lookups the engine consumes.

Responsibility:
    Declares the read interface the Fee Calculator and Discount Resolver
    depend on.  The SQL implementation lives in
    ``fees_kernel.selectors.subscription_selector.SqlDirectory``; tests and
    other hosts may supply their own.

Architecture position:
    Kernel > Domain -- interface only, zero I/O.

Failure modes:
    Implementations raise StudentNotFoundError / FamilyNotFoundError for
    unknown ids.  Errors propagate through the calculator unchanged.
"""

from decimal import Decimal
from typing import Protocol, runtime_checkable
from uuid import UUID

from fees_kernel.domain.dtos import StudentInfo, SubscriptionLine
from fees_kernel.domain.period import BillingPeriod


@runtime_checkable
class Directory(Protocol):
    """Student / family directory."""

    def get_student(self, student_id: UUID) -> StudentInfo:
        ...

    def get_active_subscriptions(
        self, student_id: UUID, period: BillingPeriod,
    ) -> list[SubscriptionLine]:
        ...

    def get_family_discount(self, family_id: UUID) -> Decimal:
        ...

    def get_active_sibling_count(self, family_id: UUID, period: BillingPeriod) -> int:
        ...

    def is_active_sibling(self, student_id: UUID, period: BillingPeriod) -> bool:
        ...

    def get_family_students(self, family_id: UUID, active_only: bool = True) -> list[StudentInfo]:
        ...
