"""
Module: fees_kernel.models.subscription
Responsibility: ORM persistence for a student's enrolment in a course or a
    service, with its per-subscription discount.
Architecture position: Kernel > Models.  May import from db/ and domain/enums.py.

Invariants enforced:
    - Exactly one of course_id / service_id (ck_subscription_single_item).
    - discount_amount >= 0 (ck_subscription_discount_non_negative).
    - end_date, when set, is after start_date (ck_subscription_dates).
    - Subscriptions are ended by setting end_date, never deleted, so that
      historical allocations keep a traceable source.

Active window: [start_date, end_date).  A subscription bills a period when
the first day of the billing month falls inside that window.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fees_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from fees_kernel.models.catalog import Course, Service
    from fees_kernel.models.family import Student


class Subscription(TrackedBase):
    """
    Student enrolment in one course or one service.

    Guarantees:
        - References exactly one catalog item.
        - discount_amount is an absolute, non-negative amount.
    """

    __tablename__ = "subscriptions"

    __table_args__ = (
        CheckConstraint(
            "(course_id IS NULL) <> (service_id IS NULL)",
            name="ck_subscription_single_item",
        ),
        CheckConstraint(
            "discount_amount >= 0",
            name="ck_subscription_discount_non_negative",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date > start_date",
            name="ck_subscription_dates",
        ),
        Index("idx_subscription_student", "student_id"),
        Index("idx_subscription_window", "student_id", "start_date", "end_date"),
    )

    student_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("students.id"),
        nullable=False,
    )

    course_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("courses.id"),
        nullable=True,
    )

    service_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("services.id"),
        nullable=True,
    )

    discount_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    start_date: Mapped[date] = mapped_column(nullable=False)

    # NULL = still active
    end_date: Mapped[date | None] = mapped_column(nullable=True)

    student: Mapped[Student] = relationship("Student", back_populates="subscriptions")
    course: Mapped[Course | None] = relationship("Course")
    service: Mapped[Service | None] = relationship("Service")

    def is_active_on(self, on_date: date) -> bool:
        """True if on_date falls inside [start_date, end_date)."""
        if on_date < self.start_date:
            return False
        return self.end_date is None or on_date < self.end_date

    def __repr__(self) -> str:
        item = f"course={self.course_id}" if self.course_id else f"service={self.service_id}"
        return f"<Subscription student={self.student_id} {item}>"
