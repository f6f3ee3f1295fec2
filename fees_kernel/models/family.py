"""
Module: fees_kernel.models.family
Responsibility: ORM persistence for families and the students they own.
    A Family is the paying party; a Student is the billed party.
Architecture position: Kernel > Models.  May import from db/ and domain/enums.py.

Invariants enforced:
    - Family.discount_amount >= 0 (ck_family_discount_non_negative).  The
      discount is an absolute amount shared by the family's active students
      for a billing period, never duplicated per child.
    - Every Student belongs to exactly one Family (NOT NULL FK).

Failure modes:
    - IntegrityError on a negative family discount.
    - IntegrityError on a student whose family_id does not exist.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fees_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from fees_kernel.models.subscription import Subscription


class Family(TrackedBase):
    """
    Household that owns students and pays their fees.

    Guarantees:
        - discount_amount is non-negative.
        - Deactivated families keep their history (students, payments).
    """

    __tablename__ = "families"

    __table_args__ = (
        CheckConstraint("discount_amount >= 0", name="ck_family_discount_non_negative"),
        Index("idx_family_active", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Absolute amount, prorated across active siblings per period
    discount_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    students: Mapped[list[Student]] = relationship(
        "Student",
        back_populates="family",
        order_by="Student.name",
    )

    def __repr__(self) -> str:
        return f"<Family {self.name} (discount {self.discount_amount})>"


class Student(TrackedBase):
    """
    Billed party.  One allocation per (student, month, year).

    Guarantees:
        - family_id is always set.
        - is_active gates inclusion in billing runs and sibling counts.
    """

    __tablename__ = "students"

    __table_args__ = (
        Index("idx_student_family", "family_id"),
        Index("idx_student_active", "is_active"),
    )

    family_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("families.id"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    grade: Mapped[str | None] = mapped_column(String(50), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    enrollment_date: Mapped[date | None] = mapped_column(nullable=True)

    family: Mapped[Family] = relationship("Family", back_populates="students")

    subscriptions: Mapped[list[Subscription]] = relationship(
        "Subscription",
        back_populates="student",
    )

    def __repr__(self) -> str:
        return f"<Student {self.name} family={self.family_id}>"
