"""
Module: fees_kernel.models.catalog
Responsibility: ORM persistence for billable catalog items (courses and
    services) and the fee structures priced against them.
Architecture position: Kernel > Models.  May import from db/ and domain/enums.py.

Invariants enforced:
    - FeeStructure.amount > 0 (ck_fee_structure_amount_positive).
    - A FeeStructure prices exactly one course OR one service
      (ck_fee_structure_single_item).
    - One fee structure per item (uq_fee_structure_course / _service).

Failure modes:
    - IntegrityError on zero/negative amounts or a structure pointing at
      both (or neither) a course and a service.

The engine treats the catalog as read-only.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fees_kernel.db.base import TrackedBase, UUIDString
from fees_kernel.domain.enums import BillingCycle


class Course(TrackedBase):
    """Academic course a student can subscribe to."""

    __tablename__ = "courses"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    grade: Mapped[str | None] = mapped_column(String(50), nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    fee_structure: Mapped[FeeStructure | None] = relationship(
        "FeeStructure",
        back_populates="course",
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<Course {self.name}>"


class Service(TrackedBase):
    """Non-academic service (transport, meals, boarding...)."""

    __tablename__ = "services"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    fee_structure: Mapped[FeeStructure | None] = relationship(
        "FeeStructure",
        back_populates="service",
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<Service {self.name}>"


class FeeStructure(TrackedBase):
    """
    Price of a course or service per billing cycle.

    Guarantees:
        - amount is strictly positive.
        - exactly one of course_id / service_id is set.
    """

    __tablename__ = "fee_structures"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_fee_structure_amount_positive"),
        CheckConstraint(
            "(course_id IS NULL) <> (service_id IS NULL)",
            name="ck_fee_structure_single_item",
        ),
        UniqueConstraint("course_id", name="uq_fee_structure_course"),
        UniqueConstraint("service_id", name="uq_fee_structure_service"),
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    billing_cycle: Mapped[BillingCycle] = mapped_column(
        String(20),
        nullable=False,
        default=BillingCycle.MONTHLY.value,
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

    course: Mapped[Course | None] = relationship("Course", back_populates="fee_structure")
    service: Mapped[Service | None] = relationship("Service", back_populates="fee_structure")

    def __repr__(self) -> str:
        return f"<FeeStructure {self.amount} {self.billing_cycle}>"
