"""
Module: fees_kernel.models.allocation
Responsibility: ORM persistence for FeeAllocation, the amount a student owes
    for one billing month, and its reconciliation state.
Architecture position: Kernel > Models.  May import from db/ and domain/enums.py.

Invariants enforced:
    - At most one allocation per (student_id, month, year)
      (uq_fee_allocation_student_period).  Enforced by the database, not by
      application-level scanning.
    - gross_amount >= 0, discount_amount >= 0, net_amount >= 0.
    - net_amount = max(0, gross_amount - discount_amount); discount is
      clamped to gross before persisting.  The equality is computed in
      Decimal by the Fee Calculator; the table only checks the bounds.
    - 0 <= paid_amount <= net_amount (ck_fee_allocation_paid_bounds).
      paid_amount mirrors SUM(payment_allocations.amount) and is refreshed
      under a row lock in the same transaction as every insert.
    - month in 1..12.

Failure modes:
    - IntegrityError on duplicate (student, month, year) -- the Allocation
      Store catches this inside a SAVEPOINT and takes the update path.
    - IntegrityError if a write would overpay the allocation.

Lifecycle:
    Created by a billing run (or an on-demand upsert).  Mutated only by a
    recompute before any payment is applied, or by reconciliation when
    payment amounts are applied to it.  Never deleted once paid against.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fees_kernel.db.base import TrackedBase, UUIDString
from fees_kernel.domain.enums import AllocationStatus

if TYPE_CHECKING:
    from fees_kernel.models.family import Student
    from fees_kernel.models.payment import PaymentAllocation


class FeeAllocation(TrackedBase):
    """
    Amount a student owes for a (month, year) billing period.

    Guarantees:
        - Natural key (student_id, month, year) is unique.
        - Monetary columns are non-negative; paid never exceeds net.
    """

    __tablename__ = "fee_allocations"

    __table_args__ = (
        UniqueConstraint(
            "student_id", "month", "year",
            name="uq_fee_allocation_student_period",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_fee_allocation_month"),
        CheckConstraint("gross_amount >= 0", name="ck_fee_allocation_gross"),
        CheckConstraint(
            "discount_amount >= 0 AND discount_amount <= gross_amount",
            name="ck_fee_allocation_discount",
        ),
        CheckConstraint("net_amount >= 0", name="ck_fee_allocation_net"),
        CheckConstraint(
            "paid_amount >= 0 AND paid_amount <= net_amount",
            name="ck_fee_allocation_paid_bounds",
        ),
        Index("idx_fee_allocation_status", "status"),
        Index("idx_fee_allocation_period", "year", "month"),
        Index("idx_fee_allocation_due", "due_date"),
    )

    student_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("students.id"),
        nullable=False,
    )

    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(nullable=False)

    paid_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    due_date: Mapped[date] = mapped_column(nullable=False)
    paid_date: Mapped[date | None] = mapped_column(nullable=True)

    status: Mapped[AllocationStatus] = mapped_column(
        String(20),
        nullable=False,
        default=AllocationStatus.PENDING.value,
    )

    # Payment whose application crossed the PAID threshold
    settled_by_payment_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payments.id"),
        nullable=True,
    )

    student: Mapped[Student] = relationship("Student")

    payment_allocations: Mapped[list[PaymentAllocation]] = relationship(
        "PaymentAllocation",
        back_populates="fee_allocation",
    )

    @property
    def remaining_amount(self) -> Decimal:
        """net - paid; never negative."""
        return max(Decimal("0"), self.net_amount - self.paid_amount)

    def __repr__(self) -> str:
        return (
            f"<FeeAllocation student={self.student_id} {self.month:02d}/{self.year} "
            f"net={self.net_amount} paid={self.paid_amount} {self.status}>"
        )
