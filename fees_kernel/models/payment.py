"""
Module: fees_kernel.models.payment
Responsibility: ORM persistence for family payments and the join rows that
    apply portions of a payment to fee allocations.
Architecture position: Kernel > Models.  May import from db/ and domain/enums.py.

Invariants enforced:
    - Payment.amount > 0 (ck_payment_amount_positive).
    - 0 <= Payment.applied_amount <= Payment.amount
      (ck_payment_applied_bounds).  applied_amount mirrors
      SUM(payment_allocations.amount) for the payment.
    - PaymentAllocation.amount > 0 (ck_payment_allocation_amount_positive).
    - Referential integrity between payments, payment_allocations and
      fee_allocations (FKs).

A payment belongs to a family, not a student: one payment may cover several
children.  Payments are immutable after insert except for applied_amount
and the set of allocations they have been applied to.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fees_kernel.db.base import TrackedBase, UUIDString
from fees_kernel.domain.enums import PaymentMethod

if TYPE_CHECKING:
    from fees_kernel.models.allocation import FeeAllocation


class Payment(TrackedBase):
    """
    Money received from a family.

    Guarantees:
        - amount is strictly positive.
        - applied_amount never exceeds amount; the difference is credit
          available for later application.
    """

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "applied_amount >= 0 AND applied_amount <= amount",
            name="ck_payment_applied_bounds",
        ),
        Index("idx_payment_family", "family_id"),
        Index("idx_payment_date", "payment_date"),
    )

    family_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("families.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    applied_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    method: Mapped[PaymentMethod] = mapped_column(String(20), nullable=False)

    # External reference (receipt no., bank reference)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    payment_date: Mapped[date] = mapped_column(nullable=False)

    allocations: Mapped[list[PaymentAllocation]] = relationship(
        "PaymentAllocation",
        back_populates="payment",
        order_by="PaymentAllocation.created_at",
    )

    @property
    def unapplied_amount(self) -> Decimal:
        return self.amount - self.applied_amount

    def __repr__(self) -> str:
        return (
            f"<Payment family={self.family_id} {self.amount} "
            f"applied={self.applied_amount} {self.payment_date}>"
        )


class PaymentAllocation(TrackedBase):
    """
    Portion of one payment applied to one fee allocation.

    Guarantees:
        - amount is strictly positive.
        - Rows are insert-only.
    """

    __tablename__ = "payment_allocations"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_allocation_amount_positive"),
        Index("idx_payment_allocation_payment", "payment_id"),
        Index("idx_payment_allocation_fee", "fee_allocation_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payments.id"),
        nullable=False,
    )

    fee_allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fee_allocations.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    payment: Mapped[Payment] = relationship("Payment", back_populates="allocations")
    fee_allocation: Mapped[FeeAllocation] = relationship(
        "FeeAllocation",
        back_populates="payment_allocations",
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation payment={self.payment_id} "
            f"allocation={self.fee_allocation_id} {self.amount}>"
        )
