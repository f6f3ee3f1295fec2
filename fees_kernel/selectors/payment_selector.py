"""
Payment query selector.

Provides read-only access to payments, their applications to allocations,
and the applied totals that back the reconciliation invariants:

    SUM(payment_allocations.amount) per allocation <= net_amount
    SUM(payment_allocations.amount) per payment    <= payment.amount
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from fees_kernel.db.types import to_money
from fees_kernel.domain.dtos import PaymentInfo
from fees_kernel.exceptions import PaymentNotFoundError
from fees_kernel.models.payment import Payment, PaymentAllocation
from fees_kernel.selectors.base import BaseSelector


class PaymentSelector(BaseSelector[Payment]):
    """Read access to payments."""

    def get(self, payment_id: UUID) -> PaymentInfo:
        """
        Raises:
            PaymentNotFoundError: If no payment has this id.
        """
        payment = self._require(Payment, payment_id, PaymentNotFoundError)
        return PaymentInfo.from_model(payment)

    def list_for_family(
        self,
        family_id: UUID,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[PaymentInfo]:
        """Payments of a family, most recent first."""
        stmt = (
            select(Payment)
            .options(selectinload(Payment.allocations))
            .where(Payment.family_id == family_id)
        )
        if date_from is not None:
            stmt = stmt.where(Payment.payment_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(Payment.payment_date <= date_to)
        stmt = stmt.order_by(Payment.payment_date.desc(), Payment.created_at.desc(), Payment.id)
        return [PaymentInfo.from_model(p) for p in self.session.scalars(stmt)]

    def applied_to_allocation(self, allocation_id: UUID) -> Decimal:
        stmt = select(
            func.coalesce(func.sum(PaymentAllocation.amount), Decimal("0"))
        ).where(PaymentAllocation.fee_allocation_id == allocation_id)
        return to_money(self.session.scalar(stmt))

    def applied_from_payment(self, payment_id: UUID) -> Decimal:
        stmt = select(
            func.coalesce(func.sum(PaymentAllocation.amount), Decimal("0"))
        ).where(PaymentAllocation.payment_id == payment_id)
        return to_money(self.session.scalar(stmt))
