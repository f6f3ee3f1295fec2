"""
PaymentRecorder -- records family payments and reconciles them.

Responsibility:
    Validates and persists a payment, then applies it to one or more fee
    allocations through the AllocationStore: either to caller-chosen
    targets or, when no targets are given, oldest-due-first across the
    family's outstanding allocations.

Architecture position:
    Kernel > Services -- imperative shell.  Flushes within the caller's
    transaction; never commits.

Invariants enforced:
    - Validation runs before any write.
    - Sum applied per payment <= payment amount; leftover stays on the
      payment as unapplied credit.
    - Sum applied per allocation <= net amount, re-checked under row lock.
    - The payment insert, every PaymentAllocation insert and every
      recompute share the caller's transaction: partial application is
      never observable.

Auto-apply order:
    Outstanding allocations of the family ordered by (year, month,
    due_date, id) ascending.

Failure modes:
    - InvalidAmountError, AllocationOverpaymentError, InvalidDateError,
      ValidationError: rejected input, nothing written.
    - FamilyNotFoundError, AllocationNotFoundError,
      AllocationFamilyMismatchError, PaymentNotFoundError.
    - ConcurrentAllocationUpdateError: a concurrent payment consumed the
      capacity observed during validation, or a lock was unavailable.  The
      caller rolls back and retries the whole operation.
"""

from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from fees_kernel.db.engine import is_lock_conflict
from fees_kernel.db.types import ZERO, round_money
from fees_kernel.domain.clock import Clock
from fees_kernel.domain.dtos import AllocationInfo, PaymentInfo, PaymentReceipt, PaymentTarget
from fees_kernel.domain.enums import PaymentMethod
from fees_kernel.domain.fee_math import coerce_amount, remaining_amount
from fees_kernel.exceptions import (
    AllocationFamilyMismatchError,
    AllocationOverpaymentError,
    ConcurrentAllocationUpdateError,
    FamilyNotFoundError,
    InvalidAmountError,
    InvalidDateError,
    PaymentNotFoundError,
    ValidationError,
)
from fees_kernel.logging_config import LogContext, get_logger
from fees_kernel.models.allocation import FeeAllocation
from fees_kernel.models.family import Family
from fees_kernel.models.payment import Payment, PaymentAllocation
from fees_kernel.selectors.allocation_selector import AllocationSelector
from fees_kernel.services.allocation_store import AllocationStore
from fees_kernel.services.base import BaseService

logger = get_logger("services.payment_recorder")


def _coerce_targets(
    targets: Iterable[PaymentTarget | tuple[UUID | str, Decimal | int | str]],
) -> list[PaymentTarget]:
    coerced = []
    for target in targets:
        if not isinstance(target, PaymentTarget):
            try:
                allocation_id, amount = target
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Payment target must be (allocation_id, amount), got {target!r}"
                ) from None
            target = PaymentTarget(allocation_id=allocation_id, amount=amount)
        coerced.append(target)
    return coerced


class PaymentRecorder(BaseService[Payment]):
    """
    Records payments and applies them to allocations.

    Contract:
        ``record_payment`` and ``apply_unapplied`` either complete fully
        within the caller's transaction or raise; the caller rolls back.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        allocation_store: AllocationStore | None = None,
    ):
        super().__init__(session, clock)
        self._store = allocation_store or AllocationStore(session, self._clock)
        self._allocations = AllocationSelector(session)

    def record_payment(
        self,
        family_id: UUID,
        amount: Decimal | int | str,
        method: PaymentMethod | str,
        payment_date: date,
        actor_id: UUID,
        targets: Sequence[PaymentTarget] | None = None,
        reference: str | None = None,
    ) -> PaymentReceipt:
        """
        Record a payment and apply it.

        Args:
            family_id: Paying family.
            amount: Payment amount, > 0, cent precision.
            method: Tender used.
            payment_date: Date received; not in the future.
            actor_id: Who is recording it.
            targets: Explicit (allocation, amount) split.  None means
                auto-apply oldest-due-first; an empty list records the
                payment without applying it.
            reference: External receipt or bank reference.

        Returns:
            PaymentReceipt with the payment and every allocation it touched.
        """
        amount = coerce_amount(amount)
        method = self._validate_method(method)
        self._validate_payment_date(payment_date)

        with LogContext.bind(family_id=str(family_id), actor_id=str(actor_id)):
            if self.session.get(Family, family_id) is None:
                raise FamilyNotFoundError(str(family_id))

            planned = None
            if targets is not None:
                planned = self._validate_targets(family_id, _coerce_targets(targets), amount)

            payment = Payment(
                family_id=family_id,
                amount=amount,
                applied_amount=ZERO,
                method=method.value,
                reference=reference,
                payment_date=payment_date,
                created_by_id=actor_id,
            )
            self.session.add(payment)
            self.session.flush()

            touched = self._apply(payment, planned, actor_id)

            logger.info(
                "payment_recorded",
                extra={
                    "payment_id": str(payment.id),
                    "amount": str(amount),
                    "method": method.value,
                    "applied_amount": str(round_money(payment.applied_amount)),
                    "unapplied_amount": str(round_money(payment.amount - payment.applied_amount)),
                    "auto_apply": targets is None,
                    "allocation_count": len(touched),
                },
            )
            return self._receipt(payment, touched)

    def apply_unapplied(
        self,
        payment_id: UUID,
        actor_id: UUID,
        targets: Sequence[PaymentTarget] | None = None,
    ) -> PaymentReceipt:
        """
        Apply a payment's leftover credit, with the same rules as recording.

        The payment row is locked first so two concurrent re-applications of
        the same credit serialize.

        Raises:
            PaymentNotFoundError: If the payment does not exist.
        """
        payment = self._lock_payment(payment_id)

        with LogContext.bind(family_id=str(payment.family_id), actor_id=str(actor_id)):
            unapplied = round_money(payment.amount - payment.applied_amount)
            planned = None
            if targets is not None:
                planned = self._validate_targets(
                    payment.family_id, _coerce_targets(targets), unapplied,
                )
            if unapplied <= 0:
                return self._receipt(payment, [])

            touched = self._apply(payment, planned, actor_id)
            logger.info(
                "payment_reapplied",
                extra={
                    "payment_id": str(payment.id),
                    "applied_now": str(round_money(unapplied - (payment.amount - payment.applied_amount))),
                    "unapplied_amount": str(round_money(payment.amount - payment.applied_amount)),
                    "allocation_count": len(touched),
                },
            )
            return self._receipt(payment, touched)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_method(self, method: PaymentMethod | str) -> PaymentMethod:
        try:
            return PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {method!r}") from None

    def _validate_payment_date(self, payment_date: date) -> None:
        if isinstance(payment_date, datetime) or not isinstance(payment_date, date):
            raise InvalidDateError(repr(payment_date), "payment date must be a date")
        today = self._today()
        if payment_date > today:
            raise InvalidDateError(
                payment_date.isoformat(), f"payment date is after today ({today.isoformat()})",
            )

    def _validate_targets(
        self,
        family_id: UUID,
        targets: list[PaymentTarget],
        available: Decimal,
    ) -> list[PaymentTarget]:
        """Check targets against a non-locking read; raises before any write."""
        seen: set[UUID] = set()
        for target in targets:
            if target.allocation_id in seen:
                raise InvalidAmountError(
                    str(target.amount),
                    f"allocation {target.allocation_id} targeted more than once",
                )
            seen.add(target.allocation_id)

        total = round_money(sum((t.amount for t in targets), ZERO))
        if total > available:
            raise InvalidAmountError(
                str(total), f"targets exceed the payment amount {available}",
            )

        for target in targets:
            allocation = self._allocations.get(target.allocation_id)
            owner = self._allocations.family_id_of(target.allocation_id)
            if owner != family_id:
                raise AllocationFamilyMismatchError(str(target.allocation_id), str(family_id))
            if target.amount > allocation.remaining_amount:
                raise AllocationOverpaymentError(
                    str(target.allocation_id),
                    str(target.amount),
                    str(allocation.remaining_amount),
                )
        return targets

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def _apply(
        self,
        payment: Payment,
        planned: list[PaymentTarget] | None,
        actor_id: UUID,
    ) -> list[FeeAllocation]:
        if planned is None:
            return self._auto_apply(payment, actor_id)
        if not planned:
            return []

        locked = {a.id: a for a in self._store.lock_allocations(t.allocation_id for t in planned)}
        # Apply in lock order
        for target in sorted(planned, key=lambda t: str(t.allocation_id)):
            allocation = locked[target.allocation_id]
            remaining = remaining_amount(allocation.net_amount, allocation.paid_amount)
            if target.amount > remaining:
                raise ConcurrentAllocationUpdateError(
                    [str(allocation.id)],
                    f"remaining {remaining} is less than {target.amount} to apply",
                )
            self._store.apply_amount(allocation, payment, target.amount, actor_id)
        return list(locked.values())

    def _auto_apply(self, payment: Payment, actor_id: UUID) -> list[FeeAllocation]:
        left = round_money(payment.amount - payment.applied_amount)
        touched = []
        for allocation in self._store.lock_outstanding_for_family(payment.family_id):
            if left <= 0:
                break
            remaining = remaining_amount(allocation.net_amount, allocation.paid_amount)
            if remaining <= 0:
                continue
            portion = min(left, remaining)
            self._store.apply_amount(allocation, payment, portion, actor_id)
            touched.append(allocation)
            left = round_money(left - portion)
        return touched

    def _lock_payment(self, payment_id: UUID) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            payment = self.session.scalars(stmt).one_or_none()
        except DBAPIError as exc:
            if is_lock_conflict(exc):
                raise ConcurrentAllocationUpdateError([], "payment row lock not available") from exc
            raise
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def _receipt(self, payment: Payment, touched: list[FeeAllocation]) -> PaymentReceipt:
        self.session.flush()
        links = self.session.scalars(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_id == payment.id)
            .order_by(PaymentAllocation.created_at, PaymentAllocation.id)
        ).all()
        return PaymentReceipt(
            payment=PaymentInfo.from_model(payment, list(links)),
            allocations=tuple(AllocationInfo.from_model(a) for a in touched),
        )
