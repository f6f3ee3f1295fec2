"""
AllocationStore -- owner of the persisted fee allocations.

Responsibility:
    Idempotent create-or-update of the per-student, per-period allocation,
    row locking for reconciliation, application of payment amounts, and
    every status transition.

Architecture position:
    Kernel > Services -- imperative shell.  Flushes within the caller's
    transaction; never commits.

Invariants enforced:
    - One allocation per (student, month, year): the unique constraint is
      the arbiter.  A losing concurrent INSERT is caught inside a SAVEPOINT
      and the winner is re-read under a row lock (update path).
    - An allocation with payments applied (paid_amount > 0) is never
      recomputed: AllocationLockedError, row unchanged.
    - paid_amount <= net_amount: amounts are applied only while the row is
      locked, and the locked remaining capacity is re-checked first.
    - Status, paid_amount, paid_date and settled_by_payment_id are refreshed
      in the same transaction as every PaymentAllocation insert.

Locking:
    Rows are locked with SELECT ... FOR UPDATE in ascending id order so two
    transactions locking overlapping sets cannot deadlock on each other.
    Lock timeouts and deadlocks surface as ConcurrentAllocationUpdateError.

Failure modes:
    - AllocationLockedError: upsert onto an allocation with payments.
    - AllocationNotFoundError: lock of an unknown allocation id.
    - ConcurrentAllocationUpdateError: lock not available, deadlock, or
      remaining capacity consumed by a concurrent payment.
"""

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from fees_kernel.db.engine import is_lock_conflict
from fees_kernel.db.types import ZERO, round_money, to_money
from fees_kernel.domain.clock import Clock
from fees_kernel.domain.dtos import AllocationInfo, FeeCalculation, UpsertAction, UpsertResult
from fees_kernel.domain.enums import AllocationStatus
from fees_kernel.domain.fee_math import remaining_amount, resolve_allocation_status
from fees_kernel.domain.period import BillingPeriod
from fees_kernel.exceptions import (
    AllocationLockedError,
    AllocationNotFoundError,
    ConcurrentAllocationUpdateError,
    ValidationError,
)
from fees_kernel.logging_config import get_logger
from fees_kernel.models.allocation import FeeAllocation
from fees_kernel.models.family import Student
from fees_kernel.models.payment import Payment, PaymentAllocation
from fees_kernel.services.base import BaseService

logger = get_logger("services.allocation_store")


class AllocationStore(BaseService[FeeAllocation]):
    """
    Create, lock and reconcile fee allocations.

    Contract:
        All writes happen inside the caller's transaction.  Callers that
        want lock timeouts call ``apply_lock_timeout`` before the first
        locking read.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def upsert(
        self,
        student_id: UUID,
        month: int,
        year: int,
        calculation: FeeCalculation,
        due_date: date,
        actor_id: UUID,
    ) -> UpsertResult:
        """
        Create or refresh the allocation for (student, month, year).

        No row: insert as PENDING.  Row without payments: overwrite
        gross/discount/net/due_date, or leave it untouched when nothing
        changed.  Row with payments: refuse.

        Raises:
            ValidationError: If the calculation is for another student or period.
            AllocationLockedError: If payments have been applied.
            ConcurrentAllocationUpdateError: If the row lock is unavailable.
        """
        period = BillingPeriod(month, year)
        if calculation.student_id != student_id or calculation.period != period:
            raise ValidationError(
                f"Calculation for {calculation.student_id} {calculation.period} "
                f"does not match {student_id} {period}"
            )

        allocation = self._lock_by_natural_key(student_id, period)

        if allocation is None:
            allocation = FeeAllocation(
                student_id=student_id,
                month=month,
                year=year,
                gross_amount=calculation.gross,
                discount_amount=calculation.discount,
                net_amount=calculation.net,
                paid_amount=ZERO,
                due_date=due_date,
                status=AllocationStatus.PENDING.value,
                created_by_id=actor_id,
            )
            savepoint = self.session.begin_nested()
            try:
                self.session.add(allocation)
                self.session.flush()
                savepoint.commit()
                logger.info(
                    "allocation_upserted",
                    extra={
                        "allocation_id": str(allocation.id),
                        "action": UpsertAction.CREATED.value,
                        "period": str(period),
                        "net_amount": str(calculation.net),
                    },
                )
                return UpsertResult(AllocationInfo.from_model(allocation), UpsertAction.CREATED)
            except IntegrityError:
                # Concurrent billing of the same student won the insert
                logger.debug(
                    "allocation_insert_race_retry",
                    extra={"student_id": str(student_id), "period": str(period)},
                )
                savepoint.rollback()
                allocation = self._lock_by_natural_key(student_id, period)
                if allocation is None:
                    raise

        return self._update_unpaid(allocation, calculation, due_date, actor_id)

    def _update_unpaid(
        self,
        allocation: FeeAllocation,
        calculation: FeeCalculation,
        due_date: date,
        actor_id: UUID,
    ) -> UpsertResult:
        if allocation.paid_amount > 0:
            logger.warning(
                "allocation_locked",
                extra={
                    "allocation_id": str(allocation.id),
                    "status": allocation.status,
                    "paid_amount": str(allocation.paid_amount),
                },
            )
            raise AllocationLockedError(
                str(allocation.id), str(allocation.status), str(round_money(allocation.paid_amount)),
            )

        unchanged = (
            round_money(allocation.gross_amount) == calculation.gross
            and round_money(allocation.discount_amount) == calculation.discount
            and round_money(allocation.net_amount) == calculation.net
            and allocation.due_date == due_date
        )
        if unchanged:
            return UpsertResult(AllocationInfo.from_model(allocation), UpsertAction.UNCHANGED)

        previous_net = round_money(allocation.net_amount)
        allocation.gross_amount = calculation.gross
        allocation.discount_amount = calculation.discount
        allocation.net_amount = calculation.net
        allocation.due_date = due_date
        allocation.touch(actor_id)
        self.session.flush()

        logger.info(
            "allocation_upserted",
            extra={
                "allocation_id": str(allocation.id),
                "action": UpsertAction.UPDATED.value,
                "period": str(calculation.period),
                "previous_net_amount": str(previous_net),
                "net_amount": str(calculation.net),
            },
        )
        return UpsertResult(AllocationInfo.from_model(allocation), UpsertAction.UPDATED)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_allocations(self, allocation_ids: Iterable[UUID]) -> list[FeeAllocation]:
        """
        Lock the given allocations FOR UPDATE in ascending id order.

        Returns the locked rows in that order, freshly loaded.

        Raises:
            AllocationNotFoundError: If any id does not exist.
            ConcurrentAllocationUpdateError: On lock timeout or deadlock.
        """
        ids = sorted({UUID(str(i)) for i in allocation_ids}, key=str)
        if not ids:
            return []
        stmt = (
            select(FeeAllocation)
            .where(FeeAllocation.id.in_(ids))
            .order_by(FeeAllocation.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = self._execute_locking(stmt, [str(i) for i in ids])
        found = {row.id for row in rows}
        for allocation_id in ids:
            if allocation_id not in found:
                raise AllocationNotFoundError(str(allocation_id))
        return rows

    def lock_outstanding_for_family(self, family_id: UUID) -> list[FeeAllocation]:
        """
        Lock every allocation of the family that still has something to pay.

        Rows are locked in id order and returned oldest first, ordered by
        (year, month, due_date, id).
        """
        stmt = (
            select(FeeAllocation)
            .join(Student, Student.id == FeeAllocation.student_id)
            .where(
                Student.family_id == family_id,
                FeeAllocation.status != AllocationStatus.PAID.value,
                FeeAllocation.net_amount > FeeAllocation.paid_amount,
            )
            .order_by(FeeAllocation.id)
            .with_for_update(of=FeeAllocation)
            .execution_options(populate_existing=True)
        )
        rows = self._execute_locking(stmt, [])
        return sorted(rows, key=lambda a: (a.year, a.month, a.due_date, str(a.id)))

    def _lock_by_natural_key(self, student_id: UUID, period: BillingPeriod) -> FeeAllocation | None:
        stmt = (
            select(FeeAllocation)
            .where(
                FeeAllocation.student_id == student_id,
                FeeAllocation.month == period.month,
                FeeAllocation.year == period.year,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = self._execute_locking(stmt, [])
        return rows[0] if rows else None

    def _execute_locking(self, stmt, allocation_ids: list[str]) -> list[FeeAllocation]:
        try:
            return list(self.session.scalars(stmt))
        except DBAPIError as exc:
            if is_lock_conflict(exc):
                logger.warning(
                    "allocation_lock_conflict",
                    extra={"allocation_ids": allocation_ids},
                )
                raise ConcurrentAllocationUpdateError(
                    allocation_ids, "row lock not available",
                ) from exc
            raise

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def apply_amount(
        self,
        allocation: FeeAllocation,
        payment: Payment,
        amount: Decimal,
        actor_id: UUID,
    ) -> PaymentAllocation:
        """
        Apply ``amount`` of ``payment`` to a locked allocation and recompute.

        Preconditions:
            - ``allocation`` was returned by a locking read in this transaction.

        Raises:
            ConcurrentAllocationUpdateError: If the locked remaining amount is
                smaller than ``amount``.
        """
        amount = round_money(amount)
        remaining = remaining_amount(allocation.net_amount, allocation.paid_amount)
        if amount > remaining:
            raise ConcurrentAllocationUpdateError(
                [str(allocation.id)],
                f"remaining {remaining} is less than {amount} to apply",
            )

        link = PaymentAllocation(
            payment_id=payment.id,
            fee_allocation_id=allocation.id,
            amount=amount,
            created_by_id=actor_id,
        )
        self.session.add(link)
        payment.applied_amount = round_money(payment.applied_amount + amount)
        payment.touch(actor_id)
        self.session.flush()

        self.recompute(allocation, crossing_payment=payment, actor_id=actor_id)
        return link

    def recompute(
        self,
        allocation: FeeAllocation,
        crossing_payment: Payment | None = None,
        actor_id: UUID | None = None,
    ) -> AllocationInfo:
        """
        Refresh paid_amount and status of a locked allocation.

        paid_amount is re-derived from the PaymentAllocation rows.  When the
        status moves to PAID, paid_date and settled_by_payment_id come from
        ``crossing_payment``.
        """
        paid = to_money(
            self.session.scalar(
                select(func.sum(PaymentAllocation.amount)).where(
                    PaymentAllocation.fee_allocation_id == allocation.id
                )
            )
        )
        net = round_money(allocation.net_amount)
        if paid > net:
            raise ConcurrentAllocationUpdateError(
                [str(allocation.id)], f"applied {paid} exceeds net {net}",
            )

        previous = AllocationStatus(allocation.status)
        status = resolve_allocation_status(paid, net, allocation.due_date, self._today())

        allocation.paid_amount = paid
        allocation.status = status.value
        if status == AllocationStatus.PAID and previous != AllocationStatus.PAID:
            if crossing_payment is not None:
                allocation.paid_date = crossing_payment.payment_date
                allocation.settled_by_payment_id = crossing_payment.id
            else:
                allocation.paid_date = self._today()
        allocation.touch(actor_id)
        self.session.flush()

        if status != previous:
            logger.info(
                "allocation_status_changed",
                extra={
                    "allocation_id": str(allocation.id),
                    "from_status": previous.value,
                    "to_status": status.value,
                    "paid_amount": str(paid),
                    "net_amount": str(net),
                },
            )
        return AllocationInfo.from_model(allocation)

    # ------------------------------------------------------------------
    # Overdue sweep
    # ------------------------------------------------------------------

    def mark_overdue(self, as_of: date | None = None, actor_id: UUID | None = None) -> int:
        """
        Flip unpaid PENDING allocations past their due date to OVERDUE.

        Rows with nothing left to pay (net 0) and rows with any payment are
        left alone.  Returns the number of rows changed.
        """
        as_of = as_of or self._today()
        values = {"status": AllocationStatus.OVERDUE.value}
        if actor_id is not None:
            values["updated_by_id"] = actor_id
        stmt = (
            update(FeeAllocation)
            .where(
                FeeAllocation.status == AllocationStatus.PENDING.value,
                FeeAllocation.paid_amount == 0,
                FeeAllocation.net_amount > 0,
                FeeAllocation.due_date < as_of,
            )
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        result = self.session.execute(stmt)
        count = result.rowcount or 0
        logger.info(
            "allocations_marked_overdue",
            extra={"as_of": as_of.isoformat(), "count": count},
        )
        return count
