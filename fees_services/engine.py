"""
FeeEngine -- the external entrypoint of the fee engine.

Responsibility:
    Owns transaction boundaries for every operation: opens a session from
    the injected factory, runs the kernel services, commits or rolls back,
    and maps every failure to an ``OperationResult``.  Nothing escapes as
    an exception.

Architecture position:
    Services -- sits above fees_kernel, fees_batch and fees_config.
    Kernel services flush; only this layer commits.

Invariants enforced:
    - All-or-nothing writes: a failed operation leaves no trace.
    - Every write transaction starts with the configured lock timeout
      (PostgreSQL).
    - Payment operations that lose a lock race are retried with a fresh
      session up to ``payments.retry_attempts`` times.

Failure modes:
    Kernel exceptions map to their ``ErrorKind``.  Anything else is logged
    with its traceback and reported as INTERNAL_ERROR.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import date
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from fees_batch.domain.types import BillingRunResult
from fees_batch.orchestrator import BillingRunOrchestrator
from fees_config import EngineSettings
from fees_kernel.db.engine import apply_lock_timeout, is_lock_conflict
from fees_kernel.domain.clock import Clock, SystemClock
from fees_kernel.domain.directory import Directory
from fees_kernel.domain.dtos import (
    AllocationFilter,
    AllocationInfo,
    FeeCalculation,
    OverdueSummary,
    PaymentInfo,
    PaymentReceipt,
    PaymentTarget,
    UpsertResult,
)
from fees_kernel.domain.enums import AllocationStatus, PaymentMethod
from fees_kernel.exceptions import (
    ConcurrencyError,
    ConcurrentAllocationUpdateError,
    FeeEngineError,
    ValidationError,
)
from fees_kernel.logging_config import LogContext, get_logger
from fees_kernel.selectors.allocation_selector import AllocationSelector
from fees_kernel.selectors.payment_selector import PaymentSelector
from fees_kernel.selectors.subscription_selector import SqlDirectory
from fees_kernel.services.allocation_store import AllocationStore
from fees_kernel.services.fee_calculator import FeeCalculator
from fees_kernel.services.payment_recorder import PaymentRecorder

from fees_services.results import OperationResult

logger = get_logger("services.fee_engine")

T = TypeVar("T")


class FeeEngine:
    """
    Facade over fee calculation, allocation, reconciliation and billing runs.

    Contract:
        Every public method returns an ``OperationResult`` and never raises.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: EngineSettings | None = None,
        clock: Clock | None = None,
        directory_factory: Callable[[Session], Directory] = SqlDirectory,
    ):
        self._session_factory = session_factory
        self._config = config or EngineSettings()
        self._clock = clock or SystemClock()
        self._directory_factory = directory_factory

    @property
    def config(self) -> EngineSettings:
        return self._config

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def calculate_fee(self, student_id: UUID, month: int, year: int) -> OperationResult[FeeCalculation]:
        """What the student owes for (month, year).  Read only."""
        return self._run(
            "calculate_fee",
            lambda session: self._calculator(session).calculate(student_id, month, year),
            write=False,
        )

    def calculate_family_fees(
        self, family_id: UUID, month: int, year: int,
    ) -> OperationResult[list[FeeCalculation]]:
        """One calculation per active student of the family.  Read only."""
        return self._run(
            "calculate_family_fees",
            lambda session: self._calculator(session).calculate_family(family_id, month, year),
            write=False,
        )

    # ------------------------------------------------------------------
    # Allocations
    # ------------------------------------------------------------------

    def upsert_allocation(
        self,
        student_id: UUID,
        month: int,
        year: int,
        actor_id: UUID,
        calculation: FeeCalculation | None = None,
    ) -> OperationResult[UpsertResult]:
        """
        Persist the student's allocation for (month, year).

        Without ``calculation`` the fee is calculated in the same
        transaction.  An allocation with payments is refused with
        ALLOCATION_LOCKED.
        """

        def work(session: Session) -> UpsertResult:
            calculator = self._calculator(session)
            period = calculator.period(month, year)
            calc = calculation
            if calc is None:
                calc = calculator.calculate_for_period(student_id, period)
            return AllocationStore(session, self._clock).upsert(
                student_id,
                month,
                year,
                calc,
                period.due_date(self._config.billing.due_day),
                actor_id,
            )

        with LogContext.bind(actor_id=str(actor_id), student_id=str(student_id)):
            return self._run("upsert_allocation", work)

    def run_billing_cycle(
        self,
        month: int,
        year: int,
        actor_id: UUID,
        student_ids: Iterable[UUID | str] | None = None,
        max_workers: int | None = None,
        correlation_id: str | None = None,
    ) -> OperationResult[BillingRunResult]:
        """Bill every active student (or the given ones) for (month, year)."""
        billing = self._config.billing
        orchestrator = BillingRunOrchestrator(
            self._session_factory,
            clock=self._clock,
            due_day=billing.due_day,
            min_year=billing.min_year,
            max_year=billing.max_year,
            max_workers=billing.max_workers,
            locked_policy=billing.locked_allocation_policy,
            lock_timeout_ms=self._config.payments.lock_timeout_ms,
            directory_factory=self._directory_factory,
        )
        try:
            return OperationResult.ok(
                orchestrator.run(
                    month,
                    year,
                    actor_id,
                    student_ids=student_ids,
                    max_workers=max_workers,
                    correlation_id=correlation_id,
                )
            )
        except FeeEngineError as exc:
            return self._failure("run_billing_cycle", exc)
        except Exception as exc:
            return self._internal("run_billing_cycle", exc)

    def list_allocations(
        self,
        student_id: UUID | None = None,
        family_id: UUID | None = None,
        month: int | None = None,
        year: int | None = None,
        status: AllocationStatus | str | None = None,
    ) -> OperationResult[list[AllocationInfo]]:
        def work(session: Session) -> list[AllocationInfo]:
            try:
                wanted = AllocationStatus(status) if status is not None else None
            except ValueError:
                raise ValidationError(f"Unknown allocation status: {status!r}") from None
            filters = AllocationFilter(
                student_id=student_id,
                family_id=family_id,
                month=month,
                year=year,
                status=wanted,
            )
            return AllocationSelector(session).list_allocations(filters)

        return self._run("list_allocations", work, write=False)

    def outstanding_balance(self, family_id: UUID) -> OperationResult[Decimal]:
        """Sum of what the family still owes across its allocations."""
        return self._run(
            "outstanding_balance",
            lambda session: AllocationSelector(session).outstanding_balance(family_id),
            write=False,
        )

    def mark_overdue(self, actor_id: UUID, as_of: date | None = None) -> OperationResult[int]:
        """Flip unpaid past-due PENDING allocations to OVERDUE."""
        with LogContext.bind(actor_id=str(actor_id)):
            return self._run(
                "mark_overdue",
                lambda session: AllocationStore(session, self._clock).mark_overdue(as_of, actor_id),
            )

    def overdue_summary(self, as_of: date | None = None) -> OperationResult[OverdueSummary]:
        return self._run(
            "overdue_summary",
            lambda session: AllocationSelector(session).overdue_summary(as_of or self._clock.today()),
            write=False,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(
        self,
        family_id: UUID,
        amount: Decimal | int | str,
        method: PaymentMethod | str,
        payment_date: date,
        actor_id: UUID,
        targets: Sequence[PaymentTarget | tuple[Any, Any]] | None = None,
        reference: str | None = None,
    ) -> OperationResult[PaymentReceipt]:
        """
        Record a family payment and apply it.

        ``targets`` None auto-applies oldest-due-first; an empty sequence
        records the payment as unapplied credit.  Retried on concurrent
        updates.
        """

        def work(session: Session) -> PaymentReceipt:
            return PaymentRecorder(session, self._clock).record_payment(
                family_id=family_id,
                amount=amount,
                method=method,
                payment_date=payment_date,
                actor_id=actor_id,
                targets=targets,
                reference=reference,
            )

        with LogContext.bind(actor_id=str(actor_id), family_id=str(family_id)):
            return self._run(
                "record_payment", work, attempts=self._config.payments.retry_attempts,
            )

    def apply_unapplied_payment(
        self,
        payment_id: UUID,
        actor_id: UUID,
        targets: Sequence[PaymentTarget | tuple[Any, Any]] | None = None,
    ) -> OperationResult[PaymentReceipt]:
        """Apply a payment's leftover credit.  Retried on concurrent updates."""

        def work(session: Session) -> PaymentReceipt:
            return PaymentRecorder(session, self._clock).apply_unapplied(
                payment_id, actor_id, targets=targets,
            )

        with LogContext.bind(actor_id=str(actor_id)):
            return self._run(
                "apply_unapplied_payment", work, attempts=self._config.payments.retry_attempts,
            )

    def list_payments(
        self,
        family_id: UUID,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> OperationResult[list[PaymentInfo]]:
        return self._run(
            "list_payments",
            lambda session: PaymentSelector(session).list_for_family(family_id, date_from, date_to),
            write=False,
        )

    # ------------------------------------------------------------------
    # Transaction handling
    # ------------------------------------------------------------------

    def _calculator(self, session: Session) -> FeeCalculator:
        billing = self._config.billing
        return FeeCalculator(
            self._directory_factory(session),
            min_year=billing.min_year,
            max_year=billing.max_year,
        )

    def _run(
        self,
        operation: str,
        work: Callable[[Session], T],
        write: bool = True,
        attempts: int = 1,
    ) -> OperationResult[T]:
        """Run ``work`` in a fresh transaction, retrying concurrency failures."""
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            session = self._session_factory()
            try:
                if write:
                    apply_lock_timeout(session, self._config.payments.lock_timeout_ms)
                value = work(session)
                if write:
                    session.commit()
                else:
                    session.rollback()
                return OperationResult.ok(value)

            except (ConcurrencyError, DBAPIError) as exc:
                session.rollback()
                if isinstance(exc, DBAPIError) and not is_lock_conflict(exc):
                    return self._internal(operation, exc)
                conflict = exc
                if isinstance(exc, DBAPIError):
                    conflict = ConcurrentAllocationUpdateError([], str(exc.orig))
                if attempt < attempts:
                    logger.warning(
                        "operation_retry",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "max_attempts": attempts,
                            "error_code": conflict.code,
                        },
                    )
                    continue
                return self._failure(operation, conflict)

            except FeeEngineError as exc:
                session.rollback()
                return self._failure(operation, exc)

            except Exception as exc:
                session.rollback()
                return self._internal(operation, exc)

            finally:
                session.close()

        raise AssertionError("unreachable")

    def _failure(self, operation: str, exc: FeeEngineError) -> OperationResult[Any]:
        logger.warning(
            "operation_failed",
            extra={"operation": operation, "error_code": exc.code, "error": str(exc)},
        )
        return OperationResult.from_exception(exc)

    def _internal(self, operation: str, exc: BaseException) -> OperationResult[Any]:
        logger.error(
            "operation_failed",
            extra={"operation": operation, "error_code": "INTERNAL_ERROR"},
            exc_info=exc,
        )
        return OperationResult.from_exception(exc)
