"""
BillingRunOrchestrator -- bills every student for one period.

Contract:
    ``run()`` calculates and upserts one allocation per student of the
    population, each student in its own transaction, and returns a
    ``BillingRunResult`` with one outcome per student.  The run and its
    items are persisted in a final transaction.

Architecture: fees_batch.  Imports from fees_batch.domain,
    fees_batch.models and kernel services.  Nothing in the kernel imports
    from here.

Invariants enforced:
    - Transaction per student: one student's failure never aborts the run
      or rolls back another student's allocation.
    - Idempotency: re-running a period without payments in between yields
      UNCHANGED outcomes and identical rows.
    - Locked allocations (payments applied) are never recomputed; the
      configured policy decides whether that is a skip or a failure.
    - All timestamps come from the injected Clock.

Per-student states:
    NOT_STARTED -> CALCULATED -> UPSERTED -> DONE, or -> FAILED.
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from fees_config.schema import LockedAllocationPolicy
from fees_kernel.db.engine import apply_lock_timeout
from fees_kernel.domain.clock import Clock, SystemClock
from fees_kernel.domain.directory import Directory
from fees_kernel.domain.period import DEFAULT_MAX_YEAR, DEFAULT_MIN_YEAR, BillingPeriod
from fees_kernel.exceptions import AllocationLockedError, FeeEngineError, ValidationError
from fees_kernel.logging_config import LogContext, get_logger
from fees_kernel.selectors.allocation_selector import AllocationSelector
from fees_kernel.selectors.subscription_selector import SqlDirectory
from fees_kernel.services.allocation_store import AllocationStore
from fees_kernel.services.fee_calculator import FeeCalculator

from fees_batch.domain.types import (
    INTERNAL_ERROR,
    NO_ACTIVE_SUBSCRIPTIONS,
    BillingRunResult,
    ItemOutcome,
    StudentOutcome,
    StudentState,
    resolve_run_status,
)
from fees_batch.models.billing_run import BillingRun

logger = get_logger("batch.billing_run")


class BillingRunOrchestrator:
    """Billing run engine with a transaction per student.

    Contract:
        - ``run()`` never raises for a per-student problem; it records it.
        - It raises only for an invalid period, malformed student ids, or
          a failure persisting the run record.

    Non-goals:
        - Does NOT apply payments or mark anything overdue.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        due_day: int = 15,
        min_year: int = DEFAULT_MIN_YEAR,
        max_year: int = DEFAULT_MAX_YEAR,
        max_workers: int = 4,
        locked_policy: LockedAllocationPolicy = LockedAllocationPolicy.SKIP,
        lock_timeout_ms: int = 0,
        directory_factory: Callable[[Session], Directory] = SqlDirectory,
    ):
        self._session_factory = session_factory
        self._directory_factory = directory_factory
        self._clock = clock or SystemClock()
        self._due_day = due_day
        self._min_year = min_year
        self._max_year = max_year
        self._max_workers = max_workers
        self._locked_policy = LockedAllocationPolicy(locked_policy)
        self._lock_timeout_ms = lock_timeout_ms

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        month: int,
        year: int,
        actor_id: UUID,
        student_ids: Iterable[UUID | str] | None = None,
        max_workers: int | None = None,
        correlation_id: str | None = None,
    ) -> BillingRunResult:
        """Bill every student of the population for (month, year).

        Args:
            month: Billing month, 1..12.
            year: Billing year, within the configured bounds.
            actor_id: Who started the run.
            student_ids: Explicit population.  None bills every active
                student.  Unknown ids become FAILED outcomes.
            max_workers: Parallel students; defaults to the configured value.
            correlation_id: Carried into logs and the run record.

        Raises:
            InvalidPeriodError: If the period is invalid.
            InvalidDateError: If the configured due day is invalid.
            ValidationError: If a student id is not a UUID or
                ``max_workers`` is below 1.
        """
        period = BillingPeriod.of(month, year, self._min_year, self._max_year)
        due_date = period.due_date(self._due_day)
        workers = self._max_workers if max_workers is None else max_workers
        if workers < 1:
            raise ValidationError(f"max_workers must be >= 1, got {workers}")

        run_id = uuid4()
        start_time = time.monotonic()
        started_at = self._clock.now()

        with LogContext.bind(
            run_id=str(run_id), actor_id=str(actor_id), correlation_id=correlation_id,
        ):
            population = self._population(student_ids)
            logger.info(
                "billing_run_started",
                extra={
                    "period": str(period),
                    "total_items": len(population),
                    "max_workers": workers,
                    "locked_allocation_policy": self._locked_policy.value,
                },
            )

            jobs = [
                (index, student_id, period, due_date, actor_id)
                for index, student_id in enumerate(population)
            ]
            if workers == 1 or len(jobs) <= 1:
                outcomes = [self._bill_student(*job) for job in jobs]
            else:
                with ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix="billing-run",
                ) as pool:
                    # Each task runs in a copy of this context so run_id reaches worker logs
                    futures = [
                        pool.submit(contextvars.copy_context().run, self._bill_student, *job)
                        for job in jobs
                    ]
                    outcomes = [f.result() for f in futures]

            succeeded = sum(1 for o in outcomes if o.outcome == ItemOutcome.SUCCEEDED)
            skipped = sum(1 for o in outcomes if o.outcome == ItemOutcome.SKIPPED)
            failed = sum(1 for o in outcomes if o.outcome == ItemOutcome.FAILED)

            result = BillingRunResult(
                run_id=run_id,
                month=period.month,
                year=period.year,
                status=resolve_run_status(len(outcomes), failed),
                total=len(outcomes),
                succeeded=succeeded,
                skipped=skipped,
                failed=failed,
                outcomes=tuple(outcomes),
                started_at=started_at,
                completed_at=self._clock.now(),
                duration_ms=int((time.monotonic() - start_time) * 1000),
                correlation_id=correlation_id,
            )

            self._persist(result, actor_id)

            logger.info(
                "billing_run_completed",
                extra={
                    "period": str(period),
                    "status": result.status.value,
                    "total_items": result.total,
                    "succeeded": succeeded,
                    "skipped": skipped,
                    "failed": failed,
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    # -------------------------------------------------------------------------
    # Per student
    # -------------------------------------------------------------------------

    def _bill_student(
        self,
        item_index: int,
        student_id: UUID,
        period: BillingPeriod,
        due_date: date,
        actor_id: UUID,
    ) -> StudentOutcome:
        item_start = time.monotonic()
        state = StudentState.NOT_STARTED

        def outcome(kind: ItemOutcome, final: StudentState, **fields) -> StudentOutcome:
            return StudentOutcome(
                item_index=item_index,
                student_id=student_id,
                outcome=kind,
                state=final,
                duration_ms=int((time.monotonic() - item_start) * 1000),
                **fields,
            )

        with LogContext.bind(student_id=str(student_id)):
            session = self._session_factory()
            try:
                apply_lock_timeout(session, self._lock_timeout_ms)
                calculator = FeeCalculator(
                    self._directory_factory(session),
                    min_year=self._min_year,
                    max_year=self._max_year,
                )
                calculation = calculator.calculate_for_period(student_id, period)
                state = StudentState.CALCULATED

                # An unpaid row from an earlier run is still refreshed, so dropped
                # subscriptions stop being billed
                if (
                    not calculation.has_subscriptions
                    and AllocationSelector(session).find(student_id, period) is None
                ):
                    session.rollback()
                    logger.debug("billing_student_skipped", extra={"reason": NO_ACTIVE_SUBSCRIPTIONS})
                    return outcome(
                        ItemOutcome.SKIPPED,
                        StudentState.DONE,
                        error_code=NO_ACTIVE_SUBSCRIPTIONS,
                        error_message=f"No active subscriptions in {period}",
                    )

                upserted = AllocationStore(session, self._clock).upsert(
                    student_id, period.month, period.year, calculation, due_date, actor_id,
                )
                state = StudentState.UPSERTED
                session.commit()

                return outcome(
                    ItemOutcome.SUCCEEDED,
                    StudentState.DONE,
                    action=upserted.action,
                    allocation_id=upserted.allocation.id,
                    net_amount=upserted.allocation.net_amount,
                )

            except AllocationLockedError as exc:
                session.rollback()
                kind = (
                    ItemOutcome.SKIPPED
                    if self._locked_policy == LockedAllocationPolicy.SKIP
                    else ItemOutcome.FAILED
                )
                logger.info(
                    "billing_student_locked",
                    extra={"allocation_id": exc.allocation_id, "outcome": kind.value},
                )
                return outcome(
                    kind,
                    StudentState.DONE if kind == ItemOutcome.SKIPPED else StudentState.FAILED,
                    allocation_id=UUID(str(exc.allocation_id)),
                    error_code=exc.code,
                    error_message=str(exc),
                )

            except FeeEngineError as exc:
                session.rollback()
                logger.warning(
                    "billing_student_failed",
                    extra={"error_code": exc.code, "stage": state.value, "error": str(exc)},
                )
                return outcome(
                    ItemOutcome.FAILED,
                    StudentState.FAILED,
                    error_code=exc.code,
                    error_message=str(exc),
                )

            except Exception as exc:
                session.rollback()
                logger.exception(
                    "billing_student_failed",
                    extra={"error_code": INTERNAL_ERROR, "stage": state.value},
                )
                return outcome(
                    ItemOutcome.FAILED,
                    StudentState.FAILED,
                    error_code=INTERNAL_ERROR,
                    error_message=str(exc),
                )

            finally:
                session.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _population(
        self, student_ids: Iterable[UUID | str] | None,
    ) -> list[UUID]:
        if student_ids is None:
            session = self._session_factory()
            try:
                return SqlDirectory(session).list_active_student_ids()
            finally:
                session.rollback()
                session.close()

        population: list[UUID] = []
        seen: set[UUID] = set()
        for raw in student_ids:
            try:
                student_id = raw if isinstance(raw, UUID) else UUID(str(raw))
            except ValueError:
                raise ValidationError(f"Not a student id: {raw!r}") from None
            if student_id not in seen:
                seen.add(student_id)
                population.append(student_id)
        return population

    def _persist(self, result: BillingRunResult, actor_id: UUID) -> None:
        session = self._session_factory()
        try:
            session.add(BillingRun.from_dto(result, created_by_id=actor_id))
            session.commit()
        except Exception:
            session.rollback()
            logger.error("billing_run_persist_failed", exc_info=True)
            raise
        finally:
            session.close()
