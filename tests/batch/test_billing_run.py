"""
Tests for BillingRunOrchestrator and the billing-run facade operation.

Covers:
- One outcome per student, transaction per student
- Idempotent re-runs and fee changes
- Students without subscriptions, unknown ids, locked allocations
- Run record persistence
- Parallel workers
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from fees_batch.domain.types import (
    INTERNAL_ERROR,
    NO_ACTIVE_SUBSCRIPTIONS,
    ItemOutcome,
    RunStatus,
    StudentState,
    resolve_run_status,
)
from fees_batch.models import BillingRun
from fees_batch.orchestrator import BillingRunOrchestrator
from fees_config import LockedAllocationPolicy
from fees_kernel.domain.dtos import UpsertAction
from fees_kernel.domain.enums import AllocationStatus
from fees_kernel.exceptions import InvalidPeriodError, ValidationError
from fees_kernel.models import Subscription
from fees_kernel.selectors.subscription_selector import SqlDirectory
from fees_services import ErrorKind


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def orchestrator(session_factory, clock):
    return BillingRunOrchestrator(session_factory, clock=clock, max_workers=1)


@pytest.fixture
def school(committed_seed):
    """Two families: siblings sharing a discount, and a student with no subscriptions."""
    okafor = committed_seed.family("Okafor", discount="200")
    ada = committed_seed.enrolled_student(okafor, "1000", name="Ada")
    ben = committed_seed.enrolled_student(okafor, "500", name="Ben")
    idle_family = committed_seed.family("Idle")
    idle = committed_seed.student(idle_family, "Cy")
    committed_seed.student(idle_family, "Gone", is_active=False)
    return {"okafor": okafor, "ada": ada, "ben": ben, "idle": idle}


def _end_subscriptions(session_factory, student, end_date):
    session = session_factory()
    try:
        session.execute(
            update(Subscription)
            .where(Subscription.student_id == student.id)
            .values(end_date=end_date)
        )
        session.commit()
    finally:
        session.close()


def _load_run(session_factory, run_id):
    session = session_factory()
    try:
        run = session.scalars(select(BillingRun).where(BillingRun.id == run_id)).one()
        return run.to_dto()
    finally:
        session.rollback()
        session.close()


# =============================================================================
# Run status
# =============================================================================


class TestResolveRunStatus:

    @pytest.mark.parametrize(
        "total, failed, expected",
        [
            (0, 0, RunStatus.COMPLETED),
            (5, 0, RunStatus.COMPLETED),
            (5, 2, RunStatus.PARTIALLY_COMPLETED),
            (5, 5, RunStatus.FAILED),
        ],
    )
    def test_status(self, total, failed, expected):
        assert resolve_run_status(total, failed) == expected


# =============================================================================
# Orchestrator
# =============================================================================


class TestBillingRun:

    def test_bills_every_active_student(self, school, orchestrator, actor_id):
        result = orchestrator.run(3, 2024, actor_id)

        assert result.status == RunStatus.COMPLETED
        assert (result.total, result.succeeded, result.skipped, result.failed) == (3, 2, 1, 0)
        ada = result.outcome_for(school["ada"].id)
        assert ada.outcome == ItemOutcome.SUCCEEDED
        assert ada.state == StudentState.DONE
        assert ada.action == UpsertAction.CREATED
        assert ada.net_amount == Decimal("900.00")
        assert result.outcome_for(school["ben"].id).net_amount == Decimal("400.00")

    def test_student_without_subscriptions_skipped(self, school, orchestrator, fee_engine, actor_id):
        result = orchestrator.run(3, 2024, actor_id)

        idle = result.outcome_for(school["idle"].id)
        assert idle.outcome == ItemOutcome.SKIPPED
        assert idle.error_code == NO_ACTIVE_SUBSCRIPTIONS
        assert idle.allocation_id is None
        assert fee_engine.list_allocations(student_id=school["idle"].id).unwrap() == []

    def test_rerun_is_idempotent(self, school, orchestrator, fee_engine, actor_id):
        first = orchestrator.run(3, 2024, actor_id)
        before = fee_engine.list_allocations(month=3, year=2024).unwrap()
        second = orchestrator.run(3, 2024, actor_id)
        after = fee_engine.list_allocations(month=3, year=2024).unwrap()

        assert first.count_action(UpsertAction.CREATED) == 2
        assert second.count_action(UpsertAction.UNCHANGED) == 2
        assert second.count_action(UpsertAction.CREATED) == 0
        assert before == after
        assert first.run_id != second.run_id

    def test_fee_change_updates(self, school, orchestrator, committed_seed, actor_id):
        orchestrator.run(3, 2024, actor_id)
        committed_seed.subscribe(school["ada"], service=committed_seed.service("Bus", "1200"))

        result = orchestrator.run(3, 2024, actor_id)
        ada = result.outcome_for(school["ada"].id)
        assert ada.action == UpsertAction.UPDATED
        assert ada.net_amount == Decimal("2100.00")
        assert result.outcome_for(school["ben"].id).action == UpsertAction.UNCHANGED

    def test_dropped_subscriptions_clear_unpaid_allocation(
        self, school, orchestrator, session_factory, fee_engine, actor_id,
    ):
        orchestrator.run(3, 2024, actor_id)
        _end_subscriptions(session_factory, school["ada"], date(2024, 2, 1))

        result = orchestrator.run(3, 2024, actor_id)
        ada = result.outcome_for(school["ada"].id)
        assert ada.outcome == ItemOutcome.SUCCEEDED
        assert ada.action == UpsertAction.UPDATED
        assert ada.net_amount == Decimal("0.00")
        # Ben is now the only active sibling and takes the whole family discount
        assert result.outcome_for(school["ben"].id).net_amount == Decimal("300.00")

        (row,) = fee_engine.list_allocations(student_id=school["ada"].id).unwrap()
        assert (row.gross_amount, row.discount_amount, row.net_amount) == (
            Decimal("0.00"), Decimal("0.00"), Decimal("0.00"),
        )
        assert row.status == AllocationStatus.PENDING

    def test_dropped_subscriptions_keep_paid_allocation(
        self, school, orchestrator, session_factory, fee_engine, actor_id,
    ):
        first = orchestrator.run(3, 2024, actor_id)
        allocation_id = first.outcome_for(school["ada"].id).allocation_id
        fee_engine.record_payment(
            school["okafor"].id, "100", "CASH", date(2024, 3, 10), actor_id,
            targets=[(allocation_id, "100")],
        ).unwrap()
        _end_subscriptions(session_factory, school["ada"], date(2024, 2, 1))

        ada = orchestrator.run(3, 2024, actor_id).outcome_for(school["ada"].id)
        assert ada.outcome == ItemOutcome.SKIPPED
        assert ada.error_code == "ALLOCATION_LOCKED"
        (row,) = fee_engine.list_allocations(student_id=school["ada"].id).unwrap()
        assert row.net_amount == Decimal("900.00")

    def test_locked_allocation_skipped(
        self, school, orchestrator, fee_engine, committed_seed, actor_id,
    ):
        first = orchestrator.run(3, 2024, actor_id)
        allocation_id = first.outcome_for(school["ada"].id).allocation_id
        fee_engine.record_payment(
            school["okafor"].id, "100", "CASH", date(2024, 3, 10), actor_id,
            targets=[(allocation_id, "100")],
        ).unwrap()
        committed_seed.subscribe(school["ada"], service=committed_seed.service("Bus", "1200"))

        result = orchestrator.run(3, 2024, actor_id)
        ada = result.outcome_for(school["ada"].id)
        assert ada.outcome == ItemOutcome.SKIPPED
        assert ada.state == StudentState.DONE
        assert ada.error_code == "ALLOCATION_LOCKED"
        assert ada.allocation_id == allocation_id
        assert result.status == RunStatus.COMPLETED

        (row,) = fee_engine.list_allocations(student_id=school["ada"].id).unwrap()
        assert row.net_amount == Decimal("900.00")
        assert row.status == AllocationStatus.PARTIAL

    def test_locked_allocation_fails_under_fail_policy(
        self, school, session_factory, clock, fee_engine, actor_id,
    ):
        strict = BillingRunOrchestrator(
            session_factory, clock=clock, max_workers=1,
            locked_policy=LockedAllocationPolicy.FAIL,
        )
        first = strict.run(3, 2024, actor_id)
        allocation_id = first.outcome_for(school["ben"].id).allocation_id
        fee_engine.record_payment(
            school["okafor"].id, "50", "CASH", date(2024, 3, 10), actor_id,
            targets=[(allocation_id, "50")],
        ).unwrap()

        result = strict.run(3, 2024, actor_id)
        ben = result.outcome_for(school["ben"].id)
        assert ben.outcome == ItemOutcome.FAILED
        assert ben.state == StudentState.FAILED
        assert result.status == RunStatus.PARTIALLY_COMPLETED
        assert result.failures == (ben,)

    def test_unknown_student_recorded_as_failure(self, school, orchestrator, actor_id):
        missing = uuid4()
        result = orchestrator.run(
            3, 2024, actor_id, student_ids=[school["ada"].id, str(missing), school["ada"].id],
        )

        assert result.total == 2
        failure = result.outcome_for(missing)
        assert failure.outcome == ItemOutcome.FAILED
        assert failure.error_code == "STUDENT_NOT_FOUND"
        assert result.status == RunStatus.PARTIALLY_COMPLETED

    def test_all_failed(self, db_engine, orchestrator, actor_id):
        result = orchestrator.run(3, 2024, actor_id, student_ids=[uuid4(), uuid4()])
        assert result.status == RunStatus.FAILED
        assert result.failed == 2

    def test_empty_population(self, db_engine, orchestrator, actor_id):
        result = orchestrator.run(3, 2024, actor_id)
        assert result.total == 0
        assert result.status == RunStatus.COMPLETED

    def test_malformed_student_id(self, db_engine, orchestrator, actor_id):
        with pytest.raises(ValidationError):
            orchestrator.run(3, 2024, actor_id, student_ids=["not-a-uuid"])

    def test_invalid_period(self, db_engine, orchestrator, actor_id):
        with pytest.raises(InvalidPeriodError):
            orchestrator.run(13, 2024, actor_id)

    def test_invalid_worker_count(self, db_engine, orchestrator, actor_id):
        with pytest.raises(ValidationError):
            orchestrator.run(3, 2024, actor_id, max_workers=0)

    def test_unexpected_error_contained(self, school, session_factory, clock, actor_id):
        """A directory blowing up for one student does not stop the run."""
        ben_id = school["ben"].id

        class BrokenDirectory(SqlDirectory):
            def get_active_subscriptions(self, student_id, period):
                if student_id == ben_id:
                    raise RuntimeError("directory offline")
                return super().get_active_subscriptions(student_id, period)

        orchestrator = BillingRunOrchestrator(
            session_factory, clock=clock, max_workers=1, directory_factory=BrokenDirectory,
        )
        result = orchestrator.run(3, 2024, actor_id)

        ben = result.outcome_for(ben_id)
        assert ben.outcome == ItemOutcome.FAILED
        assert ben.error_code == INTERNAL_ERROR
        assert ben.error_message == "directory offline"
        assert result.outcome_for(school["ada"].id).outcome == ItemOutcome.SUCCEEDED

    def test_parallel_workers(self, committed_seed, session_factory, clock, actor_id):
        family = committed_seed.family()
        students = [
            committed_seed.enrolled_student(family, "100", name=f"S{i}") for i in range(6)
        ]
        orchestrator = BillingRunOrchestrator(session_factory, clock=clock, max_workers=3)

        result = orchestrator.run(3, 2024, actor_id)
        assert result.succeeded == 6
        assert [o.item_index for o in result.outcomes] == list(range(6))
        assert {o.student_id for o in result.outcomes} == {s.id for s in students}

    def test_run_id_in_worker_logs(self, school, orchestrator, actor_id, captured_logs):
        result = orchestrator.run(3, 2024, actor_id, correlation_id="req-7")
        upserts = [r for r in captured_logs() if r["message"] == "allocation_upserted"]
        assert len(upserts) == 2
        for record in upserts:
            assert record["run_id"] == str(result.run_id)
            assert record["correlation_id"] == "req-7"
            assert "student_id" in record


class TestRunPersistence:

    def test_run_and_items_persisted(self, school, orchestrator, session_factory, actor_id):
        result = orchestrator.run(3, 2024, actor_id, correlation_id="nightly")
        stored = _load_run(session_factory, result.run_id)

        assert stored.status == result.status
        assert (stored.month, stored.year) == (3, 2024)
        assert stored.correlation_id == "nightly"
        assert (stored.succeeded, stored.skipped, stored.failed) == (2, 1, 0)
        assert [o.student_id for o in stored.outcomes] == [o.student_id for o in result.outcomes]
        ada = stored.outcome_for(school["ada"].id)
        assert ada.action == UpsertAction.CREATED
        assert ada.net_amount == Decimal("900.00")

    def test_unknown_student_item_persisted(self, db_engine, orchestrator, session_factory, actor_id):
        missing = uuid4()
        result = orchestrator.run(3, 2024, actor_id, student_ids=[missing])
        stored = _load_run(session_factory, result.run_id)
        assert stored.outcomes[0].student_id == missing
        assert stored.outcomes[0].error_code == "STUDENT_NOT_FOUND"


class TestFacadeBillingRun:

    def test_run_billing_cycle(self, school, fee_engine, actor_id):
        result = fee_engine.run_billing_cycle(3, 2024, actor_id)
        assert result.is_success
        assert result.value.succeeded == 2

    def test_invalid_period_is_a_result(self, db_engine, fee_engine, actor_id):
        result = fee_engine.run_billing_cycle(0, 2024, actor_id)
        assert result.error_kind == ErrorKind.INVALID_PERIOD

    def test_malformed_id_is_a_result(self, db_engine, fee_engine, actor_id):
        result = fee_engine.run_billing_cycle(3, 2024, actor_id, student_ids=["x"])
        assert result.error_kind == ErrorKind.VALIDATION_ERROR
