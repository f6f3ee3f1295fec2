"""
Tests for AllocationStore.

Covers:
- Idempotent upsert: CREATED, UNCHANGED, UPDATED
- Lock rule: no recompute once any payment is applied
- Status recompute and the overdue sweep
- Database constraints backing the invariants
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fees_kernel.domain.dtos import UpsertAction
from fees_kernel.domain.enums import AllocationStatus, PaymentMethod
from fees_kernel.exceptions import (
    AllocationLockedError,
    AllocationNotFoundError,
    ConcurrentAllocationUpdateError,
    ValidationError,
)
from fees_kernel.models import FeeAllocation, Payment
from fees_kernel.selectors.allocation_selector import AllocationSelector


def _payment(db_session, family, amount, actor_id, payment_date=date(2024, 3, 10)):
    payment = Payment(
        family_id=family.id,
        amount=Decimal(amount),
        applied_amount=Decimal("0"),
        method=PaymentMethod.CASH.value,
        payment_date=payment_date,
        created_by_id=actor_id,
    )
    db_session.add(payment)
    db_session.flush()
    return payment


def _locked(allocation_store, allocation_id):
    return allocation_store.lock_allocations([allocation_id])[0]


class TestUpsert:

    def test_create(self, seed, bill):
        family = seed.family(discount="200")
        student = seed.enrolled_student(family, "1000")

        result = bill(student)
        assert result.action == UpsertAction.CREATED
        allocation = result.allocation
        assert (allocation.month, allocation.year) == (3, 2024)
        assert allocation.gross_amount == Decimal("1000.00")
        assert allocation.discount_amount == Decimal("200.00")
        assert allocation.net_amount == Decimal("800.00")
        assert allocation.paid_amount == Decimal("0.00")
        assert allocation.status == AllocationStatus.PENDING
        assert allocation.due_date == date(2024, 3, 15)

    def test_rerun_is_unchanged(self, seed, bill, db_session):
        student = seed.enrolled_student(seed.family())
        first = bill(student)
        second = bill(student)

        assert second.action == UpsertAction.UNCHANGED
        assert second.allocation == first.allocation
        count = len(db_session.scalars(select(FeeAllocation)).all())
        assert count == 1

    def test_fee_change_updates_unpaid_row(self, seed, bill):
        family = seed.family()
        student = seed.enrolled_student(family, "1000")
        first = bill(student)

        seed.subscribe(student, service=seed.service("Lunch", "150"))
        second = bill(student)

        assert second.action == UpsertAction.UPDATED
        assert second.allocation.id == first.allocation.id
        assert second.allocation.net_amount == Decimal("1150.00")
        assert second.allocation.status == AllocationStatus.PENDING

    def test_overdue_row_keeps_status_on_update(self, seed, bill, allocation_store):
        student = seed.enrolled_student(seed.family())
        bill(student, month=1)
        assert allocation_store.mark_overdue() == 1

        seed.subscribe(student, service=seed.service("Lunch", "150"))
        result = bill(student, month=1)
        assert result.action == UpsertAction.UPDATED
        assert result.allocation.status == AllocationStatus.OVERDUE

    def test_update_records_actor(self, seed, bill, db_session):
        student = seed.enrolled_student(seed.family())
        created = bill(student)
        assert db_session.get(FeeAllocation, created.allocation.id).updated_by_id is None

        editor = uuid4()
        seed.subscribe(student, service=seed.service("Lunch", "150"))
        bill(student, actor=editor)
        assert db_session.get(FeeAllocation, created.allocation.id).updated_by_id == editor

    def test_lookup_by_uppercase_id_string(self, seed, bill, db_session):
        student = seed.enrolled_student(seed.family())
        allocation = bill(student).allocation
        info = AllocationSelector(db_session).get(str(allocation.id).upper())
        assert info.id == allocation.id

    def test_zero_net_stays_pending_and_can_be_rebilled(self, seed, bill, db_session):
        family = seed.family(discount="5000")
        student = seed.enrolled_student(family, "1000")
        zero = bill(student).allocation
        assert zero.net_amount == Decimal("0.00")
        assert zero.status == AllocationStatus.PENDING
        assert not zero.is_locked
        assert AllocationSelector(db_session).outstanding_for_family(family.id) == []

        family.discount_amount = Decimal("0")
        db_session.flush()
        result = bill(student)
        assert result.action == UpsertAction.UPDATED
        assert result.allocation.net_amount == Decimal("1000.00")
        assert result.allocation.status == AllocationStatus.PENDING

    def test_due_day_change_updates(self, seed, bill):
        student = seed.enrolled_student(seed.family())
        bill(student, due_day=15)
        result = bill(student, due_day=20)
        assert result.action == UpsertAction.UPDATED
        assert result.allocation.due_date == date(2024, 3, 20)

    def test_separate_rows_per_period(self, seed, bill):
        student = seed.enrolled_student(seed.family())
        march = bill(student, month=3)
        april = bill(student, month=4)
        assert march.allocation.id != april.allocation.id
        assert april.action == UpsertAction.CREATED

    def test_partially_paid_row_is_locked(
        self, seed, bill, allocation_store, db_session, actor_id,
    ):
        family = seed.family()
        student = seed.enrolled_student(family, "800")
        created = bill(student)
        payment = _payment(db_session, family, "500", actor_id)
        allocation_store.apply_amount(
            _locked(allocation_store, created.allocation.id), payment, Decimal("500"), actor_id,
        )

        seed.subscribe(student, service=seed.service("Lunch", "150"))
        with pytest.raises(AllocationLockedError) as exc_info:
            bill(student)
        assert exc_info.value.status == "PARTIAL"
        assert exc_info.value.paid_amount == "500.00"

        row = AllocationSelector(db_session).get(created.allocation.id)
        assert row.net_amount == Decimal("800.00")
        assert row.paid_amount == Decimal("500.00")
        assert row.status == AllocationStatus.PARTIAL

    def test_calculation_for_other_student_rejected(
        self, seed, calculator, allocation_store, actor_id,
    ):
        family = seed.family()
        ada = seed.enrolled_student(family, name="Ada")
        ben = seed.enrolled_student(family, name="Ben")
        calc = calculator.calculate(ada.id, 3, 2024)

        with pytest.raises(ValidationError):
            allocation_store.upsert(ben.id, 3, 2024, calc, date(2024, 3, 15), actor_id)
        with pytest.raises(ValidationError):
            allocation_store.upsert(ada.id, 4, 2024, calc, date(2024, 4, 15), actor_id)

    def test_upsert_logged(self, seed, bill, captured_logs):
        student = seed.enrolled_student(seed.family())
        bill(student)
        records = [r for r in captured_logs() if r["message"] == "allocation_upserted"]
        assert records[-1]["action"] == "CREATED"
        assert records[-1]["net_amount"] == "1000.00"


class TestApplyAndRecompute:

    def test_partial_then_paid(self, seed, bill, allocation_store, db_session, actor_id):
        family = seed.family(discount="200")
        student = seed.enrolled_student(family, "1000")
        allocation_id = bill(student).allocation.id

        first = _payment(db_session, family, "500", actor_id, date(2024, 3, 5))
        allocation_store.apply_amount(
            _locked(allocation_store, allocation_id), first, Decimal("500"), actor_id,
        )
        info = AllocationSelector(db_session).get(allocation_id)
        assert info.status == AllocationStatus.PARTIAL
        assert info.paid_date is None

        second = _payment(db_session, family, "300", actor_id, date(2024, 3, 9))
        allocation_store.apply_amount(
            _locked(allocation_store, allocation_id), second, Decimal("300"), actor_id,
        )
        info = AllocationSelector(db_session).get(allocation_id)
        assert info.status == AllocationStatus.PAID
        assert info.paid_amount == Decimal("800.00")
        assert info.paid_date == date(2024, 3, 9)
        assert info.settled_by_payment_id == second.id
        assert second.applied_amount == Decimal("300.00")

    def test_apply_more_than_remaining_rejected(
        self, seed, bill, allocation_store, db_session, actor_id,
    ):
        family = seed.family()
        student = seed.enrolled_student(family, "400")
        allocation_id = bill(student).allocation.id
        payment = _payment(db_session, family, "500", actor_id)

        with pytest.raises(ConcurrentAllocationUpdateError):
            allocation_store.apply_amount(
                _locked(allocation_store, allocation_id), payment, Decimal("401"), actor_id,
            )

    def test_lock_unknown_allocation(self, db_session, allocation_store):
        with pytest.raises(AllocationNotFoundError):
            allocation_store.lock_allocations([uuid4()])

    def test_lock_outstanding_oldest_first(self, seed, bill, allocation_store):
        family = seed.family()
        student = seed.enrolled_student(family)
        april = bill(student, month=4).allocation
        february = bill(student, month=2).allocation
        march = bill(student, month=3).allocation

        rows = allocation_store.lock_outstanding_for_family(family.id)
        assert [r.id for r in rows] == [february.id, march.id, april.id]


class TestMarkOverdue:

    def test_flips_only_unpaid_past_due_pending(
        self, seed, bill, allocation_store, db_session, actor_id,
    ):
        family = seed.family()
        student = seed.enrolled_student(family, "800")
        january = bill(student, month=1).allocation
        february = bill(student, month=2).allocation
        march = bill(student, month=3).allocation

        payment = _payment(db_session, family, "100", actor_id)
        allocation_store.apply_amount(
            _locked(allocation_store, february.id), payment, Decimal("100"), actor_id,
        )

        # today is 2024-03-10: January and February are past due, March is not
        assert allocation_store.mark_overdue(actor_id=actor_id) == 1

        selector = AllocationSelector(db_session)
        assert selector.get(january.id).status == AllocationStatus.OVERDUE
        assert selector.get(february.id).status == AllocationStatus.PARTIAL
        assert selector.get(march.id).status == AllocationStatus.PENDING

    def test_sweep_is_idempotent(self, seed, bill, allocation_store):
        student = seed.enrolled_student(seed.family())
        bill(student, month=1)
        assert allocation_store.mark_overdue() == 1
        assert allocation_store.mark_overdue() == 0

    def test_explicit_as_of(self, seed, bill, allocation_store, db_session):
        student = seed.enrolled_student(seed.family())
        march = bill(student, month=3).allocation
        assert allocation_store.mark_overdue(as_of=date(2024, 3, 15)) == 0
        assert allocation_store.mark_overdue(as_of=date(2024, 3, 16)) == 1
        assert AllocationSelector(db_session).get(march.id).status == AllocationStatus.OVERDUE

    def test_zero_net_not_marked(self, seed, bill, allocation_store):
        family = seed.family(discount="5000")
        student = seed.enrolled_student(family, "1000")
        allocation = bill(student, month=1).allocation
        assert allocation.net_amount == Decimal("0.00")
        assert allocation_store.mark_overdue() == 0


class TestConstraints:
    """The database backs the invariants independently of the services."""

    def _row(self, student, actor_id, **overrides):
        values = dict(
            student_id=student.id,
            month=5,
            year=2024,
            gross_amount=Decimal("100"),
            discount_amount=Decimal("0"),
            net_amount=Decimal("100"),
            paid_amount=Decimal("0"),
            due_date=date(2024, 5, 15),
            status=AllocationStatus.PENDING.value,
            created_by_id=actor_id,
        )
        values.update(overrides)
        return FeeAllocation(**values)

    def test_duplicate_period_rejected(self, seed, db_session, actor_id):
        student = seed.student(seed.family())
        db_session.add(self._row(student, actor_id))
        db_session.flush()
        db_session.add(self._row(student, actor_id))
        with pytest.raises(IntegrityError):
            db_session.flush()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"paid_amount": Decimal("101")},
            {"discount_amount": Decimal("150"), "net_amount": Decimal("0")},
            {"month": 13},
            {"net_amount": Decimal("-1")},
        ],
    )
    def test_check_constraints(self, seed, db_session, actor_id, overrides):
        student = seed.student(seed.family())
        db_session.add(self._row(student, actor_id, **overrides))
        with pytest.raises(IntegrityError):
            db_session.flush()
