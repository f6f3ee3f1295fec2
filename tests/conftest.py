"""
Pytest fixtures for the fee engine test suite.

Provides:
- A fresh database per test (file-backed SQLite under tmp_path, or the
  PostgreSQL database named by DATABASE_URL)
- Seeders for families, students, catalog items and subscriptions
- A deterministic clock and a wired FeeEngine
- Structured log capture

Environment Variables:
- DATABASE_URL: PostgreSQL connection URL.  When unset, tests run on SQLite
  and tests marked ``postgres`` are skipped.

SQLite note:
    Every SQLite transaction takes the database write lock at BEGIN.  A test
    must not keep ``db_session`` inside an open transaction while calling
    code that opens its own sessions (FeeEngine, billing runs); commit or
    roll back first, or seed with ``committed_seed``.
"""

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

import fees_batch.models  # noqa: F401  registers billing run tables
from fees_config import BillingSettings, EngineSettings
from fees_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from fees_kernel.domain.clock import DeterministicClock
from fees_kernel.domain.enums import BillingCycle
from fees_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from fees_kernel.models import (
    Course,
    Family,
    FeeStructure,
    Service,
    Student,
    Subscription,
)
from fees_kernel.selectors.subscription_selector import SqlDirectory
from fees_kernel.services.allocation_store import AllocationStore
from fees_kernel.services.fee_calculator import FeeCalculator
from fees_services import FeeEngine


# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

# "Today" for most tests: March 2024 is billable, payments up to 10 March are valid
TODAY = date(2024, 3, 10)
SUBSCRIPTION_START = date(2023, 9, 1)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture fees_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, fee_engine):
            fee_engine.record_payment(...)
            logs = captured_logs()
            assert any(r["message"] == "payment_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("fees_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


def _postgres_url() -> str | None:
    url = os.environ.get("DATABASE_URL")
    if url and url.startswith("postgresql"):
        return url
    return None


def pytest_collection_modifyitems(config, items):
    if _postgres_url():
        return
    skip = pytest.mark.skip(reason="requires PostgreSQL (set DATABASE_URL)")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Engine with freshly created tables, dropped after the test."""
    url = _postgres_url() or f"sqlite:///{tmp_path / 'fees.db'}"
    eng = init_engine_from_url(url, pool_size=20, max_overflow=10)
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock():
    return DeterministicClock.on(TODAY)


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


# =============================================================================
# Seeding
# =============================================================================


class Seeder:
    """
    Creates directory and catalog rows.

    Bound to a session it only flushes (rows live in that session's
    transaction).  Bound to a session factory it commits every call.
    """

    def __init__(self, actor_id: UUID, session: Session | None = None, session_factory=None):
        self._actor_id = actor_id
        self._bound = session
        self._factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._bound is not None:
            yield self._bound
            self._bound.flush()
            return
        session = self._factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def family(self, name: str = "Family", discount: str | Decimal = "0") -> Family:
        with self._session() as session:
            family = Family(
                name=name,
                discount_amount=Decimal(discount),
                is_active=True,
                created_by_id=self._actor_id,
            )
            session.add(family)
        return family

    def student(
        self,
        family: Family,
        name: str = "Student",
        is_active: bool = True,
        grade: str | None = None,
    ) -> Student:
        with self._session() as session:
            student = Student(
                family_id=family.id,
                name=name,
                grade=grade,
                is_active=is_active,
                enrollment_date=SUBSCRIPTION_START,
                created_by_id=self._actor_id,
            )
            session.add(student)
        return student

    def course(
        self,
        name: str = "Course",
        amount: str | Decimal | None = "1000",
        cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> Course:
        """A course, priced by a fee structure unless ``amount`` is None."""
        with self._session() as session:
            course = Course(name=name, is_active=True, created_by_id=self._actor_id)
            session.add(course)
            session.flush()
            if amount is not None:
                session.add(
                    FeeStructure(
                        course_id=course.id,
                        amount=Decimal(amount),
                        billing_cycle=cycle.value,
                        created_by_id=self._actor_id,
                    )
                )
        return course

    def service(
        self,
        name: str = "Service",
        amount: str | Decimal | None = "100",
        cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> Service:
        with self._session() as session:
            service = Service(name=name, is_active=True, created_by_id=self._actor_id)
            session.add(service)
            session.flush()
            if amount is not None:
                session.add(
                    FeeStructure(
                        service_id=service.id,
                        amount=Decimal(amount),
                        billing_cycle=cycle.value,
                        created_by_id=self._actor_id,
                    )
                )
        return service

    def subscribe(
        self,
        student: Student,
        course: Course | None = None,
        service: Service | None = None,
        discount: str | Decimal = "0",
        start: date = SUBSCRIPTION_START,
        end: date | None = None,
    ) -> Subscription:
        with self._session() as session:
            subscription = Subscription(
                student_id=student.id,
                course_id=course.id if course is not None else None,
                service_id=service.id if service is not None else None,
                discount_amount=Decimal(discount),
                start_date=start,
                end_date=end,
                created_by_id=self._actor_id,
            )
            session.add(subscription)
        return subscription

    def enrolled_student(
        self,
        family: Family,
        fee: str = "1000",
        name: str = "Student",
        discount: str = "0",
    ) -> Student:
        """Student subscribed to a fresh monthly course."""
        student = self.student(family, name=name)
        self.subscribe(student, course=self.course(f"{name} course", fee), discount=discount)
        return student


@pytest.fixture
def seed(db_session, actor_id) -> Seeder:
    """Seeder flushing into ``db_session``."""
    return Seeder(actor_id, session=db_session)


@pytest.fixture
def committed_seed(session_factory, actor_id) -> Seeder:
    """Seeder committing each row in its own transaction."""
    return Seeder(actor_id, session_factory=session_factory)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def calculator(db_session) -> FeeCalculator:
    return FeeCalculator(SqlDirectory(db_session))


@pytest.fixture
def allocation_store(db_session, clock) -> AllocationStore:
    return AllocationStore(db_session, clock)


@pytest.fixture
def bill(calculator, allocation_store, actor_id):
    """
    Calculate and upsert one allocation in ``db_session``.

    Usage::

        result = bill(student, month=3, year=2024)
        assert result.allocation.net_amount == Decimal("800.00")
    """

    def _bill(
        student: Student,
        month: int = 3,
        year: int = 2024,
        due_day: int = 15,
        actor: UUID | None = None,
    ):
        calculation = calculator.calculate(student.id, month, year)
        return allocation_store.upsert(
            student.id,
            month,
            year,
            calculation,
            calculation.period.due_date(due_day),
            actor or actor_id,
        )

    return _bill


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(billing=BillingSettings(max_workers=1))


@pytest.fixture
def fee_engine(session_factory, engine_settings, clock) -> FeeEngine:
    return FeeEngine(session_factory, engine_settings, clock)
