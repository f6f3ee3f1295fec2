"""
ORM models for billing run persistence.

Contract:
    BillingRun and BillingRunItem persist the outcome of each billing run
    and one row per student.  Each has ``to_dto()`` / ``from_dto()``
    round-trip methods.

Architecture: fees_batch/models. Imports from fees_kernel.db.base only.

Invariants enforced:
    - One item per (run, item_index).
    - Items keep the student id as a plain column, without a foreign key,
      so outcomes for unknown student ids are still recorded.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fees_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from fees_batch.domain.types import BillingRunResult, StudentOutcome


class BillingRun(TrackedBase):
    """Persistent billing run record."""

    __tablename__ = "billing_runs"

    __table_args__ = (
        Index("ix_billing_runs_period", "year", "month"),
        Index("ix_billing_runs_status", "status"),
    )

    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    items: Mapped[list["BillingRunItem"]] = relationship(
        "BillingRunItem",
        back_populates="run",
        order_by="BillingRunItem.item_index",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> BillingRunResult:
        from fees_batch.domain.types import BillingRunResult, RunStatus

        return BillingRunResult(
            run_id=self.id,
            month=self.month,
            year=self.year,
            status=RunStatus(self.status),
            total=self.total_items,
            succeeded=self.succeeded_items,
            skipped=self.skipped_items,
            failed=self.failed_items,
            outcomes=tuple(item.to_dto() for item in self.items),
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration_ms=self.duration_ms,
            correlation_id=self.correlation_id,
        )

    @classmethod
    def from_dto(cls, dto: BillingRunResult, created_by_id: UUID) -> BillingRun:
        run = cls(
            id=dto.run_id,
            month=dto.month,
            year=dto.year,
            status=dto.status.value,
            total_items=dto.total,
            succeeded_items=dto.succeeded,
            skipped_items=dto.skipped,
            failed_items=dto.failed,
            duration_ms=dto.duration_ms,
            started_at=dto.started_at,
            completed_at=dto.completed_at,
            correlation_id=dto.correlation_id,
            created_by_id=created_by_id,
            updated_by_id=None,
        )
        run.items = [
            BillingRunItem.from_dto(outcome, created_by_id=created_by_id)
            for outcome in dto.outcomes
        ]
        return run


class BillingRunItem(TrackedBase):
    """Outcome of one student within a billing run."""

    __tablename__ = "billing_run_items"

    __table_args__ = (
        UniqueConstraint("run_id", "item_index", name="uq_billing_run_item_index"),
        Index("ix_billing_run_items_run_outcome", "run_id", "outcome"),
        Index("ix_billing_run_items_student", "student_id"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("billing_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    student_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str | None] = mapped_column(String(20), nullable=True)
    allocation_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    net_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    run: Mapped["BillingRun"] = relationship("BillingRun", back_populates="items")

    def to_dto(self) -> StudentOutcome:
        from fees_batch.domain.types import ItemOutcome, StudentOutcome, StudentState
        from fees_kernel.domain.dtos import UpsertAction

        return StudentOutcome(
            item_index=self.item_index,
            student_id=self.student_id,
            outcome=ItemOutcome(self.outcome),
            state=StudentState(self.state),
            action=UpsertAction(self.action) if self.action else None,
            allocation_id=self.allocation_id,
            net_amount=self.net_amount,
            error_code=self.error_code,
            error_message=self.error_message,
            duration_ms=self.duration_ms,
        )

    @classmethod
    def from_dto(cls, dto: StudentOutcome, created_by_id: UUID) -> BillingRunItem:
        return cls(
            item_index=dto.item_index,
            student_id=dto.student_id,
            outcome=dto.outcome.value,
            state=dto.state.value,
            action=dto.action.value if dto.action else None,
            allocation_id=dto.allocation_id,
            net_amount=dto.net_amount,
            error_code=dto.error_code,
            error_message=dto.error_message,
            duration_ms=dto.duration_ms,
            created_by_id=created_by_id,
            updated_by_id=None,
        )
