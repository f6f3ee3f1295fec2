"""
fees_batch.domain.types -- Pure frozen dataclasses for billing runs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - Every student of the run population has exactly one StudentOutcome.
    - BillingRunResult counters always add up to ``total``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from fees_kernel.domain.dtos import UpsertAction


# =============================================================================
# Status enums
# =============================================================================


class RunStatus(str, Enum):
    """Run-level result."""

    COMPLETED = "completed"  # No student failed
    PARTIALLY_COMPLETED = "partially_completed"  # Some students failed
    FAILED = "failed"  # Every student failed


class ItemOutcome(str, Enum):
    """Per-student result within a run."""

    SUCCEEDED = "succeeded"  # Allocation created, updated or already current
    SKIPPED = "skipped"  # Nothing to bill, or allocation locked by payments
    FAILED = "failed"


class StudentState(str, Enum):
    """Per-student processing state."""

    NOT_STARTED = "not_started"
    CALCULATED = "calculated"
    UPSERTED = "upserted"
    DONE = "done"
    FAILED = "failed"


# Skip reasons that are not exception codes
NO_ACTIVE_SUBSCRIPTIONS = "NO_ACTIVE_SUBSCRIPTIONS"
INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# Result DTOs
# =============================================================================


@dataclass(frozen=True)
class StudentOutcome:
    """Immutable result of billing one student."""

    item_index: int
    student_id: UUID
    outcome: ItemOutcome
    state: StudentState
    action: UpsertAction | None = None
    allocation_id: UUID | None = None
    net_amount: Decimal | None = None
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class BillingRunResult:
    """Immutable result of a complete billing run."""

    run_id: UUID
    month: int
    year: int
    status: RunStatus
    total: int
    succeeded: int
    skipped: int
    failed: int
    outcomes: tuple[StudentOutcome, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    correlation_id: str | None = None

    @property
    def failures(self) -> tuple[StudentOutcome, ...]:
        return tuple(o for o in self.outcomes if o.outcome == ItemOutcome.FAILED)

    def count_action(self, action: UpsertAction) -> int:
        return sum(1 for o in self.outcomes if o.action == action)

    def outcome_for(self, student_id: UUID) -> StudentOutcome | None:
        for outcome in self.outcomes:
            if outcome.student_id == student_id:
                return outcome
        return None


def resolve_run_status(total: int, failed: int) -> RunStatus:
    """COMPLETED when nothing failed; FAILED only when every student failed."""
    if failed == 0:
        return RunStatus.COMPLETED
    if failed == total:
        return RunStatus.FAILED
    return RunStatus.PARTIALLY_COMPLETED
