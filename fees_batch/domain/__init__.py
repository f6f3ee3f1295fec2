"""
fees_batch.domain -- Pure types for billing runs.

ZERO I/O.  All types are frozen dataclasses.
"""

from fees_batch.domain.types import (
    BillingRunResult,
    ItemOutcome,
    RunStatus,
    StudentOutcome,
    StudentState,
    resolve_run_status,
)

__all__ = [
    "BillingRunResult",
    "ItemOutcome",
    "RunStatus",
    "StudentOutcome",
    "StudentState",
    "resolve_run_status",
]
