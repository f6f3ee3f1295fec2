"""
DTOs -- immutable data carried between the engine's components.

Responsibility:
    Defines the frozen data structures that flow through fee calculation,
    allocation upserts and payment reconciliation: SubscriptionLine and
    DiscountBreakdown (calculator inputs), FeeCalculation (calculator
    output), PaymentTarget (validated boundary input), and AllocationInfo /
    PaymentInfo (persistence boundary snapshots).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters only invoked from
    selectors and services, never from domain logic.

Invariants enforced:
    - Domain logic accepts and returns DTOs, never ORM entities.
    - FeeCalculation: 0 <= discount <= gross and net == gross - discount.
    - PaymentTarget: amount > 0 with cent precision.

Failure modes:
    - ValueError on a FeeCalculation whose amounts break the net identity.
    - InvalidAmountError on a PaymentTarget with a bad amount.
    - AllocationNotFoundError on a PaymentTarget whose id is not a UUID.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from fees_kernel.db.types import ZERO, round_money
from fees_kernel.domain.enums import AllocationStatus, BillingCycle, ItemKind, PaymentMethod
from fees_kernel.domain.fee_math import coerce_amount
from fees_kernel.domain import fee_math
from fees_kernel.domain.period import BillingPeriod
from fees_kernel.exceptions import AllocationNotFoundError

if TYPE_CHECKING:
    from fees_kernel.models.allocation import FeeAllocation as FeeAllocationModel
    from fees_kernel.models.family import Student as StudentModel
    from fees_kernel.models.payment import Payment as PaymentModel
    from fees_kernel.models.payment import PaymentAllocation as PaymentAllocationModel


# ---------------------------------------------------------------------------
# Directory snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StudentInfo:
    """Student as seen by the engine."""

    id: UUID
    family_id: UUID
    name: str
    is_active: bool
    grade: str | None = None

    @classmethod
    def from_model(cls, model: StudentModel) -> StudentInfo:
        return cls(
            id=model.id,
            family_id=model.family_id,
            name=model.name,
            is_active=model.is_active,
            grade=model.grade,
        )


@dataclass(frozen=True)
class SubscriptionLine:
    """
    One active subscription with its resolved monthly unit amount.

    Contract:
        ``unit_amount`` is the monthly equivalent of the fee structure's
        ``cycle_amount``; ``discount_amount`` is the subscription's own
        absolute discount.
    """

    subscription_id: UUID
    student_id: UUID
    item_kind: ItemKind
    item_id: UUID
    item_name: str
    billing_cycle: BillingCycle
    cycle_amount: Decimal
    unit_amount: Decimal
    discount_amount: Decimal
    start_date: date
    end_date: date | None = None


# ---------------------------------------------------------------------------
# Calculation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DiscountBreakdown:
    """
    Discount components for one student and one period.

    Guarantees:
        - Both components are non-negative and rounded to cents.
        - ``total`` is unclamped; the calculator clamps it to gross.
    """

    subscription_discount: Decimal
    family_discount_share: Decimal
    family_discount_total: Decimal = ZERO
    active_sibling_count: int = 0

    @property
    def total(self) -> Decimal:
        return round_money(self.subscription_discount + self.family_discount_share)


@dataclass(frozen=True)
class FeeCalculation:
    """
    Result of calculating one student's fee for one billing period.

    Contract:
        Pure value; produced by the Fee Calculator and handed unchanged to
        the Allocation Store.

    Guarantees:
        - gross >= 0
        - 0 <= discount <= gross (discount is already clamped)
        - net == gross - discount, hence net >= 0
    """

    student_id: UUID
    family_id: UUID
    period: BillingPeriod
    gross: Decimal
    discount: Decimal
    net: Decimal
    lines: tuple[SubscriptionLine, ...] = field(default_factory=tuple)
    breakdown: DiscountBreakdown | None = None

    def __post_init__(self) -> None:
        if self.gross < 0:
            raise ValueError(f"gross must be non-negative, got {self.gross}")
        if self.discount < 0 or self.discount > self.gross:
            raise ValueError(
                f"discount must be within 0..gross, got {self.discount} (gross {self.gross})"
            )
        if self.net != self.gross - self.discount:
            raise ValueError(
                f"net {self.net} != gross {self.gross} - discount {self.discount}"
            )

    @property
    def month(self) -> int:
        return self.period.month

    @property
    def year(self) -> int:
        return self.period.year

    @property
    def has_subscriptions(self) -> bool:
        return bool(self.lines)


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


class UpsertAction(str, Enum):
    """What an upsert did to the allocation row."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"


@dataclass(frozen=True)
class AllocationInfo:
    """
    Snapshot of a persisted fee allocation.

    Guarantees:
        - Immutable; reflects the row as of the read or write that built it.
    """

    id: UUID
    student_id: UUID
    month: int
    year: int
    gross_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    paid_amount: Decimal
    due_date: date
    status: AllocationStatus
    paid_date: date | None = None
    settled_by_payment_id: UUID | None = None

    @property
    def remaining_amount(self) -> Decimal:
        return fee_math.remaining_amount(self.net_amount, self.paid_amount)

    @property
    def is_locked(self) -> bool:
        """Payments have been applied, so amounts may no longer be recomputed."""
        return self.paid_amount > 0

    @classmethod
    def from_model(cls, model: FeeAllocationModel) -> AllocationInfo:
        return cls(
            id=model.id,
            student_id=model.student_id,
            month=model.month,
            year=model.year,
            gross_amount=round_money(model.gross_amount),
            discount_amount=round_money(model.discount_amount),
            net_amount=round_money(model.net_amount),
            paid_amount=round_money(model.paid_amount),
            due_date=model.due_date,
            status=AllocationStatus(model.status),
            paid_date=model.paid_date,
            settled_by_payment_id=model.settled_by_payment_id,
        )


@dataclass(frozen=True)
class UpsertResult:
    allocation: AllocationInfo
    action: UpsertAction


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentTarget:
    """
    Caller-chosen portion of a payment to apply to one allocation.

    Validated on construction: a malformed target never reaches the
    reconciliation logic.
    """

    allocation_id: UUID
    amount: Decimal

    def __post_init__(self) -> None:
        allocation_id = self.allocation_id
        if not isinstance(allocation_id, UUID):
            try:
                allocation_id = UUID(str(allocation_id))
            except ValueError:
                raise AllocationNotFoundError(str(self.allocation_id)) from None
        object.__setattr__(self, "allocation_id", allocation_id)
        object.__setattr__(self, "amount", coerce_amount(self.amount))


@dataclass(frozen=True)
class AppliedAmount:
    """Portion of a payment applied to an allocation."""

    payment_id: UUID
    allocation_id: UUID
    amount: Decimal

    @classmethod
    def from_model(cls, model: PaymentAllocationModel) -> AppliedAmount:
        return cls(
            payment_id=model.payment_id,
            allocation_id=model.fee_allocation_id,
            amount=round_money(model.amount),
        )


@dataclass(frozen=True)
class PaymentInfo:
    """
    Snapshot of a persisted payment and where it has been applied.

    Guarantees:
        - applied_amount == sum of applications
        - unapplied_amount >= 0
    """

    id: UUID
    family_id: UUID
    amount: Decimal
    applied_amount: Decimal
    method: PaymentMethod
    payment_date: date
    reference: str | None = None
    applications: tuple[AppliedAmount, ...] = field(default_factory=tuple)

    @property
    def unapplied_amount(self) -> Decimal:
        return round_money(self.amount - self.applied_amount)

    @classmethod
    def from_model(
        cls,
        model: PaymentModel,
        applications: list[PaymentAllocationModel] | None = None,
    ) -> PaymentInfo:
        rows = model.allocations if applications is None else applications
        return cls(
            id=model.id,
            family_id=model.family_id,
            amount=round_money(model.amount),
            applied_amount=round_money(model.applied_amount),
            method=PaymentMethod(model.method),
            payment_date=model.payment_date,
            reference=model.reference,
            applications=tuple(AppliedAmount.from_model(row) for row in rows),
        )


@dataclass(frozen=True)
class PaymentReceipt:
    """Outcome of recording or re-applying a payment."""

    payment: PaymentInfo
    allocations: tuple[AllocationInfo, ...] = field(default_factory=tuple)

    @property
    def unapplied_amount(self) -> Decimal:
        return self.payment.unapplied_amount


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllocationFilter:
    """Optional filters for listing allocations; all given filters must match."""

    student_id: UUID | None = None
    family_id: UUID | None = None
    month: int | None = None
    year: int | None = None
    status: AllocationStatus | None = None


@dataclass(frozen=True)
class OverdueSummary:
    """Outstanding past-due allocations as of a date."""

    as_of: date
    total_overdue: int
    total_amount: Decimal
    affected_families: int
    oldest_due_date: date | None = None
