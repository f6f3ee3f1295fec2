"""
DiscountResolver -- per-student discount for one billing period.

Responsibility:
    Combines the discounts on a student's active subscriptions with the
    student's share of the family-level discount.

Architecture position:
    Kernel > Services.  Reads through the injected Directory only; no writes.

Proration:
    family_discount_share = family.discount_amount / active_sibling_count,
    rounded half-up to cents.  The count is the number of siblings active
    in the billed period, not the family's current size, so allocations
    already persisted for a past period are reproducible.  With no active
    siblings, or when the billed student is not one of them, the share is 0.

Failure modes:
    - FamilyNotFoundError propagated from the Directory.
"""

from decimal import Decimal
from uuid import UUID

from fees_kernel.db.types import ZERO, round_money
from fees_kernel.domain.directory import Directory
from fees_kernel.domain.dtos import DiscountBreakdown, SubscriptionLine
from fees_kernel.domain.fee_math import prorate_family_discount
from fees_kernel.logging_config import get_logger

logger = get_logger("services.discount_resolver")


class DiscountResolver:
    """Resolves subscription and family discounts for a student."""

    def __init__(self, directory: Directory):
        self._directory = directory

    def resolve(
        self,
        student_id: UUID,
        family_id: UUID,
        active_sibling_count: int,
        subscriptions: list[SubscriptionLine],
        is_active_sibling: bool = True,
    ) -> DiscountBreakdown:
        """
        Discount breakdown for ``student_id``.

        Args:
            student_id: Student being billed.
            family_id: The student's family.
            active_sibling_count: Active siblings in the billed period,
                the student included.
            subscriptions: The student's active subscription lines.
            is_active_sibling: Whether the student counts as one of them.

        Raises:
            FamilyNotFoundError: If the family does not exist.
        """
        subscription_discount = round_money(
            sum((line.discount_amount for line in subscriptions), ZERO)
        )
        family_discount = self._directory.get_family_discount(family_id)
        share = prorate_family_discount(
            Decimal(family_discount), active_sibling_count, is_active_sibling,
        )
        logger.debug(
            "discount_resolved",
            extra={
                "student_id": str(student_id),
                "subscription_discount": str(subscription_discount),
                "family_discount_share": str(share),
                "active_sibling_count": active_sibling_count,
            },
        )
        return DiscountBreakdown(
            subscription_discount=subscription_discount,
            family_discount_share=share,
            family_discount_total=round_money(Decimal(family_discount)),
            active_sibling_count=active_sibling_count,
        )
