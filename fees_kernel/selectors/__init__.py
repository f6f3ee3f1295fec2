"""Read-only query selectors for the fees kernel."""

from fees_kernel.selectors.allocation_selector import AllocationSelector
from fees_kernel.selectors.base import BaseSelector
from fees_kernel.selectors.payment_selector import PaymentSelector
from fees_kernel.selectors.subscription_selector import SqlDirectory, SubscriptionSelector

__all__ = [
    "AllocationSelector",
    "BaseSelector",
    "PaymentSelector",
    "SqlDirectory",
    "SubscriptionSelector",
]
