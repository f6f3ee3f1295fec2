"""
Pure domain layer: value objects, DTOs and fee math.

Nothing here touches the database.
"""

from fees_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from fees_kernel.domain.enums import AllocationStatus, BillingCycle, ItemKind, PaymentMethod
from fees_kernel.domain.period import BillingPeriod

__all__ = [
    "AllocationStatus",
    "BillingCycle",
    "BillingPeriod",
    "Clock",
    "DeterministicClock",
    "ItemKind",
    "PaymentMethod",
    "SystemClock",
]
