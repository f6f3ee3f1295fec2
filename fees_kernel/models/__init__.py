"""Domain models for the fees kernel."""

from fees_kernel.models.allocation import AllocationStatus, FeeAllocation
from fees_kernel.models.catalog import BillingCycle, Course, FeeStructure, Service
from fees_kernel.models.family import Family, Student
from fees_kernel.models.payment import Payment, PaymentAllocation, PaymentMethod
from fees_kernel.models.subscription import Subscription

__all__ = [
    "AllocationStatus",
    "BillingCycle",
    "Course",
    "Family",
    "FeeAllocation",
    "FeeStructure",
    "Payment",
    "PaymentAllocation",
    "PaymentMethod",
    "Service",
    "Student",
    "Subscription",
]
