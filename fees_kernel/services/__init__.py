"""Kernel services: fee calculation and allocation/payment writes."""

from fees_kernel.services.allocation_store import AllocationStore
from fees_kernel.services.base import BaseService
from fees_kernel.services.discount_resolver import DiscountResolver
from fees_kernel.services.fee_calculator import FeeCalculator
from fees_kernel.services.payment_recorder import PaymentRecorder

__all__ = [
    "AllocationStore",
    "BaseService",
    "DiscountResolver",
    "FeeCalculator",
    "PaymentRecorder",
]
