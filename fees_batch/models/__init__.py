"""
fees_batch.models -- ORM models for billing run persistence.

Architecture: fees_batch/models. Imports from fees_kernel.db.base only.
"""

from fees_batch.models.billing_run import BillingRun, BillingRunItem

__all__ = [
    "BillingRun",
    "BillingRunItem",
]
