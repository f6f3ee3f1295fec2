"""
Engine settings schema.

Frozen dataclasses the YAML configuration is parsed into.  Every value has
a default so a partial file is valid; ``validate_settings`` enforces the
ranges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class LockedAllocationPolicy(str, Enum):
    """What a billing run does when an allocation already has payments."""

    SKIP = "skip"  # record a SKIPPED outcome, run continues
    FAIL = "fail"  # record a FAILED outcome, run continues


@dataclass(frozen=True)
class BillingSettings:
    """Billing run and period settings."""

    due_day: int = 15
    min_year: int = 2000
    max_year: int = 2100
    max_workers: int = 4
    locked_allocation_policy: LockedAllocationPolicy = LockedAllocationPolicy.SKIP


@dataclass(frozen=True)
class PaymentSettings:
    """Reconciliation settings."""

    lock_timeout_ms: int = 5000
    retry_attempts: int = 3


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings; ``url`` may be overridden by $DATABASE_URL."""

    url: str = "sqlite:///fees.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5


@dataclass(frozen=True)
class LoggingSettings:
    """Level name for the fees_kernel logger tree (DEBUG, INFO, WARNING, ERROR)."""

    level: str = "INFO"


@dataclass(frozen=True)
class EngineSettings:
    """Complete engine configuration."""

    billing: BillingSettings = field(default_factory=BillingSettings)
    payments: PaymentSettings = field(default_factory=PaymentSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source_path: str | None = None
    checksum: str | None = None
