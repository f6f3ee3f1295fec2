"""
Configuration Loader (``fees_config.loader``).

Responsibility
--------------
Loads the engine YAML file and parses it into the frozen dataclasses of
``fees_config.schema``.  Callers use ``fees_config.get_active_config()``;
this module is its implementation.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown top-level sections and unknown keys are rejected, so a typo
  never silently falls back to a default.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or mistyped values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from fees_config.schema import (
    BillingSettings,
    DatabaseSettings,
    EngineSettings,
    LockedAllocationPolicy,
    LoggingSettings,
    PaymentSettings,
)

_SECTIONS = {
    "billing": BillingSettings,
    "payments": PaymentSettings,
    "database": DatabaseSettings,
    "logging": LoggingSettings,
}

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be a mapping")
    allowed = set(_SECTIONS[name].__dataclass_fields__)
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"Unknown key(s) in '{name}': {', '.join(sorted(unknown))}")
    return raw


def _int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{section}.{key} must be an integer, got {value!r}")
    return value


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse an ``EngineSettings`` from a dict.

    Raises:
        ValueError: on unknown sections/keys or invalid values.
    """
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    billing_raw = _section(data, "billing")
    billing_kwargs = {
        k: _int("billing", k, v)
        for k, v in billing_raw.items()
        if k != "locked_allocation_policy"
    }
    if "locked_allocation_policy" in billing_raw:
        try:
            billing_kwargs["locked_allocation_policy"] = LockedAllocationPolicy(
                str(billing_raw["locked_allocation_policy"]).lower()
            )
        except ValueError:
            raise ValueError(
                "billing.locked_allocation_policy must be 'skip' or 'fail', "
                f"got {billing_raw['locked_allocation_policy']!r}"
            ) from None
    billing = BillingSettings(**billing_kwargs)

    payments = PaymentSettings(
        **{k: _int("payments", k, v) for k, v in _section(data, "payments").items()}
    )

    database_raw = _section(data, "database")
    database_kwargs: dict[str, Any] = {}
    for key, value in database_raw.items():
        if key == "url":
            if not isinstance(value, str) or not value:
                raise ValueError("database.url must be a non-empty string")
            database_kwargs[key] = value
        elif key == "echo":
            if not isinstance(value, bool):
                raise ValueError("database.echo must be a boolean")
            database_kwargs[key] = value
        else:
            database_kwargs[key] = _int("database", key, value)
    database = DatabaseSettings(**database_kwargs)

    logging_raw = _section(data, "logging")
    logging_kwargs = {}
    if "level" in logging_raw:
        logging_kwargs["level"] = str(logging_raw["level"]).upper()
    log_settings = LoggingSettings(**logging_kwargs)

    settings = EngineSettings(
        billing=billing, payments=payments, database=database, logging=log_settings,
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: EngineSettings) -> None:
    """
    Range checks across sections.

    Raises:
        ValueError: listing every violation found.
    """
    errors = []
    billing = settings.billing
    if not 1 <= billing.due_day <= 28:
        errors.append(f"billing.due_day must be in 1..28, got {billing.due_day}")
    if billing.min_year > billing.max_year:
        errors.append(
            f"billing.min_year {billing.min_year} is after max_year {billing.max_year}"
        )
    if billing.max_workers < 1:
        errors.append(f"billing.max_workers must be >= 1, got {billing.max_workers}")
    if settings.payments.lock_timeout_ms < 0:
        errors.append("payments.lock_timeout_ms must be >= 0")
    if settings.payments.retry_attempts < 1:
        errors.append("payments.retry_attempts must be >= 1")
    if settings.database.pool_size < 1:
        errors.append("database.pool_size must be >= 1")
    if settings.database.max_overflow < 0:
        errors.append("database.max_overflow must be >= 0")
    if settings.logging.level not in _LOG_LEVELS:
        errors.append(
            f"logging.level must be one of {', '.join(_LOG_LEVELS)}, got {settings.logging.level!r}"
        )
    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
