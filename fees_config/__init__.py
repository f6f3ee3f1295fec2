"""
fees_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``EngineSettings``.

Architecture position:
    Configuration -- sits above ``fees_kernel`` and below
    ``fees_batch`` / ``fees_services``.  The kernel never imports from
    ``fees_config``; services pass individual settings down as plain
    arguments (due day, year bounds, worker count).

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Validation before use: out-of-range values never reach the engine.
    - Deterministic checksum: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- explicit or $FEES_CONFIG_PATH file missing.
    - ``ValueError`` -- schema or range validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a ``config_loaded``
    log entry with the source path and checksum.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from fees_config.loader import compute_checksum, load_yaml_file, parse_settings
from fees_config.schema import (
    BillingSettings,
    DatabaseSettings,
    EngineSettings,
    LockedAllocationPolicy,
    LoggingSettings,
    PaymentSettings,
)

_logger = logging.getLogger("fees_kernel.config")

CONFIG_PATH_ENV = "FEES_CONFIG_PATH"
DATABASE_URL_ENV = "DATABASE_URL"

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "engine.yaml"


def get_active_config(path: Path | str | None = None) -> EngineSettings:
    """The ONLY public configuration entrypoint.

    Lookup order for the YAML file:
        1. ``path`` argument
        2. ``$FEES_CONFIG_PATH``
        3. the packaged ``engine.yaml``

    ``$DATABASE_URL``, when set, overrides ``database.url``.  The checksum
    covers the file contents only, so an override does not change it.

    Returns:
        EngineSettings -- frozen, validated.

    Raises:
        FileNotFoundError: If the selected file does not exist.
        ValueError: If configuration validation fails.
    """
    source = Path(path or os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_FILE)
    data = load_yaml_file(source)
    settings = parse_settings(data)

    db_url = os.environ.get(DATABASE_URL_ENV)
    database = settings.database
    if db_url:
        database = dataclasses.replace(database, url=db_url)

    settings = dataclasses.replace(
        settings,
        database=database,
        source_path=str(source),
        checksum=compute_checksum(data),
    )

    _logger.info(
        "config_loaded",
        extra={
            "config_path": settings.source_path,
            "checksum": settings.checksum,
            "due_day": settings.billing.due_day,
            "locked_allocation_policy": settings.billing.locked_allocation_policy.value,
            "max_workers": settings.billing.max_workers,
            "log_level": settings.logging.level,
        },
    )
    return settings


__all__ = [
    "BillingSettings",
    "DatabaseSettings",
    "EngineSettings",
    "LockedAllocationPolicy",
    "LoggingSettings",
    "PaymentSettings",
    "get_active_config",
]
