"""Database layer: engine, declarative base and money types."""

from fees_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from fees_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
)
from fees_kernel.db.types import ZERO, round_money, to_money

__all__ = [
    "Base",
    "TrackedBase",
    "UUID",
    "UUIDString",
    "ZERO",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "round_money",
    "to_money",
]
