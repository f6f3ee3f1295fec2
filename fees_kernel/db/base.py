"""
fees_kernel.db.base -- declarative base for every ORM model of the engine.

Architecture position: Kernel > DB.  Imported by fees_kernel.models and
    fees_batch.models; imports nothing from the rest of the engine.

Invariants enforced:
    - Every row has a uuid4 primary key stored as a 36-character string, so
      ids compare the same on SQLite and PostgreSQL.
    - Decimal columns are Numeric(18, 2): fees are whole cents and never
      pass through float.
    - Every tracked row records who created it and who last changed it.
    - Constraint and index names follow one convention, so the names the
      models declare (ck_*, uq_*) are the names the database reports.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import Date, DateTime, Integer, MetaData, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class UUIDString(TypeDecorator):
    """UUID column stored as String(36).

    Bound values may be UUIDs or UUID strings in any case; both are written
    in canonical lowercase form so lookups by a caller-supplied string hit
    the same row.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, PyUUID):
            value = PyUUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return PyUUID(value)


class Base(DeclarativeBase):
    """Base for all fee engine tables: uuid id plus the column type map."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(18, 2),
        datetime: DateTime(timezone=True),
        date: Date,
        PyUUID: UUIDString(),
        int: Integer,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base recording creation and last change.

    created_at and updated_at are server timestamps; created_by_id is
    required on insert.  Services call ``touch(actor_id)`` on every
    modification so updated_by_id names the last writer.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    def touch(self, actor_id: PyUUID | None) -> None:
        if actor_id is not None:
            self.updated_by_id = actor_id


UUID = PyUUID
