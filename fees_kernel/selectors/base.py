"""
Read side of the kernel.

Selectors take the caller's Session, run queries, and hand back frozen DTOs
from ``fees_kernel.domain.dtos`` (or plain values).  They never add, flush,
commit or lock; the Allocation Store and Payment Recorder own writes and
row locks.
"""

from abc import ABC
from typing import Any, Generic, TypeVar

from sqlalchemy.orm import Session

from fees_kernel.db.base import Base
from fees_kernel.exceptions import FeeEngineError

ModelType = TypeVar("ModelType", bound=Base)
RowType = TypeVar("RowType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """Read-only queries over one session owned by the caller."""

    def __init__(self, session: Session):
        self.session = session

    def _require(
        self,
        model: type[RowType],
        row_id: Any,
        not_found: type[FeeEngineError],
    ) -> RowType:
        """Load ``model`` by primary key or raise ``not_found(str(row_id))``."""
        row = self.session.get(model, row_id)
        if row is None:
            raise not_found(str(row_id))
        return row
