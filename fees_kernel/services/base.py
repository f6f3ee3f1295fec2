"""
Write side of the kernel.

A service receives the caller's Session and an injected Clock.  It flushes
so constraint violations surface at the failing statement, but never
commits or rolls back: the FeeEngine facade, a billing run worker, or a
test decides the transaction boundary.  A payment, its applications and
every allocation recompute therefore land in one commit or not at all.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from fees_kernel.db.base import Base
from fees_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """Flush-only writer bound to one session and one clock."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    def _today(self):
        return self._clock.today()
