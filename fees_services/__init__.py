"""
fees_services -- the FeeEngine facade and its result types.

Callers outside the engine use only this package:

    engine = FeeEngine(get_session_factory(), get_active_config())
    result = engine.record_payment(family_id, "800.00", "CASH", today, actor_id)
    if not result.is_success:
        handle(result.error_kind, result.details)
"""

from fees_services.engine import FeeEngine
from fees_services.results import ErrorKind, OperationResult, error_kind_for

__all__ = [
    "ErrorKind",
    "FeeEngine",
    "OperationResult",
    "error_kind_for",
]
