"""
Fees Kernel - allocation and reconciliation core.

A transactional fee engine with:
- Per-student monthly fee calculation with family discount proration
- Idempotent allocation upsert keyed by (student, month, year)
- Atomic payment reconciliation under row-level locks
- Typed errors and structured logging
"""

__version__ = "0.1.0"
