"""
Typed Exception Hierarchy for the Fees Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the engine (HTTP handlers, the billing run, operator scripts) must
react to failures by KIND, not by parsing messages:

  - Every error has a TYPED exception class (catch by type, not message)
  - Every exception has a CODE class attribute (machine-readable, API-safe)
  - Exceptions carry structured DATA (ids, amounts, periods)

    try:
        recorder.record_payment(...)
    except AllocationOverpaymentError as e:
        api_response(code=e.code, remaining=e.remaining)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FeeEngineError (base)
    |
    +-- DirectoryError
    |   +-- StudentNotFoundError
    |   +-- FamilyNotFoundError
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   |   +-- AllocationOverpaymentError
    |   +-- InvalidDateError
    |   +-- InvalidPeriodError
    |   +-- AllocationFamilyMismatchError
    |
    +-- AllocationError
    |   +-- AllocationNotFoundError
    |   +-- AllocationLockedError
    |   +-- PaymentNotFoundError
    |
    +-- ConcurrencyError
        +-- ConcurrentAllocationUpdateError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|-----------------------------------------
Directory    | STUDENT_NOT_FOUND             | Student id does not exist
             | FAMILY_NOT_FOUND              | Family id does not exist
-------------|-------------------------------|-----------------------------------------
Validation   | INVALID_AMOUNT                | Amount <= 0, targets exceed payment
             | ALLOCATION_OVERPAYMENT        | Target exceeds allocation remaining
             | INVALID_DATE                  | Payment dated in the future
             | INVALID_PERIOD                | Month not in 1..12, year out of bounds
             | ALLOCATION_FAMILY_MISMATCH    | Target allocation of another family
-------------|-------------------------------|-----------------------------------------
Allocation   | ALLOCATION_NOT_FOUND          | Allocation id does not exist
             | ALLOCATION_LOCKED             | Recompute onto PARTIAL/PAID allocation
             | PAYMENT_NOT_FOUND             | Payment id does not exist
-------------|-------------------------------|-----------------------------------------
Concurrency  | CONCURRENT_ALLOCATION_UPDATE  | Lock timeout, deadlock, lost capacity

===============================================================================
HANDLING PATTERNS
===============================================================================

    DirectoryError / ValidationError -> caller's fault, fix the input
    AllocationLockedError            -> business conflict, needs an adjustment flow
    ConcurrencyError                 -> transient, retry the whole operation
"""


class FeeEngineError(Exception):
    """
    Base exception for all fees kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "FEE_ENGINE_ERROR"


# Directory exceptions


class DirectoryError(FeeEngineError):
    """Base exception for student/family lookups."""

    code: str = "DIRECTORY_ERROR"


class StudentNotFoundError(DirectoryError):
    """Student with given ID was not found."""

    code: str = "STUDENT_NOT_FOUND"

    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"Student not found: {student_id}")


class FamilyNotFoundError(DirectoryError):
    """Family with given ID was not found."""

    code: str = "FAMILY_NOT_FOUND"

    def __init__(self, family_id: str):
        self.family_id = family_id
        super().__init__(f"Family not found: {family_id}")


# Input validation exceptions


class ValidationError(FeeEngineError):
    """Base exception for rejected input."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Monetary amount is invalid for the requested operation."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: str, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class AllocationOverpaymentError(InvalidAmountError):
    """Amount to apply exceeds the allocation's remaining balance."""

    code: str = "ALLOCATION_OVERPAYMENT"

    def __init__(self, allocation_id: str, amount: str, remaining: str):
        self.allocation_id = allocation_id
        self.remaining = remaining
        super().__init__(
            amount,
            f"exceeds remaining {remaining} on allocation {allocation_id}",
        )


class InvalidDateError(ValidationError):
    """Date is outside the accepted range."""

    code: str = "INVALID_DATE"

    def __init__(self, value: str, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid date {value}: {reason}")


class InvalidPeriodError(ValidationError):
    """Billing period (month, year) is malformed or out of bounds."""

    code: str = "INVALID_PERIOD"

    def __init__(self, month: int, year: int, reason: str):
        self.month = month
        self.year = year
        self.reason = reason
        super().__init__(f"Invalid billing period {month}/{year}: {reason}")


class AllocationFamilyMismatchError(ValidationError):
    """Target allocation belongs to a student outside the paying family."""

    code: str = "ALLOCATION_FAMILY_MISMATCH"

    def __init__(self, allocation_id: str, family_id: str):
        self.allocation_id = allocation_id
        self.family_id = family_id
        super().__init__(
            f"Allocation {allocation_id} does not belong to family {family_id}"
        )


# Allocation exceptions


class AllocationError(FeeEngineError):
    """Base exception for allocation state conflicts."""

    code: str = "ALLOCATION_ERROR"


class AllocationNotFoundError(AllocationError):
    """Fee allocation with given ID was not found."""

    code: str = "ALLOCATION_NOT_FOUND"

    def __init__(self, allocation_id: str):
        self.allocation_id = allocation_id
        super().__init__(f"Fee allocation not found: {allocation_id}")


class AllocationLockedError(AllocationError):
    """
    Allocation already has payments applied and cannot be recomputed.

    Overwriting the net amount would change a figure that payments were
    already reconciled against.
    """

    code: str = "ALLOCATION_LOCKED"

    def __init__(self, allocation_id: str, status: str, paid_amount: str):
        self.allocation_id = allocation_id
        self.status = status
        self.paid_amount = paid_amount
        super().__init__(
            f"Allocation {allocation_id} is {status} "
            f"(paid {paid_amount}) and cannot be recomputed"
        )


class PaymentNotFoundError(AllocationError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


# Concurrency exceptions


class ConcurrencyError(FeeEngineError):
    """Base exception for concurrency conflicts."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentAllocationUpdateError(ConcurrencyError):
    """
    A concurrent writer got to the allocation first.

    Raised on lock timeout, deadlock, or when the remaining capacity observed
    at validation time is gone once the row lock is held.  Retry the whole
    operation with a fresh read.
    """

    code: str = "CONCURRENT_ALLOCATION_UPDATE"

    def __init__(self, allocation_ids: list[str], reason: str):
        self.allocation_ids = allocation_ids
        self.reason = reason
        super().__init__(
            f"Concurrent update on allocation(s) {', '.join(allocation_ids) or '-'}: "
            f"{reason}"
        )
