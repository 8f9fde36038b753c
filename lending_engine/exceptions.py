"""Exception hierarchy for the lending engine."""

from decimal import Decimal


class LendingError(Exception):
    """Base exception for all lending engine errors."""


class FeePolicyError(LendingError, ValueError):
    """Raised when a late-fee policy is missing fields or carries invalid values."""


class InvalidAmountError(LendingError, ValueError):
    """Raised when a payment amount or its components are not acceptable."""


class InstallmentSequenceError(LendingError, ValueError):
    """Raised when installments are not contiguous, ordered, or from one loan."""


class LoanNotFoundError(LendingError, KeyError):
    """Raised when a referenced loan does not exist."""


class ConcurrentModificationError(LendingError):
    """Raised when a loan row changed between read and write."""


class AllocationRejectedError(LendingError):
    """Raised when a proposed payment exceeds the loan's remaining balance."""

    def __init__(self, proposed_amount: Decimal, remaining_balance: Decimal):
        self.proposed_amount = proposed_amount
        self.remaining_balance = remaining_balance
        super().__init__(
            f"Proposed payment {proposed_amount} exceeds remaining balance {remaining_balance}"
        )


class LateFeeOverpaymentError(LendingError):
    """Raised when a late-fee payment exceeds every outstanding late fee."""

    def __init__(self, leftover: Decimal, applied: Decimal):
        self.leftover = leftover
        self.applied = applied
        super().__init__(
            f"Late fee payment exceeds outstanding late fees by {leftover} (applied {applied})"
        )


class RecordExistsError(LendingError):
    """Raised when an append-only record would overwrite an existing one."""


class LoanNotActiveError(LendingError, ValueError):
    """Raised when a payment is posted to a paid or deleted loan."""
