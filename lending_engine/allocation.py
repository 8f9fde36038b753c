"""
Payment Allocation Module

Splits an incoming payment between interest and principal for loans with a
fixed interest charge per installment. Interest for the current period is
always satisfied before any principal is recognised.

Which period the next payment lands on is decided by replaying completed
payments in chronological order; the installments' is_paid flags are only an
eventually-consistent summary of that replay.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from functools import reduce
from itertools import accumulate
from typing import List, Optional, Sequence
import logging

from .amounts import ZERO, DEFAULT_TOLERANCE, to_money, amounts_match
from .exceptions import AllocationRejectedError, InvalidAmountError
from .loans import Loan, Installment, Payment, validate_installments


logger = logging.getLogger("lending.allocation")


@dataclass(frozen=True)
class ReplayState:
    """Accumulator snapshot after replaying a prefix of the payment history"""
    completed_installments: int = 0
    interest_paid: Decimal = ZERO       # Within the current installment
    principal_paid: Decimal = ZERO      # Within the current installment
    total_interest_paid: Decimal = ZERO
    total_principal_paid: Decimal = ZERO

    @property
    def current_installment_number(self) -> int:
        return self.completed_installments + 1


@dataclass(frozen=True)
class InstallmentStatus:
    """How much of the current period has been serviced"""
    loan_id: str
    completed_installments: int
    current_installment_number: int
    interest_paid: Decimal
    principal_paid: Decimal
    remaining_interest_due: Decimal
    remaining_principal_due: Decimal
    current_payment_due: Decimal

    @property
    def current_payment_remaining(self) -> Decimal:
        return self.remaining_interest_due + self.remaining_principal_due

    @property
    def is_current_payment_complete(self) -> bool:
        return self.current_payment_remaining <= ZERO

    @property
    def has_partial_payments(self) -> bool:
        return self.interest_paid > ZERO or self.principal_paid > ZERO


@dataclass(frozen=True)
class Allocation:
    """Interest/principal split of a proposed payment"""
    loan_id: str
    proposed_amount: Decimal
    interest_payment: Decimal
    principal_payment: Decimal
    installment_number: int
    remaining_interest_due: Decimal     # Before this payment
    completes_installment: bool
    due_date: Optional[date] = None


@dataclass(frozen=True)
class BalanceReconciliation:
    """Cached remaining balance compared with the replay-derived figure"""
    loan_id: str
    cached_balance: Decimal
    replayed_balance: Decimal

    @property
    def drift(self) -> Decimal:
        return self.cached_balance - self.replayed_balance

    def is_consistent(self, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
        return amounts_match(self.cached_balance, self.replayed_balance, tolerance)


def _chronological(payments: Sequence[Payment], loan_id: str) -> List[Payment]:
    # sorted() is stable, so same-day payments keep their recorded order
    completed = [p for p in payments if p.loan_id == loan_id and p.is_completed]
    return sorted(completed, key=lambda p: p.payment_date)


def _fold_payment(fixed_interest: Decimal, fixed_principal: Decimal):
    def step(state: ReplayState, payment: Payment) -> ReplayState:
        interest = state.interest_paid + payment.interest_amount
        principal = state.principal_paid + payment.principal_amount
        total_interest = state.total_interest_paid + payment.interest_amount
        total_principal = state.total_principal_paid + payment.principal_amount

        if interest >= fixed_interest and principal >= fixed_principal:
            # Period fully serviced, the next payment starts a new installment
            return ReplayState(
                completed_installments=state.completed_installments + 1,
                total_interest_paid=total_interest,
                total_principal_paid=total_principal,
            )
        return ReplayState(
            completed_installments=state.completed_installments,
            interest_paid=min(interest, fixed_interest),
            principal_paid=min(principal, max(fixed_principal, ZERO)),
            total_interest_paid=total_interest,
            total_principal_paid=total_principal,
        )
    return step


def replay_snapshots(loan: Loan, payments: Sequence[Payment]) -> List[ReplayState]:
    """Accumulator snapshot after each completed payment, oldest first"""
    step = _fold_payment(loan.fixed_interest_per_installment, loan.fixed_principal_per_installment)
    snapshots = list(accumulate(_chronological(payments, loan.id), step, initial=ReplayState()))
    return snapshots[1:]


def replay_payments(loan: Loan, payments: Sequence[Payment]) -> ReplayState:
    """Replay completed payments and return the final accumulator"""
    step = _fold_payment(loan.fixed_interest_per_installment, loan.fixed_principal_per_installment)
    return reduce(step, _chronological(payments, loan.id), ReplayState())


def installment_status(loan: Loan, payments: Sequence[Payment]) -> InstallmentStatus:
    """Position of the loan within its current installment"""
    state = replay_payments(loan, payments)
    fixed_interest = loan.fixed_interest_per_installment
    fixed_principal = loan.fixed_principal_per_installment
    return InstallmentStatus(
        loan_id=loan.id,
        completed_installments=state.completed_installments,
        current_installment_number=state.current_installment_number,
        interest_paid=state.interest_paid,
        principal_paid=state.principal_paid,
        remaining_interest_due=max(ZERO, fixed_interest - state.interest_paid),
        remaining_principal_due=max(ZERO, fixed_principal - state.principal_paid),
        current_payment_due=loan.periodic_payment,
    )


def replayed_balance(loan: Loan, payments: Sequence[Payment]) -> Decimal:
    """Remaining balance derived from the payment replay, floored at zero"""
    state = replay_payments(loan, payments)
    serviced = state.total_interest_paid + state.total_principal_paid
    return max(ZERO, loan.total_repayable - serviced)


def reconcile_balance(loan: Loan, payments: Sequence[Payment]) -> BalanceReconciliation:
    """
    Recompute the remaining balance from the payment replay and compare it
    with the cached loan.remaining_balance
    """
    replayed = replayed_balance(loan, payments)
    result = BalanceReconciliation(
        loan_id=loan.id,
        cached_balance=loan.remaining_balance,
        replayed_balance=replayed,
    )
    if not result.is_consistent():
        logger.warning(
            "Remaining balance drift on loan %s: cached %s, replayed %s",
            loan.id, loan.remaining_balance, replayed
        )
    return result


class PaymentAllocator:
    """
    Interest-first allocation of payments under the fixed-interest-per-installment model
    """

    def __init__(self, tolerance: Decimal = DEFAULT_TOLERANCE):
        self.tolerance = tolerance

    def allocate(
        self,
        loan: Loan,
        installments: Sequence[Installment],
        payments: Sequence[Payment],
        proposed_amount: Decimal
    ) -> Allocation:
        """
        Split a proposed payment into interest and principal

        Args:
            loan: Loan receiving the payment
            installments: Installments of the loan (used to locate the current due date)
            payments: Prior payments; only completed ones are replayed
            proposed_amount: Amount offered against interest and principal

        Returns:
            Allocation whose interest and principal sum to proposed_amount

        Raises:
            InvalidAmountError: If proposed_amount is not positive
            AllocationRejectedError: If proposed_amount exceeds the remaining balance
        """
        proposed = to_money(proposed_amount)
        if proposed <= ZERO:
            raise InvalidAmountError(f"Payment amount must be positive, got {proposed}")

        reconciliation = reconcile_balance(loan, payments)
        remaining_balance = reconciliation.replayed_balance
        if proposed > remaining_balance + self.tolerance:
            raise AllocationRejectedError(proposed, remaining_balance)

        status = installment_status(loan, payments)
        remaining_interest = status.remaining_interest_due

        if proposed <= remaining_interest:
            interest_payment = proposed
            principal_payment = ZERO
        else:
            interest_payment = remaining_interest
            # Any excess stays with the current installment as principal
            principal_payment = proposed - remaining_interest

        completes = (
            status.interest_paid + interest_payment >= loan.fixed_interest_per_installment
            and status.principal_paid + principal_payment >= loan.fixed_principal_per_installment
        )

        allocation = Allocation(
            loan_id=loan.id,
            proposed_amount=proposed,
            interest_payment=interest_payment,
            principal_payment=principal_payment,
            installment_number=status.current_installment_number,
            remaining_interest_due=remaining_interest,
            completes_installment=completes,
            due_date=self._due_date_for(loan, installments, status.current_installment_number),
        )
        logger.debug(
            "Allocated %s on loan %s installment %s: interest %s, principal %s",
            proposed, loan.id, allocation.installment_number, interest_payment, principal_payment
        )
        return allocation

    def _due_date_for(self, loan: Loan, installments: Sequence[Installment], number: int) -> Optional[date]:
        if not installments:
            return None
        for installment in validate_installments(loan.id, list(installments)):
            if installment.installment_number == number:
                return installment.due_date
        return None

