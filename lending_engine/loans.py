"""
Loan Module

Loan, installment and payment records consumed by the accrual and allocation
engine, plus installment schedule generation for the flat fixed-interest
product and due-date arithmetic.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar

from .amounts import ZERO, HUNDRED, DEFAULT_TOLERANCE, to_decimal, round_currency, amounts_match
from .fees import FeePolicy
from .exceptions import InvalidAmountError, InstallmentSequenceError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    OVERDUE = "overdue"
    PAID = "paid"
    DELETED = "deleted"      # Soft delete, loans are never removed


class PaymentFrequency(Enum):
    """Installment frequency options"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class PaymentMethod(Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CARD = "card"
    OTHER = "other"


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Loan:
    """Loan with fixed interest per installment and its late-fee policy"""
    id: str
    amount: Decimal                     # Original principal
    interest_rate_per_period: Decimal   # Percentage charged each period on original principal
    term_in_periods: int
    payment_frequency: PaymentFrequency
    periodic_payment: Decimal           # Installment amount (interest + principal)
    remaining_balance: Decimal
    next_payment_date: date
    fee_policy: FeePolicy
    status: LoanStatus = LoanStatus.ACTIVE
    start_date: Optional[date] = None
    current_late_fee: Decimal = ZERO
    total_late_fee_paid: Decimal = ZERO
    version: int = 0

    def __post_init__(self):
        for name in ('amount', 'interest_rate_per_period', 'periodic_payment',
                     'remaining_balance', 'current_late_fee', 'total_late_fee_paid'):
            setattr(self, name, to_decimal(getattr(self, name)))

        if not isinstance(self.payment_frequency, PaymentFrequency):
            self.payment_frequency = PaymentFrequency(self.payment_frequency)
        if not isinstance(self.status, LoanStatus):
            self.status = LoanStatus(self.status)

        if self.amount <= ZERO:
            raise ValueError("Loan amount must be positive")
        if self.interest_rate_per_period < ZERO:
            raise ValueError("Interest rate cannot be negative")
        if self.term_in_periods <= 0:
            raise ValueError("Loan term must be at least one period")

    @property
    def fixed_interest_per_installment(self) -> Decimal:
        """Interest charged every period, computed once from the original principal"""
        return round_currency(self.amount * self.interest_rate_per_period / HUNDRED)

    @property
    def fixed_principal_per_installment(self) -> Decimal:
        return self.periodic_payment - self.fixed_interest_per_installment

    @property
    def total_repayable(self) -> Decimal:
        """Total of all scheduled installments"""
        return self.periodic_payment * self.term_in_periods

    @property
    def is_active(self) -> bool:
        return self.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': str(self.amount),
            'interest_rate_per_period': str(self.interest_rate_per_period),
            'term_in_periods': self.term_in_periods,
            'payment_frequency': self.payment_frequency.value,
            'periodic_payment': str(self.periodic_payment),
            'remaining_balance': str(self.remaining_balance),
            'next_payment_date': self.next_payment_date.isoformat(),
            'fee_policy': self.fee_policy.to_dict(),
            'status': self.status.value,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'current_late_fee': str(self.current_late_fee),
            'total_late_fee_paid': str(self.total_late_fee_paid),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            amount=Decimal(data['amount']),
            interest_rate_per_period=Decimal(data['interest_rate_per_period']),
            term_in_periods=data['term_in_periods'],
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            periodic_payment=Decimal(data['periodic_payment']),
            remaining_balance=Decimal(data['remaining_balance']),
            next_payment_date=date.fromisoformat(data['next_payment_date']),
            fee_policy=FeePolicy.from_dict(data['fee_policy']),
            status=LoanStatus(data.get('status', LoanStatus.ACTIVE.value)),
            start_date=_optional_date(data.get('start_date')),
            current_late_fee=Decimal(data.get('current_late_fee', '0')),
            total_late_fee_paid=Decimal(data.get('total_late_fee_paid', '0')),
            version=data.get('version', 0),
        )


@dataclass(frozen=True)
class Installment:
    """One scheduled period of a loan"""
    loan_id: str
    installment_number: int             # 1-based, contiguous, ordered by due date
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal = ZERO
    is_paid: bool = False
    paid_date: Optional[date] = None
    late_fee_paid: Decimal = ZERO       # Late fee already satisfied for this installment

    def __post_init__(self):
        for name in ('principal_amount', 'interest_amount', 'late_fee_paid'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if self.installment_number < 1:
            raise InstallmentSequenceError("Installment numbers start at 1")
        if self.late_fee_paid < ZERO:
            raise InvalidAmountError("late_fee_paid cannot be negative")

    @property
    def record_id(self) -> str:
        return f"{self.loan_id}_{self.installment_number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'is_paid': self.is_paid,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'late_fee_paid': str(self.late_fee_paid),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data.get('interest_amount', '0')),
            is_paid=data.get('is_paid', False),
            paid_date=_optional_date(data.get('paid_date')),
            late_fee_paid=Decimal(data.get('late_fee_paid', '0')),
        )


@dataclass(frozen=True)
class Payment:
    """
    Immutable record of money received against a loan.

    principal_amount + interest_amount + late_fee must equal amount
    within the engine tolerance.
    """
    id: str
    loan_id: str
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    late_fee: Decimal
    payment_date: date
    payment_method: PaymentMethod = PaymentMethod.CASH
    status: PaymentStatus = PaymentStatus.COMPLETED

    def __post_init__(self):
        for name in ('amount', 'principal_amount', 'interest_amount', 'late_fee'):
            value = to_decimal(getattr(self, name))
            if value < ZERO:
                raise InvalidAmountError(f"Payment {name} cannot be negative, got {value}")
            object.__setattr__(self, name, value)

        if not isinstance(self.payment_method, PaymentMethod):
            object.__setattr__(self, 'payment_method', PaymentMethod(self.payment_method))
        if not isinstance(self.status, PaymentStatus):
            object.__setattr__(self, 'status', PaymentStatus(self.status))

        components = self.principal_amount + self.interest_amount + self.late_fee
        if not amounts_match(components, self.amount, DEFAULT_TOLERANCE):
            raise InvalidAmountError(
                f"Payment amount {self.amount} does not equal principal {self.principal_amount} "
                f"+ interest {self.interest_amount} + late fee {self.late_fee}"
            )

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'amount': str(self.amount),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'late_fee': str(self.late_fee),
            'payment_date': self.payment_date.isoformat(),
            'payment_method': self.payment_method.value,
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            late_fee=Decimal(data.get('late_fee', '0')),
            payment_date=date.fromisoformat(data['payment_date']),
            payment_method=PaymentMethod(data.get('payment_method', PaymentMethod.CASH.value)),
            status=PaymentStatus(data.get('status', PaymentStatus.COMPLETED.value)),
        )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_due_date(current_date: date, frequency: PaymentFrequency, periods: int = 1) -> date:
    """Advance a due date by a number of periods"""
    if frequency == PaymentFrequency.DAILY:
        return current_date + timedelta(days=periods)
    elif frequency == PaymentFrequency.WEEKLY:
        return current_date + timedelta(days=7 * periods)
    elif frequency == PaymentFrequency.BIWEEKLY:
        return current_date + timedelta(days=14 * periods)
    elif frequency == PaymentFrequency.MONTHLY:
        return add_months(current_date, periods)
    elif frequency == PaymentFrequency.QUARTERLY:
        return add_months(current_date, 3 * periods)
    else:
        raise ValueError(f"Unsupported payment frequency: {frequency}")


def calculate_periodic_payment(amount: Decimal, interest_rate_per_period: Decimal, term_in_periods: int) -> Decimal:
    """
    Installment amount for the flat product: an equal share of principal
    plus fixed interest on the original principal
    """
    if term_in_periods <= 0:
        raise ValueError("Loan term must be at least one period")
    amount = to_decimal(amount)
    principal_share = amount / Decimal(term_in_periods)
    interest = amount * to_decimal(interest_rate_per_period) / HUNDRED
    return round_currency(principal_share + interest)


def build_installment_schedule(loan: Loan, first_payment_date: date) -> List[Installment]:
    """
    Generate one installment per period for a newly originated loan

    Args:
        loan: Loan being originated
        first_payment_date: Due date of installment 1

    Returns:
        Installments ordered by installment_number
    """
    interest = loan.fixed_interest_per_installment
    principal = loan.fixed_principal_per_installment

    schedule = []
    for number in range(1, loan.term_in_periods + 1):
        schedule.append(Installment(
            loan_id=loan.id,
            installment_number=number,
            due_date=next_due_date(first_payment_date, loan.payment_frequency, number - 1),
            principal_amount=principal,
            interest_amount=interest,
        ))
    return schedule


def validate_installments(loan_id: str, installments: List[Installment]) -> List[Installment]:
    """
    Check the installment sequence invariant and return installments sorted by number

    Raises:
        InstallmentSequenceError: If numbering has gaps, due dates go backwards,
            or an installment belongs to another loan
    """
    ordered = sorted(installments, key=lambda i: i.installment_number)

    for position, installment in enumerate(ordered, start=1):
        if installment.loan_id != loan_id:
            raise InstallmentSequenceError(
                f"Installment {installment.installment_number} belongs to loan {installment.loan_id}, not {loan_id}"
            )
        if installment.installment_number != position:
            raise InstallmentSequenceError(
                f"Installment numbers must be contiguous from 1; expected {position}, "
                f"found {installment.installment_number}"
            )
        if position > 1 and installment.due_date < ordered[position - 2].due_date:
            raise InstallmentSequenceError(
                f"Installment {installment.installment_number} is due before installment {position - 1}"
            )

    return ordered


def mark_installment_paid(installment: Installment, paid_date: date) -> Installment:
    """Return a copy of the installment flagged as paid on paid_date"""
    return replace(installment, is_paid=True, paid_date=paid_date)
