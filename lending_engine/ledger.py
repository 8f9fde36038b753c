"""
Installment Ledger Module

Walks a loan's installments to determine, per unpaid installment, the late fee
accrued to date, the part already satisfied, and what is still outstanding.
Paid amounts come from each installment's persisted late_fee_paid counter,
never from re-deriving raw payment rows.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, Sequence
import logging

from .amounts import ZERO, DEFAULT_TOLERANCE, sum_amounts, amounts_match
from .fees import FeePolicy, accrue
from .loans import Loan, Installment, Payment, validate_installments


logger = logging.getLogger("lending.ledger")


@dataclass(frozen=True)
class InstallmentFeeLine:
    """Late-fee position of one unpaid installment"""
    installment_number: int
    due_date: date
    days_overdue: int
    accrued_fee: Decimal
    paid_fee: Decimal
    outstanding_fee: Decimal


@dataclass(frozen=True)
class LedgerBreakdown:
    """Late-fee position of a loan at one moment"""
    loan_id: str
    as_of: date
    per_installment: List[InstallmentFeeLine]
    total_outstanding_fee: Decimal

    @property
    def total_accrued_fee(self) -> Decimal:
        return sum_amounts(line.accrued_fee for line in self.per_installment)

    @property
    def total_paid_fee(self) -> Decimal:
        return sum_amounts(line.paid_fee for line in self.per_installment)

    @property
    def max_days_overdue(self) -> int:
        return max((line.days_overdue for line in self.per_installment), default=0)

    @property
    def overdue_installments(self) -> List[InstallmentFeeLine]:
        return [line for line in self.per_installment if line.days_overdue > 0]

    def line_for(self, installment_number: int) -> Optional[InstallmentFeeLine]:
        for line in self.per_installment:
            if line.installment_number == installment_number:
                return line
        return None


@dataclass(frozen=True)
class FeeConsistencyReport:
    """Comparison of late fee recorded on payments against installment counters"""
    loan_id: str
    paid_per_installments: Decimal
    paid_per_payments: Decimal

    @property
    def drift(self) -> Decimal:
        return self.paid_per_installments - self.paid_per_payments

    def is_consistent(self, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
        return amounts_match(self.paid_per_installments, self.paid_per_payments, tolerance)


def installment_fee_line(policy: FeePolicy, installment: Installment, as_of: date) -> InstallmentFeeLine:
    """
    Compute the late-fee line for a single installment

    The fee base is the installment's own principal component.
    """
    accrual = accrue(policy, installment.principal_amount, installment.due_date, as_of)
    paid = installment.late_fee_paid
    return InstallmentFeeLine(
        installment_number=installment.installment_number,
        due_date=installment.due_date,
        days_overdue=accrual.days_overdue,
        accrued_fee=accrual.fee_amount,
        paid_fee=paid,
        outstanding_fee=max(ZERO, accrual.fee_amount - paid),
    )


class InstallmentLedger:
    """
    Per-installment late-fee breakdown for a loan.

    Stateless: identical inputs always produce an identical breakdown.
    """

    def breakdown(
        self,
        loan: Loan,
        installments: Sequence[Installment],
        payments: Sequence[Payment],
        as_of: date
    ) -> LedgerBreakdown:
        """
        Compute accrued, paid and outstanding late fee per unpaid installment

        Args:
            loan: Loan whose fee policy applies
            installments: All installments of the loan, any order
            payments: Payment history of the loan (late-fee amounts are already
                reflected in installment counters, so payments are not re-summed)
            as_of: Date of calculation

        Returns:
            LedgerBreakdown in ascending installment order
        """
        ordered = validate_installments(loan.id, list(installments))
        unpaid = [i for i in ordered if not i.is_paid]

        if not loan.fee_policy.enabled:
            # Disabled policy: zero everything without touching dates
            lines = [
                InstallmentFeeLine(
                    installment_number=i.installment_number,
                    due_date=i.due_date,
                    days_overdue=0,
                    accrued_fee=ZERO,
                    paid_fee=ZERO,
                    outstanding_fee=ZERO,
                )
                for i in unpaid
            ]
            return LedgerBreakdown(loan_id=loan.id, as_of=as_of, per_installment=lines,
                                   total_outstanding_fee=ZERO)

        lines = []
        for installment in unpaid:
            line = installment_fee_line(loan.fee_policy, installment, as_of)
            logger.debug(
                "Installment %s of loan %s: %s days overdue, accrued %s, paid %s",
                line.installment_number, loan.id, line.days_overdue, line.accrued_fee, line.paid_fee
            )
            lines.append(line)

        total = sum_amounts(line.outstanding_fee for line in lines)
        return LedgerBreakdown(loan_id=loan.id, as_of=as_of, per_installment=lines,
                               total_outstanding_fee=total)


def verify_fee_consistency(
    loan_id: str,
    installments: Sequence[Installment],
    payments: Sequence[Payment]
) -> FeeConsistencyReport:
    """
    Check that late fee collected on completed payments equals the sum of
    late_fee_paid counters across all installments of the loan
    """
    paid_per_installments = sum_amounts(i.late_fee_paid for i in installments if i.loan_id == loan_id)
    paid_per_payments = sum_amounts(
        p.late_fee for p in payments if p.loan_id == loan_id and p.is_completed
    )
    report = FeeConsistencyReport(
        loan_id=loan_id,
        paid_per_installments=paid_per_installments,
        paid_per_payments=paid_per_payments,
    )
    if not report.is_consistent():
        logger.warning(
            "Late fee drift on loan %s: installments record %s, payments record %s",
            loan_id, paid_per_installments, paid_per_payments
        )
    return report
