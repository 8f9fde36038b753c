"""
Late Fee Ledger Writer

Distributes a late-fee payment across a loan's unpaid installments, oldest
first, and returns the installments with their late_fee_paid counters
updated. Nothing is persisted here; the caller stores the returned rows.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, replace
from typing import List, Sequence, Tuple
import logging

from .amounts import ZERO, to_money, sum_amounts
from .exceptions import InvalidAmountError
from .ledger import installment_fee_line
from .loans import Loan, Installment, validate_installments


logger = logging.getLogger("lending.fee_ledger")


@dataclass(frozen=True)
class LateFeeApplication:
    """Outcome of distributing one late-fee payment"""
    loan_id: str
    late_fee_amount: Decimal
    installments: List[Installment]                 # Full updated set, ascending
    allocations: List[Tuple[int, Decimal]]          # (installment_number, amount consumed)
    leftover: Decimal

    @property
    def consumed(self) -> Decimal:
        return sum_amounts(amount for _, amount in self.allocations)

    @property
    def has_overpayment(self) -> bool:
        return self.leftover > ZERO

    @property
    def updated_installments(self) -> List[Installment]:
        """Only the installments whose counter changed"""
        touched = {number for number, _ in self.allocations}
        return [i for i in self.installments if i.installment_number in touched]


class LateFeeLedgerWriter:
    """Oldest-first late-fee distribution"""

    def apply_late_fee_payment(
        self,
        loan: Loan,
        installments: Sequence[Installment],
        late_fee_amount: Decimal,
        as_of: date
    ) -> LateFeeApplication:
        """
        Apply a late-fee payment to unpaid installments in ascending order

        Args:
            loan: Loan whose fee policy determines what is outstanding
            installments: All installments of the loan
            late_fee_amount: Late-fee money received
            as_of: Moment the outstanding fee is evaluated at

        Returns:
            LateFeeApplication; leftover is non-zero when the payment exceeds
            every outstanding late fee

        Raises:
            InvalidAmountError: If late_fee_amount is negative
        """
        amount = to_money(late_fee_amount)
        if amount < ZERO:
            raise InvalidAmountError(f"Late fee amount cannot be negative, got {amount}")

        ordered = validate_installments(loan.id, list(installments))
        remaining = amount
        allocations = []
        updated = []

        for installment in ordered:
            if remaining <= ZERO or installment.is_paid or not loan.fee_policy.enabled:
                updated.append(installment)
                continue

            outstanding = installment_fee_line(loan.fee_policy, installment, as_of).outstanding_fee
            if outstanding <= ZERO:
                updated.append(installment)
                continue

            consumed = min(remaining, outstanding)
            remaining -= consumed
            allocations.append((installment.installment_number, consumed))
            updated.append(replace(installment, late_fee_paid=installment.late_fee_paid + consumed))
            logger.debug(
                "Applied late fee %s to installment %s of loan %s",
                consumed, installment.installment_number, loan.id
            )

        if remaining > ZERO:
            logger.warning(
                "Late fee payment on loan %s exceeds outstanding late fees by %s",
                loan.id, remaining
            )

        return LateFeeApplication(
            loan_id=loan.id,
            late_fee_amount=amount,
            installments=updated,
            allocations=allocations,
            leftover=remaining,
        )
