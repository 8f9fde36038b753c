"""
Pydantic schemas for API requests and responses

Amounts travel as decimal strings.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..allocation import Allocation
from ..amounts import decimal_from_string
from ..fees import FeePolicy
from ..ledger import LedgerBreakdown
from ..servicing import PaymentReceipt


class FeePolicyModel(BaseModel):
    enabled: bool
    rate_per_period: str = Field(..., description="Percentage as decimal string")
    grace_period_days: int = 0
    max_late_fee: str = "0"
    calculation_mode: str = "daily"  # daily, monthly or compound

    def to_fee_policy(self) -> FeePolicy:
        return FeePolicy.from_dict(self.model_dump())


class CreateLoanRequest(BaseModel):
    amount: str
    interest_rate_per_period: str
    term_in_periods: int
    payment_frequency: str = "monthly"
    start_date: Optional[date] = None
    first_payment_date: Optional[date] = None
    periodic_payment: Optional[str] = None
    fee_policy: Optional[FeePolicyModel] = None
    loan_id: Optional[str] = None


class AllocationPreviewRequest(BaseModel):
    amount: str


class PaymentRequest(BaseModel):
    amount: str
    late_fee_amount: str = "0"
    payment_date: Optional[date] = None
    payment_method: str = "cash"
    as_of: Optional[date] = None


class LateFeePaymentRequest(BaseModel):
    late_fee_amount: str
    payment_date: Optional[date] = None
    payment_method: str = "cash"
    as_of: Optional[date] = None


class RecalculateRequest(BaseModel):
    as_of: Optional[date] = None


def parse_amount(value: str) -> Decimal:
    """Parse an amount from a request body, accepting grouping separators and currency symbols"""
    return decimal_from_string(value)


def allocation_to_dict(allocation: Optional[Allocation]) -> Optional[Dict[str, Any]]:
    if allocation is None:
        return None
    return {
        "proposed_amount": str(allocation.proposed_amount),
        "interest_payment": str(allocation.interest_payment),
        "principal_payment": str(allocation.principal_payment),
        "installment_number": allocation.installment_number,
        "remaining_interest_due": str(allocation.remaining_interest_due),
        "completes_installment": allocation.completes_installment,
        "due_date": allocation.due_date.isoformat() if allocation.due_date else None,
    }


def breakdown_to_dict(breakdown: LedgerBreakdown) -> Dict[str, Any]:
    return {
        "loan_id": breakdown.loan_id,
        "as_of": breakdown.as_of.isoformat(),
        "total_outstanding_fee": str(breakdown.total_outstanding_fee),
        "total_accrued_fee": str(breakdown.total_accrued_fee),
        "total_paid_fee": str(breakdown.total_paid_fee),
        "per_installment": [
            {
                "installment_number": line.installment_number,
                "due_date": line.due_date.isoformat(),
                "days_overdue": line.days_overdue,
                "accrued_fee": str(line.accrued_fee),
                "paid_fee": str(line.paid_fee),
                "outstanding_fee": str(line.outstanding_fee),
            }
            for line in breakdown.per_installment
        ],
    }


def receipt_to_dict(receipt: PaymentReceipt) -> Dict[str, Any]:
    application = receipt.late_fee_application
    late_fee_allocations: List[Dict[str, Any]] = [
        {"installment_number": number, "amount": str(amount)}
        for number, amount in application.allocations
    ]
    return {
        "payment": receipt.payment.to_dict(),
        "allocation": allocation_to_dict(receipt.allocation),
        "late_fee_allocations": late_fee_allocations,
        "late_fee_leftover": str(application.leftover),
        "settled_installments": receipt.settled_installments,
        "loan": receipt.loan.to_dict(),
    }
