"""
Loan, payment and late-fee endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, status

from ..exceptions import LendingError
from .deps import LendingSystem, get_lending_system, to_http_exception
from .schemas import (
    AllocationPreviewRequest, CreateLoanRequest, FeePolicyModel, LateFeePaymentRequest,
    PaymentRequest, RecalculateRequest, allocation_to_dict, breakdown_to_dict,
    parse_amount, receipt_to_dict
)


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Originate a loan and its installment schedule"""
    try:
        loan = system.servicer.originate_loan(
            amount=parse_amount(request.amount),
            interest_rate_per_period=parse_amount(request.interest_rate_per_period),
            term_in_periods=request.term_in_periods,
            payment_frequency=request.payment_frequency,
            start_date=request.start_date,
            first_payment_date=request.first_payment_date,
            fee_policy=request.fee_policy.to_fee_policy() if request.fee_policy else None,
            periodic_payment=parse_amount(request.periodic_payment) if request.periodic_payment else None,
            loan_id=request.loan_id
        )
        return {
            "loan": loan.to_dict(),
            "message": "Loan originated successfully"
        }

    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


# Declared before /{loan_id} routes so the literal path wins
@router.post("/late-fees/recalculate")
async def recalculate_late_fees(
    request: Optional[RecalculateRequest] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Refresh late fee and status of every active loan"""
    as_of = request.as_of if request else None
    return system.servicer.recalculate_late_fees(as_of=as_of)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    try:
        return system.servicer.get_loan(loan_id).to_dict()
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/installments")
async def get_installments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the installment schedule with paid flags and late-fee counters"""
    try:
        system.servicer.get_loan(loan_id)
        installments = system.servicer.get_installments(loan_id)
        return {
            "loan_id": loan_id,
            "installments": [i.to_dict() for i in installments],
        }
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/late-fees")
async def get_late_fees(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Per-installment late-fee breakdown"""
    try:
        breakdown = system.servicer.get_late_fee_breakdown(loan_id, as_of=as_of)
        return breakdown_to_dict(breakdown)
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/late-fees/history")
async def get_late_fee_history(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Late-fee snapshots, newest first"""
    try:
        records = system.servicer.get_fee_history(loan_id)
        return {
            "loan_id": loan_id,
            "history": [r.to_dict() for r in records],
        }
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/allocation-preview")
async def preview_allocation(
    loan_id: str,
    request: AllocationPreviewRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Interest/principal split a payment would receive"""
    try:
        allocation = system.servicer.preview_allocation(loan_id, parse_amount(request.amount))
        return allocation_to_dict(allocation)
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: PaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a payment of interest and principal, optionally with late fee"""
    try:
        receipt = system.servicer.record_payment(
            loan_id=loan_id,
            amount=parse_amount(request.amount),
            late_fee_amount=parse_amount(request.late_fee_amount),
            payment_date=request.payment_date,
            payment_method=request.payment_method,
            as_of=request.as_of
        )
        return receipt_to_dict(receipt)
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/late-fee-payments", status_code=status.HTTP_201_CREATED)
async def record_late_fee_payment(
    loan_id: str,
    request: LateFeePaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a payment that only settles late fees"""
    try:
        receipt = system.servicer.apply_late_fee(
            loan_id=loan_id,
            late_fee_amount=parse_amount(request.late_fee_amount),
            payment_date=request.payment_date,
            payment_method=request.payment_method,
            as_of=request.as_of
        )
        return receipt_to_dict(receipt)
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)


@router.put("/{loan_id}/fee-policy")
async def update_fee_policy(
    loan_id: str,
    request: FeePolicyModel,
    system: LendingSystem = Depends(get_lending_system)
):
    """Replace a loan's late-fee policy"""
    try:
        loan = system.servicer.update_fee_policy(loan_id, request.to_fee_policy())
        return {
            "loan": loan.to_dict(),
            "message": "Fee policy updated"
        }
    except (LendingError, ValueError) as e:
        raise to_http_exception(e)
