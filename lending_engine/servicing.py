"""
Loan Servicing Module

Persistence boundary around the late-fee and allocation engine. Every
read-modify-write cycle on a loan runs under a per-loan lock, inside one
storage transaction, and is committed with an optimistic version check on
the loan row.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import threading
import uuid

from .amounts import ZERO, to_decimal, to_money, sum_amounts
from .allocation import (
    Allocation, BalanceReconciliation, PaymentAllocator,
    reconcile_balance, replay_payments, replayed_balance
)
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .exceptions import (
    InvalidAmountError, LateFeeOverpaymentError, LoanNotActiveError,
    LoanNotFoundError, RecordExistsError
)
from .fee_ledger import LateFeeApplication, LateFeeLedgerWriter
from .fees import FeePolicy
from .history import LateFeeHistory, LateFeeHistoryRecord, snapshot_from_breakdown
from .ledger import FeeConsistencyReport, InstallmentLedger, LedgerBreakdown, verify_fee_consistency
from .loans import (
    Loan, Installment, Payment, LoanStatus, PaymentFrequency, PaymentMethod,
    build_installment_schedule, calculate_periodic_payment, mark_installment_paid, next_due_date
)
from .logging_config import log_action
from .storage import StorageInterface, LOANS_TABLE, INSTALLMENTS_TABLE, PAYMENTS_TABLE


logger = logging.getLogger("lending.servicing")


@dataclass(frozen=True)
class PaymentReceipt:
    """Everything a posted payment changed"""
    payment: Payment
    loan: Loan
    allocation: Optional[Allocation]
    late_fee_application: LateFeeApplication
    settled_installments: List[int]


@dataclass(frozen=True)
class ReconciliationReport:
    loan_id: str
    balance: BalanceReconciliation
    fees: FeeConsistencyReport

    def is_consistent(self, tolerance: Decimal) -> bool:
        return self.balance.is_consistent(tolerance) and self.fees.is_consistent(tolerance)


class LoanServicer:
    """
    Records payments and late fees against loans and keeps cached loan
    aggregates in line with the payment replay
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.history = LateFeeHistory(storage)

        self.ledger = InstallmentLedger()
        self.allocator = PaymentAllocator(self.config.tolerance)
        self.fee_writer = LateFeeLedgerWriter()

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _loan_cycle(self, loan_id: str):
        """Serialise one read-modify-write cycle on a loan"""
        with self._locks_guard:
            lock = self._locks.setdefault(loan_id, threading.Lock())
        with lock:
            with self.storage.atomic():
                yield

    def _today(self) -> date:
        return self.config.business_today()

    def _audit(self, event_type: AuditEventType, entity_id: str, metadata: Dict[str, Any],
               entity_type: str = "loan") -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata
            )

    # Loans

    def originate_loan(
        self,
        amount: Decimal,
        interest_rate_per_period: Decimal,
        term_in_periods: int,
        payment_frequency: Union[PaymentFrequency, str] = PaymentFrequency.MONTHLY,
        start_date: Optional[date] = None,
        first_payment_date: Optional[date] = None,
        fee_policy: Optional[FeePolicy] = None,
        periodic_payment: Optional[Decimal] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Create a loan and its installment schedule

        Args:
            amount: Original principal
            interest_rate_per_period: Percentage of principal charged each period
            term_in_periods: Number of installments
            payment_frequency: Installment frequency
            start_date: Origination date (defaults to today in the business timezone)
            first_payment_date: Due date of installment 1 (defaults to one period after start)
            fee_policy: Late-fee policy (defaults to the configured tenant policy)
            periodic_payment: Installment amount (defaults to the flat-product formula)
            loan_id: Explicit loan id

        Returns:
            Created Loan
        """
        frequency = PaymentFrequency(payment_frequency)
        start = start_date or self._today()
        first_due = first_payment_date or next_due_date(start, frequency)

        if periodic_payment is None:
            periodic = calculate_periodic_payment(amount, interest_rate_per_period, term_in_periods)
        else:
            periodic = to_decimal(periodic_payment)
        if periodic <= ZERO:
            raise InvalidAmountError(f"Periodic payment must be positive, got {periodic}")

        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            amount=amount,
            interest_rate_per_period=interest_rate_per_period,
            term_in_periods=term_in_periods,
            payment_frequency=frequency,
            periodic_payment=periodic,
            remaining_balance=periodic * term_in_periods,
            next_payment_date=first_due,
            fee_policy=fee_policy or self.config.default_fee_policy(),
            start_date=start,
        )
        schedule = build_installment_schedule(loan, first_due)

        with self._loan_cycle(loan.id):
            if self.storage.exists(LOANS_TABLE, loan.id):
                raise RecordExistsError(f"Loan {loan.id} already exists")
            self._save_loan(loan)
            for installment in schedule:
                self.storage.insert(INSTALLMENTS_TABLE, installment.record_id, installment.to_dict())

            self._audit(AuditEventType.LOAN_ORIGINATED, loan.id, {
                "amount": loan.amount,
                "interest_rate_per_period": loan.interest_rate_per_period,
                "term_in_periods": loan.term_in_periods,
                "payment_frequency": loan.payment_frequency,
                "periodic_payment": loan.periodic_payment,
                "first_payment_date": first_due,
                "fee_policy": loan.fee_policy.to_dict(),
            })

        log_action(logger, "info", f"Originated loan {loan.id}",
                   action="originate_loan", resource=loan.id,
                   extra={"amount": str(loan.amount), "term_in_periods": loan.term_in_periods})
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(LOANS_TABLE, loan_id)
        if not data:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {"status": status.value} if status else {}
        return [Loan.from_dict(data) for data in self.storage.find(LOANS_TABLE, filters)]

    def get_installments(self, loan_id: str) -> List[Installment]:
        rows = self.storage.find(INSTALLMENTS_TABLE, {"loan_id": loan_id})
        installments = [Installment.from_dict(row) for row in rows]
        return sorted(installments, key=lambda i: i.installment_number)

    def get_payments(self, loan_id: str) -> List[Payment]:
        return [Payment.from_dict(row) for row in self.storage.find(PAYMENTS_TABLE, {"loan_id": loan_id})]

    def _load(self, loan_id: str) -> Tuple[Loan, List[Installment], List[Payment]]:
        loan = self.get_loan(loan_id)
        return loan, self.get_installments(loan_id), self.get_payments(loan_id)

    def _save_loan(self, loan: Loan) -> None:
        loan.version = self.storage.save_versioned(LOANS_TABLE, loan.id, loan.to_dict(), loan.version)

    # Read-only engine views

    def preview_allocation(self, loan_id: str, amount: Decimal) -> Allocation:
        """Interest/principal split a payment would receive, without posting it"""
        loan, installments, payments = self._load(loan_id)
        return self.allocator.allocate(loan, installments, payments, amount)

    def get_late_fee_breakdown(self, loan_id: str, as_of: Optional[date] = None) -> LedgerBreakdown:
        loan, installments, payments = self._load(loan_id)
        return self.ledger.breakdown(loan, installments, payments, as_of or self._today())

    def get_fee_history(self, loan_id: str) -> List[LateFeeHistoryRecord]:
        """Late-fee snapshots of a loan, newest first"""
        self.get_loan(loan_id)
        return self.history.for_loan(loan_id)

    # Payments

    def record_payment(
        self,
        loan_id: str,
        amount: Decimal,
        late_fee_amount: Decimal = ZERO,
        payment_date: Optional[date] = None,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        as_of: Optional[date] = None
    ) -> PaymentReceipt:
        """
        Post a payment of interest and principal, optionally with late fee

        Args:
            loan_id: Loan being paid
            amount: Amount for interest and principal, split interest first
            late_fee_amount: Late-fee money received alongside, spread oldest first
            payment_date: Date of payment (defaults to today in the business timezone)
            payment_method: How the money was received
            as_of: Date late fees are evaluated at (defaults to payment_date)

        Returns:
            PaymentReceipt

        Raises:
            InvalidAmountError: If amount is not positive or late_fee_amount is negative
            AllocationRejectedError: If amount exceeds the remaining balance
            LateFeeOverpaymentError: If late_fee_amount exceeds the outstanding late
                fee and overpayments are configured to be rejected
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise InvalidAmountError(f"Payment amount must be positive, got {amount}")
        return self._post_payment(loan_id, amount, to_money(late_fee_amount),
                                  payment_date, payment_method, as_of)

    def apply_late_fee(
        self,
        loan_id: str,
        late_fee_amount: Decimal,
        payment_date: Optional[date] = None,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        as_of: Optional[date] = None
    ) -> PaymentReceipt:
        """Post a payment that only settles late fees"""
        late_fee_amount = to_money(late_fee_amount)
        if late_fee_amount <= ZERO:
            raise InvalidAmountError(f"Late fee amount must be positive, got {late_fee_amount}")
        return self._post_payment(loan_id, ZERO, late_fee_amount, payment_date, payment_method, as_of)

    def _post_payment(
        self,
        loan_id: str,
        amount: Decimal,
        late_fee_amount: Decimal,
        payment_date: Optional[date],
        payment_method: Union[PaymentMethod, str],
        as_of: Optional[date]
    ) -> PaymentReceipt:
        if late_fee_amount < ZERO:
            raise InvalidAmountError(f"Late fee amount cannot be negative, got {late_fee_amount}")
        payment_date = payment_date or self._today()
        as_of = as_of or payment_date

        with self._loan_cycle(loan_id):
            loan, installments, payments = self._load(loan_id)
            if not loan.is_active:
                raise LoanNotActiveError(f"Loan {loan_id} is {loan.status.value} and cannot take payments")

            application = self.fee_writer.apply_late_fee_payment(loan, installments, late_fee_amount, as_of)
            to_allocate = amount
            if application.has_overpayment:
                to_allocate += self._resolve_overpayment(loan, application)

            allocation = None
            if to_allocate > ZERO:
                allocation = self.allocator.allocate(loan, installments, payments, to_allocate)

            payment = Payment(
                id=str(uuid.uuid4()),
                loan_id=loan.id,
                amount=amount + late_fee_amount,
                principal_amount=allocation.principal_payment if allocation else ZERO,
                interest_amount=allocation.interest_payment if allocation else ZERO,
                late_fee=application.consumed,
                payment_date=payment_date,
                payment_method=payment_method,
            )
            history = payments + [payment]

            updated, settled = self._settle_installments(
                loan, application.installments, payments, history, payment_date
            )
            self._refresh_loan(loan, updated, history, as_of)

            self.storage.insert(PAYMENTS_TABLE, payment.id, payment.to_dict())
            self._save_installments(installments, updated)
            self._save_loan(loan)
            self._check_fee_consistency(loan.id, updated, history)

            event_type = AuditEventType.PAYMENT_RECORDED if amount > ZERO else AuditEventType.LATE_FEE_APPLIED
            self._audit(event_type, loan.id, {
                "payment_id": payment.id,
                "amount": payment.amount,
                "interest_amount": payment.interest_amount,
                "principal_amount": payment.principal_amount,
                "late_fee": payment.late_fee,
                "late_fee_allocations": application.allocations,
                "settled_installments": settled,
                "remaining_balance": loan.remaining_balance,
            })

        log_action(logger, "info", f"Recorded payment {payment.id} of {payment.amount} on loan {loan.id}",
                   action="record_payment", resource=loan.id,
                   extra={"interest": str(payment.interest_amount),
                          "principal": str(payment.principal_amount),
                          "late_fee": str(payment.late_fee),
                          "remaining_balance": str(loan.remaining_balance)})

        return PaymentReceipt(
            payment=payment,
            loan=loan,
            allocation=allocation,
            late_fee_application=application,
            settled_installments=settled,
        )

    def _resolve_overpayment(self, loan: Loan, application: LateFeeApplication) -> Decimal:
        """Late-fee leftover to add to the interest and principal allocation"""
        if not self.config.overpayment_applies_to_balance:
            raise LateFeeOverpaymentError(application.leftover, application.consumed)

        logger.warning("Redirecting late fee overpayment of %s on loan %s to the loan balance",
                       application.leftover, loan.id)
        self._audit(AuditEventType.LATE_FEE_OVERPAYMENT, loan.id, {
            "leftover": application.leftover,
            "applied": application.consumed,
        })
        return application.leftover

    def _settle_installments(
        self,
        loan: Loan,
        installments: List[Installment],
        before: List[Payment],
        after: List[Payment],
        paid_date: date
    ) -> Tuple[List[Installment], List[int]]:
        """Flag installments paid for every period the new payment completed"""
        newly_completed = (replay_payments(loan, after).completed_installments
                           - replay_payments(loan, before).completed_installments)

        settled = []
        result = []
        for installment in installments:
            if len(settled) < newly_completed and not installment.is_paid:
                installment = mark_installment_paid(installment, paid_date)
                settled.append(installment.installment_number)
            result.append(installment)

        unpaid = [i for i in result if not i.is_paid]
        if settled and unpaid:
            loan.next_payment_date = unpaid[0].due_date
        return result, settled

    def _refresh_loan(
        self,
        loan: Loan,
        installments: List[Installment],
        payments: List[Payment],
        as_of: date
    ) -> LedgerBreakdown:
        """Recompute cached aggregates from the replay and installment counters"""
        loan.remaining_balance = replayed_balance(loan, payments)
        loan.total_late_fee_paid = sum_amounts(i.late_fee_paid for i in installments)

        breakdown = self.ledger.breakdown(loan, installments, payments, as_of)
        loan.current_late_fee = breakdown.total_outstanding_fee

        if loan.remaining_balance <= ZERO:
            loan.status = LoanStatus.PAID
        elif any(not i.is_paid and i.due_date < as_of for i in installments):
            loan.status = LoanStatus.OVERDUE
        else:
            loan.status = LoanStatus.ACTIVE
        return breakdown

    def _save_installments(self, original: List[Installment], updated: List[Installment]) -> None:
        previous = {i.installment_number: i for i in original}
        for installment in updated:
            if previous.get(installment.installment_number) != installment:
                self.storage.save(INSTALLMENTS_TABLE, installment.record_id, installment.to_dict())

    def _check_fee_consistency(self, loan_id: str, installments: List[Installment],
                               payments: List[Payment]) -> FeeConsistencyReport:
        report = verify_fee_consistency(loan_id, installments, payments)
        if not report.is_consistent(self.config.tolerance):
            self._audit(AuditEventType.CONSISTENCY_DRIFT, loan_id, {
                "late_fee_per_installments": report.paid_per_installments,
                "late_fee_per_payments": report.paid_per_payments,
            })
        return report

    # Policy and batch maintenance

    def update_fee_policy(self, loan_id: str, policy: Union[FeePolicy, Dict[str, Any]]) -> Loan:
        """
        Replace a loan's late-fee policy

        Raises:
            FeePolicyError: If the policy is missing fields or carries invalid values
        """
        if not isinstance(policy, FeePolicy):
            policy = FeePolicy.from_dict(policy)

        with self._loan_cycle(loan_id):
            loan, installments, payments = self._load(loan_id)
            previous = loan.fee_policy
            loan.fee_policy = policy
            breakdown = self.ledger.breakdown(loan, installments, payments, self._today())
            loan.current_late_fee = breakdown.total_outstanding_fee
            self._save_loan(loan)

            self._audit(AuditEventType.FEE_POLICY_UPDATED, loan.id, {
                "previous": previous.to_dict(),
                "current": policy.to_dict(),
            })

        logger.info("Updated late fee policy of loan %s", loan_id)
        return loan

    def recalculate_late_fees(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """
        Refresh late fee and status of every active loan

        A failure on one loan is logged and counted; the run continues.

        Returns:
            Counts of loans processed, overdue loans, history rows written and failures
        """
        as_of = as_of or self._today()
        results = {"loans_processed": 0, "loans_overdue": 0, "history_records": 0, "failures": 0}

        active = (LoanStatus.ACTIVE.value, LoanStatus.OVERDUE.value)
        loan_ids = [row["id"] for row in self.storage.load_all(LOANS_TABLE) if row.get("status") in active]

        for loan_id in loan_ids:
            try:
                breakdown, record = self._recalculate_loan(loan_id, as_of)
            except Exception:
                results["failures"] += 1
                logger.error("Late fee recalculation failed for loan %s", loan_id, exc_info=True)
                continue

            results["loans_processed"] += 1
            if breakdown.overdue_installments:
                results["loans_overdue"] += 1
            if record:
                results["history_records"] += 1

        self._audit(AuditEventType.LATE_FEES_RECALCULATED, as_of.isoformat(), dict(results),
                    entity_type="portfolio")
        log_action(logger, "info", f"Recalculated late fees for {results['loans_processed']} loans",
                   action="recalculate_late_fees", extra=dict(results, as_of=as_of.isoformat()))
        return results

    def _recalculate_loan(self, loan_id: str, as_of: date) -> Tuple[LedgerBreakdown, Optional[LateFeeHistoryRecord]]:
        with self._loan_cycle(loan_id):
            loan, installments, payments = self._load(loan_id)
            breakdown = self._refresh_loan(loan, installments, payments, as_of)
            self._save_loan(loan)

            record = None
            if self.config.record_fee_history and breakdown.overdue_installments:
                snapshot = snapshot_from_breakdown(
                    breakdown, loan.fee_policy.rate_per_period, self.history.latest(loan.id)
                )
                record = self.history.save(snapshot)
        return breakdown, record

    def reconcile(self, loan_id: str) -> ReconciliationReport:
        """
        Compare cached loan aggregates with the payment replay and installment
        counters, persisting the recomputed figures when they disagree
        """
        tolerance = self.config.tolerance
        with self._loan_cycle(loan_id):
            loan, installments, payments = self._load(loan_id)
            report = ReconciliationReport(
                loan_id=loan.id,
                balance=reconcile_balance(loan, payments),
                fees=verify_fee_consistency(loan.id, installments, payments),
            )

            paid_per_installments = report.fees.paid_per_installments
            if not report.balance.is_consistent(tolerance) or loan.total_late_fee_paid != paid_per_installments:
                loan.remaining_balance = report.balance.replayed_balance
                loan.total_late_fee_paid = paid_per_installments
                self._save_loan(loan)

            if not report.is_consistent(tolerance):
                self._audit(AuditEventType.CONSISTENCY_DRIFT, loan.id, {
                    "cached_balance": report.balance.cached_balance,
                    "replayed_balance": report.balance.replayed_balance,
                    "late_fee_per_installments": report.fees.paid_per_installments,
                    "late_fee_per_payments": report.fees.paid_per_payments,
                })
        return report
