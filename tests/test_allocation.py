"""
Test suite for allocation module

Tests the payment replay, interest-first allocation, installment status and
balance reconciliation for fixed-interest loans.
"""

import logging
import pytest
from decimal import Decimal
from datetime import date

from lending_engine.allocation import (
    PaymentAllocator, ReplayState, installment_status, reconcile_balance,
    replay_payments, replay_snapshots, replayed_balance
)
from lending_engine.exceptions import AllocationRejectedError, InvalidAmountError
from lending_engine.fees import FeePolicy
from lending_engine.loans import (
    Loan, Payment, PaymentFrequency, PaymentStatus, build_installment_schedule
)


def make_loan(**overrides):
    """amount 100000 at 5% per period, 10000 per installment, 4 installments"""
    values = dict(
        id="LOAN001",
        amount=Decimal('100000'),
        interest_rate_per_period=Decimal('5'),
        term_in_periods=4,
        payment_frequency=PaymentFrequency.MONTHLY,
        periodic_payment=Decimal('10000'),
        remaining_balance=Decimal('40000'),
        next_payment_date=date(2024, 2, 1),
        fee_policy=FeePolicy(enabled=True, rate_per_period=Decimal('2')),
    )
    values.update(overrides)
    return Loan(**values)


def payment(payment_id, interest, principal, paid_on=date(2024, 2, 1), status=PaymentStatus.COMPLETED,
            loan_id="LOAN001"):
    interest = Decimal(interest)
    principal = Decimal(principal)
    return Payment(
        id=payment_id, loan_id=loan_id, amount=interest + principal,
        principal_amount=principal, interest_amount=interest, late_fee=Decimal('0'),
        payment_date=paid_on, status=status
    )


@pytest.fixture
def allocator():
    return PaymentAllocator()


@pytest.fixture
def loan():
    return make_loan()


@pytest.fixture
def schedule(loan):
    return build_installment_schedule(loan, date(2024, 2, 1))


class TestReplay:
    """Test the chronological replay of completed payments"""

    def test_empty_history(self, loan):
        assert replay_payments(loan, []) == ReplayState()

    def test_partial_installment(self, loan):
        state = replay_payments(loan, [payment("P1", '3000', '0')])

        assert state.completed_installments == 0
        assert state.current_installment_number == 1
        assert state.interest_paid == Decimal('3000')
        assert state.principal_paid == Decimal('0')

    def test_completed_installment_resets_accumulators(self, loan):
        state = replay_payments(loan, [payment("P1", '5000', '5000')])

        assert state.completed_installments == 1
        assert state.current_installment_number == 2
        assert state.interest_paid == Decimal('0')
        assert state.principal_paid == Decimal('0')
        assert state.total_interest_paid == Decimal('5000')
        assert state.total_principal_paid == Decimal('5000')

    def test_installment_completed_across_payments(self, loan):
        history = [
            payment("P1", '5000', '2000', date(2024, 2, 1)),
            payment("P2", '0', '3000', date(2024, 2, 15)),
        ]
        assert replay_payments(loan, history).completed_installments == 1

    def test_payments_replayed_by_date(self, loan):
        """Listing order does not matter, payment_date does"""
        history = [
            payment("P2", '0', '5000', date(2024, 2, 20)),
            payment("P1", '5000', '0', date(2024, 2, 1)),
        ]
        snapshots = replay_snapshots(loan, history)

        assert len(snapshots) == 2
        assert snapshots[0].interest_paid == Decimal('5000')
        assert snapshots[0].completed_installments == 0
        assert snapshots[1].completed_installments == 1

    def test_pending_and_foreign_payments_ignored(self, loan):
        history = [
            payment("P1", '5000', '5000', status=PaymentStatus.PENDING),
            payment("P2", '5000', '5000', loan_id="LOAN999"),
        ]
        assert replay_payments(loan, history) == ReplayState()

    def test_replayed_balance(self, loan):
        history = [payment("P1", '5000', '5000'), payment("P2", '1000', '0', date(2024, 3, 1))]
        assert replayed_balance(loan, history) == Decimal('29000')


class TestAllocate:
    """Test interest-first allocation"""

    def test_example_after_partial_interest(self, allocator, loan, schedule):
        """Prior 3000 of interest leaves 2000 interest due on a 4000 payment"""
        allocation = allocator.allocate(loan, schedule, [payment("P1", '3000', '0')], Decimal('4000'))

        assert allocation.interest_payment == Decimal('2000')
        assert allocation.principal_payment == Decimal('2000')
        assert allocation.remaining_interest_due == Decimal('2000')
        assert allocation.installment_number == 1
        assert allocation.due_date == date(2024, 2, 1)
        assert not allocation.completes_installment

    @pytest.mark.parametrize("amount", ['0.01', '1', '2500', '4999.99', '5000', '7500.55', '10000', '40000'])
    def test_split_sums_to_amount(self, allocator, loan, schedule, amount):
        allocation = allocator.allocate(loan, schedule, [], Decimal(amount))

        assert allocation.interest_payment + allocation.principal_payment == Decimal(amount)
        assert allocation.interest_payment == min(Decimal(amount), Decimal('5000.00'))

    def test_interest_before_principal(self, allocator, loan, schedule):
        allocation = allocator.allocate(loan, schedule, [payment("P1", '1000', '0')], Decimal('3999.99'))

        assert allocation.interest_payment == Decimal('3999.99')
        assert allocation.principal_payment == Decimal('0')

    def test_next_installment_after_completion(self, allocator, loan, schedule):
        allocation = allocator.allocate(loan, schedule, [payment("P1", '5000', '5000')], Decimal('6000'))

        assert allocation.installment_number == 2
        assert allocation.due_date == date(2024, 3, 1)
        assert allocation.interest_payment == Decimal('5000.00')
        assert allocation.principal_payment == Decimal('1000.00')

    def test_completes_installment(self, allocator, loan, schedule):
        allocation = allocator.allocate(loan, schedule, [payment("P1", '5000', '1000')], Decimal('4000'))

        assert allocation.interest_payment == Decimal('0')
        assert allocation.principal_payment == Decimal('4000')
        assert allocation.completes_installment

    def test_zero_rate_loan_is_all_principal(self, allocator):
        loan = make_loan(interest_rate_per_period=Decimal('0'))
        allocation = allocator.allocate(loan, [], [], Decimal('2500'))

        assert allocation.interest_payment == Decimal('0')
        assert allocation.principal_payment == Decimal('2500')
        assert allocation.due_date is None

    @pytest.mark.parametrize("amount", ['0', '-5'])
    def test_non_positive_amount_rejected(self, allocator, loan, schedule, amount):
        with pytest.raises(InvalidAmountError, match="must be positive"):
            allocator.allocate(loan, schedule, [], Decimal(amount))

    def test_sub_cent_amount_rejected(self, allocator, loan, schedule):
        with pytest.raises(InvalidAmountError, match="more than 2 decimal places"):
            allocator.allocate(loan, schedule, [], Decimal('100.005'))

    def test_whole_amount_split_in_cents(self, allocator, loan, schedule):
        allocation = allocator.allocate(loan, schedule, [], Decimal('1000'))
        assert str(allocation.proposed_amount) == "1000.00"

    def test_amount_above_remaining_balance_rejected(self, allocator, loan, schedule):
        history = [payment("P1", '5000', '5000')]

        with pytest.raises(AllocationRejectedError) as exc_info:
            allocator.allocate(loan, schedule, history, Decimal('30000.50'))

        assert exc_info.value.proposed_amount == Decimal('30000.50')
        assert exc_info.value.remaining_balance == Decimal('30000')

    def test_full_remaining_balance_accepted(self, allocator, loan, schedule):
        allocation = allocator.allocate(loan, schedule, [], Decimal('40000'))
        assert allocation.principal_payment == Decimal('35000.00')

    def test_overflow_uses_replayed_balance(self, allocator, schedule):
        """A stale cached balance cannot let an overpayment through"""
        loan = make_loan(remaining_balance=Decimal('999999'))

        with pytest.raises(AllocationRejectedError):
            allocator.allocate(loan, schedule, [], Decimal('40001'))


class TestInstallmentStatus:
    """Test current installment status"""

    def test_fresh_loan(self, loan):
        status = installment_status(loan, [])

        assert status.current_installment_number == 1
        assert status.remaining_interest_due == Decimal('5000.00')
        assert status.remaining_principal_due == Decimal('5000.00')
        assert status.current_payment_remaining == Decimal('10000.00')
        assert status.current_payment_due == Decimal('10000')
        assert not status.has_partial_payments
        assert not status.is_current_payment_complete

    def test_partial_payments(self, loan):
        status = installment_status(loan, [payment("P1", '5000', '1500')])

        assert status.has_partial_payments
        assert status.remaining_interest_due == Decimal('0')
        assert status.remaining_principal_due == Decimal('3500.00')
        assert status.current_payment_remaining == Decimal('3500.00')


class TestReconcileBalance:
    """Test balance reconciliation"""

    def test_consistent_balance(self, loan):
        loan.remaining_balance = Decimal('30000')
        result = reconcile_balance(loan, [payment("P1", '5000', '5000')])

        assert result.is_consistent()
        assert result.drift == Decimal('0')

    def test_drift_reported(self, loan, caplog):
        with caplog.at_level(logging.WARNING, logger="lending.allocation"):
            result = reconcile_balance(loan, [payment("P1", '5000', '5000')])

        assert not result.is_consistent()
        assert result.cached_balance == Decimal('40000')
        assert result.replayed_balance == Decimal('30000')
        assert result.drift == Decimal('10000')
        assert "Remaining balance drift on loan LOAN001" in caplog.text

    def test_balance_floored_at_zero(self, loan):
        history = [payment("P1", '20000', '25000')]
        assert reconcile_balance(loan, history).replayed_balance == Decimal('0')
