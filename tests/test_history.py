"""
Test suite for history module

Tests late-fee snapshots and the append-only history store.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_engine.exceptions import RecordExistsError
from lending_engine.history import LateFeeHistory, LateFeeHistoryRecord, snapshot_from_breakdown
from lending_engine.ledger import InstallmentFeeLine, LedgerBreakdown
from lending_engine.storage import InMemoryStorage, SQLiteStorage


def make_breakdown(as_of, accrued, days=10, loan_id="LOAN001"):
    line = InstallmentFeeLine(
        installment_number=1, due_date=date(2024, 2, 1), days_overdue=days,
        accrued_fee=Decimal(accrued), paid_fee=Decimal('0'), outstanding_fee=Decimal(accrued)
    )
    return LedgerBreakdown(loan_id=loan_id, as_of=as_of, per_installment=[line],
                           total_outstanding_fee=Decimal(accrued))


def record(record_id, calculation_date, fee_for_period, loan_id="LOAN001"):
    return LateFeeHistoryRecord(
        id=record_id, loan_id=loan_id, calculation_date=calculation_date, days_overdue=1,
        rate_applied=Decimal('1'), fee_for_period=Decimal(fee_for_period), total_accrued_fee=Decimal('0')
    )


@pytest.fixture(params=["memory", "sqlite"])
def history(request):
    storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield LateFeeHistory(storage)
    storage.close()


class TestSnapshot:
    """Test snapshot_from_breakdown"""

    def test_first_snapshot(self):
        snapshot = snapshot_from_breakdown(make_breakdown(date(2024, 2, 11), '100.00'), Decimal('1'))

        assert snapshot.loan_id == "LOAN001"
        assert snapshot.calculation_date == date(2024, 2, 11)
        assert snapshot.days_overdue == 10
        assert snapshot.rate_applied == Decimal('1')
        assert snapshot.fee_for_period == Decimal('100.00')
        assert snapshot.total_accrued_fee == Decimal('100.00')

    def test_fee_for_period_is_the_increase(self):
        previous = snapshot_from_breakdown(make_breakdown(date(2024, 2, 11), '100.00'), Decimal('1'))
        current = snapshot_from_breakdown(make_breakdown(date(2024, 2, 12), '110.00', days=11),
                                          Decimal('1'), previous)

        assert current.fee_for_period == Decimal('10.00')
        assert current.id != previous.id

    def test_fee_for_period_never_negative(self):
        """An installment settled between runs lowers the total"""
        previous = snapshot_from_breakdown(make_breakdown(date(2024, 2, 11), '100.00'), Decimal('1'))
        current = snapshot_from_breakdown(make_breakdown(date(2024, 2, 12), '20.00'), Decimal('1'), previous)

        assert current.fee_for_period == Decimal('0')

    def test_dict_round_trip(self):
        snapshot = snapshot_from_breakdown(make_breakdown(date(2024, 2, 11), '55.55'), Decimal('2.5'))
        assert LateFeeHistoryRecord.from_dict(snapshot.to_dict()) == snapshot


class TestLateFeeHistory:
    """Test the append-only store"""

    def test_save_and_list(self, history):
        history.save(record("H1", date(2024, 2, 10), '10'))
        history.save(record("H2", date(2024, 2, 12), '12'))
        history.save(record("H3", date(2024, 2, 11), '11'))
        history.save(record("X1", date(2024, 2, 11), '99', loan_id="LOAN002"))

        assert [r.id for r in history.for_loan("LOAN001")] == ["H2", "H3", "H1"]
        assert history.latest("LOAN001").id == "H2"

    def test_same_day_snapshots_newest_first(self, history):
        history.save(record("H1", date(2024, 2, 10), '10'))
        history.save(record("H2", date(2024, 2, 10), '0'))

        assert [r.id for r in history.for_loan("LOAN001")] == ["H2", "H1"]

    def test_latest_without_history(self, history):
        assert history.latest("LOAN001") is None
        assert history.for_loan("LOAN001") == []

    def test_records_are_never_overwritten(self, history):
        history.save(record("H1", date(2024, 2, 10), '10'))

        with pytest.raises(RecordExistsError):
            history.save(record("H1", date(2024, 2, 10), '999'))

        assert history.latest("LOAN001").fee_for_period == Decimal('10')

    def test_accumulated_between(self, history):
        history.save(record("H1", date(2024, 2, 10), '10'))
        history.save(record("H2", date(2024, 2, 11), '11.50'))
        history.save(record("H3", date(2024, 2, 12), '12'))
        history.save(record("H4", date(2024, 2, 20), '20'))

        assert history.accumulated_between("LOAN001", date(2024, 2, 11), date(2024, 2, 12)) == Decimal('23.50')
        assert history.accumulated_between("LOAN001", date(2024, 3, 1), date(2024, 3, 31)) == Decimal('0')
