"""
Late Fee History Module

Append-only snapshots of late-fee recalculations, one row per event. Rows are
never updated; the store refuses to overwrite an existing record id.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid

from .amounts import ZERO, sum_amounts
from .ledger import LedgerBreakdown
from .storage import StorageInterface, FEE_HISTORY_TABLE


@dataclass(frozen=True)
class LateFeeHistoryRecord:
    """Snapshot of one late-fee calculation"""
    id: str
    loan_id: str
    calculation_date: date
    days_overdue: int
    rate_applied: Decimal
    fee_for_period: Decimal     # Increase over the previous snapshot
    total_accrued_fee: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'calculation_date': self.calculation_date.isoformat(),
            'days_overdue': self.days_overdue,
            'rate_applied': str(self.rate_applied),
            'fee_for_period': str(self.fee_for_period),
            'total_accrued_fee': str(self.total_accrued_fee),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LateFeeHistoryRecord':
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            calculation_date=date.fromisoformat(data['calculation_date']),
            days_overdue=data['days_overdue'],
            rate_applied=Decimal(data['rate_applied']),
            fee_for_period=Decimal(data['fee_for_period']),
            total_accrued_fee=Decimal(data['total_accrued_fee']),
        )


def snapshot_from_breakdown(
    breakdown: LedgerBreakdown,
    rate_applied: Decimal,
    previous: Optional[LateFeeHistoryRecord] = None
) -> LateFeeHistoryRecord:
    """Build a history record from a ledger breakdown"""
    total = breakdown.total_accrued_fee
    previous_total = previous.total_accrued_fee if previous else ZERO
    return LateFeeHistoryRecord(
        id=str(uuid.uuid4()),
        loan_id=breakdown.loan_id,
        calculation_date=breakdown.as_of,
        days_overdue=breakdown.max_days_overdue,
        rate_applied=rate_applied,
        fee_for_period=max(ZERO, total - previous_total),
        total_accrued_fee=total,
    )


class LateFeeHistory:
    """Append-only store of late-fee snapshots"""

    def __init__(self, storage: StorageInterface, table_name: str = FEE_HISTORY_TABLE):
        self.storage = storage
        self.table_name = table_name

    def save(self, record: LateFeeHistoryRecord) -> LateFeeHistoryRecord:
        """
        Append a snapshot

        Raises:
            RecordExistsError: If a record with the same id was already saved
        """
        self.storage.insert(self.table_name, record.id, record.to_dict())
        return record

    def for_loan(self, loan_id: str) -> List[LateFeeHistoryRecord]:
        """Snapshots of a loan, newest first"""
        rows = self.storage.find(self.table_name, {'loan_id': loan_id})
        records = [LateFeeHistoryRecord.from_dict(row) for row in rows]
        # Stable sort on the insertion-ordered rows keeps same-day order
        records.reverse()
        records.sort(key=lambda r: r.calculation_date, reverse=True)
        return records

    def latest(self, loan_id: str) -> Optional[LateFeeHistoryRecord]:
        records = self.for_loan(loan_id)
        return records[0] if records else None

    def accumulated_between(self, loan_id: str, start_date: date, end_date: date) -> Decimal:
        """Sum of fee_for_period over snapshots dated within [start_date, end_date]"""
        return sum_amounts(
            r.fee_for_period for r in self.for_loan(loan_id)
            if start_date <= r.calculation_date <= end_date
        )
