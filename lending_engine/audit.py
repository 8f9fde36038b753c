"""
Audit Trail Module

Append-only journal of every change the servicer makes to a loan. Each entry
carries a SHA-256 digest over its own content and the digest of the entry
before it, so editing or removing a stored entry breaks the chain.
"""

import hashlib
import json
import uuid
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, AUDIT_TABLE


GENESIS_HASH = ""


class AuditEventType(Enum):
    """What happened to the audited entity"""
    LOAN_ORIGINATED = "loan_originated"
    PAYMENT_RECORDED = "payment_recorded"
    LATE_FEE_APPLIED = "late_fee_applied"
    LATE_FEE_OVERPAYMENT = "late_fee_overpayment"
    FEE_POLICY_UPDATED = "fee_policy_updated"
    LATE_FEES_RECALCULATED = "late_fees_recalculated"
    CONSISTENCY_DRIFT = "consistency_drift"


def _serializable(value: Any) -> Any:
    """Reduce amounts, dates and enums in event metadata to JSON values"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _serializable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serializable(item) for item in value]
    return value


def _digest(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class AuditEvent:
    """One journal entry, linked to its predecessor by previous_hash"""
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_type: str            # "loan" or "portfolio"
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _serializable(self.metadata or {})

    def _content(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
        }

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        return _digest(self._content())

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._content(), current_hash=self.current_hash)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


@dataclass
class IntegrityReport:
    """Outcome of walking the whole journal"""
    total_events: int = 0
    hash_errors: List[Dict[str, Any]] = field(default_factory=list)
    chain_breaks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.hash_errors and not self.chain_breaks


class AuditTrail:
    """Hash-chained journal kept in one storage table"""

    def __init__(self, storage: StorageInterface, table_name: str = AUDIT_TABLE):
        self.storage = storage
        self.table_name = table_name

    def _events(self) -> List[AuditEvent]:
        # Storage returns rows in insertion order, which is chain order
        return [AuditEvent.from_dict(row) for row in self.storage.load_all(self.table_name)]

    def _tip(self) -> str:
        rows = self.storage.load_all(self.table_name)
        return rows[-1]['current_hash'] if rows else GENESIS_HASH

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the journal

        Args:
            event_type: What happened
            entity_type: Kind of entity affected ("loan" or "portfolio")
            entity_id: Loan id, or the run date for portfolio events
            metadata: Amounts and identifiers describing the change
            user_id: Operator who triggered the change, if known

        Returns:
            The stored AuditEvent
        """
        # Reading the tip and appending must not interleave with another writer
        with self.storage.atomic():
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._tip(),
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())
        return event

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events of one entity, oldest first; limit keeps only the newest N"""
        rows = self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        events = [AuditEvent.from_dict(row) for row in rows]
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, {'event_type': event_type.value})
        return [AuditEvent.from_dict(row) for row in rows]

    def verify_integrity(self) -> IntegrityReport:
        """Recompute every digest and check each link to the previous entry"""
        events = self._events()
        report = IntegrityReport(total_events=len(events))

        expected_previous = GENESIS_HASH
        for position, event in enumerate(events):
            if not event.verify_hash():
                report.hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash,
                })
            if event.previous_hash != expected_previous:
                report.chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash,
                })
            expected_previous = event.current_hash

        return report

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
