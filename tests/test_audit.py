"""
Test suite for audit module

Tests hash chaining, entity queries and tamper detection.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_engine.audit import AuditTrail, AuditEvent, AuditEventType
from lending_engine.exceptions import RecordExistsError
from lending_engine.storage import InMemoryStorage, AUDIT_TABLE


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test AuditEvent hashing and serialization"""

    def test_metadata_made_serializable(self, audit_trail):
        event = audit_trail.log_event(
            AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001",
            {'amount': Decimal('400.00'), 'as_of': date(2024, 2, 11),
             'type': AuditEventType.LATE_FEE_APPLIED, 'allocations': [(1, Decimal('5'))]}
        )

        assert event.metadata == {
            'amount': '400.00',
            'as_of': '2024-02-11',
            'type': 'late_fee_applied',
            'allocations': [[1, '5']],
        }

    def test_dict_round_trip_keeps_hash_valid(self, audit_trail):
        event = audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001", {'amount': '1000'})
        restored = AuditEvent.from_dict(event.to_dict())

        assert restored == event
        assert restored.verify_hash()

    def test_changed_field_breaks_hash(self, audit_trail):
        event = audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")
        event.entity_id = "LOAN999"

        assert not event.verify_hash()


class TestAuditTrail:
    """Test the hash-chained trail"""

    def test_first_event_has_empty_previous_hash(self, audit_trail):
        event = audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")

        assert event.previous_hash == ""
        assert len(event.current_hash) == 64

    def test_events_are_chained(self, audit_trail):
        first = audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")
        second = audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001")
        third = audit_trail.log_event(AuditEventType.LATE_FEE_APPLIED, "loan", "LOAN002")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert audit_trail.count_events() == 3

    def test_events_for_entity(self, audit_trail):
        audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")
        audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN002")
        audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001")

        events = audit_trail.get_events_for_entity("loan", "LOAN001")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_ORIGINATED, AuditEventType.PAYMENT_RECORDED
        ]

        latest = audit_trail.get_events_for_entity("loan", "LOAN001", limit=1)
        assert [e.event_type for e in latest] == [AuditEventType.PAYMENT_RECORDED]

    def test_events_by_type(self, audit_trail):
        audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")
        audit_trail.log_event(AuditEventType.CONSISTENCY_DRIFT, "loan", "LOAN001", {'drift': '5'})

        drift = audit_trail.get_events_by_type(AuditEventType.CONSISTENCY_DRIFT)
        assert len(drift) == 1
        assert drift[0].metadata == {'drift': '5'}

    def test_user_id_recorded(self, audit_trail):
        event = audit_trail.log_event(AuditEventType.FEE_POLICY_UPDATED, "loan", "LOAN001", user_id="ops")
        assert audit_trail.get_events_for_entity("loan", "LOAN001")[0].user_id == "ops"
        assert event.verify_hash()

    def test_events_cannot_be_overwritten(self, audit_trail, storage):
        event = audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")

        with pytest.raises(RecordExistsError):
            storage.insert(AUDIT_TABLE, event.id, event.to_dict())


class TestIntegrity:
    """Test tamper detection"""

    def test_untouched_chain_is_valid(self, audit_trail):
        for entity_id in ("LOAN001", "LOAN002", "LOAN003"):
            audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", entity_id)

        result = audit_trail.verify_integrity()
        assert result.valid
        assert result.total_events == 3
        assert result.hash_errors == []
        assert result.chain_breaks == []

    def test_empty_chain_is_valid(self, audit_trail):
        result = audit_trail.verify_integrity()
        assert result.valid
        assert result.total_events == 0

    def test_tampered_metadata_detected(self, audit_trail, storage):
        audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001", {'amount': '400'})
        event = audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001", {'amount': '700'})

        record = storage.load(AUDIT_TABLE, event.id)
        record['metadata']['amount'] = '7000'
        storage.save(AUDIT_TABLE, event.id, record)

        result = audit_trail.verify_integrity()
        assert not result.valid
        assert [e['event_id'] for e in result.hash_errors] == [event.id]
        assert result.hash_errors[0]['position'] == 1

    def test_rewritten_hash_breaks_chain(self, audit_trail, storage):
        first = audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", "LOAN001")
        second = audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001")

        record = storage.load(AUDIT_TABLE, first.id)
        record['metadata'] = {'amount': '1'}
        forged = AuditEvent.from_dict(record)
        record['current_hash'] = forged.calculate_hash()
        storage.save(AUDIT_TABLE, first.id, record)

        result = audit_trail.verify_integrity()
        assert not result.valid
        assert result.hash_errors == []
        assert [b['event_id'] for b in result.chain_breaks] == [second.id]
