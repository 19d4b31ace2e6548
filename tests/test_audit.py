"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and audit event logging for workflow, approval and deadline changes.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from hr_workflow.clock import FixedClock
from hr_workflow.storage import InMemoryStorage
from hr_workflow.audit import AuditTrail, AuditEvent, AuditEventType


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def audit_trail(storage, clock):
    return AuditTrail(storage, clock=clock)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that metadata is properly serialized"""
        now = datetime.now(timezone.utc)

        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.APPROVAL_SUBMITTED,
            entity_type="approval_request",
            entity_id="REQ001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal("1500.00"),
                "due_date": now,
                "approval_type": AuditEventType.APPROVAL_SUBMITTED,
                "nested": {"levels": [Decimal("1"), Decimal("2")]}
            }
        )

        assert event.metadata["amount"] == "1500.00"
        assert event.metadata["due_date"] == now.isoformat()
        assert event.metadata["approval_type"] == "approval_submitted"
        assert event.metadata["nested"]["levels"] == ["1", "2"]

    def test_hash_calculation(self):
        """Hash is deterministic and covers the chain position"""
        now = datetime.now(timezone.utc)
        kwargs = dict(
            id="AUDIT002",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.WORKFLOW_CREATED,
            entity_type="workflow_instance",
            entity_id="WF001",
            previous_hash="abc",
            current_hash="",
            metadata={"workflow_type": "leave_approval"}
        )
        first = AuditEvent(sequence=1, **kwargs)
        second = AuditEvent(sequence=2, **kwargs)

        assert first.calculate_hash() == first.calculate_hash()
        assert len(first.calculate_hash()) == 64
        assert first.calculate_hash() != second.calculate_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def test_log_event_chains_hashes(self, audit_trail):
        """Each event links to the previous one"""
        first = audit_trail.log_event(AuditEventType.WORKFLOW_CREATED, "workflow_instance", "WF001",
                                      {"workflow_type": "leave_approval"}, "alice")
        second = audit_trail.log_event(AuditEventType.WORKFLOW_STARTED, "workflow_instance", "WF001")

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert first.user_id == "alice"
        assert first.verify_hash()
        assert audit_trail.count_events() == 2

    def test_events_for_entity_in_chain_order(self, audit_trail):
        """Events with identical timestamps still come back in logging order"""
        for state in ["PENDING_LEVEL_1", "PENDING_LEVEL_2", "COMPLETED"]:
            audit_trail.log_event(AuditEventType.WORKFLOW_STATE_CHANGED, "workflow_instance", "WF001",
                                  {"to_state": state})
        audit_trail.log_event(AuditEventType.WORKFLOW_CREATED, "workflow_instance", "WF002")

        events = audit_trail.get_events_for_entity("workflow_instance", "WF001")
        assert [e.metadata["to_state"] for e in events] == ["PENDING_LEVEL_1", "PENDING_LEVEL_2", "COMPLETED"]

        latest = audit_trail.get_events_for_entity("workflow_instance", "WF001", limit=1)
        assert latest[0].metadata["to_state"] == "COMPLETED"

    def test_events_by_type(self, audit_trail):
        audit_trail.log_event(AuditEventType.DEADLINE_ESCALATED, "workflow_deadline", "D1", {"escalation_level": 1})
        audit_trail.log_event(AuditEventType.DEADLINE_OVERDUE, "workflow_deadline", "D1")
        audit_trail.log_event(AuditEventType.DEADLINE_ESCALATED, "workflow_deadline", "D1", {"escalation_level": 2})

        escalations = audit_trail.get_events_by_type(AuditEventType.DEADLINE_ESCALATED)
        assert [e.metadata["escalation_level"] for e in escalations] == [1, 2]

    def test_event_timestamp_uses_clock(self, audit_trail, clock):
        clock.advance(timedelta(hours=3))
        event = audit_trail.log_event(AuditEventType.SYSTEM_START, "system", "hr_workflow")
        assert event.created_at == clock.now()

    def test_chain_resumes_after_restart(self, storage, clock):
        """A new trail over the same storage continues the chain"""
        trail = AuditTrail(storage, clock=clock)
        last = trail.log_event(AuditEventType.SYSTEM_START, "system", "hr_workflow")

        resumed = AuditTrail(storage, clock=clock)
        event = resumed.log_event(AuditEventType.SYSTEM_STOP, "system", "hr_workflow")

        assert event.sequence == last.sequence + 1
        assert event.previous_hash == last.current_hash
        assert resumed.verify_integrity()["valid"]

    def test_disabled_trail_logs_nothing(self, storage, clock):
        trail = AuditTrail(storage, clock=clock, enabled=False)
        assert trail.log_event(AuditEventType.SYSTEM_START, "system", "hr_workflow") is None
        assert trail.count_events() == 0


class TestAuditIntegrity:
    """Test tamper detection"""

    def test_untouched_chain_is_valid(self, audit_trail):
        for i in range(5):
            audit_trail.log_event(AuditEventType.APPROVAL_DECIDED, "approval_request", f"REQ{i}",
                                  {"decision": "approve"})

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_empty_chain_is_valid(self, audit_trail):
        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 0

    def test_tampered_metadata_detected(self, audit_trail, storage):
        """Editing a stored event breaks its hash"""
        audit_trail.log_event(AuditEventType.APPROVAL_DECIDED, "approval_request", "REQ1",
                              {"decision": "reject"})
        event = audit_trail.log_event(AuditEventType.APPROVAL_DECIDED, "approval_request", "REQ2",
                                      {"decision": "reject"})

        data = storage.load("audit_events", event.id)
        data["metadata"]["decision"] = "approve"
        storage.save("audit_events", event.id, data)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["hash_errors"]) == 1
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self, audit_trail, storage):
        """Removing an event from the middle is a chain break"""
        audit_trail.log_event(AuditEventType.WORKFLOW_CREATED, "workflow_instance", "WF1")
        middle = audit_trail.log_event(AuditEventType.WORKFLOW_STARTED, "workflow_instance", "WF1")
        audit_trail.log_event(AuditEventType.WORKFLOW_COMPLETED, "workflow_instance", "WF1")

        storage.delete("audit_events", middle.id)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1
