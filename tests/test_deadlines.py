"""
Test suite for deadline monitor module

Tests deadline registration and lifecycle, the warning and overdue scans,
time-based escalation, and exactly-once notification under concurrent scans.
"""

import pytest
import threading
from datetime import timedelta
from unittest.mock import patch

from hr_workflow.audit import AuditTrail, AuditEventType
from hr_workflow.clock import FixedClock
from hr_workflow.deadlines import DeadlineMonitor
from hr_workflow.directory import Actor, InMemoryDirectory
from hr_workflow.errors import ConcurrentModificationError, InvalidTransitionError, NotFoundError
from hr_workflow.notifications import InAppNotifier, NotificationOrchestrator
from hr_workflow.storage import InMemoryStorage
from hr_workflow.workflows import WorkflowStateManager, WorkflowType


@pytest.fixture
def clock():
    return FixedClock()


class InterleavingStorage(InMemoryStorage):
    """Runs a one-shot hook just before the next deadline write"""

    def __init__(self):
        super().__init__()
        self.before_deadline_write = None

    def compare_and_save(self, table, record_id, data, expected_version):
        if table == "workflow_deadlines" and self.before_deadline_write:
            hook, self.before_deadline_write = self.before_deadline_write, None
            hook()
        return super().compare_and_save(table, record_id, data, expected_version)


@pytest.fixture
def storage():
    return InterleavingStorage()


@pytest.fixture
def directory():
    return InMemoryDirectory([
        Actor("alice", "Alice Adams", manager_id="bob", department_id="ENG"),
        Actor("bob", "Bob Brown", manager_id="carol", department_id="ENG"),
        Actor("carol", "Carol Chen"),
    ])


@pytest.fixture
def audit_trail(storage, clock):
    return AuditTrail(storage, clock=clock)


@pytest.fixture
def inbox(storage, clock):
    return InAppNotifier(storage, clock)


@pytest.fixture
def state_manager(storage, audit_trail, directory, clock):
    return WorkflowStateManager(storage, audit_trail, directory, clock)


@pytest.fixture
def monitor(storage, state_manager, directory, inbox, audit_trail, clock):
    notifications = NotificationOrchestrator(inbox, directory)
    return DeadlineMonitor(storage, state_manager, directory, notifications, audit_trail, clock)


@pytest.fixture
def workflow(state_manager):
    instance = state_manager.create_workflow(WorkflowType.LEAVE_APPROVAL, "leave-1", "LeaveRequest",
                                             initiator="alice")
    return state_manager.start_workflow(instance.id)


@pytest.fixture
def deadline(monitor, workflow, clock):
    """Approval decision due in five days with a one-day warning, owned by Bob"""
    return monitor.register_deadline(workflow.id, "APPROVAL_DECISION", "Leave request approval",
                                     clock.now() + timedelta(days=5), 24, "bob")


def titles(inbox, actor_id):
    return sorted(n.title for n in inbox.get_notifications(actor_id))


class TestDeadlineRegistration:
    """Register, update, reassign, complete and cancel"""

    def test_register(self, deadline, clock):
        assert deadline.deadline_at == clock.now() + timedelta(days=5)
        assert deadline.warning_at == clock.now() + timedelta(days=4)
        assert deadline.assignee == "bob"
        assert not deadline.warning_sent
        assert not deadline.overdue_sent
        assert deadline.escalation_level == 0
        assert not deadline.completed

    def test_register_without_warning(self, monitor, workflow, clock):
        deadline = monitor.register_deadline(workflow.id, "DOCUMENTS", "Upload documents",
                                             clock.now() + timedelta(days=1))
        assert deadline.warning_at is None
        assert deadline.assignee is None

    def test_register_for_unknown_workflow(self, monitor, clock):
        with pytest.raises(NotFoundError):
            monitor.register_deadline("missing", "APPROVAL_DECISION", "x", clock.now())

    def test_register_for_unknown_assignee(self, monitor, workflow, clock):
        with pytest.raises(NotFoundError, match="ghost"):
            monitor.register_deadline(workflow.id, "APPROVAL_DECISION", "x", clock.now(), 1, "ghost")

    def test_update_resets_flags_and_keeps_lead_time(self, monitor, deadline, clock, inbox):
        clock.advance(timedelta(days=5, hours=1))
        monitor.check_approaching_deadlines()
        monitor.check_overdue_items()

        new_due = clock.now() + timedelta(days=2)
        updated = monitor.update_deadline(deadline.id, new_due)

        assert updated.deadline_at == new_due
        assert updated.warning_at == new_due - timedelta(hours=24)
        assert not updated.warning_sent
        assert not updated.overdue_sent

        clock.advance(timedelta(days=1, hours=1))
        assert monitor.check_approaching_deadlines()['warnings_sent'] == 1

    def test_reassign(self, monitor, deadline):
        assert monitor.reassign_deadline(deadline.id, "carol").assignee == "carol"
        with pytest.raises(NotFoundError):
            monitor.reassign_deadline(deadline.id, "ghost")

    def test_complete_is_idempotent(self, monitor, deadline, audit_trail):
        first = monitor.complete_deadline(deadline.id)
        second = monitor.complete_deadline(deadline.id)

        assert first.completed and second.completed
        assert second.completed_at == first.completed_at
        assert len(audit_trail.get_events_by_type(AuditEventType.DEADLINE_COMPLETED)) == 1

    def test_completed_deadline_cannot_be_moved(self, monitor, deadline, clock):
        monitor.complete_deadline(deadline.id)
        with pytest.raises(InvalidTransitionError):
            monitor.update_deadline(deadline.id, clock.now())
        with pytest.raises(InvalidTransitionError):
            monitor.reassign_deadline(deadline.id, "carol")

    def test_manual_escalation_of_completed_deadline(self, monitor, deadline, inbox):
        """Manual escalation is unconditional"""
        monitor.complete_deadline(deadline.id)
        escalated = monitor.escalate(deadline.id)

        assert escalated.completed
        assert escalated.escalation_level == 1
        assert len(inbox.get_notifications("carol")) == 1

    @pytest.mark.parametrize("lead_hours", [0, -6])
    def test_non_positive_lead_time_means_no_warning(self, monitor, workflow, clock, lead_hours):
        deadline = monitor.register_deadline(workflow.id, "DOCUMENTS", "Upload documents",
                                             clock.now() + timedelta(hours=2), lead_hours, "alice")
        assert deadline.warning_at is None

        clock.advance(timedelta(hours=1))
        assert monitor.check_approaching_deadlines()['warnings_sent'] == 0

    def test_cancel_removes_deadline(self, monitor, deadline):
        assert monitor.cancel_deadline(deadline.id)
        assert monitor.get_deadline(deadline.id) is None
        with pytest.raises(NotFoundError):
            monitor.cancel_deadline(deadline.id)

    def test_queries(self, monitor, deadline, workflow, clock):
        later = monitor.register_deadline(workflow.id, "DOCUMENTS", "Upload documents",
                                          clock.now() + timedelta(days=9), None, "bob")
        done = monitor.register_deadline(workflow.id, "INTERVIEW", "Exit interview",
                                         clock.now() + timedelta(days=1), None, "bob")
        monitor.complete_deadline(done.id)

        assert [d.id for d in monitor.get_deadlines_by_workflow(workflow.id)] == [done.id, deadline.id, later.id]
        assert [d.id for d in monitor.get_incomplete_deadlines()] == [deadline.id, later.id]
        assert [d.id for d in monitor.get_deadlines_by_assignee("bob")] == [deadline.id, later.id]
        assert len(monitor.get_deadlines_by_assignee("bob", include_completed=True)) == 3

        clock.advance(timedelta(days=6))
        assert monitor.count_overdue_deadlines() == 1
        assert monitor.count_overdue_deadlines(workflow.id) == 1

    def test_invalid_escalation_interval(self, storage, state_manager, directory, inbox):
        with pytest.raises(ValueError):
            DeadlineMonitor(storage, state_manager, directory,
                            NotificationOrchestrator(inbox, directory), escalation_interval_hours=0)


class TestDeadlineScans:
    """Warning, overdue and escalation timeline"""

    def test_escalation_timeline(self, monitor, deadline, clock, inbox):
        """Deadline at T+5d with a 24 hour warning, interval 24 hours"""
        start = clock.now()

        clock.set(start + timedelta(days=3))
        assert monitor.check_approaching_deadlines()['warnings_sent'] == 0
        assert monitor.check_overdue_items()['overdue_notices'] == 0

        clock.set(start + timedelta(days=4, hours=23))
        assert monitor.check_approaching_deadlines()['warnings_sent'] == 1
        assert monitor.check_approaching_deadlines()['warnings_sent'] == 0
        assert titles(inbox, "bob") == ["Deadline Approaching: APPROVAL_DECISION"]

        clock.set(start + timedelta(days=5, hours=1))
        overdue = monitor.check_overdue_items()
        assert overdue['overdue_notices'] == 1
        assert overdue['escalations'] == 0
        assert monitor.get_deadline(deadline.id).overdue_sent

        clock.set(start + timedelta(days=6, hours=1))
        overdue = monitor.check_overdue_items()
        assert overdue['overdue_notices'] == 0
        assert overdue['escalations'] == 1
        assert monitor.get_deadline(deadline.id).escalation_level == 1

        escalation = inbox.get_notifications("carol")
        assert len(escalation) == 1
        assert escalation[0].title == "Escalation: APPROVAL_DECISION"
        assert escalation[0].message == \
            "Escalation (Level 1): Leave request approval is overdue. Assigned to: Bob Brown"

        clock.set(start + timedelta(days=6, hours=5))
        overdue = monitor.check_overdue_items()
        assert overdue['escalations'] == 0
        assert monitor.get_deadline(deadline.id).escalation_level == 1
        assert len(inbox.get_notifications("carol")) == 1

        assert titles(inbox, "bob") == [
            "Deadline Approaching: APPROVAL_DECISION",
            "Deadline Exceeded: APPROVAL_DECISION",
        ]

    def test_first_scan_long_after_deadline(self, monitor, deadline, clock, inbox):
        """One scan sends the warning, the overdue notice and one escalation"""
        clock.advance(timedelta(days=6, hours=1))

        warning = monitor.check_approaching_deadlines()
        overdue = monitor.check_overdue_items()

        assert warning['warnings_sent'] == 1
        assert overdue['overdue_notices'] == 1
        assert overdue['escalations'] == 1
        assert len(inbox.get_notifications("carol")) == 1

    def test_escalation_catches_up_one_level_per_scan(self, monitor, deadline, clock):
        clock.advance(timedelta(days=8, hours=1))  # three intervals past the deadline

        levels = []
        for _ in range(4):
            monitor.check_overdue_items()
            levels.append(monitor.get_deadline(deadline.id).escalation_level)

        assert levels == [1, 2, 3, 3]

    def test_exceeded_message(self, monitor, deadline, clock, inbox):
        clock.advance(timedelta(days=5))
        monitor.check_overdue_items()

        notice = [n for n in inbox.get_notifications("bob") if n.title.startswith("Deadline Exceeded")][0]
        assert notice.message == "Leave request approval - This item is now overdue!"
        assert notice.related_entity_id == deadline.workflow_id

    def test_completed_deadlines_ignored(self, monitor, deadline, clock, inbox):
        monitor.complete_deadline(deadline.id)
        clock.advance(timedelta(days=10))

        assert monitor.check_approaching_deadlines()['checked'] == 0
        assert monitor.check_overdue_items()['checked'] == 0
        assert inbox.get_notifications("bob") == []

    def test_no_warning_without_lead_time(self, monitor, workflow, clock, inbox):
        monitor.register_deadline(workflow.id, "DOCUMENTS", "Upload documents",
                                  clock.now() + timedelta(hours=2), None, "alice")
        clock.advance(timedelta(hours=1))
        assert monitor.check_approaching_deadlines()['warnings_sent'] == 0

    def test_escalation_without_manager(self, monitor, workflow, clock, inbox, caplog):
        deadline = monitor.register_deadline(workflow.id, "SIGN_OFF", "Director sign off",
                                             clock.now(), None, "carol")
        clock.advance(timedelta(days=1, hours=1))

        result = monitor.check_overdue_items()
        assert result['escalations'] == 1
        assert monitor.get_deadline(deadline.id).escalation_level == 1
        assert "no manager" in caplog.text

    def test_manual_escalation(self, monitor, deadline, inbox, audit_trail):
        escalated = monitor.escalate(deadline.id)
        monitor.escalate(deadline.id)

        assert escalated.escalation_level == 1
        assert monitor.get_deadline(deadline.id).escalation_level == 2
        assert len(inbox.get_notifications("carol")) == 2
        events = audit_trail.get_events_by_type(AuditEventType.DEADLINE_ESCALATED)
        assert [e.metadata["manual"] for e in events] == [True, True]


class TestConcurrentScans:
    """Scans running on several threads notify exactly once"""

    def test_concurrent_scans_notify_once(self, monitor, deadline, clock, inbox):
        clock.advance(timedelta(days=6, hours=1))
        barrier = threading.Barrier(6)

        def scan():
            barrier.wait()
            monitor.check_approaching_deadlines()
            monitor.check_overdue_items()

        threads = [threading.Thread(target=scan) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert titles(inbox, "bob") == [
            "Deadline Approaching: APPROVAL_DECISION",
            "Deadline Exceeded: APPROVAL_DECISION",
        ]
        assert len(inbox.get_notifications("carol")) == 1
        assert monitor.get_deadline(deadline.id).escalation_level == 1


class TestWritesDuringScans:
    """Lifecycle calls that race a scan on the same row still succeed"""

    def test_complete_while_overdue_scan_claims_flag(self, monitor, deadline, storage, clock, inbox):
        clock.advance(timedelta(days=5, hours=1))
        storage.before_deadline_write = monitor.check_overdue_items

        completed = monitor.complete_deadline(deadline.id)

        assert completed.completed
        assert completed.overdue_sent
        assert monitor.get_deadline(deadline.id).completed
        assert titles(inbox, "bob") == ["Deadline Exceeded: APPROVAL_DECISION"]

    def test_reassign_while_warning_scan_claims_flag(self, monitor, deadline, storage, clock):
        clock.advance(timedelta(days=4, hours=1))
        storage.before_deadline_write = monitor.check_approaching_deadlines

        monitor.reassign_deadline(deadline.id, "carol")

        stored = monitor.get_deadline(deadline.id)
        assert stored.assignee == "carol"
        assert stored.warning_sent

    def test_update_while_escalation_scan_raises_level(self, monitor, deadline, storage, clock):
        clock.advance(timedelta(days=6, hours=1))
        monitor.check_overdue_items()
        storage.before_deadline_write = monitor.check_overdue_items
        clock.advance(timedelta(days=1))

        new_due = clock.now() + timedelta(days=3)
        updated = monitor.update_deadline(deadline.id, new_due)

        assert updated.deadline_at == new_due
        assert not updated.overdue_sent
        assert updated.escalation_level == 2

    def test_persistent_conflict_gives_up(self, monitor, deadline, storage):
        with patch.object(storage, "compare_and_save", return_value=False):
            with pytest.raises(ConcurrentModificationError):
                monitor.complete_deadline(deadline.id)
            with pytest.raises(ConcurrentModificationError):
                monitor.escalate(deadline.id)
        assert not monitor.get_deadline(deadline.id).completed
