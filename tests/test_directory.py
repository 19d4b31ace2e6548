"""
Tests for directory lookups, entity status hooks, the clock and error kinds
"""

import pytest
from datetime import datetime, timedelta, timezone

from hr_workflow.approval_chains import ApprovalType
from hr_workflow.clock import FixedClock, SystemClock
from hr_workflow.directory import Actor, InMemoryDirectory
from hr_workflow.entity_status import (
    CallbackStatusUpdater, EntityStatusUpdaterRegistry, RecordingStatusUpdater
)
from hr_workflow.errors import (
    AlreadyProcessedError, InvalidTransitionError, MisconfiguredApproverError, NoApproverFoundError,
    NotFoundError, WorkflowError
)


class TestInMemoryDirectory:
    """Organizational lookups"""

    def test_lookups(self):
        directory = InMemoryDirectory([
            Actor("alice", "Alice Adams", manager_id="bob", department_id="ENG"),
            Actor("bob", "Bob Brown"),
        ])
        directory.set_department_head("ENG", "bob")

        assert directory.get_manager("alice") == "bob"
        assert directory.get_manager("bob") is None
        assert directory.get_manager("ghost") is None
        assert directory.get_department("alice") == "ENG"
        assert directory.get_department_head("ENG") == "bob"
        assert directory.get_department_head("SALES") is None
        assert directory.get_display_name("alice") == "Alice Adams"
        assert directory.get_display_name("ghost") == "ghost"

    def test_changes(self):
        directory = InMemoryDirectory([Actor("alice", "Alice Adams"), Actor("carol", "Carol Chen")])
        directory.set_manager("alice", "carol")
        directory.set_department_head("ENG", "carol")
        directory.set_department_head("ENG", None)

        assert directory.get_manager("alice") == "carol"
        assert directory.get_department_head("ENG") is None
        assert directory.remove_actor("carol")
        assert not directory.actor_exists("carol")
        assert not directory.remove_actor("carol")

        with pytest.raises(ValueError):
            directory.set_manager("ghost", "alice")


class TestStatusUpdaters:
    """Per-type entity status hooks"""

    def test_apply_routes_by_outcome(self):
        registry = EntityStatusUpdaterRegistry()
        recorder = RecordingStatusUpdater()
        registry.register(ApprovalType.LEAVE_REQUEST, recorder)

        assert registry.apply(ApprovalType.LEAVE_REQUEST, "leave-1", True)
        assert registry.apply(ApprovalType.LEAVE_REQUEST, "leave-2", False, "no cover")

        assert recorder.approved == ["leave-1"]
        assert recorder.rejected == [("leave-2", "no cover")]

    def test_missing_updater(self, caplog):
        registry = EntityStatusUpdaterRegistry()
        assert not registry.apply(ApprovalType.EXPENSE_CLAIM, "exp-1", True)
        assert "exp-1" in caplog.text

    def test_callback_updater_and_unregister(self):
        calls = []
        registry = EntityStatusUpdaterRegistry()
        registry.register(ApprovalType.TRAINING_REQUEST, CallbackStatusUpdater(
            lambda entity_id: calls.append(("approved", entity_id)),
            lambda entity_id, comments: calls.append(("rejected", entity_id, comments))
        ))

        registry.apply(ApprovalType.TRAINING_REQUEST, "course-1", False, "budget")
        registry.unregister(ApprovalType.TRAINING_REQUEST)

        assert calls == [("rejected", "course-1", "budget")]
        assert registry.get(ApprovalType.TRAINING_REQUEST) is None


class TestClock:
    """Time sources"""

    def test_fixed_clock(self):
        clock = FixedClock(datetime(2024, 3, 1, 8, 0))
        assert clock.now().tzinfo is not None
        assert clock.advance(timedelta(hours=2)) == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

        clock.set(datetime(2024, 3, 5, tzinfo=timezone.utc))
        assert clock.now() == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo == timezone.utc


class TestErrors:
    """Error kinds"""

    def test_error_hierarchy(self):
        assert issubclass(AlreadyProcessedError, InvalidTransitionError)
        assert issubclass(MisconfiguredApproverError, NoApproverFoundError)
        assert issubclass(NotFoundError, WorkflowError)

    def test_to_dict(self):
        error = NotFoundError("Approval request REQ1 not found", "REQ1")
        assert error.to_dict() == {
            "kind": "NOT_FOUND",
            "entity_id": "REQ1",
            "message": "Approval request REQ1 not found"
        }
        assert str(error) == "Approval request REQ1 not found"
