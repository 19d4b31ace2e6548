"""
Tests for Notification Module

Tests notifier channels (in-app, log, webhook, composite), message
formatting for approval and deadline notices, and best-effort delivery.
"""

import pytest
import json
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import httpx

from hr_workflow.approval_chains import ApprovalType
from hr_workflow.clock import FixedClock
from hr_workflow.directory import Actor, InMemoryDirectory
from hr_workflow.notifications import (
    CompositeNotifier, InAppNotifier, LogNotifier, Notifier, NotificationOrchestrator, WebhookNotifier
)
from hr_workflow.storage import InMemoryStorage


class RecordingNotifier(Notifier):
    """Captures notifications for assertions"""

    def __init__(self, should_fail: bool = False):
        self.should_fail = should_fail
        self.sent = []

    def notify(self, actor_id, title, message, related_entity_id=None, related_entity_type=None):
        if self.should_fail:
            raise ConnectionError("channel unavailable")
        self.sent.append({
            "actor_id": actor_id,
            "title": title,
            "message": message,
            "related_entity_id": related_entity_id,
            "related_entity_type": related_entity_type
        })


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def directory():
    return InMemoryDirectory([
        Actor("alice", "Alice Adams", manager_id="bob"),
        Actor("bob", "Bob Brown", manager_id="carol"),
        Actor("carol", "Carol Chen"),
    ])


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(recorder, directory):
    return NotificationOrchestrator(recorder, directory)


class TestInAppNotifier:
    """Stored notifications"""

    def test_notify_and_list(self, storage, clock):
        inbox = InAppNotifier(storage, clock)
        inbox.notify("bob", "First", "one")
        clock.advance(timedelta(minutes=1))
        inbox.notify("bob", "Second", "two", "REQ1", "APPROVAL_REQUEST")
        inbox.notify("alice", "Other", "three")

        notifications = inbox.get_notifications("bob")
        assert [n.title for n in notifications] == ["Second", "First"]
        assert notifications[0].related_entity_id == "REQ1"
        assert notifications[0].created_at == clock.now()

    def test_read_tracking(self, storage, clock):
        inbox = InAppNotifier(storage, clock)
        inbox.notify("bob", "First", "one")
        inbox.notify("bob", "Second", "two")
        target = inbox.get_notifications("bob")[0]

        assert inbox.get_unread_count("bob") == 2
        assert inbox.mark_as_read(target.id)
        assert not inbox.mark_as_read("missing")
        assert inbox.get_unread_count("bob") == 1

        unread = inbox.get_notifications("bob", unread_only=True)
        assert len(unread) == 1
        assert unread[0].id != target.id

        read = [n for n in inbox.get_notifications("bob") if n.id == target.id][0]
        assert read.read
        assert read.read_at == clock.now()


class TestChannels:
    """Log, webhook and composite notifiers"""

    def test_log_notifier(self):
        log = MagicMock()
        LogNotifier(log).notify("bob", "Escalation: APPROVAL_DECISION", "Overdue")

        log.info.assert_called_once()
        assert "bob" in log.info.call_args[0][0]

    def test_webhook_posts_json(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("https://notify.example.com/hooks", client=client)
        notifier.notify("bob", "Request Approved", "Your request has been approved.", "REQ1", "APPROVAL_REQUEST")
        notifier.close()

        assert received == [{
            "recipient_id": "bob",
            "title": "Request Approved",
            "message": "Your request has been approved.",
            "related_entity_id": "REQ1",
            "related_entity_type": "APPROVAL_REQUEST"
        }]

    def test_webhook_error_status_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        notifier = WebhookNotifier("https://notify.example.com/hooks", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            notifier.notify("bob", "Title", "Message")

    def test_composite_isolates_channels(self, caplog):
        broken = RecordingNotifier(should_fail=True)
        working = RecordingNotifier()
        composite = CompositeNotifier([broken])
        composite.add(working)

        composite.notify("bob", "Title", "Message")

        assert len(working.sent) == 1
        assert "RecordingNotifier failed to notify bob" in caplog.text


class TestApprovalMessages:
    """Approval notice formatting"""

    def test_approval_required(self, orchestrator, recorder):
        assert orchestrator.notify_approval_required("bob", "alice", ApprovalType.EXPENSE_CLAIM, "REQ1",
                                                     Decimal("1500"))
        sent = recorder.sent[0]
        assert sent["actor_id"] == "bob"
        assert sent["title"] == "Expense Claim Pending Approval"
        assert sent["message"] == "Alice Adams has submitted a expense claim for your approval. Amount: $1500.00"
        assert sent["related_entity_type"] == "APPROVAL_REQUEST"

    def test_approval_required_with_days(self, orchestrator, recorder):
        orchestrator.notify_approval_required("bob", "alice", ApprovalType.LEAVE_REQUEST, "REQ1", days_count=4)
        assert recorder.sent[0]["message"].endswith("Days: 4")
        assert "Amount" not in recorder.sent[0]["message"]

    def test_unknown_requestor_uses_id(self, orchestrator, recorder):
        orchestrator.notify_approval_required("bob", "contractor-7", ApprovalType.TIMESHEET_APPROVAL, "REQ1")
        assert recorder.sent[0]["message"].startswith("contractor-7 has submitted a timesheet")

    def test_decision_messages(self, orchestrator, recorder):
        orchestrator.notify_approval_decision("alice", "REQ1", True)
        orchestrator.notify_approval_decision("alice", "REQ2", False, "insufficient documentation")

        assert recorder.sent[0]["title"] == "Request Approved"
        assert recorder.sent[0]["message"] == "Your request has been approved."
        assert recorder.sent[1]["title"] == "Request Rejected"
        assert recorder.sent[1]["message"] == "Your request has been rejected. Reason: insufficient documentation"

    def test_withdrawal_and_escalation(self, orchestrator, recorder):
        orchestrator.notify_withdrawal("bob", "alice", "REQ1", "Plans changed")
        orchestrator.notify_approval_escalated("carol", "bob", ApprovalType.LEAVE_REQUEST, "REQ1")

        assert recorder.sent[0]["title"] == "Approval Request Withdrawn"
        assert recorder.sent[0]["message"] == "Alice Adams has withdrawn an approval request. Reason: Plans changed"
        assert recorder.sent[1]["title"] == "Escalated Approval Request"
        assert "Bob Brown" in recorder.sent[1]["message"]


class TestDeadlineMessages:
    """Deadline notice formatting"""

    def test_deadline_notices(self, orchestrator, recorder):
        due = datetime(2024, 1, 6, 9, 0, tzinfo=timezone.utc)
        orchestrator.notify_deadline_approaching("bob", "APPROVAL_DECISION", "Leave approval", due, "WF1")
        orchestrator.notify_deadline_exceeded("bob", "APPROVAL_DECISION", "Leave approval", "WF1")
        orchestrator.notify_escalation("carol", "bob", "APPROVAL_DECISION", "Leave approval", 2, "WF1")

        approaching, exceeded, escalation = recorder.sent
        assert approaching["title"] == "Deadline Approaching: APPROVAL_DECISION"
        assert due.isoformat() in approaching["message"]
        assert exceeded["title"] == "Deadline Exceeded: APPROVAL_DECISION"
        assert exceeded["message"] == "Leave approval - This item is now overdue!"
        assert escalation["title"] == "Escalation: APPROVAL_DECISION"
        assert escalation["message"] == "Escalation (Level 2): Leave approval is overdue. Assigned to: Bob Brown"
        assert escalation["related_entity_type"] == "WORKFLOW"

    def test_reminder(self, orchestrator, recorder):
        orchestrator.send_reminder("bob", "Pending approvals", "You have 3 requests waiting")
        assert recorder.sent[0]["title"] == "Reminder - Pending approvals"


class TestBestEffortDelivery:
    """Failures are logged and swallowed"""

    def test_failing_notifier_returns_false(self, directory, caplog):
        orchestrator = NotificationOrchestrator(RecordingNotifier(should_fail=True), directory)

        assert not orchestrator.notify_approval_decision("alice", "REQ1", True)
        assert "Failed to notify alice" in caplog.text

    def test_missing_recipient_skipped(self, orchestrator, recorder):
        assert not orchestrator.notify_deadline_exceeded(None, "APPROVAL_DECISION", "Leave approval", "WF1")
        assert recorder.sent == []
