"""
Notification Module

Delivery of approval and deadline notices to actors. The engine only relies
on the Notifier contract; concrete notifiers store in-app messages, log, or
POST to a webhook. NotificationOrchestrator formats the messages and makes
every delivery best-effort: a failing notifier is logged and swallowed so it
can never fail an approval decision or a deadline scan.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Any
import logging
import uuid

import httpx

from .approval_chains import ApprovalType
from .clock import Clock, SystemClock
from .directory import Directory
from .storage import StorageInterface, StorageRecord, parse_datetime

logger = logging.getLogger("hr_workflow.notifications")


class Notifier(ABC):
    """Fire-and-forget delivery of a message to an actor"""
    
    @abstractmethod
    def notify(self, actor_id: str, title: str, message: str,
               related_entity_id: Optional[str] = None,
               related_entity_type: Optional[str] = None) -> None:
        pass


@dataclass
class Notification(StorageRecord):
    """In-app notification row"""
    recipient_id: str
    title: str
    message: str
    related_entity_id: Optional[str] = None
    related_entity_type: Optional[str] = None
    read: bool = False
    read_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        notification = super().from_dict(data)
        notification.read_at = parse_datetime(notification.read_at)
        return notification


class InAppNotifier(Notifier):
    """Stores notifications for display in the HR portal"""
    
    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table = "notifications"
    
    def notify(self, actor_id, title, message, related_entity_id=None, related_entity_type=None):
        now = self.clock.now()
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            recipient_id=actor_id,
            title=title,
            message=message,
            related_entity_id=related_entity_id,
            related_entity_type=related_entity_type
        )
        self.storage.save(self.table, notification.id, notification.to_dict())
    
    def get_notifications(self, recipient_id: str, unread_only: bool = False) -> List[Notification]:
        """Notifications for a recipient, newest first"""
        filters: Dict[str, Any] = {'recipient_id': recipient_id}
        if unread_only:
            filters['read'] = False
        notifications = [Notification.from_dict(data) for data in self.storage.find(self.table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications
    
    def mark_as_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.table, notification_id)
        if not data:
            return False
        notification = Notification.from_dict(data)
        notification.read = True
        notification.read_at = self.clock.now()
        notification.updated_at = notification.read_at
        self.storage.save(self.table, notification.id, notification.to_dict())
        return True
    
    def get_unread_count(self, recipient_id: str) -> int:
        return len(self.storage.find(self.table, {'recipient_id': recipient_id, 'read': False}))


class LogNotifier(Notifier):
    """Writes notifications to the log, for development"""
    
    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger
    
    def notify(self, actor_id, title, message, related_entity_id=None, related_entity_type=None):
        self.log.info(f"Notification to {actor_id}: {title} | {message[:100]}")


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to an external delivery service"""
    
    def __init__(self, url: str, timeout: float = 2.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
    
    def notify(self, actor_id, title, message, related_entity_id=None, related_entity_type=None):
        payload = {
            "recipient_id": actor_id,
            "title": title,
            "message": message,
            "related_entity_id": related_entity_id,
            "related_entity_type": related_entity_type
        }
        response = self._client.post(self.url, json=payload)
        response.raise_for_status()
    
    def close(self) -> None:
        self._client.close()


class CompositeNotifier(Notifier):
    """Fans a notification out to several notifiers; one failing channel does not stop the rest"""
    
    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self.notifiers: List[Notifier] = list(notifiers or [])
    
    def add(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)
    
    def notify(self, actor_id, title, message, related_entity_id=None, related_entity_type=None):
        for notifier in self.notifiers:
            try:
                notifier.notify(actor_id, title, message, related_entity_id, related_entity_type)
            except Exception as e:
                logger.warning(f"{type(notifier).__name__} failed to notify {actor_id}: {e}")


APPROVAL_REQUEST_ENTITY = "APPROVAL_REQUEST"
WORKFLOW_ENTITY = "WORKFLOW"
TRANSFER_ENTITY = "TRANSFER"
EMPLOYEE_PROCESS_ENTITY = "EMPLOYEE_PROCESS"
PROCESS_TASK_ENTITY = "EMPLOYEE_PROCESS_TASK"


class NotificationOrchestrator:
    """Formats approval and deadline notices and delivers them best-effort"""
    
    def __init__(self, notifier: Notifier, directory: Directory):
        self.notifier = notifier
        self.directory = directory
    
    def _send(self, actor_id: Optional[str], title: str, message: str,
              related_entity_id: Optional[str], related_entity_type: str) -> bool:
        if not actor_id:
            logger.warning(f"Skipping notification '{title}': no recipient")
            return False
        try:
            self.notifier.notify(actor_id, title, message, related_entity_id, related_entity_type)
            return True
        except Exception as e:
            logger.error(f"Failed to notify {actor_id} about '{title}': {e}")
            return False
    
    # Approval notices
    
    def notify_approval_required(self, approver_id: str, requestor_id: str, approval_type: ApprovalType,
                                 request_id: str, amount: Optional[Decimal] = None,
                                 days_count: Optional[int] = None) -> bool:
        title = f"{approval_type.label} Pending Approval"
        message = (f"{self.directory.get_display_name(requestor_id)} has submitted a "
                   f"{approval_type.label.lower()} for your approval.")
        if amount is not None:
            message += f" Amount: ${Decimal(amount):.2f}"
        if days_count is not None:
            message += f" Days: {days_count}"
        return self._send(approver_id, title, message, request_id, APPROVAL_REQUEST_ENTITY)
    
    def notify_approval_decision(self, requestor_id: str, request_id: str, approved: bool,
                                 comments: Optional[str] = None) -> bool:
        if approved:
            title = "Request Approved"
            message = "Your request has been approved."
        else:
            title = "Request Rejected"
            message = "Your request has been rejected."
        if comments:
            message += f" Reason: {comments}" if not approved else f" Comments: {comments}"
        return self._send(requestor_id, title, message, request_id, APPROVAL_REQUEST_ENTITY)
    
    def notify_more_info_required(self, requestor_id: str, request_id: str,
                                  comments: Optional[str] = None) -> bool:
        message = "The approver needs more information before deciding on your request."
        if comments:
            message += f" {comments}"
        return self._send(requestor_id, "Additional Information Required", message,
                          request_id, APPROVAL_REQUEST_ENTITY)
    
    def notify_withdrawal(self, approver_id: str, requestor_id: str, request_id: str,
                          reason: Optional[str] = None) -> bool:
        message = f"{self.directory.get_display_name(requestor_id)} has withdrawn an approval request."
        if reason:
            message += f" Reason: {reason}"
        return self._send(approver_id, "Approval Request Withdrawn", message,
                          request_id, APPROVAL_REQUEST_ENTITY)
    
    def notify_approval_escalated(self, approver_id: str, previous_approver_id: str,
                                  approval_type: ApprovalType, request_id: str) -> bool:
        message = (f"A {approval_type.label.lower()} awaiting "
                   f"{self.directory.get_display_name(previous_approver_id)} has been escalated to you.")
        return self._send(approver_id, "Escalated Approval Request", message,
                          request_id, APPROVAL_REQUEST_ENTITY)
    
    # Deadline notices
    
    def notify_deadline_approaching(self, assignee_id: str, deadline_type: str, description: str,
                                    deadline_at: datetime, workflow_id: str) -> bool:
        message = f"{description} (due {deadline_at.isoformat()})"
        return self._send(assignee_id, f"Deadline Approaching: {deadline_type}", message,
                          workflow_id, WORKFLOW_ENTITY)
    
    def notify_deadline_exceeded(self, assignee_id: str, deadline_type: str, description: str,
                                 workflow_id: str) -> bool:
        message = f"{description} - This item is now overdue!"
        return self._send(assignee_id, f"Deadline Exceeded: {deadline_type}", message,
                          workflow_id, WORKFLOW_ENTITY)
    
    def notify_escalation(self, recipient_id: str, assignee_id: Optional[str], deadline_type: str,
                          description: str, level: int, workflow_id: str) -> bool:
        owner = self.directory.get_display_name(assignee_id) if assignee_id else "unassigned"
        message = f"Escalation (Level {level}): {description} is overdue. Assigned to: {owner}"
        return self._send(recipient_id, f"Escalation: {deadline_type}", message,
                          workflow_id, WORKFLOW_ENTITY)
    
    def send_reminder(self, actor_id: str, title: str, message: str,
                      related_entity_id: Optional[str] = None,
                      related_entity_type: str = WORKFLOW_ENTITY) -> bool:
        return self._send(actor_id, f"Reminder - {title}", message, related_entity_id, related_entity_type)
    
    # Transfer and lifecycle notices
    
    def notify_transfer_approval_required(self, approver_id: Optional[str], workflow_id: str,
                                          message: str) -> bool:
        return self._send(approver_id, "Transfer Request Approval Required", message,
                          workflow_id, TRANSFER_ENTITY)
    
    def notify_transfer_decision(self, employee_id: str, workflow_id: str, approved: bool,
                                 message: str) -> bool:
        title = "Transfer Request Approved" if approved else "Transfer Request Rejected"
        return self._send(employee_id, title, message, workflow_id, TRANSFER_ENTITY)
    
    def notify_task_assignment(self, actor_id: Optional[str], title: str, message: str,
                               related_entity_id: str,
                               related_entity_type: str = EMPLOYEE_PROCESS_ENTITY) -> bool:
        return self._send(actor_id, title, message, related_entity_id, related_entity_type)
    
    def notify_task_completed(self, actor_id: Optional[str], title: str, message: str,
                              task_id: str) -> bool:
        return self._send(actor_id, title, message, task_id, PROCESS_TASK_ENTITY)
    
    def notify_workflow_completed(self, actor_id: Optional[str], title: str, message: str,
                                  related_entity_id: str, related_entity_type: str = WORKFLOW_ENTITY) -> bool:
        return self._send(actor_id, title, message, related_entity_id, related_entity_type)
    
    def notify_welcome(self, employee_id: str, message: str) -> bool:
        title = f"Welcome, {self.directory.get_display_name(employee_id)}"
        return self._send(employee_id, title, message, None, EMPLOYEE_PROCESS_ENTITY)
