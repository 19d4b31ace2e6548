"""
Deadline Monitor Module

Per-workflow deadlines and the periodic scans that act on them. The warning
scan sends one heads-up before a deadline; the overdue scan sends one
overdue notice and then escalates one level to the assignee's manager for
every full escalation interval (24 hours by default) the item stays open.

Every row change is a read-compare-write on the deadline version. A scan
claims the flag or level first and only notifies once its write won, so
concurrent scans never double-notify.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .directory import Directory
from .errors import ConcurrentModificationError, InvalidTransitionError, NotFoundError
from .events import EventDispatcher, EventPublisherMixin, WorkflowEvent
from .notifications import NotificationOrchestrator
from .storage import StorageInterface, StorageRecord, parse_datetime
from .workflows import WorkflowStateManager

logger = logging.getLogger("hr_workflow.deadlines")


@dataclass
class WorkflowDeadline(StorageRecord):
    """A due date attached to a workflow waiting period"""
    workflow_id: str
    deadline_type: str
    description: str
    deadline_at: datetime
    warning_at: Optional[datetime] = None
    assignee: Optional[str] = None
    warning_sent: bool = False
    overdue_sent: bool = False
    escalation_level: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    warning_sent_at: Optional[datetime] = None
    overdue_sent_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    version: int = 0

    def is_overdue(self, now: datetime) -> bool:
        return not self.completed and now >= self.deadline_at

    def hours_overdue(self, now: datetime) -> int:
        if now <= self.deadline_at:
            return 0
        return int((now - self.deadline_at).total_seconds() // 3600)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDeadline':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'deadline_at', 'warning_at', 'completed_at',
                    'warning_sent_at', 'overdue_sent_at', 'last_escalated_at'):
            data[key] = parse_datetime(data.get(key))
        return cls(**data)


class DeadlineMonitor(EventPublisherMixin):
    """Registers deadlines and runs the warning and overdue scans"""

    ENTITY_TYPE = "workflow_deadline"
    MAX_WRITE_ATTEMPTS = 5

    def __init__(
        self,
        storage: StorageInterface,
        state_manager: WorkflowStateManager,
        directory: Directory,
        notifications: NotificationOrchestrator,
        audit_manager: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        escalation_interval_hours: int = 24,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        if escalation_interval_hours < 1:
            raise ValueError("Escalation interval must be at least one hour")
        self.storage = storage
        self.state_manager = state_manager
        self.directory = directory
        self.notifications = notifications
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.escalation_interval_hours = escalation_interval_hours
        self.event_dispatcher = event_dispatcher
        self.table = "workflow_deadlines"

    # Registration and lifecycle

    def register_deadline(
        self,
        workflow_id: str,
        deadline_type: str,
        description: str,
        deadline_at: datetime,
        warning_hours_before: Optional[int] = None,
        assignee_id: Optional[str] = None
    ) -> WorkflowDeadline:
        """Attach a deadline to a workflow; no warning is scheduled without a positive lead time"""
        if not self.state_manager.exists(workflow_id):
            raise NotFoundError(f"Workflow {workflow_id} not found", workflow_id)
        if assignee_id and not self.directory.actor_exists(assignee_id):
            raise NotFoundError(f"Actor {assignee_id} not found", assignee_id)

        now = self.clock.now()
        deadline = WorkflowDeadline(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            workflow_id=workflow_id,
            deadline_type=deadline_type,
            description=description,
            deadline_at=deadline_at,
            warning_at=deadline_at - timedelta(hours=warning_hours_before)
            if warning_hours_before and warning_hours_before > 0 else None,
            assignee=assignee_id
        )
        self._save(deadline)

        self.audit.log_event(
            AuditEventType.DEADLINE_REGISTERED,
            self.ENTITY_TYPE,
            deadline.id,
            {
                'workflow_id': workflow_id,
                'deadline_type': deadline_type,
                'deadline_at': deadline_at,
                'assignee': assignee_id
            }
        )
        logger.debug(f"Registered {deadline_type} deadline {deadline.id} for workflow {workflow_id} at {deadline_at.isoformat()}")
        return deadline

    def update_deadline(self, deadline_id: str, new_deadline_at: datetime) -> WorkflowDeadline:
        """Move the due date; the warning/overdue cycle starts over"""
        def apply(deadline: WorkflowDeadline) -> datetime:
            lead_time = deadline.deadline_at - deadline.warning_at if deadline.warning_at else None
            previous = deadline.deadline_at
            deadline.deadline_at = new_deadline_at
            deadline.warning_at = new_deadline_at - lead_time if lead_time is not None else None
            deadline.warning_sent = False
            deadline.overdue_sent = False
            deadline.warning_sent_at = None
            deadline.overdue_sent_at = None
            deadline.updated_at = self.clock.now()
            return previous

        deadline, previous = self._mutate(deadline_id, apply)

        self.audit.log_event(
            AuditEventType.DEADLINE_UPDATED,
            self.ENTITY_TYPE,
            deadline_id,
            {'from_deadline_at': previous, 'to_deadline_at': new_deadline_at}
        )
        return deadline

    def reassign_deadline(self, deadline_id: str, assignee_id: str) -> WorkflowDeadline:
        if not self.directory.actor_exists(assignee_id):
            raise NotFoundError(f"Actor {assignee_id} not found", assignee_id)

        def apply(deadline: WorkflowDeadline) -> Optional[str]:
            previous = deadline.assignee
            deadline.assignee = assignee_id
            deadline.updated_at = self.clock.now()
            return previous

        deadline, previous = self._mutate(deadline_id, apply)

        self.audit.log_event(
            AuditEventType.DEADLINE_REASSIGNED,
            self.ENTITY_TYPE,
            deadline_id,
            {'from_assignee': previous, 'to_assignee': assignee_id}
        )
        return deadline

    def complete_deadline(self, deadline_id: str) -> WorkflowDeadline:
        """
        Mark done; completed deadlines are ignored by every scan.

        Completing twice is a no-op. A scan that wrote the row after it was
        loaded does not fail the completion: the row is reloaded, keeping the
        scan's flags, and completed again.
        """
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            deadline = self._require(deadline_id)
            if deadline.completed:
                return deadline

            now = self.clock.now()
            deadline.completed = True
            deadline.completed_at = now
            deadline.updated_at = now
            if self._try_save(deadline):
                break
        else:
            raise ConcurrentModificationError(f"Deadline {deadline_id} was modified concurrently", deadline_id)

        self.audit.log_event(
            AuditEventType.DEADLINE_COMPLETED,
            self.ENTITY_TYPE,
            deadline_id,
            {'workflow_id': deadline.workflow_id}
        )
        return deadline

    def cancel_deadline(self, deadline_id: str) -> bool:
        """Remove a deadline that no longer applies"""
        deadline = self._require(deadline_id)
        removed = self.storage.delete(self.table, deadline_id)
        if removed:
            self.audit.log_event(
                AuditEventType.DEADLINE_CANCELLED,
                self.ENTITY_TYPE,
                deadline_id,
                {'workflow_id': deadline.workflow_id}
            )
        return removed

    def escalate(self, deadline_id: str) -> WorkflowDeadline:
        """
        Manual escalation: one level up and a notice to the assignee's manager.

        Unconditional: neither the time-based rule nor completion of the
        deadline stops a manual escalation.
        """
        def apply(deadline: WorkflowDeadline) -> None:
            deadline.escalation_level += 1
            deadline.last_escalated_at = self.clock.now()
            deadline.updated_at = deadline.last_escalated_at

        deadline, _ = self._mutate(deadline_id, apply, open_only=False)
        self._after_escalation(deadline, manual=True)
        return deadline

    # Queries

    def get_deadline(self, deadline_id: str) -> Optional[WorkflowDeadline]:
        data = self.storage.load(self.table, deadline_id)
        return WorkflowDeadline.from_dict(data) if data else None

    def get_deadlines_by_workflow(self, workflow_id: str) -> List[WorkflowDeadline]:
        deadlines = [WorkflowDeadline.from_dict(d) for d in self.storage.find(self.table, {'workflow_id': workflow_id})]
        return sorted(deadlines, key=lambda d: d.deadline_at)

    def get_incomplete_deadlines(self) -> List[WorkflowDeadline]:
        deadlines = [WorkflowDeadline.from_dict(d) for d in self.storage.find(self.table, {'completed': False})]
        return sorted(deadlines, key=lambda d: d.deadline_at)

    def get_deadlines_by_assignee(self, assignee_id: str, include_completed: bool = False) -> List[WorkflowDeadline]:
        filters: Dict[str, Any] = {'assignee': assignee_id}
        if not include_completed:
            filters['completed'] = False
        deadlines = [WorkflowDeadline.from_dict(d) for d in self.storage.find(self.table, filters)]
        return sorted(deadlines, key=lambda d: d.deadline_at)

    def count_overdue_deadlines(self, workflow_id: Optional[str] = None) -> int:
        now = self.clock.now()
        deadlines = self.get_deadlines_by_workflow(workflow_id) if workflow_id else self.get_incomplete_deadlines()
        return sum(1 for d in deadlines if d.is_overdue(now))

    # Periodic scans

    def check_approaching_deadlines(self) -> Dict[str, int]:
        """Send one warning for each open deadline whose warning time has arrived"""
        now = self.clock.now()
        results = {'checked': 0, 'warnings_sent': 0, 'conflicts': 0}

        for deadline in self.get_incomplete_deadlines():
            if deadline.warning_sent or deadline.warning_at is None or now < deadline.warning_at:
                continue
            results['checked'] += 1

            deadline.warning_sent = True
            deadline.warning_sent_at = now
            deadline.updated_at = now
            if not self._try_save(deadline):
                results['conflicts'] += 1
                continue

            results['warnings_sent'] += 1
            self.notifications.notify_deadline_approaching(
                deadline.assignee, deadline.deadline_type, deadline.description,
                deadline.deadline_at, deadline.workflow_id
            )
            self.audit.log_event(
                AuditEventType.DEADLINE_WARNING_SENT,
                self.ENTITY_TYPE,
                deadline.id,
                {'workflow_id': deadline.workflow_id, 'assignee': deadline.assignee}
            )
            self.publish_event(WorkflowEvent.DEADLINE_WARNING, self.ENTITY_TYPE, deadline.id,
                               {'workflow_id': deadline.workflow_id, 'assignee': deadline.assignee}, now)

        if results['warnings_sent']:
            logger.info(f"Deadline warning scan sent {results['warnings_sent']} warnings")
        return results

    def check_overdue_items(self) -> Dict[str, int]:
        """
        Overdue notices and time-based escalation.

        The expected level is the number of whole escalation intervals elapsed
        since the deadline. A scan raises the stored level by one when it lags
        the expected level, so re-running inside the same interval is a no-op.
        """
        now = self.clock.now()
        results = {'checked': 0, 'overdue_notices': 0, 'escalations': 0, 'conflicts': 0}

        for deadline in self.get_incomplete_deadlines():
            if now < deadline.deadline_at:
                continue
            results['checked'] += 1

            if not deadline.overdue_sent:
                deadline.overdue_sent = True
                deadline.overdue_sent_at = now
                deadline.updated_at = now
                if not self._try_save(deadline):
                    results['conflicts'] += 1
                    continue

                results['overdue_notices'] += 1
                self.notifications.notify_deadline_exceeded(
                    deadline.assignee, deadline.deadline_type, deadline.description, deadline.workflow_id
                )
                self.audit.log_event(
                    AuditEventType.DEADLINE_OVERDUE,
                    self.ENTITY_TYPE,
                    deadline.id,
                    {'workflow_id': deadline.workflow_id, 'assignee': deadline.assignee}
                )
                self.publish_event(WorkflowEvent.DEADLINE_OVERDUE, self.ENTITY_TYPE, deadline.id,
                                   {'workflow_id': deadline.workflow_id, 'assignee': deadline.assignee}, now)

            expected_level = deadline.hours_overdue(now) // self.escalation_interval_hours
            if expected_level <= deadline.escalation_level:
                continue

            deadline.escalation_level += 1
            deadline.last_escalated_at = now
            deadline.updated_at = now
            if not self._try_save(deadline):
                results['conflicts'] += 1
                continue

            results['escalations'] += 1
            self._after_escalation(deadline, manual=False)

        if results['overdue_notices'] or results['escalations']:
            logger.info(
                f"Overdue scan: {results['overdue_notices']} overdue notices, "
                f"{results['escalations']} escalations"
            )
        return results

    # Private helpers

    def _after_escalation(self, deadline: WorkflowDeadline, manual: bool) -> None:
        manager_id = self.directory.get_manager(deadline.assignee) if deadline.assignee else None
        if manager_id:
            self.notifications.notify_escalation(
                manager_id, deadline.assignee, deadline.deadline_type, deadline.description,
                deadline.escalation_level, deadline.workflow_id
            )
        else:
            logger.warning(f"Deadline {deadline.id} escalated to level {deadline.escalation_level} with no manager to notify")

        self.audit.log_event(
            AuditEventType.DEADLINE_ESCALATED,
            self.ENTITY_TYPE,
            deadline.id,
            {
                'workflow_id': deadline.workflow_id,
                'escalation_level': deadline.escalation_level,
                'notified': manager_id,
                'manual': manual
            }
        )
        self.publish_event(
            WorkflowEvent.DEADLINE_ESCALATED, self.ENTITY_TYPE, deadline.id,
            {'workflow_id': deadline.workflow_id, 'escalation_level': deadline.escalation_level,
             'notified': manager_id, 'manual': manual},
            deadline.last_escalated_at
        )

    def _require(self, deadline_id: str) -> WorkflowDeadline:
        deadline = self.get_deadline(deadline_id)
        if not deadline:
            raise NotFoundError(f"Deadline {deadline_id} not found", deadline_id)
        return deadline

    def _load_open(self, deadline_id: str) -> WorkflowDeadline:
        deadline = self._require(deadline_id)
        if deadline.completed:
            raise InvalidTransitionError(f"Deadline {deadline_id} is already completed", deadline_id)
        return deadline

    def _mutate(self, deadline_id: str, apply: Callable[[WorkflowDeadline], Any],
                open_only: bool = True) -> Tuple[WorkflowDeadline, Any]:
        """
        Load, apply and save until the versioned write wins.

        Scans only touch flags and escalation levels, so re-applying the
        change on a freshly loaded row keeps whatever a scan wrote meanwhile.
        Returns the saved deadline and whatever apply returned.
        """
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            deadline = self._load_open(deadline_id) if open_only else self._require(deadline_id)
            result = apply(deadline)
            if self._try_save(deadline):
                return deadline, result
            logger.debug(f"Deadline {deadline_id} changed concurrently; retrying")
        raise ConcurrentModificationError(f"Deadline {deadline_id} was modified concurrently", deadline_id)

    def _try_save(self, deadline: WorkflowDeadline) -> bool:
        expected_version = deadline.version
        deadline.version = expected_version + 1
        if self.storage.compare_and_save(self.table, deadline.id, deadline.to_dict(), expected_version):
            return True
        deadline.version = expected_version
        logger.debug(f"Deadline {deadline.id} lost a version race")
        return False

    def _save(self, deadline: WorkflowDeadline) -> None:
        if not self._try_save(deadline):
            raise ConcurrentModificationError(f"Deadline {deadline.id} was modified concurrently", deadline.id)
