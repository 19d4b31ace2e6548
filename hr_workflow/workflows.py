"""
Workflow State Module

Generic workflow instances tracking a business entity (leave request,
expense claim, transfer, onboarding, ...) through its phases. The state
manager is the only writer of workflow instances: it validates every
status transition, keeps terminal instances immutable, appends every state
and status change to the workflow's transition log and mirrors changes on
the audit trail.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .directory import Directory
from .errors import (
    ConcurrentModificationError, InvalidContextValueError, InvalidTransitionError, NotFoundError
)
from .storage import StorageInterface, StorageRecord, parse_datetime

logger = logging.getLogger("hr_workflow.workflows")


class WorkflowType(Enum):
    """Types of workflows supported"""
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"
    TRANSFER = "transfer"
    LEAVE_APPROVAL = "leave_approval"
    EXPENSE_APPROVAL = "expense_approval"
    OVERTIME_APPROVAL = "overtime_approval"
    TRAINING_ENROLLMENT = "training_enrollment"
    TIMESHEET_APPROVAL = "timesheet_approval"
    SALARY_ADJUSTMENT = "salary_adjustment"
    PERFORMANCE_REVIEW_CYCLE = "performance_review_cycle"


class WorkflowStatus(Enum):
    """Coarse-grained status of a workflow instance"""
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    ESCALATED = "escalated"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.COMPLETED,
})

# Allowed update_status moves; terminal statuses have no outgoing edges
_STATUS_TRANSITIONS = {
    WorkflowStatus.CREATED: {WorkflowStatus.CANCELLED},
    WorkflowStatus.IN_PROGRESS: {WorkflowStatus.ESCALATED} | TERMINAL_WORKFLOW_STATUSES,
    WorkflowStatus.ESCALATED: {WorkflowStatus.ESCALATED} | TERMINAL_WORKFLOW_STATUSES,
}

# Well-known phase labels
STATE_INITIATED = "INITIATED"
STATE_IN_PROGRESS = "IN_PROGRESS"
STATE_COMPLETED = "COMPLETED"
STATE_CANCELLED = "CANCELLED"


def pending_level_state(level: int) -> str:
    return f"PENDING_LEVEL_{level}"


# Registered context keys and the type their values must have.
# Decimal values are persisted as strings.
CONTEXT_KEY_TYPES: Dict[str, type] = {
    "approvalType": str,
    "approvalRequestId": str,
    "entityId": str,
    "entityType": str,
    "requestorId": str,
    "totalLevels": int,
    "currentLevel": int,
    "amount": Decimal,
    "daysCount": int,
    "priority": int,
    "description": str,
    "outcome": str,
    "cancelReason": str,
    "employeeId": str,
    "reason": str,
    "previousDepartmentId": str,
    "previousPositionId": str,
    "previousManagerId": str,
    "newDepartmentId": str,
    "newPositionId": str,
    "newManagerId": str,
    "effectiveDate": str,
    "requiresRelocation": bool,
    "deadlineId": str,
    "processId": str,
    "startDate": str,
    "lastWorkingDate": str,
    "completionPercentage": int,
}

_FREE_FORM_TYPES = (str, int, float, bool, type(None))


def coerce_context_value(key: str, value: Any) -> Any:
    """Validate a context value against the key registry and return its stored form"""
    expected = CONTEXT_KEY_TYPES.get(key)
    if value is None:
        return None
    if expected is None:
        if isinstance(value, Decimal):
            return str(value)
        if not isinstance(value, _FREE_FORM_TYPES):
            raise InvalidContextValueError(
                f"Context key '{key}' must hold a scalar, got {type(value).__name__}", key)
        return value
    if expected is Decimal:
        if isinstance(value, bool) or not isinstance(value, (Decimal, int, str)):
            raise InvalidContextValueError(f"Context key '{key}' must be a decimal amount", key)
        try:
            return str(Decimal(str(value)))
        except InvalidOperation:
            raise InvalidContextValueError(f"Context key '{key}' must be a decimal amount", key)
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidContextValueError(f"Context key '{key}' must be an integer", key)
        return value
    if not isinstance(value, expected):
        raise InvalidContextValueError(
            f"Context key '{key}' must be {expected.__name__}, got {type(value).__name__}", key)
    return value


@dataclass
class WorkflowInstance(StorageRecord):
    """One tracked run of a multi-step process tied to a business entity"""
    workflow_type: WorkflowType
    entity_id: str
    entity_type: str
    status: WorkflowStatus = WorkflowStatus.CREATED
    current_state: str = STATE_INITIATED
    context: Dict[str, Any] = field(default_factory=dict)
    assignee: Optional[str] = None
    initiator: Optional[str] = None
    due_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    outcome: Optional[str] = None
    priority: int = 3
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def context_value(self, key: str, default: Any = None) -> Any:
        """Typed read of a context value"""
        value = self.context.get(key, default)
        if value is not None and CONTEXT_KEY_TYPES.get(key) is Decimal:
            return Decimal(str(value))
        return value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'due_date', 'started_at', 'completed_at'):
            data[key] = parse_datetime(data.get(key))
        data['workflow_type'] = WorkflowType(data['workflow_type'])
        data['status'] = WorkflowStatus(data['status'])
        return cls(**data)


@dataclass
class WorkflowTransition(StorageRecord):
    """One entry of a workflow's transition log"""
    workflow_id: str
    to_state: str
    sequence: int
    from_state: Optional[str] = None
    reason: Optional[str] = None
    transitioned_by: Optional[str] = None
    transitioned_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTransition':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'transitioned_at'):
            data[key] = parse_datetime(data.get(key))
        return cls(**data)


class WorkflowStateManager:
    """Owns the lifecycle of workflow instances"""

    ENTITY_TYPE = "workflow_instance"

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 directory: Optional[Directory] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.directory = directory
        self.table = "workflow_instances"
        self.transitions_table = "workflow_transitions"

    # Creation

    def create_workflow(
        self,
        workflow_type: WorkflowType,
        entity_id: str,
        entity_type: str,
        context: Optional[Dict[str, Any]] = None,
        initiator: Optional[str] = None,
        priority: int = 3
    ) -> WorkflowInstance:
        """Create a workflow instance in CREATED status"""
        if initiator and self.directory and not self.directory.actor_exists(initiator):
            raise NotFoundError(f"Actor {initiator} not found", initiator)

        stored_context = {key: coerce_context_value(key, value) for key, value in (context or {}).items()}
        now = self.clock.now()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            workflow_type=workflow_type,
            entity_id=entity_id,
            entity_type=entity_type,
            context=stored_context,
            initiator=initiator,
            priority=priority
        )
        self._save(instance)
        self._record_transition(instance, None, STATE_INITIATED, "Workflow initiated", initiator)

        self.audit.log_event(
            AuditEventType.WORKFLOW_CREATED,
            self.ENTITY_TYPE,
            instance.id,
            {
                'workflow_type': workflow_type.value,
                'entity_type': entity_type,
                'entity_id': entity_id
            },
            initiator
        )
        logger.info(f"Created {workflow_type.value} workflow {instance.id} for {entity_type} {entity_id}")
        return instance

    def start_workflow(self, workflow_id: str) -> WorkflowInstance:
        """CREATED -> IN_PROGRESS"""
        instance = self._load_mutable(workflow_id)
        if instance.status != WorkflowStatus.CREATED:
            raise InvalidTransitionError(
                f"Workflow {workflow_id} cannot start from {instance.status.value}", workflow_id)

        previous_state = instance.current_state
        instance.status = WorkflowStatus.IN_PROGRESS
        instance.current_state = STATE_IN_PROGRESS
        self._touch(instance)
        instance.started_at = instance.updated_at
        self._save(instance)
        self._record_transition(instance, previous_state, instance.current_state, "Workflow started")

        self.audit.log_event(
            AuditEventType.WORKFLOW_STARTED,
            self.ENTITY_TYPE,
            workflow_id,
            {'from_state': previous_state, 'to_state': instance.current_state}
        )
        return instance

    # Mutation

    def transition_state(self, workflow_id: str, new_state: str, reason: Optional[str] = None,
                         transitioned_by: Optional[str] = None) -> WorkflowInstance:
        """Move to a new phase label and note the transition; status is unchanged"""
        instance = self._load_mutable(workflow_id)
        previous_state = instance.current_state
        instance.current_state = new_state
        self._touch(instance)
        self._save(instance)
        self._record_transition(instance, previous_state, new_state, reason, transitioned_by)

        self.audit.log_event(
            AuditEventType.WORKFLOW_STATE_CHANGED,
            self.ENTITY_TYPE,
            workflow_id,
            {'from_state': previous_state, 'to_state': new_state, 'reason': reason},
            transitioned_by
        )
        logger.debug(f"Workflow {workflow_id}: {previous_state} -> {new_state}")
        return instance

    def assign_workflow(self, workflow_id: str, actor_id: str) -> WorkflowInstance:
        """Set the responsible actor"""
        if self.directory and not self.directory.actor_exists(actor_id):
            raise NotFoundError(f"Actor {actor_id} not found", actor_id)

        instance = self._load_mutable(workflow_id)
        previous_assignee = instance.assignee
        instance.assignee = actor_id
        self._touch(instance)
        self._save(instance)

        self.audit.log_event(
            AuditEventType.WORKFLOW_ASSIGNED,
            self.ENTITY_TYPE,
            workflow_id,
            {'from_assignee': previous_assignee, 'to_assignee': actor_id}
        )
        return instance

    def update_context(self, workflow_id: str, key: str, value: Any) -> WorkflowInstance:
        """Upsert one context value"""
        stored = coerce_context_value(key, value)
        instance = self._load_mutable(workflow_id)
        instance.context[key] = stored
        self._touch(instance)
        self._save(instance)

        self.audit.log_event(
            AuditEventType.WORKFLOW_CONTEXT_UPDATED,
            self.ENTITY_TYPE,
            workflow_id,
            {'key': key, 'value': stored}
        )
        return instance

    def update_due_date(self, workflow_id: str, due_date: Optional[datetime]) -> WorkflowInstance:
        instance = self._load_mutable(workflow_id)
        instance.due_date = due_date
        self._touch(instance)
        self._save(instance)

        self.audit.log_event(
            AuditEventType.WORKFLOW_DUE_DATE_CHANGED,
            self.ENTITY_TYPE,
            workflow_id,
            {'due_date': due_date}
        )
        return instance

    def update_status(self, workflow_id: str, new_status: WorkflowStatus,
                      reason: Optional[str] = None) -> WorkflowInstance:
        """
        Move the coarse status forward.

        ESCALATED is the only non-terminal status reachable from IN_PROGRESS;
        everything else must head to a terminal status.
        """
        instance = self._load_mutable(workflow_id)
        allowed = _STATUS_TRANSITIONS.get(instance.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Workflow {workflow_id} cannot move from {instance.status.value} to {new_status.value}",
                workflow_id)

        previous_status = instance.status
        instance.status = new_status
        self._touch(instance)
        if new_status.is_terminal:
            instance.completed_at = instance.updated_at
        self._save(instance)
        self._record_transition(instance, previous_status.name, new_status.name, reason)

        self.audit.log_event(
            AuditEventType.WORKFLOW_STATUS_CHANGED,
            self.ENTITY_TYPE,
            workflow_id,
            {'from_status': previous_status.value, 'to_status': new_status.value, 'reason': reason}
        )
        return instance

    def complete_workflow(self, workflow_id: str, outcome: str) -> WorkflowInstance:
        """Finish the workflow with an outcome label such as APPROVED or REJECTED"""
        instance = self._load_mutable(workflow_id)
        previous_state = instance.current_state
        previous_status = instance.status
        instance.status = WorkflowStatus.COMPLETED
        instance.current_state = STATE_COMPLETED
        instance.outcome = outcome
        instance.context['outcome'] = coerce_context_value('outcome', outcome)
        self._touch(instance)
        instance.completed_at = instance.updated_at
        self._save(instance)
        self._record_transition(instance, previous_state, STATE_COMPLETED, f"Workflow completed: {outcome}")

        self.audit.log_event(
            AuditEventType.WORKFLOW_COMPLETED,
            self.ENTITY_TYPE,
            workflow_id,
            {'from_status': previous_status.value, 'outcome': outcome}
        )
        logger.info(f"Workflow {workflow_id} completed with outcome {outcome}")
        return instance

    def cancel_workflow(self, workflow_id: str, reason: Optional[str] = None) -> WorkflowInstance:
        """Cancel from any non-terminal status"""
        instance = self._load_mutable(workflow_id)
        previous_state = instance.current_state
        previous_status = instance.status
        instance.status = WorkflowStatus.CANCELLED
        instance.current_state = STATE_CANCELLED
        if reason:
            instance.context['cancelReason'] = coerce_context_value('cancelReason', reason)
        self._touch(instance)
        instance.completed_at = instance.updated_at
        self._save(instance)
        self._record_transition(instance, previous_state, STATE_CANCELLED,
                                f"Workflow cancelled: {reason}" if reason else "Workflow cancelled")

        self.audit.log_event(
            AuditEventType.WORKFLOW_CANCELLED,
            self.ENTITY_TYPE,
            workflow_id,
            {'from_status': previous_status.value, 'reason': reason}
        )
        logger.info(f"Workflow {workflow_id} cancelled: {reason}")
        return instance

    # Queries

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowInstance]:
        data = self.storage.load(self.table, workflow_id)
        return WorkflowInstance.from_dict(data) if data else None

    def require_workflow(self, workflow_id: str) -> WorkflowInstance:
        instance = self.get_workflow(workflow_id)
        if not instance:
            raise NotFoundError(f"Workflow {workflow_id} not found", workflow_id)
        return instance

    def exists(self, workflow_id: str) -> bool:
        return self.storage.exists(self.table, workflow_id)

    def is_workflow_active(self, workflow_id: str) -> bool:
        instance = self.get_workflow(workflow_id)
        return instance is not None and not instance.is_terminal

    def find_by_entity_id(self, entity_id: str) -> List[WorkflowInstance]:
        return self._sorted(self.storage.find(self.table, {'entity_id': entity_id}))

    def find_active_workflows_by_entity_id(self, entity_id: str) -> List[WorkflowInstance]:
        """Non-terminal workflows tracking the entity"""
        return [w for w in self.find_by_entity_id(entity_id) if not w.is_terminal]

    def find_by_type_and_status(self, workflow_type: WorkflowType, status: WorkflowStatus,
                                page: int = 0, size: int = 20) -> List[WorkflowInstance]:
        workflows = self._sorted(self.storage.find(
            self.table, {'workflow_type': workflow_type.value, 'status': status.value}))
        return workflows[page * size:(page + 1) * size]

    def find_by_assignee(self, actor_id: str, page: int = 0, size: int = 20) -> List[WorkflowInstance]:
        """Active workflows waiting on the actor"""
        workflows = [w for w in self._sorted(self.storage.find(self.table, {'assignee': actor_id}))
                     if not w.is_terminal]
        return workflows[page * size:(page + 1) * size]

    def find_overdue_workflows(self) -> List[WorkflowInstance]:
        """Active workflows whose due date has passed"""
        now = self.clock.now()
        return [
            w for w in self._sorted(self.storage.load_all(self.table))
            if not w.is_terminal and w.due_date is not None and w.due_date < now
        ]

    def get_workflow_history(self, workflow_id: str) -> List[WorkflowTransition]:
        """
        Transition log of the workflow, oldest first.

        Kept in its own table, so it is complete whether or not the audit
        trail is enabled.
        """
        self.require_workflow(workflow_id)
        transitions = [
            WorkflowTransition.from_dict(data)
            for data in self.storage.find(self.transitions_table, {'workflow_id': workflow_id})
        ]
        return sorted(transitions, key=lambda t: t.sequence)

    # Private helpers

    def _sorted(self, rows: List[Dict[str, Any]]) -> List[WorkflowInstance]:
        workflows = [WorkflowInstance.from_dict(data) for data in rows]
        return sorted(workflows, key=lambda w: (w.created_at, w.id), reverse=True)

    def _record_transition(self, instance: WorkflowInstance, from_state: Optional[str], to_state: str,
                           reason: Optional[str] = None, transitioned_by: Optional[str] = None) -> None:
        # The instance version just written orders the log, even under a frozen clock
        transition = WorkflowTransition(
            id=str(uuid.uuid4()),
            created_at=instance.updated_at,
            updated_at=instance.updated_at,
            workflow_id=instance.id,
            to_state=to_state,
            sequence=instance.version,
            from_state=from_state,
            reason=reason,
            transitioned_by=transitioned_by,
            transitioned_at=instance.updated_at
        )
        self.storage.save(self.transitions_table, transition.id, transition.to_dict())

    def _load_mutable(self, workflow_id: str) -> WorkflowInstance:
        instance = self.require_workflow(workflow_id)
        if instance.is_terminal:
            raise InvalidTransitionError(
                f"Workflow {workflow_id} is {instance.status.value} and can no longer change", workflow_id)
        return instance

    def _touch(self, instance: WorkflowInstance) -> None:
        # updated_at never moves backwards even if the clock does
        now = self.clock.now()
        instance.updated_at = now if now > instance.updated_at else instance.updated_at

    def _save(self, instance: WorkflowInstance) -> None:
        expected_version = instance.version
        instance.version = expected_version + 1
        if not self.storage.compare_and_save(self.table, instance.id, instance.to_dict(), expected_version):
            instance.version = expected_version
            raise ConcurrentModificationError(
                f"Workflow {instance.id} was modified concurrently", instance.id)
