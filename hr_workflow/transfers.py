"""
Transfer Workflow Module

Department, position and manager transfers approved in stages: the
employee's current manager first, then the receiving manager when the
manager changes, then HR. The workflow context keeps a snapshot of the
employee's placement at initiation next to the proposed one, so an approved
change can always be read against what it replaced.

Executing an approved transfer hands the change to the embedding system
through a callback and closes the workflow.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional
import logging

from .approvals import ApprovalDecision
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import HRWorkflowConfig
from .deadlines import DeadlineMonitor
from .directory import Directory
from .errors import AlreadyPendingError, InvalidTransitionError, NotFoundError
from .logging_config import log_action
from .notifications import TRANSFER_ENTITY, NotificationOrchestrator
from .workflows import WorkflowInstance, WorkflowStateManager, WorkflowStatus, WorkflowType

logger = logging.getLogger("hr_workflow.transfers")

STATE_PENDING_CURRENT_MANAGER = "PENDING_CURRENT_MANAGER_APPROVAL"
STATE_PENDING_NEW_MANAGER = "PENDING_NEW_MANAGER_APPROVAL"
STATE_PENDING_HR = "PENDING_HR_APPROVAL"
STATE_APPROVED = "APPROVED"
STATE_REJECTED = "REJECTED"

TRANSFER_DEADLINE_TYPE = "TRANSFER_APPROVAL"
OUTCOME_TRANSFERRED = "TRANSFER_COMPLETED"

# Receives the employee id and the approved changes (newDepartmentId, newPositionId, newManagerId)
TransferExecutor = Callable[[str, Dict[str, str]], None]


class TransferStage(Enum):
    """Approval stages of a transfer, in order"""
    CURRENT_MANAGER = "current_manager"
    NEW_MANAGER = "new_manager"
    HR = "hr"


_STAGE_STATES = {
    TransferStage.CURRENT_MANAGER: STATE_PENDING_CURRENT_MANAGER,
    TransferStage.NEW_MANAGER: STATE_PENDING_NEW_MANAGER,
    TransferStage.HR: STATE_PENDING_HR,
}

_STAGE_LABELS = {
    TransferStage.CURRENT_MANAGER: "current manager",
    TransferStage.NEW_MANAGER: "new manager",
    TransferStage.HR: "HR",
}

# Context key prefix for each stage's decision
_STAGE_KEYS = {
    TransferStage.CURRENT_MANAGER: "currentManager",
    TransferStage.NEW_MANAGER: "newManager",
    TransferStage.HR: "hr",
}

_REJECTED_BY = {
    TransferStage.CURRENT_MANAGER: "your current manager",
    TransferStage.NEW_MANAGER: "the receiving manager",
    TransferStage.HR: "HR",
}

_CHANGE_KEYS = ("newDepartmentId", "newPositionId", "newManagerId")


@dataclass
class TransferDetails:
    """One side of a transfer: where the employee was or is going"""
    department_id: Optional[str] = None
    position_id: Optional[str] = None
    manager_id: Optional[str] = None
    manager_name: Optional[str] = None


@dataclass
class StageDecision:
    approved: bool
    comments: Optional[str]
    decided_by: Optional[str]
    decided_at: Optional[str]


@dataclass
class TransferWorkflowResponse:
    """Caller-facing view of a transfer workflow"""
    workflow_id: str
    employee_id: str
    employee_name: str
    status: WorkflowStatus
    current_state: str
    previous: TransferDetails
    proposed: TransferDetails
    effective_date: Optional[date]
    reason: Optional[str]
    requires_relocation: bool
    assignee: Optional[str]
    due_date: Optional[datetime]
    decisions: Dict[str, StageDecision]
    created_at: datetime
    updated_at: datetime


class TransferWorkflowManager:
    """Initiates, routes, executes and cancels employee transfers"""

    ENTITY_TYPE = "transfer"
    LOCK_STRIPES = 64

    def __init__(
        self,
        state_manager: WorkflowStateManager,
        deadline_monitor: DeadlineMonitor,
        directory: Directory,
        notifications: NotificationOrchestrator,
        audit_manager: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        config: Optional[HRWorkflowConfig] = None,
        on_transfer_executed: Optional[TransferExecutor] = None
    ):
        self.state_manager = state_manager
        self.deadline_monitor = deadline_monitor
        self.directory = directory
        self.notifications = notifications
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(state_manager.storage, clock=self.clock)
        self.config = config or HRWorkflowConfig()
        self.on_transfer_executed = on_transfer_executed
        self._locks: List[RLock] = [RLock() for _ in range(self.LOCK_STRIPES)]

    def initiate_transfer(
        self,
        employee_id: str,
        effective_date: date,
        reason: str,
        new_department_id: Optional[str] = None,
        new_position_id: Optional[str] = None,
        new_manager_id: Optional[str] = None,
        current_position_id: Optional[str] = None,
        requires_relocation: bool = False,
        initiated_by: Optional[str] = None
    ) -> TransferWorkflowResponse:
        """
        Open a transfer and route it to the employee's current manager.

        At least one of department, position or manager must change. The
        approvals are due a configured number of days before the effective
        date. An employee has at most one transfer in progress.
        """
        if not self.directory.actor_exists(employee_id):
            raise NotFoundError(f"Employee {employee_id} not found", employee_id)
        if not (new_department_id or new_position_id or new_manager_id):
            raise ValueError("At least one transfer change must be specified")
        if new_manager_id and not self.directory.actor_exists(new_manager_id):
            raise NotFoundError(f"Actor {new_manager_id} not found", new_manager_id)

        with self._lock(employee_id):
            active = self._active_transfer(employee_id)
            if active:
                raise AlreadyPendingError(
                    f"Employee {employee_id} already has transfer {active.id} in progress", active.id)

            current_manager = self.directory.get_manager(employee_id)
            context = {
                'employeeId': employee_id,
                'effectiveDate': effective_date.isoformat(),
                'reason': reason,
                'requiresRelocation': requires_relocation,
                'previousDepartmentId': self.directory.get_department(employee_id),
                'previousPositionId': current_position_id,
                'previousManagerId': current_manager,
                'newDepartmentId': new_department_id,
                'newPositionId': new_position_id,
                'newManagerId': new_manager_id,
            }
            context = {key: value for key, value in context.items() if value is not None}

            workflow = self.state_manager.create_workflow(
                WorkflowType.TRANSFER, employee_id, "Employee", context, initiated_by)
            self.state_manager.start_workflow(workflow.id)
            self.state_manager.transition_state(
                workflow.id, STATE_PENDING_CURRENT_MANAGER,
                "Transfer request initiated - awaiting current manager approval", initiated_by)

            due_date = datetime.combine(
                effective_date - timedelta(days=self.config.transfer_approval_lead_days),
                time.min, tzinfo=timezone.utc)
            self.state_manager.update_due_date(workflow.id, due_date)
            if current_manager:
                self.state_manager.assign_workflow(workflow.id, current_manager)
            else:
                logger.warning(f"Employee {employee_id} has no manager to approve transfer {workflow.id}")

            employee_name = self.directory.get_display_name(employee_id)
            deadline = self.deadline_monitor.register_deadline(
                workflow.id,
                TRANSFER_DEADLINE_TYPE,
                f"Transfer approval required for {employee_name}",
                due_date,
                self.config.transfer_warning_hours,
                current_manager
            )
            self.state_manager.update_context(workflow.id, 'deadlineId', deadline.id)

        self.audit.log_event(
            AuditEventType.TRANSFER_INITIATED,
            self.ENTITY_TYPE,
            workflow.id,
            {'employee_id': employee_id, 'effective_date': effective_date.isoformat(),
             'changes': {key: context[key] for key in _CHANGE_KEYS if key in context}},
            initiated_by
        )
        log_action(logger, "info", f"Transfer {workflow.id} initiated for employee {employee_id}",
                   user_id=initiated_by, action="initiate_transfer", resource=workflow.id)
        self.notifications.notify_transfer_approval_required(
            current_manager, workflow.id,
            f"{employee_name} has a pending transfer request. Reason: {reason}")
        return self.get_transfer_status(workflow.id)

    # Stage decisions

    def process_current_manager_approval(self, workflow_id: str, decision: ApprovalDecision,
                                         comments: Optional[str] = None,
                                         decided_by: Optional[str] = None) -> TransferWorkflowResponse:
        return self._decide(workflow_id, TransferStage.CURRENT_MANAGER, decision, comments, decided_by)

    def process_new_manager_approval(self, workflow_id: str, decision: ApprovalDecision,
                                     comments: Optional[str] = None,
                                     decided_by: Optional[str] = None) -> TransferWorkflowResponse:
        return self._decide(workflow_id, TransferStage.NEW_MANAGER, decision, comments, decided_by)

    def process_hr_approval(self, workflow_id: str, decision: ApprovalDecision,
                            comments: Optional[str] = None,
                            decided_by: Optional[str] = None) -> TransferWorkflowResponse:
        return self._decide(workflow_id, TransferStage.HR, decision, comments, decided_by)

    def execute_transfer(self, workflow_id: str, executed_by: Optional[str] = None) -> TransferWorkflowResponse:
        """
        Apply an approved transfer.

        The executor callback runs first; if it raises, the workflow stays
        APPROVED and the error propagates.
        """
        with self._lock(workflow_id):
            workflow = self._require_transfer(workflow_id)
            if workflow.is_terminal or workflow.current_state != STATE_APPROVED:
                raise InvalidTransitionError(
                    f"Transfer {workflow_id} must be approved before execution", workflow_id)

            employee_id = workflow.entity_id
            changes = {key: workflow.context[key] for key in _CHANGE_KEYS if key in workflow.context}
            if self.on_transfer_executed:
                self.on_transfer_executed(employee_id, changes)
            else:
                logger.warning(f"No transfer executor configured; transfer {workflow_id} only closes the workflow")
            self.state_manager.complete_workflow(workflow_id, OUTCOME_TRANSFERRED)

        self.audit.log_event(
            AuditEventType.TRANSFER_EXECUTED,
            self.ENTITY_TYPE,
            workflow_id,
            {'employee_id': employee_id, 'changes': changes},
            executed_by
        )
        log_action(logger, "info", f"Transfer {workflow_id} executed for employee {employee_id}",
                   user_id=executed_by, action="execute_transfer", resource=workflow_id)
        self.notifications.notify_workflow_completed(
            employee_id, "Transfer Completed",
            "Your transfer has been completed. Welcome to your new role!",
            workflow_id, TRANSFER_ENTITY)
        return self.get_transfer_status(workflow_id)

    def cancel_transfer(self, workflow_id: str, reason: str,
                        cancelled_by: Optional[str] = None) -> TransferWorkflowResponse:
        with self._lock(workflow_id):
            workflow = self._require_transfer(workflow_id)
            if workflow.is_terminal:
                raise InvalidTransitionError(
                    f"Transfer {workflow_id} is already {workflow.status.value}", workflow_id)
            self._complete_deadline(workflow)
            self.state_manager.cancel_workflow(workflow_id, reason)

        self.audit.log_event(
            AuditEventType.TRANSFER_CANCELLED,
            self.ENTITY_TYPE,
            workflow_id,
            {'reason': reason, 'state': workflow.current_state},
            cancelled_by
        )
        logger.info(f"Transfer {workflow_id} cancelled: {reason}")
        self.notifications.notify_workflow_completed(
            workflow.entity_id, "Transfer Cancelled",
            f"Your transfer request has been cancelled. Reason: {reason}",
            workflow_id, TRANSFER_ENTITY)
        return self.get_transfer_status(workflow_id)

    # Queries

    def get_transfer_status(self, workflow_id: str) -> TransferWorkflowResponse:
        return self._to_response(self._require_transfer(workflow_id))

    def get_active_transfer(self, employee_id: str) -> Optional[TransferWorkflowResponse]:
        workflow = self._active_transfer(employee_id)
        return self._to_response(workflow) if workflow else None

    # Private helpers

    def _decide(self, workflow_id: str, stage: TransferStage, decision: ApprovalDecision,
                comments: Optional[str], decided_by: Optional[str]) -> TransferWorkflowResponse:
        if decision not in (ApprovalDecision.APPROVE, ApprovalDecision.REJECT):
            raise InvalidTransitionError(
                f"Transfer {workflow_id} accepts only approve or reject, got {decision.value}", workflow_id)
        approved = decision == ApprovalDecision.APPROVE
        label = _STAGE_LABELS[stage]

        with self._lock(workflow_id):
            workflow = self._require_transfer(workflow_id)
            if workflow.is_terminal or workflow.current_state != _STAGE_STATES[stage]:
                raise InvalidTransitionError(
                    f"Transfer {workflow_id} is not pending {label} approval", workflow_id)

            prefix = _STAGE_KEYS[stage]
            self.state_manager.update_context(workflow_id, f"{prefix}Approved", approved)
            self.state_manager.update_context(workflow_id, f"{prefix}Comments", comments)
            self.state_manager.update_context(workflow_id, f"{prefix}DecidedBy", decided_by)
            self.state_manager.update_context(workflow_id, f"{prefix}DecisionAt", self.clock.now().isoformat())

            next_stage = self._next_stage(stage, workflow) if approved else None
            if next_stage:
                self._route_to(workflow, next_stage, f"{label.capitalize()} approved", decided_by)
            elif approved:
                self.state_manager.transition_state(
                    workflow_id, STATE_APPROVED, "Transfer approved by HR - scheduled for effective date", decided_by)
                self._complete_deadline(workflow)
            else:
                self.state_manager.transition_state(
                    workflow_id, STATE_REJECTED, f"Transfer rejected by {label}: {comments}", decided_by)
                self._complete_deadline(workflow)
                self.state_manager.update_status(workflow_id, WorkflowStatus.REJECTED, comments)

        self.audit.log_event(
            AuditEventType.TRANSFER_DECIDED,
            self.ENTITY_TYPE,
            workflow_id,
            {'stage': stage.value, 'decision': decision.value, 'comments': comments},
            decided_by
        )
        log_action(logger, "info", f"Transfer {workflow_id}: {label} decision {decision.value}",
                   user_id=decided_by, action=f"transfer_{decision.value}", resource=workflow_id)

        employee_id = workflow.entity_id
        if not approved:
            message = f"Your transfer request has been rejected by {_REJECTED_BY[stage]}."
            if comments:
                message += f" Reason: {comments}"
            self.notifications.notify_transfer_decision(employee_id, workflow_id, False, message)
        elif next_stage is None:
            self.notifications.notify_transfer_decision(
                employee_id, workflow_id, True,
                f"Your transfer request has been approved! Effective date: {workflow.context.get('effectiveDate')}")
        return self.get_transfer_status(workflow_id)

    def _next_stage(self, stage: TransferStage, workflow: WorkflowInstance) -> Optional[TransferStage]:
        if stage == TransferStage.CURRENT_MANAGER:
            return TransferStage.NEW_MANAGER if workflow.context.get('newManagerId') else TransferStage.HR
        if stage == TransferStage.NEW_MANAGER:
            return TransferStage.HR
        return None

    def _route_to(self, workflow: WorkflowInstance, stage: TransferStage, note: str,
                  decided_by: Optional[str]) -> None:
        label = _STAGE_LABELS[stage]
        self.state_manager.transition_state(
            workflow.id, _STAGE_STATES[stage], f"{note} - awaiting {label} approval", decided_by)

        if stage == TransferStage.NEW_MANAGER:
            assignee = workflow.context['newManagerId']
            message = "An employee transfer to your team requires your approval."
        else:
            assignee = self.config.transfer_hr_approver_id or None
            message = (f"The transfer of {self.directory.get_display_name(workflow.entity_id)} "
                       f"requires HR approval.")
        if not assignee:
            logger.info(f"Transfer {workflow.id} awaits {label} approval with no named approver")
            return

        self.state_manager.assign_workflow(workflow.id, assignee)
        deadline_id = workflow.context.get('deadlineId')
        if deadline_id:
            self.deadline_monitor.reassign_deadline(deadline_id, assignee)
        self.notifications.notify_transfer_approval_required(assignee, workflow.id, message)

    def _complete_deadline(self, workflow: WorkflowInstance) -> None:
        deadline_id = workflow.context.get('deadlineId')
        if deadline_id and self.deadline_monitor.get_deadline(deadline_id):
            self.deadline_monitor.complete_deadline(deadline_id)

    def _active_transfer(self, employee_id: str) -> Optional[WorkflowInstance]:
        for workflow in self.state_manager.find_active_workflows_by_entity_id(employee_id):
            if workflow.workflow_type == WorkflowType.TRANSFER:
                return workflow
        return None

    def _require_transfer(self, workflow_id: str) -> WorkflowInstance:
        workflow = self.state_manager.get_workflow(workflow_id)
        if not workflow or workflow.workflow_type != WorkflowType.TRANSFER:
            raise NotFoundError(f"Transfer {workflow_id} not found", workflow_id)
        return workflow

    def _lock(self, key: str) -> RLock:
        return self._locks[hash(key) % self.LOCK_STRIPES]

    def _to_response(self, workflow: WorkflowInstance) -> TransferWorkflowResponse:
        context = workflow.context
        previous_manager = context.get('previousManagerId')
        new_manager = context.get('newManagerId')
        decisions = {}
        for stage, prefix in _STAGE_KEYS.items():
            if f"{prefix}Approved" in context:
                decisions[stage.value] = StageDecision(
                    approved=context[f"{prefix}Approved"],
                    comments=context.get(f"{prefix}Comments"),
                    decided_by=context.get(f"{prefix}DecidedBy"),
                    decided_at=context.get(f"{prefix}DecisionAt")
                )
        effective_date = context.get('effectiveDate')
        return TransferWorkflowResponse(
            workflow_id=workflow.id,
            employee_id=workflow.entity_id,
            employee_name=self.directory.get_display_name(workflow.entity_id),
            status=workflow.status,
            current_state=workflow.current_state,
            previous=TransferDetails(
                department_id=context.get('previousDepartmentId'),
                position_id=context.get('previousPositionId'),
                manager_id=previous_manager,
                manager_name=self.directory.get_display_name(previous_manager) if previous_manager else None
            ),
            proposed=TransferDetails(
                department_id=context.get('newDepartmentId'),
                position_id=context.get('newPositionId'),
                manager_id=new_manager,
                manager_name=self.directory.get_display_name(new_manager) if new_manager else None
            ),
            effective_date=date.fromisoformat(effective_date) if effective_date else None,
            reason=context.get('reason'),
            requires_relocation=bool(context.get('requiresRelocation', False)),
            assignee=workflow.assignee,
            due_date=workflow.due_date,
            decisions=decisions,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at
        )
