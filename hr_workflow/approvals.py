"""
Approval Request Module

Multi-level approval of HR requests. The coordinator resolves the approval
chain once at submission, creates the tracking workflow and the approval
request, and then drives the request level by level: each approval hands the
request to the next approver with a fresh deadline, a rejection or the last
approval finalizes it.

Decisions on one request are serialized by a per-request lock and written
with a version check. Submissions for the same entity and approval type are
serialized so at most one request per pair is ever open.
"""

from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from decimal import Decimal
from enum import Enum
from threading import Lock, RLock
from typing import Dict, Generic, List, Optional, Any, TypeVar
import logging
import uuid

from .approval_chains import ApprovalChainConfig, ApprovalChainResolver, ApprovalType
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import HRWorkflowConfig
from .deadlines import DeadlineMonitor
from .directory import Directory
from .entity_status import EntityStatusUpdaterRegistry
from .errors import (
    AlreadyPendingError, AlreadyProcessedError, ConcurrentModificationError, InvalidTransitionError,
    MisconfiguredApproverError, NoApproverFoundError, NoEscalationTargetError, NotFoundError,
    WorkflowError
)
from .events import EventDispatcher, EventPublisherMixin, WorkflowEvent
from .logging_config import log_action
from .notifications import NotificationOrchestrator
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal
from .workflows import WorkflowStateManager, WorkflowStatus, pending_level_state

logger = logging.getLogger("hr_workflow.approvals")

T = TypeVar("T")


class ApprovalStatus(Enum):
    """Status of an approval request"""
    PENDING_APPROVAL = "pending_approval"
    ON_HOLD = "on_hold"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.CANCELLED)


class ApprovalDecision(Enum):
    """Decisions an approver can submit"""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_MORE_INFO = "request_more_info"
    DELEGATE = "delegate"


OUTCOME_APPROVED = "APPROVED"
OUTCOME_REJECTED = "REJECTED"


@dataclass
class ApprovalRequest(StorageRecord):
    """Approval projection of a workflow instance"""
    workflow_id: str
    approval_type: ApprovalType
    entity_id: str
    entity_type: str
    requestor: str
    approver: str
    current_level: int
    total_levels: int
    chain: List[Dict[str, Any]]  # Snapshot of the chain resolved at submission
    status: ApprovalStatus = ApprovalStatus.PENDING_APPROVAL
    amount: Optional[Decimal] = None
    days_count: Optional[int] = None
    priority: int = 3
    description: str = ""
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    approver_comments: Optional[str] = None
    last_decision: Optional[str] = None
    decided_by: Optional[str] = None
    deadline_id: Optional[str] = None
    version: int = 0

    def chain_rule(self, level: int) -> ApprovalChainConfig:
        """Rule for a 1-based level from the submission-time snapshot"""
        return ApprovalChainConfig.from_dict(self.chain[level - 1])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRequest':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'submitted_at', 'decided_at', 'due_date'):
            data[key] = parse_datetime(data.get(key))
        data['approval_type'] = ApprovalType(data['approval_type'])
        data['status'] = ApprovalStatus(data['status'])
        data['amount'] = parse_decimal(data.get('amount'))
        return cls(**data)


@dataclass
class ApprovalHistoryItem:
    """The latest decision recorded on a request"""
    level: int
    approver_id: Optional[str]
    approver_name: Optional[str]
    decision: str
    comments: Optional[str]
    decided_at: Optional[datetime]


@dataclass
class ApprovalWorkflowResponse:
    """Caller-facing view of an approval request"""
    request_id: str
    workflow_id: str
    approval_type: ApprovalType
    entity_id: str
    entity_type: str
    status: ApprovalStatus
    current_level: int
    total_levels: int
    requestor_id: str
    requestor_name: str
    current_approver_id: str
    current_approver_name: str
    submitted_at: Optional[datetime]
    due_date: Optional[datetime]
    decided_at: Optional[datetime] = None
    amount: Optional[Decimal] = None
    days_count: Optional[int] = None
    priority: int = 3
    description: str = ""
    history: List[ApprovalHistoryItem] = field(default_factory=list)


@dataclass
class PendingApprovalSummary:
    """Row of an approver's inbox"""
    request_id: str
    approval_type: ApprovalType
    entity_id: str
    entity_type: str
    entity_description: str
    requestor_id: str
    requestor_name: str
    current_level: int
    total_levels: int
    submitted_at: Optional[datetime]
    due_date: Optional[datetime]
    days_waiting: int
    is_overdue: bool
    priority: int
    amount: Optional[Decimal] = None


@dataclass
class Page(Generic[T]):
    """One page of a read-only projection"""
    items: List[T]
    page: int
    size: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.size else 0


@dataclass
class BulkApprovalResult:
    """Per-request outcome of a bulk approval"""
    request_id: str
    success: bool
    status: Optional[ApprovalStatus] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class ApprovalRequestCoordinator(EventPublisherMixin):
    """Orchestrates submission, decisions, withdrawal and escalation of approval requests"""

    ENTITY_TYPE = "approval_request"
    LOCK_STRIPES = 64

    def __init__(
        self,
        storage: StorageInterface,
        state_manager: WorkflowStateManager,
        chain_resolver: ApprovalChainResolver,
        deadline_monitor: DeadlineMonitor,
        directory: Directory,
        notifications: NotificationOrchestrator,
        status_updaters: Optional[EntityStatusUpdaterRegistry] = None,
        audit_manager: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        config: Optional[HRWorkflowConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.state_manager = state_manager
        self.chain_resolver = chain_resolver
        self.deadline_monitor = deadline_monitor
        self.directory = directory
        self.notifications = notifications
        self.status_updaters = status_updaters or EntityStatusUpdaterRegistry()
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.config = config or HRWorkflowConfig()
        self.event_dispatcher = event_dispatcher
        self.table = "approval_requests"

        # Fixed lock stripes; ids that share a stripe only serialize each other
        self._request_locks: List[RLock] = [RLock() for _ in range(self.LOCK_STRIPES)]
        self._submission_locks: List[Lock] = [Lock() for _ in range(self.LOCK_STRIPES)]

    # Submission

    def submit_for_approval(
        self,
        approval_type: ApprovalType,
        entity_id: str,
        entity_type: str,
        requestor_id: str,
        amount: Optional[Decimal] = None,
        days_count: Optional[int] = None,
        priority: Optional[int] = None,
        description: str = ""
    ) -> ApprovalWorkflowResponse:
        """
        Open an approval request for a business entity.

        Resolves the chain, creates and starts the tracking workflow, assigns
        the level 1 approver, registers the decision deadline and notifies
        the approver. Nothing is written when no approver can be found.
        """
        if not self.directory.actor_exists(requestor_id):
            raise NotFoundError(f"Requestor {requestor_id} not found", requestor_id)

        priority = self.config.default_priority if priority is None else priority
        if not self.config.min_priority <= priority <= self.config.max_priority:
            raise ValueError(
                f"Priority must be between {self.config.min_priority} and {self.config.max_priority}")
        if amount is not None:
            amount = Decimal(str(amount))
            if amount < 0:
                raise ValueError("Amount cannot be negative")
        if days_count is not None and days_count < 0:
            raise ValueError("Days count cannot be negative")

        with self._submission_lock(entity_id, approval_type):
            existing = self._find_open_request(entity_id, approval_type)
            if existing:
                raise AlreadyPendingError(
                    f"{approval_type.label} for {entity_type} {entity_id} is already pending "
                    f"(request {existing.id})", existing.id)

            department_id = self.directory.get_department(requestor_id)
            chain = self.chain_resolver.resolve(approval_type, amount, department_id)
            if not chain:
                logger.info(f"No approval chain configured for {approval_type.value}; using direct manager")
                chain = ApprovalChainResolver.default_chain(approval_type, self.clock.now())

            approver_id = self._resolve_level_approver(chain[0], requestor_id, entity_id)

            now = self.clock.now()
            due_date = now + timedelta(days=self.config.default_approval_days)
            context = {
                "approvalType": approval_type.value,
                "entityId": entity_id,
                "entityType": entity_type,
                "requestorId": requestor_id,
                "totalLevels": len(chain),
                "currentLevel": 1,
                "priority": priority,
                "description": description,
            }
            if amount is not None:
                context["amount"] = amount
            if days_count is not None:
                context["daysCount"] = days_count

            workflow = self.state_manager.create_workflow(
                approval_type.workflow_type, entity_id, entity_type, context, requestor_id, priority
            )
            self.state_manager.start_workflow(workflow.id)
            self.state_manager.transition_state(workflow.id, pending_level_state(1), "Submitted for approval")
            self.state_manager.assign_workflow(workflow.id, approver_id)
            self.state_manager.update_due_date(workflow.id, due_date)

            deadline = self.deadline_monitor.register_deadline(
                workflow.id,
                self.config.approval_deadline_type,
                self._deadline_description(approval_type, 1, description),
                due_date,
                self.config.approval_warning_hours,
                approver_id
            )

            request = ApprovalRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                workflow_id=workflow.id,
                approval_type=approval_type,
                entity_id=entity_id,
                entity_type=entity_type,
                requestor=requestor_id,
                approver=approver_id,
                current_level=1,
                total_levels=len(chain),
                chain=[rule.to_dict() for rule in chain],
                amount=amount,
                days_count=days_count,
                priority=priority,
                description=description,
                submitted_at=now,
                due_date=due_date,
                deadline_id=deadline.id
            )
            self._save(request)
            self.state_manager.update_context(workflow.id, "approvalRequestId", request.id)

        self.audit.log_event(
            AuditEventType.APPROVAL_SUBMITTED,
            self.ENTITY_TYPE,
            request.id,
            {
                'approval_type': approval_type.value,
                'entity_id': entity_id,
                'workflow_id': workflow.id,
                'total_levels': request.total_levels,
                'approver': approver_id,
                'amount': amount
            },
            requestor_id
        )
        log_action(logger, "info", f"{approval_type.label} {entity_id} submitted for approval",
                   user_id=requestor_id, action="submit_for_approval", resource=request.id,
                   extra={'approver': approver_id, 'total_levels': request.total_levels})

        self.notifications.notify_approval_required(
            approver_id, requestor_id, approval_type, request.id, amount, days_count
        )
        self.publish_event(WorkflowEvent.APPROVAL_SUBMITTED, self.ENTITY_TYPE, request.id,
                           {'workflow_id': workflow.id, 'approver': approver_id,
                            'approval_type': approval_type.value}, now)
        return self._to_response(request)

    def submit_leave_request(self, leave_request_id: str, employee_id: str, days_count: int,
                             leave_type: str = "ANNUAL", start_date: Optional[date] = None,
                             end_date: Optional[date] = None,
                             priority: Optional[int] = None) -> ApprovalWorkflowResponse:
        description = f"Leave request: {leave_type}"
        if start_date and end_date:
            description += f" from {start_date.isoformat()} to {end_date.isoformat()}"
        return self.submit_for_approval(
            ApprovalType.LEAVE_REQUEST, leave_request_id, "LeaveRequest", employee_id,
            days_count=days_count, priority=priority, description=description
        )

    def submit_expense_claim(self, expense_claim_id: str, employee_id: str, amount: Decimal,
                             description: str = "",
                             priority: Optional[int] = None) -> ApprovalWorkflowResponse:
        amount = Decimal(str(amount))
        return self.submit_for_approval(
            ApprovalType.EXPENSE_CLAIM, expense_claim_id, "ExpenseClaim", employee_id,
            amount=amount, priority=priority,
            description=f"Expense claim: {description} - Amount: {amount}"
        )

    def submit_overtime_request(self, overtime_record_id: str, employee_id: str, hours: Decimal,
                                work_date: Optional[date] = None,
                                priority: Optional[int] = None) -> ApprovalWorkflowResponse:
        # Overtime hours drive the amount thresholds of the overtime chain
        hours = Decimal(str(hours))
        description = f"Overtime request: {hours} hours"
        if work_date:
            description += f" on {work_date.isoformat()}"
        return self.submit_for_approval(
            ApprovalType.OVERTIME_REQUEST, overtime_record_id, "OvertimeRecord", employee_id,
            amount=hours, priority=priority, description=description
        )

    # Decisions

    def process_approval_decision(self, request_id: str, decision: ApprovalDecision,
                                  comments: Optional[str] = None,
                                  decided_by: Optional[str] = None) -> ApprovalWorkflowResponse:
        """Apply an approver's decision to the request at its current level"""
        with self._request_lock(request_id):
            request = self._require(request_id)
            if request.status != ApprovalStatus.PENDING_APPROVAL:
                raise AlreadyProcessedError(
                    f"Approval request {request_id} is {request.status.value}, not pending approval", request_id)
            if decision == ApprovalDecision.DELEGATE:
                raise InvalidTransitionError(
                    f"Delegation is not supported for approval request {request_id}", request_id)

            decided_by = decided_by or request.approver
            if decision == ApprovalDecision.APPROVE and request.current_level < request.total_levels:
                self._advance_level(request, comments, decided_by)
            elif decision in (ApprovalDecision.APPROVE, ApprovalDecision.REJECT):
                self._finalize(request, decision == ApprovalDecision.APPROVE, comments, decided_by)
            else:
                self._put_on_hold(request, comments, decided_by)

            log_action(logger, "info", f"Decision {decision.value} on approval request {request_id}",
                       user_id=decided_by, action=f"approval_{decision.value}", resource=request_id,
                       extra={'level': request.current_level, 'status': request.status.value})
            return self._to_response(request)

    def bulk_approve(self, request_ids: List[str], comments: Optional[str] = None,
                     decided_by: Optional[str] = None) -> List[BulkApprovalResult]:
        """Approve each request independently; one failure never stops the batch"""
        results = []
        for request_id in request_ids:
            try:
                response = self.process_approval_decision(
                    request_id, ApprovalDecision.APPROVE, comments, decided_by)
                results.append(BulkApprovalResult(request_id, True, status=response.status))
            except WorkflowError as e:
                results.append(BulkApprovalResult(request_id, False, error_kind=e.kind, error_message=e.message))
            except Exception as e:
                logger.exception(f"Bulk approval failed for request {request_id}")
                results.append(BulkApprovalResult(request_id, False, error_kind=type(e).__name__,
                                                  error_message=str(e)))

        approved = sum(1 for r in results if r.success)
        logger.info(f"Bulk approval processed {len(results)} requests, {approved} succeeded")
        return results

    def withdraw_approval_request(self, request_id: str, reason: Optional[str] = None,
                                  withdrawn_by: Optional[str] = None) -> ApprovalWorkflowResponse:
        """Requestor pulls back a request that is still waiting on an approver"""
        with self._request_lock(request_id):
            request = self._require(request_id)
            if request.status != ApprovalStatus.PENDING_APPROVAL:
                raise InvalidTransitionError(
                    f"Approval request {request_id} cannot be withdrawn from {request.status.value}",
                    request_id)

            now = self.clock.now()
            request.status = ApprovalStatus.CANCELLED
            request.approver_comments = f"Withdrawn: {reason}" if reason else "Withdrawn"
            request.decided_at = now
            request.updated_at = now
            self._save(request)

            self._complete_deadline(request)
            self.state_manager.cancel_workflow(request.workflow_id, reason or "Withdrawn by requestor")

        self.audit.log_event(
            AuditEventType.APPROVAL_WITHDRAWN,
            self.ENTITY_TYPE,
            request_id,
            {'reason': reason, 'level': request.current_level},
            withdrawn_by or request.requestor
        )
        self.notifications.notify_withdrawal(request.approver, request.requestor, request_id, reason)
        self.publish_event(WorkflowEvent.APPROVAL_WITHDRAWN, self.ENTITY_TYPE, request_id,
                           {'workflow_id': request.workflow_id, 'reason': reason}, now)
        return self._to_response(request)

    def withdraw_open_requests(self, requestor_id: str, reason: Optional[str] = None,
                               withdrawn_by: Optional[str] = None) -> List[ApprovalWorkflowResponse]:
        """Withdraw every request the actor still has waiting on an approver"""
        withdrawn = []
        pending = self.storage.find(self.table, {
            'requestor': requestor_id, 'status': ApprovalStatus.PENDING_APPROVAL.value
        })
        for data in pending:
            try:
                withdrawn.append(self.withdraw_approval_request(data['id'], reason, withdrawn_by))
            except InvalidTransitionError:
                # Decided between the lookup and the withdrawal
                logger.info(f"Approval request {data['id']} was decided before it could be withdrawn")
        if withdrawn:
            logger.info(f"Withdrew {len(withdrawn)} open approval requests of {requestor_id}")
        return withdrawn

    def resume_approval_request(self, request_id: str, comments: Optional[str] = None,
                                resumed_by: Optional[str] = None) -> ApprovalWorkflowResponse:
        """
        Put an on-hold request back in front of its approver.

        The requestor calls this once the missing information is supplied.
        The level, approver and deadline are unchanged; the approver can then
        decide again.
        """
        with self._request_lock(request_id):
            request = self._require(request_id)
            if request.status != ApprovalStatus.ON_HOLD:
                raise InvalidTransitionError(
                    f"Approval request {request_id} cannot be resumed from {request.status.value}",
                    request_id)

            now = self.clock.now()
            request.status = ApprovalStatus.PENDING_APPROVAL
            request.updated_at = now
            self._save(request)

            note = f"Information provided: {comments}" if comments else "Information provided"
            self.state_manager.transition_state(
                request.workflow_id, pending_level_state(request.current_level), note, resumed_by)

        self.audit.log_event(
            AuditEventType.APPROVAL_RESUMED,
            self.ENTITY_TYPE,
            request_id,
            {'level': request.current_level, 'comments': comments},
            resumed_by or request.requestor
        )
        self.notifications.notify_approval_required(
            request.approver, request.requestor, request.approval_type, request_id,
            request.amount, request.days_count
        )
        self.publish_event(WorkflowEvent.APPROVAL_RESUMED, self.ENTITY_TYPE, request_id,
                           {'workflow_id': request.workflow_id, 'level': request.current_level}, now)
        return self._to_response(request)

    def escalate_to_next_approver(self, request_id: str,
                                  escalated_by: Optional[str] = None) -> ApprovalWorkflowResponse:
        """Hand the current level to the approver's manager; the level does not change"""
        with self._request_lock(request_id):
            request = self._require(request_id)
            if request.status.is_terminal:
                raise AlreadyProcessedError(
                    f"Approval request {request_id} is already {request.status.value}", request_id)

            previous_approver = request.approver
            new_approver = self.directory.get_manager(previous_approver)
            if not new_approver:
                raise NoEscalationTargetError(
                    f"Approver {previous_approver} has no manager to escalate request {request_id} to",
                    request_id)

            now = self.clock.now()
            request.approver = new_approver
            request.updated_at = now
            self._save(request)

            self.state_manager.update_status(
                request.workflow_id, WorkflowStatus.ESCALATED,
                f"Escalated from {previous_approver} to {new_approver}")
            self.state_manager.assign_workflow(request.workflow_id, new_approver)
            if request.deadline_id:
                deadline = self.deadline_monitor.get_deadline(request.deadline_id)
                if deadline and not deadline.completed:
                    self.deadline_monitor.reassign_deadline(request.deadline_id, new_approver)

        self.audit.log_event(
            AuditEventType.APPROVAL_ESCALATED,
            self.ENTITY_TYPE,
            request_id,
            {'from_approver': previous_approver, 'to_approver': new_approver, 'level': request.current_level},
            escalated_by
        )
        log_action(logger, "info", f"Approval request {request_id} escalated to {new_approver}",
                   user_id=escalated_by, action="escalate_approval", resource=request_id)
        self.notifications.notify_approval_escalated(new_approver, previous_approver,
                                                     request.approval_type, request_id)
        self.publish_event(WorkflowEvent.APPROVAL_ESCALATED, self.ENTITY_TYPE, request_id,
                           {'from_approver': previous_approver, 'to_approver': new_approver}, now)
        return self._to_response(request)

    # Queries

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        data = self.storage.load(self.table, request_id)
        return ApprovalRequest.from_dict(data) if data else None

    def get_approval_status(self, request_id: str) -> ApprovalWorkflowResponse:
        return self._to_response(self._require(request_id))

    def get_pending_approvals_for_approver(self, approver_id: str, page: int = 0,
                                           size: Optional[int] = None) -> Page[PendingApprovalSummary]:
        """Requests waiting on the approver, oldest first"""
        requests = self._pending_for(approver_id)
        requests.sort(key=lambda r: (r.submitted_at, r.id))
        size = self._page_size(size)
        now = self.clock.now()
        items = [self._to_summary(r, now) for r in requests[page * size:(page + 1) * size]]
        return Page(items=items, page=page, size=size, total=len(requests))

    def count_pending_approvals(self, approver_id: str) -> int:
        return len(self._pending_for(approver_id))

    def get_approvals_by_requestor(self, requestor_id: str, page: int = 0,
                                   size: Optional[int] = None) -> Page[ApprovalWorkflowResponse]:
        """Everything the actor has submitted, newest first"""
        requests = [ApprovalRequest.from_dict(d) for d in self.storage.find(self.table, {'requestor': requestor_id})]
        requests.sort(key=lambda r: (r.submitted_at, r.id), reverse=True)
        size = self._page_size(size)
        items = [self._to_response(r) for r in requests[page * size:(page + 1) * size]]
        return Page(items=items, page=page, size=size, total=len(requests))

    def get_overdue_approvals(self) -> List[PendingApprovalSummary]:
        """Open requests past their due date, most overdue first"""
        now = self.clock.now()
        overdue = [
            ApprovalRequest.from_dict(d) for d in self.storage.load_all(self.table)
            if not ApprovalStatus(d['status']).is_terminal
        ]
        overdue = [r for r in overdue if r.due_date is not None and r.due_date < now]
        overdue.sort(key=lambda r: r.due_date)
        return [self._to_summary(r, now) for r in overdue]

    # Decision helpers

    def _advance_level(self, request: ApprovalRequest, comments: Optional[str], decided_by: str) -> None:
        next_level = request.current_level + 1
        # The snapshot taken at submission decides the chain, never the live configuration
        next_approver = self._resolve_level_approver(request.chain_rule(next_level), request.requestor, request.id)

        now = self.clock.now()
        due_date = now + timedelta(days=self.config.default_approval_days)
        previous_level = request.current_level
        previous_deadline_id = request.deadline_id

        request.current_level = next_level
        request.approver = next_approver
        request.status = ApprovalStatus.PENDING_APPROVAL
        request.approver_comments = comments
        request.last_decision = ApprovalDecision.APPROVE.value
        request.decided_by = decided_by
        request.due_date = due_date
        request.updated_at = now
        self._save(request)

        if previous_deadline_id:
            self.deadline_monitor.complete_deadline(previous_deadline_id)
        self.state_manager.transition_state(
            request.workflow_id, pending_level_state(next_level),
            f"Level {previous_level} approved by {decided_by}", decided_by)
        self.state_manager.assign_workflow(request.workflow_id, next_approver)
        self.state_manager.update_context(request.workflow_id, "currentLevel", next_level)
        self.state_manager.update_due_date(request.workflow_id, due_date)
        deadline = self.deadline_monitor.register_deadline(
            request.workflow_id,
            self.config.approval_deadline_type,
            self._deadline_description(request.approval_type, next_level, request.description),
            due_date,
            self.config.approval_warning_hours,
            next_approver
        )
        request.deadline_id = deadline.id
        self._save(request)

        self.audit.log_event(
            AuditEventType.APPROVAL_LEVEL_ADVANCED,
            self.ENTITY_TYPE,
            request.id,
            {'from_level': previous_level, 'to_level': next_level, 'approver': next_approver,
             'comments': comments},
            decided_by
        )
        self.notifications.notify_approval_required(
            next_approver, request.requestor, request.approval_type, request.id,
            request.amount, request.days_count
        )
        self.publish_event(WorkflowEvent.APPROVAL_LEVEL_ADVANCED, self.ENTITY_TYPE, request.id,
                           {'level': next_level, 'approver': next_approver}, now)

    def _finalize(self, request: ApprovalRequest, approved: bool, comments: Optional[str],
                  decided_by: str) -> None:
        # The entity hook runs first so a failing hook leaves the request untouched
        self.status_updaters.apply(request.approval_type, request.entity_id, approved, comments)

        now = self.clock.now()
        request.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        request.approver_comments = comments
        request.last_decision = (ApprovalDecision.APPROVE if approved else ApprovalDecision.REJECT).value
        request.decided_by = decided_by
        request.decided_at = now
        request.updated_at = now
        self._save(request)

        self._complete_deadline(request)
        self.state_manager.complete_workflow(request.workflow_id, OUTCOME_APPROVED if approved else OUTCOME_REJECTED)

        self.audit.log_event(
            AuditEventType.APPROVAL_DECIDED,
            self.ENTITY_TYPE,
            request.id,
            {'decision': request.last_decision, 'level': request.current_level, 'comments': comments},
            decided_by
        )
        self.notifications.notify_approval_decision(request.requestor, request.id, approved, comments)
        event_type = WorkflowEvent.APPROVAL_APPROVED if approved else WorkflowEvent.APPROVAL_REJECTED
        self.publish_event(event_type, self.ENTITY_TYPE, request.id,
                           {'workflow_id': request.workflow_id, 'entity_id': request.entity_id,
                            'level': request.current_level}, now)

    def _put_on_hold(self, request: ApprovalRequest, comments: Optional[str], decided_by: str) -> None:
        now = self.clock.now()
        request.status = ApprovalStatus.ON_HOLD
        request.approver_comments = f"More information requested: {comments}" if comments else "More information requested"
        request.last_decision = ApprovalDecision.REQUEST_MORE_INFO.value
        request.decided_by = decided_by
        request.updated_at = now
        self._save(request)

        self.state_manager.transition_state(request.workflow_id, "ON_HOLD", request.approver_comments, decided_by)

        self.audit.log_event(
            AuditEventType.APPROVAL_ON_HOLD,
            self.ENTITY_TYPE,
            request.id,
            {'level': request.current_level, 'comments': comments},
            decided_by
        )
        self.notifications.notify_more_info_required(request.requestor, request.id, comments)
        self.publish_event(WorkflowEvent.APPROVAL_ON_HOLD, self.ENTITY_TYPE, request.id,
                           {'level': request.current_level}, now)

    # Private helpers

    def _resolve_level_approver(self, rule: ApprovalChainConfig, requestor_id: str,
                                entity_id: Optional[str]) -> str:
        """Approver for a chain level, falling back to the requestor's manager"""
        resolution = self.chain_resolver.resolve_approver(rule, requestor_id)
        if resolution.actor_id:
            return resolution.actor_id

        manager_id = self.directory.get_manager(requestor_id)
        if manager_id:
            logger.warning(
                f"Level {rule.sequence_order} rule {rule.approver_type.value} found no approver; "
                f"falling back to manager {manager_id}")
            return manager_id

        if resolution.misconfigured:
            raise MisconfiguredApproverError(
                f"Approval chain rule {rule.id} names approver {rule.specific_approver_id}, "
                f"who does not exist", entity_id)
        raise NoApproverFoundError(
            f"No approver found for level {rule.sequence_order} ({rule.approver_type.value}) "
            f"of requestor {requestor_id}", entity_id)

    def _complete_deadline(self, request: ApprovalRequest) -> None:
        if request.deadline_id:
            self.deadline_monitor.complete_deadline(request.deadline_id)

    def _deadline_description(self, approval_type: ApprovalType, level: int, description: str) -> str:
        text = f"{approval_type.label} approval (level {level})"
        return f"{text}: {description}" if description else text

    def _find_open_request(self, entity_id: str, approval_type: ApprovalType) -> Optional[ApprovalRequest]:
        for data in self.storage.find(self.table, {'entity_id': entity_id, 'approval_type': approval_type.value}):
            if not ApprovalStatus(data['status']).is_terminal:
                return ApprovalRequest.from_dict(data)
        return None

    def _pending_for(self, approver_id: str) -> List[ApprovalRequest]:
        return [
            ApprovalRequest.from_dict(d)
            for d in self.storage.find(self.table, {
                'approver': approver_id, 'status': ApprovalStatus.PENDING_APPROVAL.value
            })
        ]

    def _page_size(self, size: Optional[int]) -> int:
        size = size or self.config.default_page_size
        return max(1, min(size, self.config.max_page_size))

    def _require(self, request_id: str) -> ApprovalRequest:
        request = self.get_request(request_id)
        if not request:
            raise NotFoundError(f"Approval request {request_id} not found", request_id)
        return request

    def _save(self, request: ApprovalRequest) -> None:
        expected_version = request.version
        request.version = expected_version + 1
        if not self.storage.compare_and_save(self.table, request.id, request.to_dict(), expected_version):
            request.version = expected_version
            raise ConcurrentModificationError(
                f"Approval request {request.id} was modified concurrently", request.id)

    def _request_lock(self, request_id: str) -> RLock:
        return self._request_locks[hash(request_id) % self.LOCK_STRIPES]

    def _submission_lock(self, entity_id: str, approval_type: ApprovalType) -> Lock:
        return self._submission_locks[hash((entity_id, approval_type.value)) % self.LOCK_STRIPES]

    def _to_response(self, request: ApprovalRequest) -> ApprovalWorkflowResponse:
        history = []
        if request.last_decision or request.status == ApprovalStatus.CANCELLED:
            history.append(ApprovalHistoryItem(
                level=request.current_level,
                approver_id=request.decided_by,
                approver_name=self.directory.get_display_name(request.decided_by) if request.decided_by else None,
                decision=request.last_decision or "withdrawn",
                comments=request.approver_comments,
                decided_at=request.decided_at or request.updated_at
            ))
        return ApprovalWorkflowResponse(
            request_id=request.id,
            workflow_id=request.workflow_id,
            approval_type=request.approval_type,
            entity_id=request.entity_id,
            entity_type=request.entity_type,
            status=request.status,
            current_level=request.current_level,
            total_levels=request.total_levels,
            requestor_id=request.requestor,
            requestor_name=self.directory.get_display_name(request.requestor),
            current_approver_id=request.approver,
            current_approver_name=self.directory.get_display_name(request.approver),
            submitted_at=request.submitted_at,
            due_date=request.due_date,
            decided_at=request.decided_at,
            amount=request.amount,
            days_count=request.days_count,
            priority=request.priority,
            description=request.description,
            history=history
        )

    def _to_summary(self, request: ApprovalRequest, now: datetime) -> PendingApprovalSummary:
        return PendingApprovalSummary(
            request_id=request.id,
            approval_type=request.approval_type,
            entity_id=request.entity_id,
            entity_type=request.entity_type,
            entity_description=request.description or f"{request.approval_type.label} {request.entity_id}",
            requestor_id=request.requestor,
            requestor_name=self.directory.get_display_name(request.requestor),
            current_level=request.current_level,
            total_levels=request.total_levels,
            submitted_at=request.submitted_at,
            due_date=request.due_date,
            days_waiting=(now - request.submitted_at).days if request.submitted_at else 0,
            is_overdue=request.due_date is not None and request.due_date < now,
            priority=request.priority,
            amount=request.amount
        )
