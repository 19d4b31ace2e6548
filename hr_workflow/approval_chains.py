"""
Approval Chain Module

Declarative approval chains: ordered rules saying who must approve each
level of a request, scoped by approval type, optional amount threshold
and optional department. The resolver picks the chain that applies to a
request and turns each rule into a concrete approver via the directory.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .directory import Directory
from .errors import NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal
from .workflows import WorkflowType

logger = logging.getLogger("hr_workflow.approval_chains")


class ApprovalType(Enum):
    """Kinds of HR requests that go through approval"""
    LEAVE_REQUEST = "leave_request"
    EXPENSE_CLAIM = "expense_claim"
    OVERTIME_REQUEST = "overtime_request"
    TRAINING_REQUEST = "training_request"
    POSITION_TRANSFER = "position_transfer"
    SALARY_ADJUSTMENT = "salary_adjustment"
    TIMESHEET_APPROVAL = "timesheet_approval"

    @property
    def label(self) -> str:
        return _APPROVAL_LABELS[self]

    @property
    def workflow_type(self) -> WorkflowType:
        return _APPROVAL_WORKFLOW_TYPES[self]


_APPROVAL_LABELS = {
    ApprovalType.LEAVE_REQUEST: "Leave Request",
    ApprovalType.EXPENSE_CLAIM: "Expense Claim",
    ApprovalType.OVERTIME_REQUEST: "Overtime Request",
    ApprovalType.TRAINING_REQUEST: "Training Request",
    ApprovalType.POSITION_TRANSFER: "Position Transfer",
    ApprovalType.SALARY_ADJUSTMENT: "Salary Adjustment",
    ApprovalType.TIMESHEET_APPROVAL: "Timesheet",
}

_APPROVAL_WORKFLOW_TYPES = {
    ApprovalType.LEAVE_REQUEST: WorkflowType.LEAVE_APPROVAL,
    ApprovalType.EXPENSE_CLAIM: WorkflowType.EXPENSE_APPROVAL,
    ApprovalType.OVERTIME_REQUEST: WorkflowType.OVERTIME_APPROVAL,
    ApprovalType.TRAINING_REQUEST: WorkflowType.TRAINING_ENROLLMENT,
    ApprovalType.POSITION_TRANSFER: WorkflowType.TRANSFER,
    ApprovalType.SALARY_ADJUSTMENT: WorkflowType.SALARY_ADJUSTMENT,
    ApprovalType.TIMESHEET_APPROVAL: WorkflowType.TIMESHEET_APPROVAL,
}


class ApproverType(Enum):
    """How the approver of a chain level is found"""
    DIRECT_MANAGER = "direct_manager"
    DEPARTMENT_HEAD = "department_head"
    SPECIFIC_EMPLOYEE = "specific_employee"
    HR = "hr"
    FINANCE = "finance"
    EXECUTIVE = "executive"


# No role directory exists yet; these resolve to the requestor's manager
ROLE_APPROVER_TYPES = {ApproverType.HR, ApproverType.FINANCE, ApproverType.EXECUTIVE}


@dataclass
class ApprovalChainConfig(StorageRecord):
    """One level of an approval chain"""
    approval_type: ApprovalType
    sequence_order: int
    approver_type: ApproverType
    amount_threshold: Optional[Decimal] = None
    department_id: Optional[str] = None
    specific_approver_id: Optional[str] = None
    description: str = ""
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalChainConfig':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['approval_type'] = ApprovalType(data['approval_type'])
        data['approver_type'] = ApproverType(data['approver_type'])
        data['amount_threshold'] = parse_decimal(data.get('amount_threshold'))
        return cls(**data)


@dataclass
class ApproverResolution:
    """Outcome of applying one chain rule to a requestor"""
    actor_id: Optional[str]
    approver_type: ApproverType
    role_fallback: bool = False  # HR/FINANCE/EXECUTIVE answered by the manager
    department_head_fallback: bool = False  # Department had no head, manager used
    misconfigured: bool = False  # SPECIFIC_EMPLOYEE rule names a missing actor


class ApprovalChainRepository:
    """Stores and lists approval chain rules"""

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.audit = audit_manager
        self.clock = clock or SystemClock()
        self.table = "approval_chain_configs"

    def add_rule(
        self,
        approval_type: ApprovalType,
        sequence_order: int,
        approver_type: ApproverType,
        amount_threshold: Optional[Decimal] = None,
        department_id: Optional[str] = None,
        specific_approver_id: Optional[str] = None,
        description: str = "",
        active: bool = True
    ) -> ApprovalChainConfig:
        """Add a rule to the chain for its type and scope"""
        if sequence_order < 1:
            raise ValueError("Sequence order must be 1 or greater")
        if amount_threshold is not None:
            amount_threshold = Decimal(str(amount_threshold))
            if amount_threshold < 0:
                raise ValueError("Amount threshold cannot be negative")
        if approver_type == ApproverType.SPECIFIC_EMPLOYEE and not specific_approver_id:
            raise ValueError("Specific employee rules require specific_approver_id")

        now = self.clock.now()
        rule = ApprovalChainConfig(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            approval_type=approval_type,
            sequence_order=sequence_order,
            approver_type=approver_type,
            amount_threshold=amount_threshold,
            department_id=department_id,
            specific_approver_id=specific_approver_id,
            description=description,
            active=active
        )
        self.storage.save(self.table, rule.id, rule.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.CHAIN_RULE_CREATED,
                "approval_chain_config",
                rule.id,
                {
                    'approval_type': approval_type.value,
                    'sequence_order': sequence_order,
                    'approver_type': approver_type.value,
                    'amount_threshold': amount_threshold,
                    'department_id': department_id
                }
            )
        return rule

    def get_rule(self, rule_id: str) -> Optional[ApprovalChainConfig]:
        data = self.storage.load(self.table, rule_id)
        return ApprovalChainConfig.from_dict(data) if data else None

    def deactivate_rule(self, rule_id: str) -> ApprovalChainConfig:
        rule = self.get_rule(rule_id)
        if not rule:
            raise NotFoundError(f"Approval chain rule {rule_id} not found", rule_id)
        rule.active = False
        rule.updated_at = self.clock.now()
        self.storage.save(self.table, rule.id, rule.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.CHAIN_RULE_DEACTIVATED,
                "approval_chain_config",
                rule.id,
                {'approval_type': rule.approval_type.value}
            )
        return rule

    def list_rules(self, approval_type: Optional[ApprovalType] = None,
                   active_only: bool = True) -> List[ApprovalChainConfig]:
        filters: Dict[str, Any] = {}
        if approval_type:
            filters['approval_type'] = approval_type.value
        if active_only:
            filters['active'] = True
        rules = [ApprovalChainConfig.from_dict(data) for data in self.storage.find(self.table, filters)]
        rules.sort(key=lambda r: (r.sequence_order, r.created_at))
        return rules


class ApprovalChainResolver:
    """Selects the chain for a request and resolves approvers per level"""

    def __init__(self, repository: ApprovalChainRepository, directory: Directory):
        self.repository = repository
        self.directory = directory

    def resolve(self, approval_type: ApprovalType, amount: Optional[Decimal] = None,
                department_id: Optional[str] = None) -> List[ApprovalChainConfig]:
        """
        Chain for a request, ordered by sequence_order.

        Amount-threshold chains win over department chains, which win over
        the global chain. An empty list means nothing is configured and the
        caller should use default_chain().
        """
        rules = self.repository.list_rules(approval_type, active_only=True)

        if amount is not None:
            amount = Decimal(str(amount))
            candidates = [
                r for r in rules
                if r.amount_threshold is not None
                and r.amount_threshold <= amount
                and (r.department_id is None or r.department_id == department_id)
            ]
            if candidates:
                threshold = max(r.amount_threshold for r in candidates)
                at_threshold = [r for r in candidates if r.amount_threshold == threshold]
                scoped = [r for r in at_threshold if department_id and r.department_id == department_id]
                chain = scoped or [r for r in at_threshold if r.department_id is None]
                return self._ordered(chain)

        if department_id:
            chain = [r for r in rules if r.amount_threshold is None and r.department_id == department_id]
            if chain:
                return self._ordered(chain)

        chain = [r for r in rules if r.amount_threshold is None and r.department_id is None]
        return self._ordered(chain)

    def _ordered(self, chain: List[ApprovalChainConfig]) -> List[ApprovalChainConfig]:
        return sorted(chain, key=lambda r: r.sequence_order)

    @staticmethod
    def default_chain(approval_type: ApprovalType, now: Optional[datetime] = None) -> List[ApprovalChainConfig]:
        """Single synthetic DIRECT_MANAGER level used when no chain is configured"""
        now = now or SystemClock().now()
        return [ApprovalChainConfig(
            id=f"default-{approval_type.value}",
            created_at=now,
            updated_at=now,
            approval_type=approval_type,
            sequence_order=1,
            approver_type=ApproverType.DIRECT_MANAGER,
            description="Default direct manager approval"
        )]

    def resolve_approver(self, rule: ApprovalChainConfig, requestor_id: str) -> ApproverResolution:
        """Apply one rule to the requestor"""
        approver_type = rule.approver_type

        if approver_type == ApproverType.DIRECT_MANAGER:
            return ApproverResolution(self.directory.get_manager(requestor_id), approver_type)

        if approver_type == ApproverType.DEPARTMENT_HEAD:
            department_id = self.directory.get_department(requestor_id)
            head = self.directory.get_department_head(department_id) if department_id else None
            if head:
                return ApproverResolution(head, approver_type)
            return ApproverResolution(self.directory.get_manager(requestor_id), approver_type,
                                      department_head_fallback=True)

        if approver_type == ApproverType.SPECIFIC_EMPLOYEE:
            approver_id = rule.specific_approver_id
            if approver_id and self.directory.actor_exists(approver_id):
                return ApproverResolution(approver_id, approver_type)
            logger.warning(f"Chain rule {rule.id} names missing approver {approver_id}")
            return ApproverResolution(None, approver_type, misconfigured=True)

        # HR, FINANCE, EXECUTIVE
        logger.warning(f"No role directory for {approver_type.value} approvers; using manager of {requestor_id}")
        return ApproverResolution(self.directory.get_manager(requestor_id), approver_type, role_fallback=True)

    def determine_approver(self, rule: ApprovalChainConfig, requestor_id: str) -> Optional[str]:
        return self.resolve_approver(rule, requestor_id).actor_id
