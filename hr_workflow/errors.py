"""
Workflow Error Module

Error taxonomy raised by the approval and deadline engine. Every error
carries a machine-readable kind and the id of the offending entity so
callers can decide whether to retry, escalate or surface to a human.
"""

from typing import Optional


class WorkflowError(ValueError):
    """Base class for all workflow engine failures"""
    
    kind = "WORKFLOW_ERROR"
    
    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
    
    def to_dict(self):
        return {
            "kind": self.kind,
            "entity_id": self.entity_id,
            "message": self.message
        }


class NotFoundError(WorkflowError):
    """Referenced workflow, request, deadline or actor does not exist"""
    kind = "NOT_FOUND"


class AlreadyPendingError(WorkflowError):
    """A non-terminal approval request already exists for the entity and type"""
    kind = "ALREADY_PENDING"


class InvalidTransitionError(WorkflowError):
    """Mutation of a terminal record or an unsupported transition"""
    kind = "INVALID_TRANSITION"


class AlreadyProcessedError(InvalidTransitionError):
    """Decision submitted against a request that is no longer awaiting one"""
    kind = "ALREADY_PROCESSED"


class NoApproverFoundError(WorkflowError):
    """Chain resolution produced no actor for a level"""
    kind = "NO_APPROVER_FOUND"


class MisconfiguredApproverError(NoApproverFoundError):
    """A chain rule names a specific approver that does not exist"""
    kind = "MISCONFIGURED_APPROVER"


class NoEscalationTargetError(WorkflowError):
    """The current approver has no manager to escalate to"""
    kind = "NO_ESCALATION_TARGET"


class ConcurrentModificationError(WorkflowError):
    """A record was changed by another writer between read and write"""
    kind = "CONCURRENT_MODIFICATION"


class InvalidContextValueError(WorkflowError):
    """A workflow context value does not match its registered type"""
    kind = "INVALID_CONTEXT_VALUE"
