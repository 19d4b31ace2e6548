"""
Entity Status Module

Hooks that flip the business entity's own status (leave request, expense
claim, ...) once its approval is final. The engine calls exactly one of
on_approved / on_rejected per finished request; the implementations live
with the owning HR modules and are registered per approval type.
"""

from abc import ABC, abstractmethod
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple
import logging

from .approval_chains import ApprovalType

logger = logging.getLogger("hr_workflow.entity_status")


class EntityStatusUpdater(ABC):
    """Applies a final approval outcome to the business entity"""
    
    @abstractmethod
    def on_approved(self, entity_id: str) -> None:
        pass
    
    @abstractmethod
    def on_rejected(self, entity_id: str, comments: Optional[str]) -> None:
        pass


class CallbackStatusUpdater(EntityStatusUpdater):
    """Updater built from two plain callables"""
    
    def __init__(self, on_approved: Callable[[str], None],
                 on_rejected: Callable[[str, Optional[str]], None]):
        self._on_approved = on_approved
        self._on_rejected = on_rejected
    
    def on_approved(self, entity_id):
        self._on_approved(entity_id)
    
    def on_rejected(self, entity_id, comments):
        self._on_rejected(entity_id, comments)


class RecordingStatusUpdater(EntityStatusUpdater):
    """Keeps outcomes in memory; used by embedded deployments and tests"""
    
    def __init__(self):
        self.approved: List[str] = []
        self.rejected: List[Tuple[str, Optional[str]]] = []
    
    def on_approved(self, entity_id):
        self.approved.append(entity_id)
    
    def on_rejected(self, entity_id, comments):
        self.rejected.append((entity_id, comments))


class EntityStatusUpdaterRegistry:
    """Maps approval types to their status updaters"""
    
    def __init__(self):
        self._updaters: Dict[ApprovalType, EntityStatusUpdater] = {}
        self._lock = RLock()
    
    def register(self, approval_type: ApprovalType, updater: EntityStatusUpdater) -> None:
        with self._lock:
            self._updaters[approval_type] = updater
    
    def unregister(self, approval_type: ApprovalType) -> None:
        with self._lock:
            self._updaters.pop(approval_type, None)
    
    def get(self, approval_type: ApprovalType) -> Optional[EntityStatusUpdater]:
        with self._lock:
            return self._updaters.get(approval_type)
    
    def apply(self, approval_type: ApprovalType, entity_id: str, approved: bool,
              comments: Optional[str] = None) -> bool:
        """Run the registered hook; returns False when no updater is registered"""
        updater = self.get(approval_type)
        if updater is None:
            logger.warning(f"No status updater registered for {approval_type.value}; entity {entity_id} left unchanged")
            return False
        if approved:
            updater.on_approved(entity_id)
        else:
            updater.on_rejected(entity_id, comments)
        return True
