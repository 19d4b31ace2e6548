"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every workflow transition, approval decision and deadline escalation is
logged here.
"""

import hashlib
import json
import threading
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .clock import Clock, SystemClock
from .storage import StorageInterface, StorageRecord, parse_datetime


class AuditEventType(Enum):
    """Types of audit events"""
    # Workflow instance events
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_STATE_CHANGED = "workflow_state_changed"
    WORKFLOW_STATUS_CHANGED = "workflow_status_changed"
    WORKFLOW_ASSIGNED = "workflow_assigned"
    WORKFLOW_CONTEXT_UPDATED = "workflow_context_updated"
    WORKFLOW_DUE_DATE_CHANGED = "workflow_due_date_changed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    
    # Approval request events
    APPROVAL_SUBMITTED = "approval_submitted"
    APPROVAL_LEVEL_ADVANCED = "approval_level_advanced"
    APPROVAL_DECIDED = "approval_decided"
    APPROVAL_ON_HOLD = "approval_on_hold"
    APPROVAL_RESUMED = "approval_resumed"
    APPROVAL_WITHDRAWN = "approval_withdrawn"
    APPROVAL_ESCALATED = "approval_escalated"
    
    # Transfer events
    TRANSFER_INITIATED = "transfer_initiated"
    TRANSFER_DECIDED = "transfer_decided"
    TRANSFER_EXECUTED = "transfer_executed"
    TRANSFER_CANCELLED = "transfer_cancelled"
    
    # Onboarding and offboarding events
    PROCESS_INITIATED = "process_initiated"
    PROCESS_TASK_COMPLETED = "process_task_completed"
    PROCESS_COMPLETED = "process_completed"
    PROCESS_CANCELLED = "process_cancelled"
    
    # Approval chain configuration events
    CHAIN_RULE_CREATED = "chain_rule_created"
    CHAIN_RULE_DEACTIVATED = "chain_rule_deactivated"
    
    # Deadline events
    DEADLINE_REGISTERED = "deadline_registered"
    DEADLINE_UPDATED = "deadline_updated"
    DEADLINE_REASSIGNED = "deadline_reassigned"
    DEADLINE_COMPLETED = "deadline_completed"
    DEADLINE_CANCELLED = "deadline_cancelled"
    DEADLINE_WARNING_SENT = "deadline_warning_sent"
    DEADLINE_OVERDUE = "deadline_overdue"
    DEADLINE_ESCALATED = "deadline_escalated"
    
    # System events
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # workflow_instance, approval_request, workflow_deadline, ...
    entity_id: str
    sequence: int     # Position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None  # Actor who initiated the action
    session_id: Optional[str] = None
    
    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()
    
    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value
        
        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}
    
    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'metadata': self.metadata
        }
        
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()
    
    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """
    
    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 clock: Optional[Clock] = None, enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or SystemClock()
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()
    
    def _load_last_hash(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)
    
    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining
        
        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of actor who initiated the action
            session_id: Session identifier
            
        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None
        
        with self._lock:
            now = self.clock.now()
            self._sequence += 1
            
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=self._sequence,
                previous_hash=self._last_hash or "",
                current_hash="",  # Calculated below
                user_id=user_id,
                session_id=session_id,
                metadata=metadata or {}
            )
            
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            
            return event
    
    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity
        
        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of events to return (most recent kept)
            
        Returns:
            List of AuditEvent objects in chain order
        """
        filters = {
            'entity_type': entity_type,
            'entity_id': entity_id
        }
        
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        events.sort(key=lambda x: x.sequence)
        
        if limit:
            events = events[-limit:]
        
        return events
    
    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events of one type in chain order"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'event_type': event_type.value})
        ]
        events.sort(key=lambda x: x.sequence)
        
        if limit:
            events = events[-limit:]
        
        return events
    
    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain
        
        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }
        
        all_events_data = self.storage.load_all(self.table_name)
        if not all_events_data:
            return result
        
        events = [AuditEvent.from_dict(data) for data in all_events_data]
        events.sort(key=lambda x: x.sequence)
        
        result['total_events'] = len(events)
        
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
        
        previous_hash = ""
        for i, event in enumerate(events):
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash
        
        return result
    
    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
