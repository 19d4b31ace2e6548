"""
Workflow System Module

Wires storage, audit, directory, notifications and the engine components
into one object. Embedding services build a WorkflowSystem once and hand
its coordinator, transfer and lifecycle managers to request handlers and
its scheduler to the process lifecycle.
"""

from typing import List, Optional

from .approval_chains import ApprovalChainRepository, ApprovalChainResolver
from .approvals import ApprovalRequestCoordinator
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import HRWorkflowConfig, get_config
from .deadlines import DeadlineMonitor
from .directory import Directory, InMemoryDirectory
from .entity_status import EntityStatusUpdaterRegistry
from .events import EventDispatcher
from .lifecycle import EmployeeLifecycleManager
from .notifications import (
    CompositeNotifier, InAppNotifier, LogNotifier, Notifier, NotificationOrchestrator, WebhookNotifier
)
from .scheduler import DeadlineScheduler
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .transfers import TransferExecutor, TransferWorkflowManager
from .workflows import WorkflowStateManager


class WorkflowSystem:
    """HR approval workflow engine with all components initialized"""
    
    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        directory: Optional[Directory] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        config: Optional[HRWorkflowConfig] = None,
        on_transfer_executed: Optional[TransferExecutor] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        
        if storage is None:
            if self.config.use_in_memory_storage:
                storage = InMemoryStorage()
            else:
                storage = SQLiteStorage(self.config.database_path)
        self.storage = storage
        self.directory = directory or InMemoryDirectory()
        
        self.audit_trail = AuditTrail(self.storage, clock=self.clock,
                                      enabled=self.config.enable_audit_logging)
        self.event_dispatcher = EventDispatcher() if self.config.enable_domain_events else None
        
        self.in_app_notifier: Optional[InAppNotifier] = None
        self.notifier = notifier or self._create_notifier()
        self.notifications = NotificationOrchestrator(self.notifier, self.directory)
        
        self.state_manager = WorkflowStateManager(self.storage, self.audit_trail, self.directory, self.clock)
        self.chain_repository = ApprovalChainRepository(self.storage, self.audit_trail, self.clock)
        self.chain_resolver = ApprovalChainResolver(self.chain_repository, self.directory)
        self.status_updaters = EntityStatusUpdaterRegistry()
        self.deadline_monitor = DeadlineMonitor(
            self.storage, self.state_manager, self.directory, self.notifications,
            self.audit_trail, self.clock,
            escalation_interval_hours=self.config.escalation_interval_hours,
            event_dispatcher=self.event_dispatcher
        )
        self.coordinator = ApprovalRequestCoordinator(
            self.storage, self.state_manager, self.chain_resolver, self.deadline_monitor,
            self.directory, self.notifications, self.status_updaters, self.audit_trail,
            self.clock, self.config, self.event_dispatcher
        )
        self.transfers = TransferWorkflowManager(
            self.state_manager, self.deadline_monitor, self.directory, self.notifications,
            self.audit_trail, self.clock, self.config, on_transfer_executed
        )
        self.lifecycle = EmployeeLifecycleManager(
            self.storage, self.state_manager, self.deadline_monitor, self.directory,
            self.notifications, self.coordinator, self.audit_trail, self.clock, self.config
        )
        self.scheduler = DeadlineScheduler(
            self.deadline_monitor,
            interval_seconds=self.config.deadline_scan_interval_seconds,
            join_timeout=self.config.scheduler_join_timeout
        )
    
    def _create_notifier(self) -> Notifier:
        """Create notification channels based on configuration"""
        channels: List[Notifier] = [LogNotifier()]
        if self.config.enable_in_app_notifications:
            self.in_app_notifier = InAppNotifier(self.storage, self.clock)
            channels.append(self.in_app_notifier)
        if self.config.notification_webhook_url:
            channels.append(WebhookNotifier(self.config.notification_webhook_url,
                                            timeout=self.config.notification_timeout))
        return CompositeNotifier(channels)
    
    def start(self) -> None:
        """Start background deadline scans"""
        self.audit_trail.log_event(AuditEventType.SYSTEM_START, "system", "hr_workflow", {})
        self.scheduler.start()
    
    def shutdown(self) -> None:
        """Stop background scans and release storage"""
        self.scheduler.stop()
        self.audit_trail.log_event(AuditEventType.SYSTEM_STOP, "system", "hr_workflow", {})
        self.storage.close()
