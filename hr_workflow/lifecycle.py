"""
Employee Lifecycle Module

Onboarding and offboarding processes. Each process owns a workflow
instance, a completion deadline and a checklist of tasks generated from a
template; every task carries its own deadline so the regular scans warn and
escalate on it like any approval. The process completes itself when the
last task is done.

Offboarding withdraws the employee's open approval requests before the exit
tasks start.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from threading import RLock
from typing import Any, Dict, List, Optional
import logging
import uuid

from .approvals import ApprovalRequestCoordinator
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import HRWorkflowConfig
from .deadlines import DeadlineMonitor
from .directory import Directory
from .errors import (
    AlreadyPendingError, ConcurrentModificationError, InvalidTransitionError, NotFoundError
)
from .logging_config import log_action
from .notifications import EMPLOYEE_PROCESS_ENTITY, NotificationOrchestrator
from .storage import StorageInterface, StorageRecord, parse_datetime
from .workflows import WorkflowStateManager, WorkflowType

logger = logging.getLogger("hr_workflow.lifecycle")

STATE_PROFILE_SETUP = "PROFILE_SETUP"
STATE_PENDING_REQUESTS_PROCESSING = "PENDING_REQUESTS_PROCESSING"
STATE_EXIT_TASKS = "EXIT_TASKS"

OUTCOME_ALL_TASKS_COMPLETED = "ALL_TASKS_COMPLETED"


class ProcessType(Enum):
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"


class ProcessStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskAssignee(Enum):
    """Who a template task goes to"""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    INTERVIEWER = "interviewer"
    NONE = "none"


@dataclass(frozen=True)
class TaskTemplate:
    title: str
    description: str
    day_offset: int  # From the start date (onboarding) or last working day (offboarding)
    assignee: TaskAssignee
    condition: Optional[str] = None  # Option that must be set for the task to be created


ONBOARDING_TASKS = (
    TaskTemplate("Complete Profile Information",
                 "Fill in personal information, emergency contacts and banking details",
                 3, TaskAssignee.EMPLOYEE),
    TaskTemplate("Department Orientation",
                 "Meet the team and learn about department processes", 5, TaskAssignee.EMPLOYEE),
    TaskTemplate("IT Systems Setup",
                 "Set up accounts, email and system access", 2, TaskAssignee.NONE),
    TaskTemplate("Benefits Enrollment",
                 "Review and enroll in company benefits programs", 14, TaskAssignee.EMPLOYEE),
    TaskTemplate("Policy Acknowledgment",
                 "Review and acknowledge company policies", 7, TaskAssignee.EMPLOYEE),
    TaskTemplate("Complete Mandatory Trainings",
                 "Complete all required training courses", 21, TaskAssignee.EMPLOYEE,
                 condition="required_trainings"),
    TaskTemplate("First Week Check-in",
                 "Manager check-in meeting after the first week", 7, TaskAssignee.MANAGER),
    TaskTemplate("30-Day Review Meeting",
                 "Review progress and address any concerns", 30, TaskAssignee.MANAGER),
)

OFFBOARDING_TASKS = (
    TaskTemplate("Knowledge Transfer Documentation",
                 "Document key processes, contacts and ongoing work", -14, TaskAssignee.EMPLOYEE),
    TaskTemplate("Project Handover",
                 "Hand over active projects and tasks to team members", -7, TaskAssignee.EMPLOYEE),
    TaskTemplate("Return Company Assets",
                 "Return laptop, badge, keys and other company property", 0, TaskAssignee.EMPLOYEE),
    TaskTemplate("Submit Pending Expenses",
                 "Submit all pending expense claims for reimbursement", -10, TaskAssignee.EMPLOYEE),
    TaskTemplate("Benefits Termination Review",
                 "Review benefits termination and continuation options", -7, TaskAssignee.NONE),
    TaskTemplate("IT Access Revocation",
                 "Revoke system access, email and accounts", 0, TaskAssignee.NONE),
    TaskTemplate("Exit Interview",
                 "Conduct exit interview to gather feedback", -3, TaskAssignee.INTERVIEWER,
                 condition="conduct_exit_interview"),
    TaskTemplate("Final Paycheck Processing",
                 "Process final paycheck including accrued leave payout", 0, TaskAssignee.NONE),
    TaskTemplate("Farewell Communication",
                 "Send farewell communication to team and stakeholders", -1, TaskAssignee.EMPLOYEE),
)

_TEMPLATES = {
    ProcessType.ONBOARDING: ONBOARDING_TASKS,
    ProcessType.OFFBOARDING: OFFBOARDING_TASKS,
}

_WORKFLOW_TYPES = {
    ProcessType.ONBOARDING: WorkflowType.ONBOARDING,
    ProcessType.OFFBOARDING: WorkflowType.OFFBOARDING,
}


def _at_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@dataclass
class EmployeeProcess(StorageRecord):
    """An onboarding or offboarding run for one employee"""
    employee_id: str
    process_type: ProcessType
    workflow_id: str
    start_date: datetime
    due_date: datetime
    status: ProcessStatus = ProcessStatus.IN_PROGRESS
    notes: Optional[str] = None
    completion_percentage: int = 0
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    deadline_id: Optional[str] = None
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmployeeProcess':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'start_date', 'due_date', 'completed_at'):
            data[key] = parse_datetime(data.get(key))
        data['process_type'] = ProcessType(data['process_type'])
        data['status'] = ProcessStatus(data['status'])
        return cls(**data)


@dataclass
class ProcessTask(StorageRecord):
    """One checklist item of a process"""
    process_id: str
    title: str
    description: str
    due_date: datetime
    sequence: int
    assignee: Optional[str] = None
    deadline_id: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    completion_notes: Optional[str] = None
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessTask':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'due_date', 'completed_at'):
            data[key] = parse_datetime(data.get(key))
        return cls(**data)


@dataclass
class ProcessStatusResponse:
    """A process with its tasks, for callers"""
    process: EmployeeProcess
    employee_name: str
    tasks: List[ProcessTask]
    completed_tasks: int
    overdue_tasks: int


class EmployeeLifecycleManager:
    """Runs onboarding and offboarding checklists"""

    ENTITY_TYPE = "employee_process"
    LOCK_STRIPES = 64

    def __init__(
        self,
        storage: StorageInterface,
        state_manager: WorkflowStateManager,
        deadline_monitor: DeadlineMonitor,
        directory: Directory,
        notifications: NotificationOrchestrator,
        coordinator: Optional[ApprovalRequestCoordinator] = None,
        audit_manager: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        config: Optional[HRWorkflowConfig] = None
    ):
        self.storage = storage
        self.state_manager = state_manager
        self.deadline_monitor = deadline_monitor
        self.directory = directory
        self.notifications = notifications
        self.coordinator = coordinator
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.config = config or HRWorkflowConfig()
        self.table = "employee_processes"
        self.tasks_table = "employee_process_tasks"
        self._locks: List[RLock] = [RLock() for _ in range(self.LOCK_STRIPES)]

    # Initiation

    def initiate_onboarding(
        self,
        employee_id: str,
        start_date: date,
        required_trainings: bool = False,
        notes: Optional[str] = None,
        initiated_by: Optional[str] = None
    ) -> ProcessStatusResponse:
        """
        Start onboarding for a new hire.

        Tasks are due relative to the start date; the whole process is due
        a configured number of days after it.
        """
        options = {'required_trainings': required_trainings}
        due_date = start_date + timedelta(days=self.config.onboarding_days)
        process = self._initiate(ProcessType.ONBOARDING, employee_id, start_date, due_date,
                                 options, notes, initiated_by, None)

        manager_id = self.directory.get_manager(employee_id)
        employee_name = self.directory.get_display_name(employee_id)
        self.notifications.notify_welcome(
            employee_id,
            f"Welcome to the team! Your onboarding starts on {start_date.isoformat()}. "
            f"Please complete the assigned tasks.")
        self.notifications.notify_task_assignment(
            manager_id, "New Employee Onboarding",
            f"{employee_name} starts on {start_date.isoformat()}. Please prepare for their arrival.",
            process.id)
        return self.get_process_status(process.id)

    def initiate_offboarding(
        self,
        employee_id: str,
        last_working_date: date,
        reason: str,
        conduct_exit_interview: bool = True,
        exit_interviewer_id: Optional[str] = None,
        initiated_by: Optional[str] = None
    ) -> ProcessStatusResponse:
        """
        Start offboarding for a leaving employee.

        Open approval requests of the employee are withdrawn first. Tasks
        are due relative to the last working day, which is also the
        process deadline.
        """
        if exit_interviewer_id and not self.directory.actor_exists(exit_interviewer_id):
            raise NotFoundError(f"Actor {exit_interviewer_id} not found", exit_interviewer_id)

        options = {'conduct_exit_interview': conduct_exit_interview}
        process = self._initiate(ProcessType.OFFBOARDING, employee_id, last_working_date,
                                 last_working_date, options, reason, initiated_by, exit_interviewer_id)

        manager_id = self.directory.get_manager(employee_id)
        employee_name = self.directory.get_display_name(employee_id)
        self.notifications.send_reminder(
            employee_id, "Offboarding Process Started",
            f"Your offboarding process has started. Last working date: {last_working_date.isoformat()}. "
            f"Please complete all assigned tasks.",
            process.id, EMPLOYEE_PROCESS_ENTITY)
        self.notifications.notify_task_assignment(
            manager_id, "Employee Offboarding",
            f"{employee_name}'s offboarding has started. Last working date: {last_working_date.isoformat()}",
            process.id)
        return self.get_process_status(process.id)

    # Task tracking

    def complete_task(self, process_id: str, task_id: str, notes: Optional[str] = None,
                      completed_by: Optional[str] = None) -> ProcessStatusResponse:
        """
        Tick off a task; completing an already completed task changes nothing.

        Completing the last open task completes the process.
        """
        with self._lock(process_id):
            process = self._require(process_id)
            task = self._require_task(process_id, task_id)
            if task.completed:
                return self.get_process_status(process_id)
            if process.status != ProcessStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    f"Process {process_id} is {process.status.value}; its tasks can no longer change",
                    process_id)

            now = self.clock.now()
            task.completed = True
            task.completed_at = now
            task.completed_by = completed_by
            task.completion_notes = notes
            task.updated_at = now
            self._save_task(task)
            if task.deadline_id:
                self.deadline_monitor.complete_deadline(task.deadline_id)

            tasks = self._tasks(process_id)
            done = sum(1 for t in tasks if t.completed)
            process.completion_percentage = done * 100 // len(tasks)
            process.updated_at = now
            finished = done == len(tasks)
            if finished:
                process.status = ProcessStatus.COMPLETED
                process.completed_at = now
            self._save(process)
            self.state_manager.update_context(
                process.workflow_id, 'completionPercentage', process.completion_percentage)
            if finished:
                if process.deadline_id:
                    self.deadline_monitor.complete_deadline(process.deadline_id)
                self.state_manager.complete_workflow(process.workflow_id, OUTCOME_ALL_TASKS_COMPLETED)

        self.audit.log_event(
            AuditEventType.PROCESS_TASK_COMPLETED,
            self.ENTITY_TYPE,
            process_id,
            {'task_id': task_id, 'title': task.title, 'completion_percentage': process.completion_percentage},
            completed_by
        )
        logger.info(f"Task '{task.title}' of {process.process_type.value} {process_id} completed "
                    f"({process.completion_percentage}%)")

        manager_id = self.directory.get_manager(process.employee_id)
        employee_name = self.directory.get_display_name(process.employee_id)
        if process.process_type == ProcessType.ONBOARDING:
            self.notifications.notify_task_completed(
                manager_id, "Onboarding Task Completed",
                f"{employee_name} completed onboarding task: {task.title}", task_id)
        if finished:
            self._after_completion(process, manager_id, employee_name)
        return self.get_process_status(process_id)

    def cancel_process(self, process_id: str, reason: str,
                       cancelled_by: Optional[str] = None) -> ProcessStatusResponse:
        """Stop a running process; open task deadlines are closed"""
        with self._lock(process_id):
            process = self._require(process_id)
            if process.status != ProcessStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    f"Process {process_id} is already {process.status.value}", process_id)

            now = self.clock.now()
            process.status = ProcessStatus.CANCELLED
            process.cancel_reason = reason
            process.completed_at = now
            process.updated_at = now
            self._save(process)

            for task in self._tasks(process_id):
                if not task.completed and task.deadline_id:
                    self.deadline_monitor.cancel_deadline(task.deadline_id)
            if process.deadline_id:
                self.deadline_monitor.cancel_deadline(process.deadline_id)
            self.state_manager.cancel_workflow(process.workflow_id, reason)

        self.audit.log_event(
            AuditEventType.PROCESS_CANCELLED,
            self.ENTITY_TYPE,
            process_id,
            {'reason': reason, 'completion_percentage': process.completion_percentage},
            cancelled_by
        )
        log_action(logger, "info", f"{process.process_type.value.capitalize()} {process_id} cancelled: {reason}",
                   user_id=cancelled_by, action="cancel_process", resource=process_id)
        return self.get_process_status(process_id)

    def escalate_overdue_tasks(self, process_id: str) -> int:
        """Escalate every open task past its due date one level; returns how many were escalated"""
        process = self._require(process_id)
        if process.status != ProcessStatus.IN_PROGRESS:
            return 0
        now = self.clock.now()
        escalated = 0
        for task in self._tasks(process_id):
            if task.completed or not task.deadline_id or task.due_date > now:
                continue
            self.deadline_monitor.escalate(task.deadline_id)
            escalated += 1
        if escalated:
            logger.warning(f"Escalated {escalated} overdue tasks of {process.process_type.value} {process_id}")
        return escalated

    # Queries

    def get_process_status(self, process_id: str) -> ProcessStatusResponse:
        process = self._require(process_id)
        tasks = self._tasks(process_id)
        now = self.clock.now()
        return ProcessStatusResponse(
            process=process,
            employee_name=self.directory.get_display_name(process.employee_id),
            tasks=tasks,
            completed_tasks=sum(1 for t in tasks if t.completed),
            overdue_tasks=sum(1 for t in tasks if not t.completed and t.due_date < now)
        )

    def get_active_processes(self, process_type: Optional[ProcessType] = None) -> List[EmployeeProcess]:
        filters: Dict[str, Any] = {'status': ProcessStatus.IN_PROGRESS.value}
        if process_type:
            filters['process_type'] = process_type.value
        processes = [EmployeeProcess.from_dict(data) for data in self.storage.find(self.table, filters)]
        return sorted(processes, key=lambda p: (p.due_date, p.id))

    def get_processes_for_employee(self, employee_id: str) -> List[EmployeeProcess]:
        processes = [EmployeeProcess.from_dict(data)
                     for data in self.storage.find(self.table, {'employee_id': employee_id})]
        return sorted(processes, key=lambda p: (p.created_at, p.id), reverse=True)

    # Private helpers

    def _initiate(self, process_type: ProcessType, employee_id: str, anchor: date, due: date,
                  options: Dict[str, bool], notes: Optional[str], initiated_by: Optional[str],
                  interviewer_id: Optional[str]) -> EmployeeProcess:
        if not self.directory.actor_exists(employee_id):
            raise NotFoundError(f"Employee {employee_id} not found", employee_id)

        with self._lock(employee_id):
            for existing in self.get_processes_for_employee(employee_id):
                if existing.process_type == process_type and existing.status == ProcessStatus.IN_PROGRESS:
                    raise AlreadyPendingError(
                        f"Employee {employee_id} already has {process_type.value} {existing.id} in progress",
                        existing.id)

            now = self.clock.now()
            process_id = str(uuid.uuid4())
            date_key = 'startDate' if process_type == ProcessType.ONBOARDING else 'lastWorkingDate'
            workflow = self.state_manager.create_workflow(
                _WORKFLOW_TYPES[process_type], employee_id, "Employee",
                {'employeeId': employee_id, 'processId': process_id, date_key: anchor.isoformat()},
                initiated_by)
            self.state_manager.start_workflow(workflow.id)
            self.state_manager.update_due_date(workflow.id, _at_midnight(due))

            manager_id = self.directory.get_manager(employee_id)
            if manager_id:
                self.state_manager.assign_workflow(workflow.id, manager_id)

            if process_type == ProcessType.ONBOARDING:
                self.state_manager.transition_state(
                    workflow.id, STATE_PROFILE_SETUP, "Starting onboarding process", initiated_by)
                deadline_type, warning_hours = "ONBOARDING_COMPLETION", self.config.onboarding_warning_hours
            else:
                self.state_manager.transition_state(
                    workflow.id, STATE_PENDING_REQUESTS_PROCESSING,
                    "Withdrawing open approval requests", initiated_by)
                if self.coordinator:
                    self.coordinator.withdraw_open_requests(employee_id, "Employee offboarding", initiated_by)
                self.state_manager.transition_state(
                    workflow.id, STATE_EXIT_TASKS, "Starting exit tasks", initiated_by)
                deadline_type, warning_hours = "OFFBOARDING_COMPLETION", self.config.offboarding_warning_hours

            employee_name = self.directory.get_display_name(employee_id)
            deadline = self.deadline_monitor.register_deadline(
                workflow.id, deadline_type,
                f"{process_type.value.capitalize()} of {employee_name}",
                _at_midnight(due), warning_hours, manager_id)

            process = EmployeeProcess(
                id=process_id,
                created_at=now,
                updated_at=now,
                employee_id=employee_id,
                process_type=process_type,
                workflow_id=workflow.id,
                start_date=_at_midnight(anchor),
                due_date=_at_midnight(due),
                notes=notes,
                deadline_id=deadline.id
            )
            self._save(process)
            tasks = self._create_tasks(process, anchor, options, manager_id, interviewer_id)

        self.audit.log_event(
            AuditEventType.PROCESS_INITIATED,
            self.ENTITY_TYPE,
            process.id,
            {'process_type': process_type.value, 'employee_id': employee_id,
             'workflow_id': workflow.id, 'task_count': len(tasks)},
            initiated_by
        )
        log_action(logger, "info", f"{process_type.value.capitalize()} {process.id} started for employee {employee_id}",
                   user_id=initiated_by, action=f"initiate_{process_type.value}", resource=process.id,
                   extra={'task_count': len(tasks)})
        return process

    def _create_tasks(self, process: EmployeeProcess, anchor: date, options: Dict[str, bool],
                      manager_id: Optional[str], interviewer_id: Optional[str]) -> List[ProcessTask]:
        deadline_type = f"{process.process_type.value.upper()}_TASK"
        assignees = {
            TaskAssignee.EMPLOYEE: process.employee_id,
            TaskAssignee.MANAGER: manager_id,
            TaskAssignee.INTERVIEWER: interviewer_id or manager_id,
            TaskAssignee.NONE: None,
        }
        tasks = []
        for template in _TEMPLATES[process.process_type]:
            if template.condition and not options.get(template.condition):
                continue
            due_date = _at_midnight(anchor + timedelta(days=template.day_offset))
            assignee = assignees[template.assignee]
            deadline = self.deadline_monitor.register_deadline(
                process.workflow_id, deadline_type, template.title, due_date,
                self.config.task_warning_hours, assignee)
            task = ProcessTask(
                id=str(uuid.uuid4()),
                created_at=process.created_at,
                updated_at=process.created_at,
                process_id=process.id,
                title=template.title,
                description=template.description,
                due_date=due_date,
                sequence=len(tasks) + 1,
                assignee=assignee,
                deadline_id=deadline.id
            )
            self._save_task(task)
            tasks.append(task)
        return tasks

    def _after_completion(self, process: EmployeeProcess, manager_id: Optional[str],
                          employee_name: str) -> None:
        self.audit.log_event(
            AuditEventType.PROCESS_COMPLETED,
            self.ENTITY_TYPE,
            process.id,
            {'process_type': process.process_type.value, 'workflow_id': process.workflow_id}
        )
        logger.info(f"{process.process_type.value.capitalize()} {process.id} completed")
        if process.process_type == ProcessType.ONBOARDING:
            title, message = "Onboarding Complete", f"{employee_name} has completed all onboarding tasks."
        else:
            title, message = "Offboarding Complete", f"{employee_name}'s offboarding has been completed."
        self.notifications.notify_workflow_completed(
            manager_id, title, message, process.id, EMPLOYEE_PROCESS_ENTITY)

    def _tasks(self, process_id: str) -> List[ProcessTask]:
        tasks = [ProcessTask.from_dict(data)
                 for data in self.storage.find(self.tasks_table, {'process_id': process_id})]
        return sorted(tasks, key=lambda t: t.sequence)

    def _require(self, process_id: str) -> EmployeeProcess:
        data = self.storage.load(self.table, process_id)
        if not data:
            raise NotFoundError(f"Process {process_id} not found", process_id)
        return EmployeeProcess.from_dict(data)

    def _require_task(self, process_id: str, task_id: str) -> ProcessTask:
        data = self.storage.load(self.tasks_table, task_id)
        if not data or data['process_id'] != process_id:
            raise NotFoundError(f"Task {task_id} not found in process {process_id}", task_id)
        return ProcessTask.from_dict(data)

    def _lock(self, key: str) -> RLock:
        return self._locks[hash(key) % self.LOCK_STRIPES]

    def _save(self, process: EmployeeProcess) -> None:
        self._compare_and_save(self.table, process, f"Process {process.id}")

    def _save_task(self, task: ProcessTask) -> None:
        self._compare_and_save(self.tasks_table, task, f"Task {task.id}")

    def _compare_and_save(self, table: str, record: Any, label: str) -> None:
        expected_version = record.version
        record.version = expected_version + 1
        if not self.storage.compare_and_save(table, record.id, record.to_dict(), expected_version):
            record.version = expected_version
            raise ConcurrentModificationError(f"{label} was modified concurrently", record.id)
