"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class HRWorkflowConfig(BaseSettings):
    """HR approval workflow engine configuration"""
    
    # Database configuration
    database_path: str = "hr_workflow.db"  # SQLite file, ":memory:" for ephemeral
    use_in_memory_storage: bool = False
    
    # Approval deadlines
    default_approval_days: int = 5
    approval_warning_hours: int = 24
    approval_deadline_type: str = "APPROVAL_DECISION"
    default_priority: int = 3
    min_priority: int = 1
    max_priority: int = 5
    
    # Deadline monitor
    escalation_interval_hours: int = 24  # One escalation level per elapsed interval
    deadline_scan_interval_seconds: int = 3600  # Hourly, both scans
    scheduler_join_timeout: float = 5.0
    
    # Transfers
    transfer_approval_lead_days: int = 7  # Approvals due this many days before the effective date
    transfer_warning_hours: int = 72
    transfer_hr_approver_id: str = ""  # Empty = HR stage has no named assignee
    
    # Onboarding and offboarding
    onboarding_days: int = 30
    onboarding_warning_hours: int = 72
    offboarding_warning_hours: int = 168
    task_warning_hours: int = 24
    
    # Paging
    default_page_size: int = 20
    max_page_size: int = 200
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Notifications
    notification_webhook_url: str = ""  # Empty = webhook delivery disabled
    notification_timeout: float = 2.0
    enable_in_app_notifications: bool = True
    
    # Feature flags
    enable_audit_logging: bool = True
    enable_domain_events: bool = True
    
    class Config:
        env_prefix = "HRWF_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = HRWorkflowConfig()


def get_config() -> HRWorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> HRWorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = HRWorkflowConfig()
    return config
