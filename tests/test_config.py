"""
Tests for configuration and structured logging
"""

import json
import logging

import pytest

from hr_workflow import config as config_module
from hr_workflow.config import HRWorkflowConfig, get_config, reload_config
from hr_workflow.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """Environment driven settings"""

    def test_defaults(self, monkeypatch):
        for name in ("HRWF_DEFAULT_APPROVAL_DAYS", "HRWF_ESCALATION_INTERVAL_HOURS", "HRWF_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        config = HRWorkflowConfig()

        assert config.default_approval_days == 5
        assert config.approval_warning_hours == 24
        assert config.approval_deadline_type == "APPROVAL_DECISION"
        assert config.escalation_interval_hours == 24
        assert config.deadline_scan_interval_seconds == 3600
        assert (config.min_priority, config.default_priority, config.max_priority) == (1, 3, 5)
        assert config.max_page_size == 200

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("HRWF_DEFAULT_APPROVAL_DAYS", "3")
        monkeypatch.setenv("HRWF_NOTIFICATION_WEBHOOK_URL", "https://notify.example.com/hooks")
        monkeypatch.setenv("HRWF_ENABLE_DOMAIN_EVENTS", "false")

        config = HRWorkflowConfig()
        assert config.default_approval_days == 3
        assert config.notification_webhook_url == "https://notify.example.com/hooks"
        assert config.enable_domain_events is False

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("HRWF_LOG_LEVEL", "DEBUG")
        try:
            reloaded = reload_config()
            assert reloaded.log_level == "DEBUG"
            assert get_config() is reloaded
        finally:
            config_module.config = original


@pytest.fixture
def test_logger():
    logger = setup_logging("DEBUG", logger_name="hr_workflow_test")
    yield logger
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)


class TestLogging:
    """JSON log records"""

    def test_json_formatter(self):
        record = logging.LogRecord("hr_workflow.approvals", logging.INFO, __file__, 1,
                                   "Decision approve on request %s", ("REQ1",), None)
        record.user_id = "bob"
        record.action = "approval_approve"

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Decision approve on request REQ1"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "bob"
        assert entry["action"] == "approval_approve"
        assert "resource" not in entry

    def test_setup_logging(self, test_logger):
        assert test_logger.level == logging.DEBUG
        assert len(test_logger.handlers) == 1
        assert isinstance(test_logger.handlers[0].formatter, JSONFormatter)
        assert not test_logger.propagate

    def test_setup_logging_text_to_file(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("INFO", logger_name="hr_workflow_file_test", log_format="text",
                               log_file=str(log_file))
        logger.info("Deadline scan finished")
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

        assert "Deadline scan finished" in log_file.read_text()

    def test_log_action_attaches_fields(self, test_logger):
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        test_logger.addHandler(Capture())
        log_action(test_logger, "info", "Escalated", user_id="hr-admin", action="escalate_approval",
                   resource="REQ1", correlation_id="corr-1", extra={"level": 1})

        record = captured[0]
        assert record.user_id == "hr-admin"
        assert record.resource == "REQ1"
        assert record.correlation_id == "corr-1"
        assert record.extra == {"level": 1}

    def test_log_action_respects_level(self):
        logger = get_logger("hr_workflow_quiet_test")
        logger.setLevel(logging.ERROR)
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        logger.addHandler(Capture())
        log_action(logger, "info", "ignored")
        assert captured == []
