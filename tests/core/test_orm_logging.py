"""
Tests for the logging module.

Tests verify:
- configure_logging picks the renderer and processors
- get_logger tags events with the logger name
- Context helpers bind and unbind contextvars
"""

import structlog
from structlog.testing import capture_logs

from spine_orm.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    get_logger,
    unbind_context,
)
from spine_orm.core.settings import OrmSettings


class TestConfigureLogging:
    """Test the processor chain built by configure_logging."""

    def teardown_method(self):
        structlog.reset_defaults()

    def test_json_renderer(self):
        configure_logging(level="DEBUG", json_format=True)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renderer(self):
        configure_logging(level="INFO", json_format=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_timestamp_is_optional(self):
        configure_logging(json_format=True, add_timestamp=False)
        processors = structlog.get_config()["processors"]
        assert not any(isinstance(p, structlog.processors.TimeStamper) for p in processors)

    def test_timestamp_first_by_default(self):
        configure_logging(json_format=True)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[0], structlog.processors.TimeStamper)

    def test_from_settings(self):
        configure_from_settings(OrmSettings(_env_file=None, log_level="DEBUG", log_format="json"))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_from_settings_console(self):
        configure_from_settings(OrmSettings(_env_file=None, log_format="console"))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestGetLogger:
    """Test event emission."""

    def test_named_logger_tags_events(self):
        with capture_logs() as logs:
            get_logger("spine_orm.test").info("db_opened", dialect="sqlite")
        assert logs == [
            {"logger": "spine_orm.test", "dialect": "sqlite", "event": "db_opened", "log_level": "info"}
        ]

    def test_unnamed_logger(self):
        with capture_logs() as logs:
            get_logger().warning("hook_pipeline_stopped")
        assert logs[0]["event"] == "hook_pipeline_stopped"
        assert "logger" not in logs[0]


class TestContextManagement:
    """Test context bind/unbind/clear operations."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_bind_context(self):
        bind_context(operation="create", table="users")
        assert structlog.contextvars.get_contextvars() == {"operation": "create", "table": "users"}

    def test_unbind_context(self):
        bind_context(operation="create", table="users")
        unbind_context("table")
        assert structlog.contextvars.get_contextvars() == {"operation": "create"}

    def test_clear_context(self):
        bind_context(operation="create")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_context_scopes_keys(self):
        bind_context(request_id="r-1")
        with LogContext(operation="delete"):
            assert structlog.contextvars.get_contextvars() == {"request_id": "r-1", "operation": "delete"}
        assert structlog.contextvars.get_contextvars() == {"request_id": "r-1"}
