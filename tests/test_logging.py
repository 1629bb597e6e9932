"""Tests for HookRelay structured logging."""

import io
import json
import logging

import structlog

import hookrelay.logging as log_module
from hookrelay.config import Settings
from hookrelay.logging import (
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    delivery_context,
    get_logger,
    unbind_context,
)


class TestConfigureLogging:
    """Tests for logging configuration."""

    def test_configure_with_defaults(self):
        """Should configure with INFO level and JSON format by default."""
        configure_logging()
        logger = get_logger("test")
        logger.info("test message")

    def test_configure_with_text_format(self):
        """Should accept text format for development."""
        configure_logging(level="DEBUG", format="text")
        logger = get_logger("test")
        logger.debug("text format message")

    def test_unknown_level_falls_back(self):
        """An unknown level name should not raise."""
        configure_logging(level="chatty")
        get_logger("test").info("still logging")

    def test_configure_multiple_times(self):
        configure_logging(level="INFO")
        configure_logging(level="DEBUG", format="json")
        get_logger("test").info("after reconfigure")

    def test_configure_from_settings(self):
        configure_from_settings(Settings(log_level="WARNING", log_format="text"))
        assert logging.getLogger().level == logging.WARNING

    def test_http_client_loggers_quieted(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING


class TestGetLogger:
    """Tests for logger creation."""

    def test_loggers_are_callable(self):
        logger = get_logger("hookrelay.webhooks")
        assert callable(getattr(logger, "info", None))
        assert callable(getattr(logger, "warning", None))
        assert callable(getattr(logger, "exception", None))

    def test_get_logger_without_name(self):
        assert get_logger() is not None


class TestContextBinding:
    """Tests for context variable binding."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_bind_context(self):
        bind_context(delivery_id="dlv_123", endpoint_id="whe_abc")
        context = structlog.contextvars.get_contextvars()
        assert context == {"delivery_id": "dlv_123", "endpoint_id": "whe_abc"}

    def test_unbind_specific_context(self):
        """Only the named keys should be removed."""
        bind_context(delivery_id="dlv_123", endpoint_id="whe_abc")
        unbind_context("delivery_id")
        assert structlog.contextvars.get_contextvars() == {"endpoint_id": "whe_abc"}

    def test_clear_context(self):
        bind_context(delivery_id="dlv_123")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_delivery_context_restores_previous(self):
        bind_context(request_id="req_1")
        with delivery_context(delivery_id="dlv_123"):
            assert structlog.contextvars.get_contextvars() == {
                "request_id": "req_1",
                "delivery_id": "dlv_123",
            }
        assert structlog.contextvars.get_contextvars() == {"request_id": "req_1"}


class TestLoggerUsage:
    """Tests for logger usage patterns."""

    def test_log_with_kwargs(self):
        configure_logging()
        get_logger("test").info(
            "Webhook delivered",
            delivery_id="dlv_123",
            status_code=200,
            attempt=1,
        )

    def test_log_with_exception(self):
        configure_logging()
        logger = get_logger("test")
        try:
            raise ValueError("test error")
        except ValueError:
            logger.exception("Webhook delivery error")

    def test_import_module_logger(self):
        from hookrelay.logging import logger

        logger.info("using module logger")


class TestStdlibRendering:
    """Records from plain stdlib loggers go through the structlog renderer."""

    def teardown_method(self):
        clear_context()

    def test_stdlib_record_rendered_as_json(self):
        configure_logging(level="INFO", format="json")
        stream = io.StringIO()
        previous = log_module._handler.setStream(stream)
        try:
            with delivery_context(delivery_id="dlv_9"):
                logging.getLogger("hookrelay.webhooks.poller").warning("Tick failed: %s", "boom")
        finally:
            log_module._handler.setStream(previous)

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert record["event"] == "Tick failed: boom"
        assert record["level"] == "warning"
        assert record["logger"] == "hookrelay.webhooks.poller"
        assert record["delivery_id"] == "dlv_9"
        assert "timestamp" in record

    def test_reconfigure_replaces_handler(self):
        configure_logging()
        first = log_module._handler
        configure_logging(format="text")
        root_handlers = logging.getLogger().handlers
        assert first not in root_handlers
        assert log_module._handler in root_handlers
