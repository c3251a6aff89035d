"""Tests for logging setup and the server entry point."""

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.sdk.trace import TracerProvider

from gateway_guard.config import Settings
from gateway_guard.main import TEXT_FORMAT, JsonFormatter, main, setup_logging


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(message="Rate limit exceeded", **extra):
    record = logging.LogRecord(
        name="gateway_guard.ratelimit.service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_format(self, restore_root_logger):
        setup_logging(Settings(log_format="json", log_level="debug"))

        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.handlers[0].stream is sys.stdout

    def test_text_format(self, restore_root_logger):
        setup_logging(Settings(log_format="text", log_level="WARNING"))

        root = restore_root_logger
        assert root.level == logging.WARNING
        formatter = root.handlers[0].formatter
        assert not isinstance(formatter, JsonFormatter)
        assert formatter._fmt == TEXT_FORMAT

    def test_replaces_existing_handlers(self, restore_root_logger):
        restore_root_logger.addHandler(logging.NullHandler())

        setup_logging(Settings(log_format="text"))

        assert len(restore_root_logger.handlers) == 1


class TestJsonFormatter:
    """Tests for the JSON log formatter."""

    def test_basic_fields(self):
        data = json.loads(JsonFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "gateway_guard.ratelimit.service"
        assert data["message"] == "Rate limit exceeded"
        assert data["time"].endswith("+00:00")
        assert "trace_id" not in data

    def test_context_fields(self):
        record = _record(
            operation="chat.message",
            subject_id="user123",
            alert_type="HIGH_USAGE",
            severity="warning",
            unrelated="dropped",
        )

        data = json.loads(JsonFormatter().format(record))

        assert data["operation"] == "chat.message"
        assert data["subject_id"] == "user123"
        assert data["alert_type"] == "HIGH_USAGE"
        assert data["severity"] == "warning"
        assert "unrelated" not in data

    def test_trace_context(self):
        tracer = TracerProvider().get_tracer(__name__)

        with tracer.start_as_current_span("rate_limit.enforce") as span:
            data = json.loads(JsonFormatter().format(_record()))
            context = span.get_span_context()

        assert data["trace_id"] == format(context.trace_id, "032x")
        assert data["span_id"] == format(context.span_id, "016x")

    def test_exception(self):
        try:
            raise RuntimeError("store exploded")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: store exploded" in data["exception"]


class TestMain:
    """Tests for the entry point."""

    @pytest.fixture
    def entry_point(self):
        settings = Settings(app_host="127.0.0.1", app_port=9001, log_level="INFO")
        app = MagicMock()
        with (
            patch("gateway_guard.main.load_dotenv") as load_dotenv,
            patch("gateway_guard.main.get_settings", return_value=settings),
            patch("gateway_guard.main.setup_logging") as setup_logging_mock,
            patch("gateway_guard.telemetry.setup_telemetry") as setup_telemetry,
            patch("gateway_guard.telemetry.shutdown_telemetry") as shutdown_telemetry,
            patch("gateway_guard.api.app.create_app", return_value=app) as create_app,
            patch("gateway_guard.main.uvicorn") as uvicorn,
        ):
            yield {
                "settings": settings,
                "app": app,
                "load_dotenv": load_dotenv,
                "setup_logging": setup_logging_mock,
                "setup_telemetry": setup_telemetry,
                "shutdown_telemetry": shutdown_telemetry,
                "create_app": create_app,
                "uvicorn": uvicorn,
            }

    def test_runs_server(self, entry_point):
        main()

        settings = entry_point["settings"]
        entry_point["load_dotenv"].assert_called_once()
        entry_point["setup_logging"].assert_called_once_with(settings)
        entry_point["setup_telemetry"].assert_called_once_with(settings)
        entry_point["create_app"].assert_called_once_with(settings)
        entry_point["uvicorn"].run.assert_called_once_with(
            entry_point["app"], host="127.0.0.1", port=9001, log_level="info"
        )
        entry_point["shutdown_telemetry"].assert_called_once()

    def test_shuts_down_telemetry_when_server_fails(self, entry_point):
        entry_point["uvicorn"].run.side_effect = RuntimeError("address in use")

        with pytest.raises(RuntimeError):
            main()

        entry_point["shutdown_telemetry"].assert_called_once()
