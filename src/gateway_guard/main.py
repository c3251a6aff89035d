"""Main entry point for the gateway guard."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

import uvicorn
from dotenv import load_dotenv
from opentelemetry import trace

from gateway_guard.config import Settings, get_settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Rate limit fields passed through ``extra`` and the active trace context
    are added when present.
    """

    CONTEXT_FIELDS = (
        "operation",
        "subject_id",
        "state",
        "backend",
        "alert_type",
        "severity",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            log_data["trace_id"] = format(span_context.trace_id, "032x")
            log_data["span_id"] = format(span_context.span_id, "016x")

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


def setup_logging(settings: Settings | None = None) -> None:
    """Configure application logging.

    Args:
        settings: Application settings (cached settings if not provided).
    """
    settings = settings or get_settings()

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        handlers=[handler],
        force=True,
    )


def main() -> None:
    """Run the gateway guard server."""
    # Load environment variables from .env file
    load_dotenv()

    settings = get_settings()

    # Set up logging
    setup_logging(settings)
    logger = logging.getLogger(__name__)

    # Initialize OpenTelemetry tracing (must be done before creating app)
    from gateway_guard.telemetry import setup_telemetry, shutdown_telemetry

    setup_telemetry(settings)

    logger.info(
        "Starting gateway guard on %s:%d (rate_limit_enabled=%s, quota_enabled=%s, "
        "otel_enabled=%s)",
        settings.app_host,
        settings.app_port,
        settings.rate_limit_enabled,
        settings.quota_enabled,
        settings.otel_enabled,
    )

    # Import app here to ensure environment is configured
    from gateway_guard.api.app import create_app

    app = create_app(settings)

    try:
        uvicorn.run(
            app,
            host=settings.app_host,
            port=settings.app_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        # Ensure telemetry is properly shut down
        shutdown_telemetry()


if __name__ == "__main__":
    main()
