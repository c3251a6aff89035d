"""OpenTelemetry integration for distributed tracing."""

from gateway_guard.telemetry.setup import (
    add_span_event,
    get_tracer,
    setup_telemetry,
    shutdown_telemetry,
)

__all__ = ["add_span_event", "get_tracer", "setup_telemetry", "shutdown_telemetry"]
