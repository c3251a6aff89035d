"""OpenTelemetry setup and configuration."""

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import (
    ALWAYS_OFF,
    ALWAYS_ON,
    ParentBased,
    TraceIdRatioBased,
)

if TYPE_CHECKING:
    from gateway_guard.config import Settings
    from opentelemetry.sdk.trace.sampling import Sampler

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None
_instrumentors: list[Any] = []


def _get_sampler(sampler_type: str, sampler_arg: float) -> "Sampler":
    """Get the appropriate sampler based on configuration."""
    if sampler_type == "always_on":
        return ALWAYS_ON
    elif sampler_type == "always_off":
        return ALWAYS_OFF
    elif sampler_type == "traceidratio":
        return TraceIdRatioBased(sampler_arg)
    elif sampler_type == "parentbased_always_on":
        return ParentBased(ALWAYS_ON)
    elif sampler_type == "parentbased_always_off":
        return ParentBased(ALWAYS_OFF)
    elif sampler_type == "parentbased_traceidratio":
        return ParentBased(TraceIdRatioBased(sampler_arg))
    else:
        logger.warning("Unknown sampler type '%s', using always_on", sampler_type)
        return ALWAYS_ON


def _create_exporter(settings: "Settings"):
    """Create the span exporter selected in settings."""
    exporter_type = settings.otel_exporter_type
    if exporter_type == "console":
        return ConsoleSpanExporter()

    elif exporter_type == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        return OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)

    elif exporter_type == "otlp-http":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )

        return OTLPSpanExporter(
            endpoint=f"{settings.otel_exporter_otlp_http_endpoint}/v1/traces"
        )

    else:
        logger.warning("Unknown exporter type '%s', using console", exporter_type)
        return ConsoleSpanExporter()


def store_endpoint(redis_url: str) -> str:
    """Host and port of the shared store, without credentials."""
    parts = urlsplit(redis_url)
    host = parts.hostname or "unknown"
    return f"{host}:{parts.port}" if parts.port else host


def build_resource(settings: "Settings") -> Resource:
    """Resource describing this service and its rate limit configuration."""
    return Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": "0.1.0",
            "deployment.environment": "development" if settings.debug else "production",
            "gateway_guard.rate_limit.enabled": settings.rate_limit_enabled,
            "gateway_guard.rate_limit.key_prefix": settings.rate_limit_key_prefix,
            "gateway_guard.quota.enabled": settings.quota_enabled,
            "gateway_guard.store.endpoint": store_endpoint(settings.redis_url),
        }
    )


def key_scope(args: Sequence[Any], prefix: str) -> str | None:
    """Scope (``subject``, ``global`` or ``quota``) of the first rate limit key
    in a Redis command, None if the command touches no such key."""
    marker = f"{prefix}:"
    for arg in args[1:]:
        if isinstance(arg, bytes):
            arg = arg.decode("utf-8", errors="replace")
        if isinstance(arg, str) and arg.startswith(marker):
            return arg[len(marker):].split(":", 1)[0] or None
    return None


def _redis_request_hook(prefix: str) -> Callable[..., None]:
    def _hook(span, instance, args, kwargs) -> None:
        if span is None or not span.is_recording():
            return
        scope = key_scope(args, prefix)
        if scope is not None:
            span.set_attribute("rate_limit.key_scope", scope)

    return _hook


def setup_telemetry(settings: "Settings | None" = None) -> bool:
    """Initialize OpenTelemetry tracing.

    Call this function early in application startup, before the rate
    limit service opens its first span.

    Args:
        settings: Application settings (cached settings if not provided).

    Returns:
        True if tracing was initialized.
    """
    global _tracer_provider

    from gateway_guard.config import get_settings

    settings = settings or get_settings()

    if not settings.otel_enabled:
        logger.debug("OpenTelemetry tracing is disabled")
        return False

    logger.info(
        "Initializing OpenTelemetry tracing (service=%s, exporter=%s, sampler=%s)",
        settings.otel_service_name,
        settings.otel_exporter_type,
        settings.otel_traces_sampler,
    )

    sampler = _get_sampler(settings.otel_traces_sampler, settings.otel_traces_sampler_arg)
    _tracer_provider = TracerProvider(resource=build_resource(settings), sampler=sampler)
    _tracer_provider.add_span_processor(BatchSpanProcessor(_create_exporter(settings)))

    # Set as global tracer provider
    trace.set_tracer_provider(_tracer_provider)

    for instrumentor in (
        _instrument_fastapi(),
        _instrument_redis(settings.rate_limit_key_prefix),
    ):
        if instrumentor is not None:
            _instrumentors.append(instrumentor)

    logger.info("OpenTelemetry tracing initialized successfully")
    return True


def _instrument_fastapi() -> Any:
    """Instrument FastAPI for automatic tracing."""
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        instrumentor = FastAPIInstrumentor()
        instrumentor.instrument()
        logger.debug("FastAPI instrumentation enabled")
        return instrumentor
    except ImportError:
        logger.warning(
            "FastAPI instrumentation not available. "
            "Install with: pip install opentelemetry-instrumentation-fastapi"
        )
    except Exception as e:
        logger.warning("Failed to instrument FastAPI: %s", e)
    return None


def _instrument_redis(key_prefix: str) -> Any:
    """Instrument redis-py, tagging spans with the rate limit key scope."""
    try:
        from opentelemetry.instrumentation.redis import RedisInstrumentor

        instrumentor = RedisInstrumentor()
        instrumentor.instrument(request_hook=_redis_request_hook(key_prefix))
        logger.debug("Redis instrumentation enabled")
        return instrumentor
    except ImportError:
        logger.warning(
            "Redis instrumentation not available. "
            "Install with: pip install opentelemetry-instrumentation-redis"
        )
    except Exception as e:
        logger.warning("Failed to instrument Redis: %s", e)
    return None


def shutdown_telemetry() -> None:
    """Shutdown OpenTelemetry and flush any pending spans.

    Call this function during application shutdown to ensure all
    spans are exported before the process exits.
    """
    global _tracer_provider

    while _instrumentors:
        instrumentor = _instrumentors.pop()
        try:
            instrumentor.uninstrument()
        except Exception as e:
            logger.warning("Failed to remove instrumentation: %s", e)

    if _tracer_provider is not None:
        logger.info("Shutting down OpenTelemetry tracing")
        _tracer_provider.shutdown()
        _tracer_provider = None


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer for the given module name.

    Args:
        name: The name of the module requesting the tracer,
              typically __name__.

    Returns:
        A tracer instance for creating spans.
    """
    return trace.get_tracer(name)


def add_span_event(name: str, attributes: Mapping[str, Any]) -> None:
    """Add an event to the current span, dropping attributes without a value."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    span.add_event(name, {k: v for k, v in attributes.items() if v is not None})
