"""Application settings and configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    app_name: str = Field(
        default="gateway_guard",
        description="Service name",
    )
    app_description: str = Field(
        default="Rate limiting and quota enforcement for the API gateway",
        description="Service description",
    )
    app_host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    app_port: int = Field(
        default=8000,
        description="Server port",
    )
    admin_api_key: str = Field(
        default="",
        description="Key expected in X-Admin-Key for admin endpoints (empty disables them)",
    )

    # Shared Counter Store
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the shared counter store",
    )
    rate_limit_key_prefix: str = Field(
        default="rl",
        description="Prefix for every rate limit key in the shared store",
    )
    rate_limit_store_timeout_ms: int = Field(
        default=250,
        gt=0,
        description="Upper bound for a single shared store call before falling back",
    )
    rate_limit_availability_cache_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long a shared store liveness check result is reused",
    )
    rate_limit_bucket_ttl_seconds: int = Field(
        default=3600,
        gt=0,
        description="Idle expiry for token bucket state",
    )

    # Local Fallback
    rate_limit_fallback_sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the background sweep of expired fallback entries",
    )

    # Enforcement
    rate_limit_enabled: bool = Field(
        default=True,
        description="Enable rate limit enforcement",
    )
    rate_limit_policy_file: str | None = Field(
        default=None,
        description="JSON file with endpoint policies (built-in table when unset)",
    )
    rate_limit_whitelisted_ips: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "::1"],
        description="Client IPs that bypass rate limiting",
    )
    rate_limit_bypass_user_ids: list[str] = Field(
        default_factory=list,
        description="User IDs that bypass rate limiting",
    )
    rate_limit_trust_forwarded_for: bool = Field(
        default=False,
        description="Use the first X-Forwarded-For entry as the client IP",
    )

    # Usage Quotas
    quota_enabled: bool = Field(
        default=True,
        description="Enforce per-tier daily and monthly usage quotas",
    )

    # Usage Alerts
    rate_limit_alerts_enabled: bool = Field(
        default=True,
        description="Log rate limit usage alerts",
    )
    rate_limit_alert_high_usage: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Share of a limit used that raises a high usage warning",
    )
    rate_limit_alert_critical_usage: float = Field(
        default=0.95,
        gt=0,
        le=1,
        description="Share of a limit used that makes a high usage alert critical",
    )
    rate_limit_alert_global_hits: int = Field(
        default=5,
        gt=0,
        description="Global limit denials within the alert window that raise an alert",
    )
    rate_limit_alert_global_window_seconds: int = Field(
        default=300,
        gt=0,
        description="Window for counting global limit denials",
    )
    rate_limit_alert_cooldown_seconds: int = Field(
        default=300,
        ge=0,
        description="Minimum time between two identical alerts",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log format",
    )

    # Development Settings
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    # OpenTelemetry Configuration
    otel_enabled: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing",
    )
    otel_service_name: str = Field(
        default="gateway_guard",
        description="Service name for OpenTelemetry traces",
    )
    otel_exporter_otlp_endpoint: str = Field(
        default="http://localhost:4317",
        description="OTLP exporter endpoint (gRPC)",
    )
    otel_exporter_otlp_http_endpoint: str = Field(
        default="http://localhost:4318",
        description="OTLP exporter endpoint (HTTP)",
    )
    otel_exporter_type: Literal["otlp", "otlp-http", "console"] = Field(
        default="otlp",
        description="Telemetry exporter type",
    )
    otel_traces_sampler: Literal["always_on", "always_off", "traceidratio", "parentbased_always_on", "parentbased_always_off", "parentbased_traceidratio"] = Field(
        default="always_on",
        description="Trace sampling strategy",
    )
    otel_traces_sampler_arg: float = Field(
        default=1.0,
        description="Sampler argument (e.g., ratio for traceidratio)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
