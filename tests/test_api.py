"""Tests for the HTTP adapter: middleware, admin router and app factory."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from starlette.middleware.base import BaseHTTPMiddleware

from gateway_guard.api.app import create_app
from gateway_guard.config import Settings
from gateway_guard.ratelimit.exceptions import StoreUnavailableError
from gateway_guard.ratelimit.local import LocalCounterStore, LocalFallbackLimiter
from gateway_guard.ratelimit.middleware import (
    RateLimitMiddleware,
    RouteRule,
    get_client_ip,
    get_subject_from_request,
)
from gateway_guard.ratelimit.models import Subject, SubscriptionTier
from gateway_guard.ratelimit.quota import UNLIMITED, QuotaLimits, QuotaService
from gateway_guard.ratelimit.service import RateLimitService
from gateway_guard.ratelimit.store import CounterStore

ADMIN_KEY = "test-admin-key"


class FakeAuthMiddleware(BaseHTTPMiddleware):
    """Sets request.state.user from X-Test-User / X-Test-Tier headers."""

    async def dispatch(self, request, call_next):
        user_id = request.headers.get("X-Test-User")
        if user_id:
            request.state.user = {
                "id": user_id,
                "role": request.headers.get("X-Test-Role", "user"),
                "subscription_tier": request.headers.get("X-Test-Tier", "free"),
            }
        return await call_next(request)


def _make_request(headers=None, client=("10.0.0.1", 1234)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "query_string": b"",
    }
    return Request(scope)


@pytest.fixture
def api_settings():
    return Settings(admin_api_key=ADMIN_KEY, debug=True)


@pytest.fixture
def service(api_settings, clock):
    return RateLimitService(
        settings=api_settings,
        store=LocalCounterStore(clock=clock),
        fallback=LocalFallbackLimiter(api_settings, LocalCounterStore(clock=clock)),
        clock=clock,
    )


def _build_client(settings, service):
    app = create_app(settings=settings, service=service)

    @app.post("/api/chat/message")
    async def send_message(request: Request) -> dict:
        result = getattr(request.state, "rate_limit", None)
        return {"ok": True, "rate_limit": result.state.value if result else None}

    @app.get("/api/unlimited")
    async def unlimited() -> dict:
        return {"ok": True}

    app.add_middleware(FakeAuthMiddleware)
    return TestClient(app)


@pytest.fixture
def client(api_settings, service):
    with _build_client(api_settings, service) as test_client:
        yield test_client


class TestRequestExtraction:
    """Tests for subject and client IP extraction."""

    def test_client_ip_from_connection(self):
        assert get_client_ip(_make_request()) == "10.0.0.1"

    def test_forwarded_for_ignored_by_default(self):
        request = _make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})

        assert get_client_ip(request) == "10.0.0.1"

    def test_forwarded_for_when_trusted(self):
        request = _make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})

        assert get_client_ip(request, trust_forwarded_for=True) == "203.0.113.5"

    def test_unknown_client(self):
        assert get_client_ip(_make_request(client=None)) == "unknown"

    def test_no_user(self):
        assert get_subject_from_request(_make_request()) is None

    def test_subject_instance(self):
        request = _make_request()
        subject = Subject(id="u1")
        request.state.user = subject

        assert get_subject_from_request(request) is subject

    def test_mapping_user(self):
        request = _make_request()
        request.state.user = {"id": 42, "role": "admin", "subscription_tier": "pro", "email": "x"}

        subject = get_subject_from_request(request)

        assert subject.id == "42"
        assert subject.role == "admin"
        assert subject.subscription_tier is SubscriptionTier.PRO

    def test_object_user(self):
        request = _make_request()
        user = MagicMock(spec=["id", "role", "subscription_tier"])
        user.id = "u7"
        user.role = "moderator"
        user.subscription_tier = "enterprise"
        request.state.user = user

        subject = get_subject_from_request(request)

        assert subject.id == "u7"
        assert subject.subscription_tier is SubscriptionTier.ENTERPRISE

    def test_user_without_id_ignored(self):
        request = _make_request()
        request.state.user = {"role": "admin"}

        assert get_subject_from_request(request) is None


class TestRouteRules:
    """Tests for request to operation mapping."""

    def test_exact_match(self):
        rule = RouteRule("POST", "/api/chat/message", "chat.message")

        assert rule.matches("POST", "/api/chat/message")
        assert rule.matches("post", "/api/chat/message/")
        assert not rule.matches("GET", "/api/chat/message")
        assert not rule.matches("POST", "/api/chat/message/extra")

    def test_prefix_match(self):
        rule = RouteRule("DELETE", "/api/documents/", "documents.delete", prefix=True)

        assert rule.matches("DELETE", "/api/documents/abc")
        assert not rule.matches("DELETE", "/api/documents")

    def test_resolve_operation(self, service, api_settings):
        middleware = RateLimitMiddleware(MagicMock(), service=service, settings=api_settings)

        assert middleware.resolve_operation("POST", "/api/chat/stream") == "chat.message"
        assert middleware.resolve_operation("GET", "/api/chat/conversations") == (
            "chat.get-conversations"
        )
        assert middleware.resolve_operation("POST", "/api/chat/conversations") == (
            "chat.new-conversation"
        )
        assert middleware.resolve_operation("GET", "/ready") is None


class TestRateLimitMiddleware:
    """Tests for RateLimitMiddleware in an app."""

    def test_admitted_request_has_headers(self, client):
        response = client.post("/api/chat/message", headers={"X-Test-User": "user123"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "rate_limit": "allowed"}
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert "X-RateLimit-Reset" in response.headers

    def test_exceeded_returns_429(self, client):
        for _ in range(10):
            client.post("/api/chat/message", headers={"X-Test-User": "user123"})

        response = client.post("/api/chat/message", headers={"X-Test-User": "user123"})

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["message"] == "Chat message rate limit exceeded. Please slow down."
        assert body["retryAfter"] == 5
        assert response.headers["Retry-After"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_tier_from_auth_layer(self, client):
        headers = {"X-Test-User": "user123", "X-Test-Tier": "enterprise"}

        response = client.post("/api/chat/message", headers=headers)

        assert response.headers["X-RateLimit-Limit"] == "50"

    def test_anonymous_request_not_limited(self, client):
        response = client.post("/api/chat/message")

        assert response.status_code == 200
        assert response.json()["rate_limit"] == "unauth_skip"
        assert "X-RateLimit-Limit" not in response.headers

    def test_unmapped_path_untouched(self, client):
        response = client.get("/api/unlimited")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_health_limited_by_ip(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-RateLimit-Limit"] == "60"

    def test_forwarded_for_keys_anonymous_limits(self, service, clock):
        settings = Settings(admin_api_key=ADMIN_KEY, rate_limit_trust_forwarded_for=True)
        with _build_client(settings, service) as test_client:
            local = test_client.get("/health", headers={"X-Forwarded-For": "127.0.0.1"})
            remote = test_client.get("/health", headers={"X-Forwarded-For": "198.51.100.4"})

        assert "X-RateLimit-Limit" not in local.headers
        assert remote.headers["X-RateLimit-Limit"] == "60"

    def test_enforcement_error_admits(self, api_settings):
        broken = MagicMock()
        broken.enforce = AsyncMock(side_effect=RuntimeError("boom"))
        broken.start = AsyncMock()
        broken.close = AsyncMock()
        broken.is_store_available = AsyncMock(return_value=True)

        with _build_client(api_settings, broken) as test_client:
            response = test_client.post("/api/chat/message", headers={"X-Test-User": "u1"})

        assert response.status_code == 200


class TestAppEndpoints:
    """Tests for health, readiness and lifecycle."""

    def test_ready_reports_store(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["shared_store"] == "available"

    def test_ready_with_store_down(self, api_settings, clock):
        store = MagicMock(spec=CounterStore)
        store.is_available = AsyncMock(return_value=False)
        store.close = AsyncMock()
        service = RateLimitService(
            settings=api_settings,
            store=store,
            fallback=LocalFallbackLimiter(api_settings, LocalCounterStore(clock=clock)),
            clock=clock,
        )

        with _build_client(api_settings, service) as test_client:
            response = test_client.get("/ready")

        assert response.status_code == 200
        assert response.json()["shared_store"] == "unavailable"
        store.close.assert_awaited_once()


class TestAdminRouter:
    """Tests for the rate limit admin endpoints."""

    def test_not_mounted_without_key(self, service):
        with _build_client(Settings(admin_api_key=""), service) as test_client:
            response = test_client.get(
                "/admin/rate-limits/stats", headers={"X-Admin-Key": "anything"}
            )

        assert response.status_code == 404

    def test_missing_key(self, client):
        assert client.get("/admin/rate-limits/stats").status_code == 401

    def test_wrong_key(self, client):
        response = client.get("/admin/rate-limits/stats", headers={"X-Admin-Key": "nope"})

        assert response.status_code == 403

    def test_stats(self, client):
        client.post("/api/chat/message", headers={"X-Test-User": "user123"})
        client.post("/api/chat/message")

        response = client.get("/admin/rate-limits/stats", headers={"X-Admin-Key": ADMIN_KEY})

        assert response.status_code == 200
        counts = response.json()["operations"]["chat.message"]
        assert counts["allowed"] == 1
        assert counts["skipped"] == 1

    def test_status(self, client):
        client.get("/health")
        client.get("/health")

        response = client.get(
            "/admin/rate-limits/testclient/system.health",
            headers={"X-Admin-Key": ADMIN_KEY},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["store_available"] is True
        assert body["windows"]["per_minute"]["count"] == 2
        assert body["windows"]["per_minute"]["limit"] == 60

    def test_status_unknown_operation(self, client):
        response = client.get(
            "/admin/rate-limits/user123/nothing.here", headers={"X-Admin-Key": ADMIN_KEY}
        )

        assert response.status_code == 404

    def test_reset(self, client):
        headers = {"X-Test-User": "user123"}
        for _ in range(11):
            client.post("/api/chat/message", headers=headers)

        response = client.delete(
            "/admin/rate-limits/user123/chat.message", headers={"X-Admin-Key": ADMIN_KEY}
        )

        assert response.status_code == 200
        assert response.json() == {
            "subject_id": "user123",
            "operation": "chat.message",
            "deleted": 1,
        }
        assert client.post("/api/chat/message", headers=headers).status_code == 200

    def test_reset_store_unavailable(self, api_settings, clock):
        store = MagicMock(spec=CounterStore)
        store.delete_prefix = AsyncMock(side_effect=StoreUnavailableError("refused"))
        store.close = AsyncMock()
        service = RateLimitService(
            settings=api_settings,
            store=store,
            fallback=LocalFallbackLimiter(api_settings, LocalCounterStore(clock=clock)),
            clock=clock,
        )

        with _build_client(api_settings, service) as test_client:
            response = test_client.delete(
                "/admin/rate-limits/user123/chat.message",
                headers={"X-Admin-Key": ADMIN_KEY},
            )

        assert response.status_code == 503

    def test_alerts(self, client):
        headers = {"X-Test-User": "user123"}
        for _ in range(11):
            client.post("/api/chat/message", headers=headers)

        response = client.get("/admin/rate-limits/alerts", headers={"X-Admin-Key": ADMIN_KEY})

        assert response.status_code == 200
        alerts = response.json()
        types = [alert["type"] for alert in alerts]
        assert "HIGH_USAGE" in types
        assert "USER_RATE_LIMITED" in types
        assert all(alert["operation"] == "chat.message" for alert in alerts)


class TestQuotaAdminRouter:
    """Tests for the quota admin endpoints."""

    def test_requires_key(self, client):
        assert client.get("/admin/quotas/user123").status_code == 401

    def test_usage(self, client):
        for _ in range(3):
            client.post("/api/chat/message", headers={"X-Test-User": "user123"})

        response = client.get(
            "/admin/quotas/user123", params={"tier": "free"}, headers={"X-Admin-Key": ADMIN_KEY}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["store_available"] is True
        assert body["tier"] == "free"
        entries = {(e["kind"], e["period"]): e for e in body["entries"]}
        assert entries[("messages", "day")]["used"] == 3
        assert entries[("messages", "day")]["limit"] == 50
        assert entries[("messages", "day")]["remaining"] == 47
        assert entries[("messages", "month")]["used"] == 3
        assert entries[("tokens", "day")]["used"] == 0

    def test_reset(self, client):
        client.post("/api/chat/message", headers={"X-Test-User": "user123"})

        response = client.delete("/admin/quotas/user123", headers={"X-Admin-Key": ADMIN_KEY})
        usage = client.get("/admin/quotas/user123", headers={"X-Admin-Key": ADMIN_KEY}).json()

        assert response.status_code == 200
        assert response.json() == {"subject_id": "user123", "deleted": 2}
        assert all(entry["used"] == 0 for entry in usage["entries"])

    def test_reset_store_unavailable(self, api_settings, clock):
        store = MagicMock(spec=CounterStore)
        store.delete_prefix = AsyncMock(side_effect=StoreUnavailableError("refused"))
        store.close = AsyncMock()
        service = RateLimitService(
            settings=api_settings,
            store=store,
            fallback=LocalFallbackLimiter(api_settings, LocalCounterStore(clock=clock)),
            clock=clock,
        )

        with _build_client(api_settings, service) as test_client:
            response = test_client.delete(
                "/admin/quotas/user123", headers={"X-Admin-Key": ADMIN_KEY}
            )

        assert response.status_code == 503

    def test_quota_denial_response(self, api_settings, clock):
        store = LocalCounterStore(clock=clock)
        limits = QuotaLimits(
            daily_messages=1,
            daily_tokens=UNLIMITED,
            monthly_messages=UNLIMITED,
            monthly_tokens=UNLIMITED,
            daily_document_uploads=UNLIMITED,
        )
        service = RateLimitService(
            settings=api_settings,
            store=store,
            fallback=LocalFallbackLimiter(api_settings, LocalCounterStore(clock=clock)),
            clock=clock,
            quotas=QuotaService(
                api_settings, store, limits={SubscriptionTier.FREE: limits}, clock=clock
            ),
        )

        with _build_client(api_settings, service) as test_client:
            first = test_client.post("/api/chat/message", headers={"X-Test-User": "user123"})
            second = test_client.post("/api/chat/message", headers={"X-Test-User": "user123"})

        assert first.status_code == 200
        assert first.headers["X-Quota-Remaining"] == "0"
        assert second.status_code == 429
        assert second.json()["error"] == "QUOTA_EXCEEDED"
        assert second.headers["X-Quota-Limit"] == "1"
        assert second.headers["Retry-After"] == "86400"
