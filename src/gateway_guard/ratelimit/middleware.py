"""Rate limiting middleware for FastAPI."""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, cast

from fastapi import Request, Response
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.models import RequestContext, Subject
from gateway_guard.ratelimit.service import RateLimitService, get_rate_limit_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteRule:
    """Maps requests to an operation name.

    ``path`` matches exactly unless ``prefix`` is set, in which case any
    path starting with it matches.
    """

    method: str
    path: str
    operation: str
    prefix: bool = False

    def matches(self, method: str, path: str) -> bool:
        if method.upper() != self.method.upper():
            return False
        if self.prefix:
            return path.startswith(self.path)
        return path == self.path or path == f"{self.path}/"


# First matching rule wins
DEFAULT_ROUTES: tuple[RouteRule, ...] = (
    # Authentication
    RouteRule("POST", "/api/auth/login", "auth.login"),
    RouteRule("POST", "/api/auth/register", "auth.register"),
    RouteRule("POST", "/api/auth/password-reset", "auth.password-reset"),
    RouteRule("POST", "/api/auth/refresh", "auth.refresh"),
    # Chat
    RouteRule("POST", "/api/chat/message", "chat.message"),
    RouteRule("POST", "/api/chat/stream", "chat.message"),
    RouteRule("POST", "/api/chat/conversations", "chat.new-conversation"),
    RouteRule("GET", "/api/chat/conversations", "chat.get-conversations"),
    RouteRule("DELETE", "/api/chat/conversations/", "chat.delete-conversation", prefix=True),
    # Documents
    RouteRule("POST", "/api/documents/upload", "documents.upload"),
    RouteRule("POST", "/api/documents/bulk-upload", "documents.bulk-upload"),
    RouteRule("POST", "/api/documents/search", "documents.search"),
    RouteRule("GET", "/api/documents", "documents.get-list"),
    RouteRule("DELETE", "/api/documents/", "documents.delete", prefix=True),
    # Admin
    RouteRule("DELETE", "/admin/rate-limits/", "admin.rate-limit-reset", prefix=True),
    RouteRule("GET", "/admin/rate-limits/stats", "admin.system-metrics"),
    # System
    RouteRule("GET", "/health", "system.health"),
    RouteRule("GET", "/metrics", "system.metrics"),
)


def get_subject_from_request(request: Request) -> Subject | None:
    """Extract the authenticated subject from request state.

    The authentication layer stores the caller in ``request.state.user``,
    either as a ``Subject``, a mapping or an object with ``id``, ``role``
    and ``subscription_tier`` attributes.

    Args:
        request: FastAPI request.

    Returns:
        Subject if the request is authenticated, None otherwise.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        return None
    if isinstance(user, Subject):
        return user

    if isinstance(user, Mapping):
        data = dict(user)
    else:
        data = {
            name: getattr(user, name)
            for name in ("id", "role", "subscription_tier")
            if getattr(user, name, None) is not None
        }

    if data.get("id") is not None:
        data["id"] = str(data["id"])

    try:
        return Subject.model_validate(data)
    except ValidationError as e:
        logger.warning("Ignoring request user without a usable identity: %s", e)
        return None


def get_client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Get the client IP of a request.

    Args:
        request: FastAPI request.
        trust_forwarded_for: Use the first X-Forwarded-For entry when present.

    Returns:
        Client IP, or "unknown".
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def build_request_context(request: Request, settings: Settings) -> RequestContext:
    """Collect the request metadata rate limiting decides on."""
    return RequestContext(
        subject=get_subject_from_request(request),
        client_ip=get_client_ip(request, settings.rate_limit_trust_forwarded_for),
        path=request.url.path,
        method=request.method,
        headers=dict(request.headers),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware for enforcing rate limits.

    This middleware:
    - Maps the request to an operation name
    - Returns 429 Too Many Requests when a limit is exceeded
    - Adds X-RateLimit-* headers to admitted responses
    - Leaves the enforcement result in ``request.state.rate_limit``
    """

    def __init__(
        self,
        app: Any,
        service: RateLimitService | None = None,
        routes: Sequence[RouteRule] = DEFAULT_ROUTES,
        settings: Settings | None = None,
    ):
        """Initialize middleware.

        Args:
            app: FastAPI application.
            service: Rate limit service.
            routes: Request to operation mapping.
            settings: Application settings.
        """
        super().__init__(app)
        self._service = service if service is not None else get_rate_limit_service()
        self._routes = tuple(routes)
        self._settings = settings or get_settings()

    def resolve_operation(self, method: str, path: str) -> str | None:
        """Get the operation name for a request, None if not rate limited."""
        for rule in self._routes:
            if rule.matches(method, path):
                return rule.operation
        return None

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        """Process request with rate limiting.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler.

        Returns:
            Response from handler or 429 error.
        """
        operation = self.resolve_operation(request.method, request.url.path)
        if operation is None:
            return cast(Response, await call_next(request))

        try:
            context = build_request_context(request, self._settings)
            result = await self._service.enforce(operation, context)
        except Exception as e:
            logger.warning("Rate limiting error (allowing request): %s", e)
            return cast(Response, await call_next(request))

        request.state.rate_limit = result

        if not result.admitted:
            return JSONResponse(
                status_code=429,
                content=result.response_content(),
                headers=result.headers,
            )

        response = cast(Response, await call_next(request))
        for name, value in result.headers.items():
            response.headers[name] = value
        return response
