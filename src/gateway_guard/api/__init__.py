"""API module: application factory, health checks and admin routes."""

from gateway_guard.api.app import create_app

__all__ = ["create_app"]
