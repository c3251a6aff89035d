"""Configuration module for Gateway Guard."""

from gateway_guard.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
