"""Middleware components for the broker API."""

from __future__ import annotations

from vault_broker.middleware.auth import BasicAuthMiddleware
from vault_broker.middleware.json_formatter import JSONFormatter
from vault_broker.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "BasicAuthMiddleware",
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
