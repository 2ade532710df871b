"""Middleware components for the Zeus API."""

from __future__ import annotations

from api.middleware.json_formatter import JSONFormatter, configure_json_logging
from api.middleware.logging import CorrelationLoggingFilter, RequestLoggingMiddleware

__all__ = [
    "CorrelationLoggingFilter",
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "configure_json_logging",
]
