"""API router modules for the Zeus review-request service."""

from __future__ import annotations

from api.routers import health, webhooks

__all__ = ["health", "webhooks"]
