"""Middleware components for the billing API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from api.middleware.rbac import Role, get_user_role, parse_role, require_role

__all__ = [
    "AuthenticationMiddleware",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "Role",
    "get_user_role",
    "parse_role",
    "require_role",
]
