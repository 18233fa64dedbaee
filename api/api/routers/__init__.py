"""API router modules for the billing service."""

from __future__ import annotations

from api.routers import (
    admin,
    billing,
    health,
    referrals,
    reports,
    seats,
    trial,
)

__all__ = [
    "admin",
    "billing",
    "health",
    "referrals",
    "reports",
    "seats",
    "trial",
]
