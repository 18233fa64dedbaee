"""Tests for the exception handlers registered in api/api/main.py

Covers:
- Each BillingError subclass maps to its own status code with a
  ``detail`` body
- ValueError, PermissionError and SQLAlchemyError fall back to safe
  generic messages
"""

from __future__ import annotations

import pytest
from billing_engine.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProviderUnavailableError,
    SignatureMismatchError,
    ValidationError,
)
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

_RAISERS = {
    "authentication": AuthenticationError("Authentication required"),
    "authorization": AuthorizationError("Only firm owners can subscribe"),
    "validation": ValidationError("Invalid plan"),
    "not_found": NotFoundError("No subscription found"),
    "conflict": ConflictError("Subscription is not active"),
    "signature": SignatureMismatchError("Invalid payment signature"),
    "provider": ProviderUnavailableError("Payment system not configured"),
    "value": ValueError("internal detail that must not leak"),
    "permission": PermissionError("internal detail"),
    "database": OperationalError("SELECT 1", {}, Exception("db down")),
}


@pytest.fixture()
def boom_app(app):
    async def _boom(kind: str) -> None:
        raise _RAISERS[kind]

    app.add_api_route("/api/v1/boom/{kind}", _boom, methods=["GET"])
    return app


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kind,status,detail",
    [
        ("authentication", 401, "Authentication required"),
        ("authorization", 403, "Only firm owners can subscribe"),
        ("validation", 400, "Invalid plan"),
        ("not_found", 404, "No subscription found"),
        ("conflict", 409, "Subscription is not active"),
        ("signature", 400, "Invalid payment signature"),
        ("provider", 503, "Payment system not configured"),
        ("value", 400, "Invalid request"),
        ("permission", 403, "Permission denied"),
        ("database", 500, "Internal database error"),
    ],
)
async def test_error_mapping(boom_app, client: AsyncClient, kind: str, status: int, detail: str) -> None:
    resp = await client.get(f"/api/v1/boom/{kind}")

    assert resp.status_code == status
    assert resp.json() == {"detail": detail}
