"""Shared fixtures for the billing API tests.

Provides an in-memory SQLite database seeded with two firms, mock
Razorpay and e-mail clients, an async httpx client bound to the app, and
helpers for minting bearer tokens and provider signatures.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret instead of
# generating a random one.
_TEST_JWT_SECRET = "test-secret-key-for-billing-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from api.config import APISettings
from api.dependencies import get_db_session, get_notifier, get_razorpay_client, get_settings
from api.main import create_app
from api.services.email_service import EmailNotifier
from api.services.razorpay_client import RazorpayClient
from billing_engine.pricing import APP_IDENTIFIER
from billing_engine.state.database import create_tables
from billing_engine.state.repository import FirmRepository, SubscriptionRepository
from billing_engine.state.sqlite_adapter import get_local_engine
from billing_engine.trial import drain_abuse_alerts
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

OWNER_ID = "owner-1"
MEMBER_ID = "member-1"
OTHER_OWNER_ID = "owner-2"
FIRM_ID = "firm-1"
OTHER_FIRM_ID = "firm-2"

# ---------------------------------------------------------------------------
# Tokens and signatures
# ---------------------------------------------------------------------------


def _make_dev_token(sub: str = OWNER_ID, role: str = "user", email: str | None = None) -> str:
    """Generate a valid bearer token.

    Mirrors the signing logic in :class:`api.security.TokenManager`.
    """
    now = time.time()
    payload: dict[str, Any] = {
        "sub": sub,
        "email": email or f"{sub}@example.com",
        "role": role,
        "iss": "valuquick",
        "iat": now,
        "exp": now + 3600,
        "jti": f"test-jti-{sub}",
    }
    payload_json = json.dumps(payload)
    signature = hmac.new(
        os.environ["JWT_SECRET"].encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    token_bytes = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
    return f"bmdev.{token_bytes}.{signature}"


def auth_headers(sub: str = OWNER_ID, role: str = "user") -> dict[str, str]:
    return {"Authorization": f"Bearer {_make_dev_token(sub, role)}"}


def sign(message: str | bytes, secret: str = KEY_SECRET) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def seat_order(seats: int, firm_id: str = FIRM_ID, order_id: str = "order_1") -> dict[str, Any]:
    """A paid seat order as the provider returns it, notes included."""
    return {
        "id": order_id,
        "status": "paid",
        "notes": {
            "app": APP_IDENTIFIER,
            "type": "seat_purchase",
            "firmId": firm_id,
            "additionalSeats": str(seats),
        },
    }


async def activate_subscription(
    factory: async_sessionmaker[AsyncSession],
    firm_id: str = FIRM_ID,
    *,
    plan: str = "monthly",
    days_left: int = 10,
    **extra: Any,
) -> None:
    """Write an active subscription row directly, bypassing checkout."""
    async with factory() as session:
        await SubscriptionRepository(session).apply(
            firm_id,
            {
                "plan": plan,
                "status": "active",
                "provider_subscription_id": f"sub_{firm_id}",
                "current_period_end": datetime.now(UTC) + timedelta(days=days_left),
                **extra,
            },
        )
        await session.commit()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object with Razorpay fully configured."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        razorpay_plan_monthly="plan_monthly",
        razorpay_plan_halfyearly="plan_halfyearly",
        razorpay_plan_yearly="plan_yearly",
        razorpay_seat_plan_monthly="plan_seat_monthly",
        razorpay_seat_plan_halfyearly="plan_seat_halfyearly",
        razorpay_seat_plan_yearly="plan_seat_yearly",
        idempotency_backend="database",
        trial_report_limit=2,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Two firms: ``firm-1`` (owner + one member) and ``firm-2``."""
    async with session_factory() as session:
        firms = FirmRepository(session)
        await firms.create(FIRM_ID, "Acme Valuers", OWNER_ID)
        await firms.add_member(FIRM_ID, MEMBER_ID)
        await firms.create(OTHER_FIRM_ID, "Other Firm", OTHER_OWNER_ID)
        await firms.upsert_user(OWNER_ID, "owner@example.com", "Owner One")
        await session.commit()


# ---------------------------------------------------------------------------
# Outbound clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_razorpay() -> AsyncMock:
    """Return a mock RazorpayClient whose calls return plausible entities."""
    client = AsyncMock(spec=RazorpayClient)
    client.key_id = "rzp_test_key"
    client.configured = True
    client.create_subscription = AsyncMock(side_effect=[{"id": "sub_base"}, {"id": "sub_seats"}])
    client.update_subscription = AsyncMock(return_value={"id": "sub_seats"})
    client.cancel_subscription = AsyncMock(return_value={"status": "cancelled"})
    client.create_order = AsyncMock(return_value={"id": "order_1"})
    client.fetch_order = AsyncMock(return_value=seat_order(2))
    return client


@pytest.fixture()
def mock_notifier() -> AsyncMock:
    notifier = AsyncMock(spec=EmailNotifier)
    notifier.enabled = True
    for name in ("notify_new_subscription", "notify_subscription_cancelled", "notify_abuse_alert", "notify_new_firm"):
        setattr(notifier, name, AsyncMock(return_value=True))
    return notifier


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_razorpay: AsyncMock,
    mock_notifier: AsyncMock,
    seeded: None,
):
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app()

    async def _override_session():
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_razorpay_client] = lambda: mock_razorpay
    application.dependency_overrides[get_notifier] = lambda: mock_notifier
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client authenticated as the owner of ``firm-1``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=auth_headers(OWNER_ID)) as ac:
        yield ac
    await drain_abuse_alerts()
