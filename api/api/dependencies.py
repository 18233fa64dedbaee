"""FastAPI dependency injection for settings, database sessions and outbound clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_engine.idempotency import DatabaseTTLCache, InMemoryTTLCache, KeyValueTTLCache
from billing_engine.state.database import get_engine
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, IdempotencyBackend, load_api_settings
from api.middleware.rbac import Role, get_user_role
from api.services.email_service import EmailNotifier
from api.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    The session commits on clean exit and rolls back on exception, so a
    handler's state mutations and idempotency records land atomically.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Payment provider client
# ---------------------------------------------------------------------------

_razorpay_client: RazorpayClient | None = None


def init_razorpay_client(settings: APISettings) -> RazorpayClient:
    """Create and cache the global :class:`RazorpayClient`."""
    global _razorpay_client  # noqa: PLW0603
    _razorpay_client = RazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret.get_secret_value(),
        base_url=settings.razorpay_api_base,
        timeout=settings.razorpay_timeout,
    )
    return _razorpay_client


async def dispose_razorpay_client() -> None:
    global _razorpay_client  # noqa: PLW0603
    if _razorpay_client is not None:
        await _razorpay_client.close()
        _razorpay_client = None


def get_razorpay_client() -> RazorpayClient:
    """Return the cached :class:`RazorpayClient` singleton."""
    if _razorpay_client is None:
        raise RuntimeError(
            "Razorpay client has not been initialised. Ensure init_razorpay_client() is called during startup."
        )
    return _razorpay_client


RazorpayDep = Annotated[RazorpayClient, Depends(get_razorpay_client)]

# ---------------------------------------------------------------------------
# E-mail notifier
# ---------------------------------------------------------------------------

_notifier: EmailNotifier | None = None


def init_notifier(settings: APISettings) -> EmailNotifier:
    """Create and cache the global :class:`EmailNotifier`."""
    global _notifier  # noqa: PLW0603
    _notifier = EmailNotifier(
        api_key=settings.resend_api_key.get_secret_value(),
        from_address=settings.notification_from,
        admin_address=settings.admin_notification_email,
        dashboard_url=settings.admin_dashboard_url,
        base_url=settings.resend_api_base,
    )
    return _notifier


async def dispose_notifier() -> None:
    global _notifier  # noqa: PLW0603
    if _notifier is not None:
        await _notifier.close()
        _notifier = None


def get_notifier() -> EmailNotifier:
    """Return the cached :class:`EmailNotifier` singleton."""
    if _notifier is None:
        raise RuntimeError("Notifier has not been initialised. Ensure init_notifier() is called during startup.")
    return _notifier


NotifierDep = Annotated[EmailNotifier, Depends(get_notifier)]

# ---------------------------------------------------------------------------
# TTL cache (idempotency records and abuse-alert cooldowns)
# ---------------------------------------------------------------------------

_memory_cache: InMemoryTTLCache | None = None


def get_memory_cache() -> InMemoryTTLCache:
    """Process-wide in-memory cache, created on first use."""
    global _memory_cache  # noqa: PLW0603
    if _memory_cache is None:
        _memory_cache = InMemoryTTLCache()
    return _memory_cache


def get_ttl_cache(session: SessionDep, settings: SettingsDep) -> KeyValueTTLCache:
    """Select the cache backend configured by ``API_IDEMPOTENCY_BACKEND``."""
    if settings.idempotency_backend is IdempotencyBackend.MEMORY:
        return get_memory_cache()
    return DatabaseTTLCache(session)


TTLCacheDep = Annotated[KeyValueTTLCache, Depends(get_ttl_cache)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_user_identity(request: Request) -> str:
    """Extract the authenticated user id from request state."""
    sub = getattr(request.state, "sub", None)
    if not sub:
        raise HTTPException(status_code=401, detail="Authentication required")
    return sub


UserDep = Annotated[str, Depends(get_user_identity)]


def get_user_email(request: Request) -> str | None:
    return getattr(request.state, "email", None)


EmailDep = Annotated[str | None, Depends(get_user_email)]

RoleDep = Annotated[Role, Depends(get_user_role)]
