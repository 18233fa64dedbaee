"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` and the
repository layer.  Each table corresponds to one logical document
collection of the billing domain (firms, subscriptions, device and
IP-prefix trials, referrals, idempotency keys).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class _UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always returns UTC-aware values.

    SQLite drops tzinfo on the way out; PostgreSQL keeps it.  Coercing
    here keeps period-end comparisons against ``datetime.now(UTC)`` valid
    on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Users and firms
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Platform users; referenced for notification context only."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)


class FirmTable(Base):
    """A firm: the billing unit that owns one subscription."""

    __tablename__ = "firms"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    referral_code: Mapped[str | None] = mapped_column(String(16), nullable=True, unique=True)
    referred_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trial_reports_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("trial_reports_used >= 0", name="ck_firms_trial_reports_non_negative"),
        Index("ix_firms_owner", "owner_id"),
    )


class FirmMemberTable(Base):
    """Membership of a user in a firm (``owner`` or ``member``)."""

    __tablename__ = "firm_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    firm_id: Mapped[str] = mapped_column(String(128), ForeignKey("firms.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("firm_id", "user_id", name="uq_firm_members_firm_user"),
        Index("ix_firm_members_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Subscriptions (one per firm, seat info flattened into seats_* columns)
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Authoritative billing state of a firm.

    The seat sub-record is flattened into ``seats_*`` columns so that each
    field can be updated with a targeted ``UPDATE`` without rewriting the
    whole row.  ``seats_total`` is kept equal to included + purchased by a
    CHECK constraint.
    """

    __tablename__ = "subscriptions"

    firm_id: Mapped[str] = mapped_column(String(128), ForeignKey("firms.id", ondelete="CASCADE"), primary_key=True)
    plan: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)

    seats_included: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    seats_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    seats_total: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    seats_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    seats_period_end: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    seats_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    seats_pending_reduction: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("seats_included = 1", name="ck_subscriptions_seats_included"),
        CheckConstraint("seats_purchased >= 0", name="ck_subscriptions_seats_purchased"),
        CheckConstraint(
            "seats_total = seats_included + seats_purchased",
            name="ck_subscriptions_seats_total",
        ),
        CheckConstraint(
            "seats_pending_reduction IS NULL OR "
            "(seats_pending_reduction >= 0 AND seats_pending_reduction <= seats_purchased)",
            name="ck_subscriptions_pending_reduction",
        ),
        Index("ix_subscriptions_provider_subscription", "provider_subscription_id"),
        Index("ix_subscriptions_seats_subscription", "seats_subscription_id"),
    )


# ---------------------------------------------------------------------------
# Trial tracking
# ---------------------------------------------------------------------------


class DeviceTrialTable(Base):
    """Trial activation keyed by device fingerprint."""

    __tablename__ = "device_trials"

    device_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    firm_activated: Mapped[str | None] = mapped_column(String(128), nullable=True)
    activated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ip_prefix: Mapped[str | None] = mapped_column(String(64), nullable=True)
    persistent_device_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    linked_to_fingerprint: Mapped[str | None] = mapped_column(String(256), nullable=True)
    reports_generated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    linked_user_ids: Mapped[list[str]] = mapped_column(_JsonType, default=list, nullable=False)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    activated_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_device_trials_firm", "firm_activated"),)


class IpTrialTable(Base):
    """Trial activations grouped by coarse network identity (IP prefix).

    The ``linked_*`` columns hold JSON arrays used as sets: they only grow
    by union, except through an explicit admin reset or removal.
    """

    __tablename__ = "ip_trials"

    ip_prefix: Mapped[str] = mapped_column(String(64), primary_key=True)
    linked_firm_ids: Mapped[list[str]] = mapped_column(_JsonType, default=list, nullable=False)
    linked_device_ids: Mapped[list[str]] = mapped_column(_JsonType, default=list, nullable=False)
    linked_user_ids: Mapped[list[str]] = mapped_column(_JsonType, default=list, nullable=False)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    trial_activated_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


class ReferralTable(Base):
    """Referral from one firm to another; at most one per referee firm."""

    __tablename__ = "referrals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    referrer_firm_id: Mapped[str] = mapped_column(String(128), nullable=False)
    referee_firm_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    referee_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    rewarded_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)

    __table_args__ = (Index("ix_referrals_referrer", "referrer_firm_id"),)


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------


class IdempotencyKeyTable(Base):
    """Durable dedup record for payment verifications and webhook deliveries."""

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    result: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(_UTCDateTime(), nullable=False)

    __table_args__ = (Index("ix_idempotency_keys_expires", "expires_at"),)
