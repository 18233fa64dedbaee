"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on the ``get_db_session`` dependency).

Subscription mutations are expressed as targeted column updates so that
concurrent writers touching unrelated fields never clobber each other.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import (
    DeviceTrialTable,
    FirmMemberTable,
    FirmTable,
    IdempotencyKeyTable,
    IpTrialTable,
    ReferralTable,
    SubscriptionTable,
    UserTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The returned result's ``rowcount`` is 1 when the row was inserted and 0
    when it already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _union(existing: list[str] | None, *items: str | None) -> list[str]:
    """Order-preserving set union of a JSON array column with new members."""
    merged = list(existing or [])
    for item in items:
        if item and item not in merged:
            merged.append(item)
    return merged


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------


class IdempotencyKeyRepository:
    """TTL-bounded dedup records stored alongside billing state."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored result for a non-expired *key*."""
        stmt = select(IdempotencyKeyTable.result).where(
            IdempotencyKeyTable.key == key,
            IdempotencyKeyTable.expires_at > datetime.now(UTC),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def put(self, key: str, value: dict[str, Any], *, expires_at: datetime) -> None:
        """Insert or overwrite the record for *key*."""
        await _dialect_upsert(
            self._session,
            IdempotencyKeyTable,
            values={
                "key": key,
                "result": value,
                "created_at": datetime.now(UTC),
                "expires_at": expires_at,
            },
            index_elements=["key"],
            update_columns=["result", "created_at", "expires_at"],
        )
        await self._session.flush()

    async def insert_if_absent(self, key: str, value: dict[str, Any], *, expires_at: datetime) -> bool:
        """Atomically claim *key*.  Returns ``False`` if it was already present."""
        result = await _dialect_upsert_nothing(
            self._session,
            IdempotencyKeyTable,
            values={
                "key": key,
                "result": value,
                "created_at": datetime.now(UTC),
                "expires_at": expires_at,
            },
            index_elements=["key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def purge_expired(self) -> int:
        """Delete expired records.  Returns the number removed."""
        stmt = delete(IdempotencyKeyTable).where(IdempotencyKeyTable.expires_at <= datetime.now(UTC))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Firms, members and users
# ---------------------------------------------------------------------------


class FirmRepository:
    """Firm records, membership lookups and the firm-level trial counter."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, firm_id: str) -> FirmTable | None:
        stmt = select(FirmTable).where(FirmTable.id == firm_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, firm_id: str, name: str, owner_id: str) -> FirmTable:
        """Insert a firm and its owner membership row.

        The firm row is flushed before the membership row, which references
        it through a foreign key.
        """
        if await self.get(firm_id) is not None:
            raise ValueError(f"Firm '{firm_id}' already exists")
        row = FirmTable(id=firm_id, name=name, owner_id=owner_id, trial_reports_used=0)
        self._session.add(row)
        await self._session.flush()
        self._session.add(FirmMemberTable(firm_id=firm_id, user_id=owner_id, role="owner"))
        await self._session.flush()
        return row

    async def add_member(self, firm_id: str, user_id: str, role: str = "member") -> None:
        await _dialect_upsert(
            self._session,
            FirmMemberTable,
            values={"firm_id": firm_id, "user_id": user_id, "role": role},
            index_elements=["firm_id", "user_id"],
            update_columns=["role"],
        )
        await self._session.flush()

    async def get_member_role(self, firm_id: str, user_id: str) -> str | None:
        """Return ``"owner"``, ``"member"`` or ``None`` if the user is not in the firm."""
        firm = await self.get(firm_id)
        if firm is None:
            return None
        if firm.owner_id == user_id:
            return "owner"
        stmt = select(FirmMemberTable.role).where(
            FirmMemberTable.firm_id == firm_id,
            FirmMemberTable.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_members(self, firm_id: str) -> int:
        stmt = select(func.count()).select_from(FirmMemberTable).where(FirmMemberTable.firm_id == firm_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def get_by_referral_code(self, code: str) -> FirmTable | None:
        result = await self._session.execute(select(FirmTable).where(FirmTable.referral_code == code))
        return result.scalar_one_or_none()

    async def set_referral_code(self, firm_id: str, code: str) -> bool:
        """Assign *code* to a firm that has none yet.

        Returns ``False`` if the code collides with another firm's code.
        """
        try:
            async with self._session.begin_nested():
                stmt = (
                    update(FirmTable)
                    .where(FirmTable.id == firm_id, FirmTable.referral_code.is_(None))
                    .values(referral_code=code, updated_at=datetime.now(UTC))
                )
                await self._session.execute(stmt)
        except IntegrityError:
            return False
        await self._session.flush()
        return True

    async def set_referred_by(self, firm_id: str, referrer_firm_id: str) -> None:
        stmt = (
            update(FirmTable)
            .where(FirmTable.id == firm_id)
            .values(referred_by=referrer_firm_id, updated_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def consume_trial_report(self, firm_id: str, limit: int) -> bool:
        """Atomically increment the firm's trial counter if it is below *limit*.

        Returns ``True`` if a trial report was granted.
        """
        stmt = (
            update(FirmTable)
            .where(FirmTable.id == firm_id, FirmTable.trial_reports_used < limit)
            .values(trial_reports_used=FirmTable.trial_reports_used + 1)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_user(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def upsert_user(self, user_id: str, email: str | None, display_name: str | None = None) -> None:
        await _dialect_upsert(
            self._session,
            UserTable,
            values={"id": user_id, "email": email, "display_name": display_name},
            index_elements=["id"],
            update_columns=["email", "display_name"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Per-firm subscription row with targeted field patches."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, firm_id: str) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.firm_id == firm_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_update(self, firm_id: str) -> SubscriptionTable | None:
        """Like :meth:`get` but takes a row lock on PostgreSQL.

        SQLite ignores ``FOR UPDATE``; its single-writer model serialises
        the transaction instead.
        """
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.firm_id == firm_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def apply(self, firm_id: str, patch: dict[str, Any]) -> bool:
        """Apply a column patch to the firm's subscription row.

        A patch that carries both ``plan`` and ``status`` may create the row
        (upsert); any other patch only updates an existing row.  Returns
        ``True`` if a row was written.
        """
        if not patch:
            return False
        values = dict(patch)
        values.setdefault("updated_at", datetime.now(UTC))

        if "plan" in values and "status" in values:
            await _dialect_upsert(
                self._session,
                SubscriptionTable,
                values={"firm_id": firm_id, **values},
                index_elements=["firm_id"],
                update_columns=list(values),
            )
            await self._session.flush()
            return True

        stmt = update(SubscriptionTable).where(SubscriptionTable.firm_id == firm_id).values(**values)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Trial tracking
# ---------------------------------------------------------------------------


class TrialRepository:
    """Device and IP-prefix trial records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_device(self, device_id: str) -> DeviceTrialTable | None:
        stmt = select(DeviceTrialTable).where(DeviceTrialTable.device_id == device_id).execution_options(
            populate_existing=True
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_ip(self, ip_prefix: str) -> IpTrialTable | None:
        stmt = select(IpTrialTable).where(IpTrialTable.ip_prefix == ip_prefix).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_device_activation(
        self,
        device_id: str,
        *,
        firm_id: str,
        user_id: str,
        ip_prefix: str,
        persistent_device_id: str | None = None,
        linked_to_fingerprint: str | None = None,
    ) -> DeviceTrialTable:
        """Merge an activation into the device record, creating it if needed."""
        now = datetime.now(UTC)
        stmt = select(DeviceTrialTable).where(DeviceTrialTable.device_id == device_id).with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = DeviceTrialTable(device_id=device_id, reports_generated=0, linked_user_ids=[], is_whitelisted=False)
            self._session.add(row)

        row.firm_activated = firm_id
        row.activated_by = user_id
        row.ip_prefix = ip_prefix
        row.activated_at = now
        row.linked_user_ids = _union(row.linked_user_ids, user_id)
        if persistent_device_id is not None:
            row.persistent_device_id = persistent_device_id
        if linked_to_fingerprint is not None:
            row.linked_to_fingerprint = linked_to_fingerprint
        await self._session.flush()
        return row

    async def merge_ip_activation(
        self,
        ip_prefix: str,
        *,
        firm_id: str,
        device_id: str,
        user_id: str,
    ) -> IpTrialTable:
        """Union the activation into the IP-prefix record.

        ``created_at`` and ``trial_activated_at`` are stamped only the first
        time; later activations never overwrite them.
        """
        now = datetime.now(UTC)
        stmt = select(IpTrialTable).where(IpTrialTable.ip_prefix == ip_prefix).with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = IpTrialTable(
                ip_prefix=ip_prefix,
                linked_firm_ids=[],
                linked_device_ids=[],
                linked_user_ids=[],
                is_whitelisted=False,
            )
            self._session.add(row)

        row.linked_firm_ids = _union(row.linked_firm_ids, firm_id)
        row.linked_device_ids = _union(row.linked_device_ids, device_id)
        row.linked_user_ids = _union(row.linked_user_ids, user_id)
        row.updated_at = now
        if row.created_at is None:
            row.created_at = now
            row.trial_activated_at = now
        await self._session.flush()
        return row

    async def list_ip_trials(self) -> list[IpTrialTable]:
        result = await self._session.execute(select(IpTrialTable))
        return list(result.scalars().all())

    async def list_device_trials(self) -> list[DeviceTrialTable]:
        result = await self._session.execute(select(DeviceTrialTable))
        return list(result.scalars().all())

    async def whitelist_ip(self, ip_prefix: str) -> bool:
        stmt = update(IpTrialTable).where(IpTrialTable.ip_prefix == ip_prefix).values(is_whitelisted=True)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def whitelist_device(self, device_id: str) -> bool:
        stmt = update(DeviceTrialTable).where(DeviceTrialTable.device_id == device_id).values(is_whitelisted=True)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def delete_ip(self, ip_prefix: str) -> bool:
        result = await self._session.execute(delete(IpTrialTable).where(IpTrialTable.ip_prefix == ip_prefix))
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def delete_device(self, device_id: str) -> bool:
        result = await self._session.execute(delete(DeviceTrialTable).where(DeviceTrialTable.device_id == device_id))
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def reset_ip(self, ip_prefix: str) -> bool:
        """Keep only the first linked firm of an IP-prefix record."""
        row = await self.get_ip(ip_prefix)
        if row is None:
            return False
        if len(row.linked_firm_ids or []) > 1:
            row.linked_firm_ids = [row.linked_firm_ids[0]]
            row.updated_at = datetime.now(UTC)
            await self._session.flush()
        return True

    async def reset_device(self, device_id: str) -> bool:
        """Zero the device's report counter and clear its linked users."""
        stmt = (
            update(DeviceTrialTable)
            .where(DeviceTrialTable.device_id == device_id)
            .values(reports_generated=0, linked_user_ids=[])
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


class ReferralRepository:
    """Referral records between firms."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, referrer_firm_id: str, referee_firm_id: str, referee_user_id: str) -> ReferralTable:
        """Insert a pending referral.

        Raises ``ValueError`` if the referee firm already has a referral.
        """
        row = ReferralTable(
            id=uuid.uuid4().hex,
            referrer_firm_id=referrer_firm_id,
            referee_firm_id=referee_firm_id,
            referee_user_id=referee_user_id,
            status="pending",
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            raise ValueError(f"Firm '{referee_firm_id}' already has a referral")
        return row

    async def get_by_referee(self, referee_firm_id: str) -> ReferralTable | None:
        stmt = select(ReferralTable).where(ReferralTable.referee_firm_id == referee_firm_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_pending(self, referee_firm_id: str, referrer_firm_id: str) -> ReferralTable | None:
        stmt = select(ReferralTable).where(
            ReferralTable.referee_firm_id == referee_firm_id,
            ReferralTable.referrer_firm_id == referrer_firm_id,
            ReferralTable.status == "pending",
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_rewarded(self, referral_id: str) -> bool:
        """Flip a referral from pending to rewarded.

        Returns ``False`` if it was already rewarded, so the bonus is granted
        at most once even under concurrent verifications.
        """
        stmt = (
            update(ReferralTable)
            .where(ReferralTable.id == referral_id, ReferralTable.status == "pending")
            .values(status="rewarded", rewarded_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def stats(self, referrer_firm_id: str) -> tuple[int, int]:
        """Return ``(total, rewarded)`` referral counts for a referrer."""
        stmt = select(ReferralTable.status).where(ReferralTable.referrer_firm_id == referrer_firm_id)
        result = await self._session.execute(stmt)
        statuses = list(result.scalars().all())
        return len(statuses), sum(1 for s in statuses if s == "rewarded")
