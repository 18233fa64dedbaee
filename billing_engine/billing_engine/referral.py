"""Referral codes and the referral reward processor."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.pricing import Plan, plan_period_end
from billing_engine.state.repository import FirmRepository, ReferralRepository, SubscriptionRepository

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 6
REFERRAL_BONUS_DAYS = 30
MAX_CODE_ATTEMPTS = 10


def generate_referral_code() -> str:
    """Random 6-character code without the look-alike characters I, O, 0 and 1."""
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def normalise_referral_code(code: str) -> str | None:
    """Upper-case and strip *code*; ``None`` if it cannot be a valid code."""
    cleaned = code.strip().upper()
    if len(cleaned) != REFERRAL_CODE_LENGTH or any(c not in REFERRAL_CODE_ALPHABET for c in cleaned):
        return None
    return cleaned


class ReferralRewardProcessor:
    """Grants the referral bonus after a firm's first direct payment.

    Both the referrer and the referee get their ``current_period_end``
    pushed out by the bonus window.  The processor never raises: a reward
    is a bonus, so any failure is logged and the payment flow continues.
    """

    def __init__(self, session: AsyncSession, bonus_days: int = REFERRAL_BONUS_DAYS) -> None:
        self._session = session
        self._firms = FirmRepository(session)
        self._referrals = ReferralRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._bonus = timedelta(days=bonus_days)

    async def process(self, referee_firm_id: str, plan: Plan, now: datetime) -> bool:
        """Reward a pending referral for *referee_firm_id*, if any.

        Returns ``True`` if a reward was granted.
        """
        try:
            # Savepoint so a failed reward leaves the payment transaction usable.
            async with self._session.begin_nested():
                return await self._process(referee_firm_id, plan, now)
        except Exception:
            logger.warning("Referral reward failed for firm %s", referee_firm_id, exc_info=True)
            return False

    async def _process(self, referee_firm_id: str, plan: Plan, now: datetime) -> bool:
        firm = await self._firms.get(referee_firm_id)
        if firm is None or not firm.referred_by:
            return False

        referral = await self._referrals.find_pending(referee_firm_id, firm.referred_by)
        if referral is None:
            return False

        if not await self._referrals.mark_rewarded(referral.id):
            return False

        referee = await self._subscriptions.get(referee_firm_id)
        referee_end = referee.current_period_end if referee is not None else None
        if referee_end is None:
            referee_end = plan_period_end(plan, now)
        await self._subscriptions.apply(
            referee_firm_id,
            {"current_period_end": referee_end + self._bonus, "updated_at": now},
        )

        referrer = await self._subscriptions.get(firm.referred_by)
        if referrer is not None and referrer.current_period_end is not None:
            await self._subscriptions.apply(
                firm.referred_by,
                {"current_period_end": referrer.current_period_end + self._bonus, "updated_at": now},
            )
        else:
            logger.info("Referrer %s has no subscription period to extend", firm.referred_by)

        logger.info("Referral %s rewarded: %s -> %s", referral.id, firm.referred_by, referee_firm_id)
        return True
