"""Referral codes, referral capture for new firms and referrer stats."""

from __future__ import annotations

import logging

from billing_engine.errors import ConflictError, NotFoundError, ValidationError
from billing_engine.referral import MAX_CODE_ATTEMPTS, generate_referral_code, normalise_referral_code
from billing_engine.state.repository import FirmRepository, ReferralRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.schemas import (
    ReferralApplyRequest,
    ReferralApplyResponse,
    ReferralCodeResponse,
    ReferralStatsResponse,
)
from api.services.firm_access import require_member, require_owner

logger = logging.getLogger(__name__)


class ReferralService:
    def __init__(self, session: AsyncSession, settings: APISettings) -> None:
        self._settings = settings
        self._firms = FirmRepository(session)
        self._referrals = ReferralRepository(session)

    async def get_or_create_code(self, user_id: str, firm_id: str) -> ReferralCodeResponse:
        """Return the firm's referral code, assigning a fresh one on first use.

        Raises
        ------
        ConflictError
            If no unused code was found after ``MAX_CODE_ATTEMPTS`` draws.
        """
        await require_member(self._firms, firm_id, user_id)
        firm = await self._firms.get(firm_id)
        if firm is None:
            raise NotFoundError("Firm not found")
        if firm.referral_code:
            return ReferralCodeResponse(code=firm.referral_code)

        for _ in range(MAX_CODE_ATTEMPTS):
            if await self._firms.set_referral_code(firm_id, generate_referral_code()):
                # Re-read: a concurrent request may have assigned a code first.
                firm = await self._firms.get(firm_id)
                if firm is not None and firm.referral_code:
                    logger.info("Referral code assigned to firm %s", firm_id)
                    return ReferralCodeResponse(code=firm.referral_code)
        raise ConflictError("Failed to generate unique referral code")

    async def apply(self, user_id: str, request: ReferralApplyRequest) -> ReferralApplyResponse:
        """Record that the caller's new firm was referred by the code's owner."""
        await require_owner(self._firms, request.firm_id, user_id, "Only firm owners can apply a referral code")

        code = normalise_referral_code(request.code)
        if code is None:
            raise ValidationError("Invalid referral code")
        referrer = await self._firms.get_by_referral_code(code)
        if referrer is None:
            raise NotFoundError("Referral code not found")
        if referrer.id == request.firm_id:
            raise ValidationError("A firm cannot refer itself")

        firm = await self._firms.get(request.firm_id)
        if firm is not None and firm.referred_by:
            raise ConflictError("This firm has already used a referral code")
        try:
            await self._referrals.create(referrer.id, request.firm_id, user_id)
        except ValueError as exc:
            raise ConflictError("This firm has already used a referral code") from exc
        await self._firms.set_referred_by(request.firm_id, referrer.id)

        logger.info("Firm %s referred by %s", request.firm_id, referrer.id)
        return ReferralApplyResponse(success=True, referrer_firm_id=referrer.id)

    async def stats(self, user_id: str, firm_id: str) -> ReferralStatsResponse:
        await require_member(self._firms, firm_id, user_id)
        total, rewarded = await self._referrals.stats(firm_id)
        return ReferralStatsResponse(
            total_referrals=total,
            rewarded_referrals=rewarded,
            pending_referrals=total - rewarded,
            bonus_days_earned=rewarded * self._settings.referral_bonus_days,
        )
