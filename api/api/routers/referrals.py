"""Referral endpoints: code lookup, applying a code and referrer stats."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from api.dependencies import SessionDep, SettingsDep, UserDep
from api.schemas import (
    ReferralApplyRequest,
    ReferralApplyResponse,
    ReferralCodeResponse,
    ReferralStatsResponse,
)
from api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.get("/code", response_model=ReferralCodeResponse)
async def get_referral_code(
    session: SessionDep,
    settings: SettingsDep,
    user_id: UserDep,
    firm_id: str = Query(..., alias="firmId", min_length=1),
) -> ReferralCodeResponse:
    return await ReferralService(session, settings).get_or_create_code(user_id, firm_id)


@router.post("/apply", response_model=ReferralApplyResponse)
async def apply_referral_code(
    body: ReferralApplyRequest,
    session: SessionDep,
    settings: SettingsDep,
    user_id: UserDep,
) -> ReferralApplyResponse:
    """Attach a referral code to the caller's newly created firm."""
    return await ReferralService(session, settings).apply(user_id, body)


@router.get("/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(
    session: SessionDep,
    settings: SettingsDep,
    user_id: UserDep,
    firm_id: str = Query(..., alias="firmId", min_length=1),
) -> ReferralStatsResponse:
    return await ReferralService(session, settings).stats(user_id, firm_id)
