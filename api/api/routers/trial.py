"""Trial eligibility endpoints.

``POST`` answers whether the caller may start a trial; ``PUT`` records a
confirmed activation once the firm has been created.
"""

from __future__ import annotations

import logging

from billing_engine.trial import client_ip
from fastapi import APIRouter, Request

from api.dependencies import EmailDep, NotifierDep, SessionDep, SettingsDep, TTLCacheDep, UserDep
from api.schemas import TrialCheckRequest, TrialDecisionResponse, TrialRecordRequest, TrialRecordResponse
from api.services.trial_service import TrialService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trial", tags=["trial"])


@router.post("/check-eligibility", response_model=TrialDecisionResponse, response_model_exclude_none=True)
async def check_eligibility(
    body: TrialCheckRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> TrialDecisionResponse:
    service = TrialService(session, settings, notifier=notifier, cache=cache)
    return await service.check(user_id, body, client_ip(request.headers))


@router.put("/check-eligibility", response_model=TrialRecordResponse)
async def record_activation(
    body: TrialRecordRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
    user_id: UserDep,
    email: EmailDep,
) -> TrialRecordResponse:
    service = TrialService(session, settings, notifier=notifier, cache=cache)
    return await service.record(user_id, email, body, client_ip(request.headers))
