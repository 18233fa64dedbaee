"""Report entitlement endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from api.dependencies import SessionDep, SettingsDep, UserDep
from api.schemas import ReportAuthorizationResponse, ReportAuthorizeRequest
from api.services.report_service import ReportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


@router.post(
    "/authorize",
    response_model=ReportAuthorizationResponse,
    responses={403: {"description": "Trial exhausted and no valid subscription."}},
)
async def authorize_report(
    body: ReportAuthorizeRequest,
    session: SessionDep,
    settings: SettingsDep,
    user_id: UserDep,
) -> ReportAuthorizationResponse | JSONResponse:
    """Authorise one report for the firm.

    Without a valid subscription this consumes one trial report.  Once
    the trial is used up the response is ``403`` carrying the same body,
    with ``trialReportsRemaining`` at zero.
    """
    decision = await ReportService(session, settings).authorize(user_id, body.firm_id)
    if not decision.allowed:
        return JSONResponse(status_code=403, content=decision.model_dump(mode="json", by_alias=True))
    return decision
