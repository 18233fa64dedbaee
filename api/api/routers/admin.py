"""Admin endpoints for reviewing and clearing trial-abuse records."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from api.dependencies import SessionDep, UserDep
from api.middleware.rbac import Role, require_role
from api.schemas import AbuseActionRequest, AbuseActionResponse, AbuseListResponse
from api.services.admin_service import AdminAbuseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/abuse", response_model=AbuseListResponse)
async def list_abuse(
    session: SessionDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> AbuseListResponse:
    """IP-prefix and device trial records, most heavily linked first."""
    return await AdminAbuseService(session).list_abuse()


@router.post("/abuse", response_model=AbuseActionResponse)
async def apply_abuse_action(
    body: AbuseActionRequest,
    session: SessionDep,
    user_id: UserDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> AbuseActionResponse:
    """Whitelist, remove or reset one trial record."""
    await AdminAbuseService(session).apply_action(user_id, body)
    return AbuseActionResponse(success=True)
