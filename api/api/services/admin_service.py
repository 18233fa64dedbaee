"""Admin review of trial-abuse records."""

from __future__ import annotations

import logging

from billing_engine.errors import NotFoundError
from billing_engine.state.repository import TrialRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import (
    AbuseActionRequest,
    AbuseListResponse,
    DeviceTrialView,
    IpTrialView,
)

logger = logging.getLogger(__name__)


class AdminAbuseService:
    """List, whitelist, remove and reset IP-prefix and device trial records."""

    def __init__(self, session: AsyncSession) -> None:
        self._trials = TrialRepository(session)

    async def list_abuse(self) -> AbuseListResponse:
        """Trial records, the most heavily linked first."""
        ip_rows = await self._trials.list_ip_trials()
        device_rows = await self._trials.list_device_trials()

        ip_trials = [
            IpTrialView(
                ip_prefix=row.ip_prefix,
                linked_firm_ids=list(row.linked_firm_ids or []),
                linked_device_ids=list(row.linked_device_ids or []),
                linked_user_ids=list(row.linked_user_ids or []),
                is_whitelisted=bool(row.is_whitelisted),
                created_at=row.created_at,
                trial_activated_at=row.trial_activated_at,
                updated_at=row.updated_at,
            )
            for row in ip_rows
        ]
        device_trials = [
            DeviceTrialView(
                device_id=row.device_id,
                firm_activated=row.firm_activated,
                ip_prefix=row.ip_prefix,
                reports_generated=row.reports_generated or 0,
                linked_user_ids=list(row.linked_user_ids or []),
                is_whitelisted=bool(row.is_whitelisted),
                activated_at=row.activated_at,
                created_at=row.created_at,
            )
            for row in device_rows
        ]
        ip_trials.sort(key=lambda v: len(v.linked_firm_ids), reverse=True)
        device_trials.sort(key=lambda v: len(v.linked_user_ids), reverse=True)
        return AbuseListResponse(ip_trials=ip_trials, device_trials=device_trials)

    async def apply_action(self, admin_id: str, request: AbuseActionRequest) -> None:
        """Apply *request* to one record.

        Raises
        ------
        NotFoundError
            If no record with the given id exists.
        """
        handlers = {
            ("ip", "whitelist"): self._trials.whitelist_ip,
            ("ip", "remove"): self._trials.delete_ip,
            ("ip", "reset"): self._trials.reset_ip,
            ("device", "whitelist"): self._trials.whitelist_device,
            ("device", "remove"): self._trials.delete_device,
            ("device", "reset"): self._trials.reset_device,
        }
        affected = await handlers[(request.type, request.action)](request.id)
        if not affected:
            raise NotFoundError(f"No {request.type} trial record '{request.id}'")
        logger.info("Admin %s applied %s to %s trial %s", admin_id, request.action, request.type, request.id)
