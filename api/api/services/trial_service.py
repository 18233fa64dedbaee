"""Trial eligibility and activation for new firms."""

from __future__ import annotations

import logging

from billing_engine.idempotency import KeyValueTTLCache
from billing_engine.state.repository import FirmRepository, TrialRepository
from billing_engine.trial import TrialEngine
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.schemas import TrialCheckRequest, TrialDecisionResponse, TrialRecordRequest, TrialRecordResponse
from api.services.email_service import EmailNotifier, send_best_effort
from api.services.firm_access import require_member

logger = logging.getLogger(__name__)


class TrialService:
    """Wraps :class:`TrialEngine` with firm checks and the new-firm e-mail."""

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        notifier: EmailNotifier,
        cache: KeyValueTTLCache,
    ) -> None:
        self._firms = FirmRepository(session)
        self._notifier = notifier
        self._engine = TrialEngine(
            TrialRepository(session),
            cache,
            send_abuse_alert=notifier.notify_abuse_alert,
            cooldown_seconds=settings.abuse_alert_cooldown_seconds,
        )

    async def check(self, user_id: str, request: TrialCheckRequest, ip: str) -> TrialDecisionResponse:
        """Decide eligibility without recording anything.

        A ``firm_id`` exempts the firm's own activation from the reuse
        checks, so the caller must belong to that firm.
        """
        if request.firm_id:
            await require_member(self._firms, request.firm_id, user_id)
        decision = await self._engine.check_eligibility(
            device_id=request.device_id,
            user_id=user_id,
            ip=ip,
            firm_id=request.firm_id,
            persistent_device_id=request.persistent_device_id,
        )
        return TrialDecisionResponse(
            eligible=decision.eligible,
            reason=decision.reason.value if decision.reason else None,
            ip_prefix=decision.ip_prefix,
        )

    async def record(
        self,
        user_id: str,
        email: str | None,
        request: TrialRecordRequest,
        ip: str,
    ) -> TrialRecordResponse:
        """Record a confirmed activation for a firm the caller belongs to."""
        await require_member(self._firms, request.firm_id, user_id)
        ip_prefix = await self._engine.record_activation(
            device_id=request.device_id,
            firm_id=request.firm_id,
            user_id=user_id,
            ip=ip,
            persistent_device_id=request.persistent_device_id,
        )

        firm = await self._firms.get(request.firm_id)
        firm_name = firm.name if firm is not None else request.firm_id
        await send_best_effort(
            self._notifier.notify_new_firm(firm_name, email or user_id),
            f"new firm notification for {request.firm_id}",
        )
        return TrialRecordResponse(success=True, ip_prefix=ip_prefix)
