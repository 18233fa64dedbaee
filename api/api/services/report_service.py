"""Report entitlement: subscription check with the firm trial counter as fallback."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from billing_engine.errors import NotFoundError
from billing_engine.state.repository import FirmRepository, SubscriptionRepository
from billing_engine.subscription import SubscriptionState, is_subscription_valid
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.schemas import ReportAuthorizationResponse
from api.services.firm_access import require_member

logger = logging.getLogger(__name__)


class ReportService:
    def __init__(self, session: AsyncSession, settings: APISettings) -> None:
        self._settings = settings
        self._firms = FirmRepository(session)
        self._subscriptions = SubscriptionRepository(session)

    async def authorize(self, user_id: str, firm_id: str) -> ReportAuthorizationResponse:
        """Decide whether the firm may generate one more report.

        Subscribed firms are always allowed.  Others consume one trial
        report; the counter is incremented atomically so concurrent
        requests cannot exceed the limit.  ``allowed`` is ``False`` once
        the trial is exhausted.
        """
        await require_member(self._firms, firm_id, user_id)
        firm = await self._firms.get(firm_id)
        if firm is None:
            raise NotFoundError("Firm not found")

        limit = self._settings.trial_report_limit
        state = SubscriptionState.from_row(firm_id, await self._subscriptions.get(firm_id))
        subscribed = is_subscription_valid(
            state.status,
            state.current_period_end,
            datetime.now(UTC),
            grace=timedelta(hours=self._settings.grace_period_hours),
        )
        if subscribed:
            used = firm.trial_reports_used
            return ReportAuthorizationResponse(
                allowed=True,
                subscribed=True,
                trial_reports_used=used,
                trial_reports_remaining=max(limit - used, 0),
            )

        granted = await self._firms.consume_trial_report(firm_id, limit)
        refreshed = await self._firms.get(firm_id)
        used = refreshed.trial_reports_used if refreshed is not None else limit
        if not granted:
            logger.info("Trial exhausted for firm %s", firm_id)
        return ReportAuthorizationResponse(
            allowed=granted,
            subscribed=False,
            trial_reports_used=used,
            trial_reports_remaining=max(limit - used, 0),
        )
