"""Admin e-mail notifications sent through the Resend REST API.

Notifications are best-effort: when no API key is configured they are
skipped, and a delivery failure raises
:class:`~billing_engine.errors.NonCriticalSideEffectError`, which callers
route through :func:`send_best_effort` so it is logged and never reaches
the client.  All user-supplied values are HTML-escaped before
interpolation.
"""

from __future__ import annotations

import html
import logging
from collections.abc import Awaitable

import httpx
from billing_engine.errors import NonCriticalSideEffectError
from billing_engine.pricing import format_inr

logger = logging.getLogger(__name__)

_WRAPPER = '<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">{body}</div>'


def _row(label: str, value: str) -> str:
    return f'<p style="margin: 4px 0;"><strong>{label}:</strong> {html.escape(value)}</p>'


class EmailNotifier:
    """Send HTML notifications to the platform administrator.

    Parameters
    ----------
    api_key:
        Resend API key.  Empty disables sending.
    from_address:
        ``From`` header, e.g. ``"ValuQuick <notifications@valuquick.in>"``.
    admin_address:
        Recipient of every notification.  Empty disables sending.
    dashboard_url:
        Link appended to each message.
    """

    def __init__(
        self,
        api_key: str,
        from_address: str,
        admin_address: str,
        dashboard_url: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._enabled = bool(api_key and admin_address)
        self._from = from_address
        self._to = admin_address
        self._dashboard_url = dashboard_url
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    @property
    def enabled(self) -> bool:
        return self._enabled

    # -- Notifications -------------------------------------------------------

    async def notify_new_subscription(self, firm_name: str, plan: str, amount_paise: int, owner_email: str) -> bool:
        body = (
            '<h2 style="color: #6366f1;">New Subscription</h2>'
            "<p>A new subscription has been activated!</p>"
            + _row("Firm", firm_name)
            + _row("Plan", plan)
            + _row("Amount", format_inr(amount_paise))
            + _row("Owner", owner_email)
        )
        return await self._send(f"New Subscription: {firm_name}", body)

    async def notify_subscription_cancelled(
        self,
        firm_name: str,
        plan: str,
        owner_email: str,
        reason: str | None = None,
    ) -> bool:
        body = (
            '<h2 style="color: #ef4444;">Subscription Cancelled</h2>'
            "<p>A subscription has been cancelled.</p>"
            + _row("Firm", firm_name)
            + _row("Plan", plan)
            + _row("Owner", owner_email)
        )
        if reason:
            body += _row("Reason", reason)
        return await self._send(f"Subscription Cancelled: {firm_name}", body)

    async def notify_abuse_alert(self, ip_prefix: str, attempt_count: int, linked_firms: list[str]) -> bool:
        body = (
            '<h2 style="color: #f59e0b;">Abuse Alert</h2>'
            "<p>Potential trial abuse detected from the same network.</p>"
            + _row("IP Prefix", f"{ip_prefix}.*")
            + _row("Attempts", str(attempt_count))
            + _row("Linked Firms", str(len(linked_firms)))
        )
        if linked_firms:
            body += f'<p style="margin: 4px 0; font-size: 12px;">{html.escape(", ".join(linked_firms))}</p>'
        return await self._send(f"Abuse Alert: Multiple trials from {ip_prefix}.*", body)

    async def notify_new_firm(self, firm_name: str, owner_email: str) -> bool:
        body = (
            '<h2 style="color: #10b981;">New Firm Registered</h2>'
            "<p>A new firm has been created on ValuQuick.</p>"
            + _row("Firm", firm_name)
            + _row("Owner", owner_email)
        )
        return await self._send(f"New Firm: {firm_name}", body)

    # -- Internal helpers ----------------------------------------------------

    async def _send(self, subject: str, body: str) -> bool:
        if not self._enabled:
            logger.info("E-mail notifications disabled; skipping '%s'", subject)
            return False

        body += (
            f'<p style="color: #6b7280; font-size: 14px;">'
            f'<a href="{html.escape(self._dashboard_url)}">View in Admin Dashboard</a></p>'
        )
        payload = {"from": self._from, "to": [self._to], "subject": subject, "html": _WRAPPER.format(body=body)}
        try:
            response = await self._client.post("/emails", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NonCriticalSideEffectError(f"Resend returned {exc.response.status_code} for '{subject}'") from exc
        except httpx.RequestError as exc:
            raise NonCriticalSideEffectError(f"Resend request failed for '{subject}': {exc}") from exc
        return True


async def send_best_effort(notification: Awaitable[bool], description: str) -> bool:
    """Await *notification*, logging instead of raising if delivery fails."""
    try:
        return await notification
    except NonCriticalSideEffectError:
        logger.warning("Notification '%s' failed", description, exc_info=True)
        return False
