"""Async REST client for the Razorpay payments API.

Only the calls the billing flows need are wrapped: subscription creation,
quantity updates, cancellation, and creating and fetching one-time orders.
Every failure (transport error, non-2xx status, missing credentials)
surfaces as :class:`~billing_engine.errors.ProviderUnavailableError` so
callers decide whether it is fatal.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from billing_engine.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Thin async wrapper around ``https://api.razorpay.com/v1``.

    Parameters
    ----------
    key_id:
        Razorpay key id (also returned to the browser for checkout).
    key_secret:
        Razorpay key secret.  Used for HTTP basic auth and for verifying
        checkout callback signatures.
    base_url:
        API root, overridable for tests.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._key_id = key_id
        self._configured = bool(key_id and key_secret)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            auth=httpx.BasicAuth(key_id, key_secret),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def configured(self) -> bool:
        return self._configured

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Subscriptions -------------------------------------------------------

    async def create_subscription(
        self,
        plan_id: str,
        *,
        total_count: int,
        quantity: int = 1,
        start_at: int | None = None,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a recurring subscription on *plan_id*.

        ``start_at`` is a UNIX timestamp; when given, the first charge is
        deferred until then.
        """
        payload: dict[str, Any] = {
            "plan_id": plan_id,
            "total_count": total_count,
            "quantity": quantity,
            "customer_notify": 1,
            "notes": notes or {},
        }
        if start_at is not None:
            payload["start_at"] = start_at
        return await self._request("POST", "/subscriptions", payload)

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        quantity: int,
        schedule_change_at: str = "now",
    ) -> dict[str, Any]:
        """Change the per-unit quantity of an existing subscription."""
        return await self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            {"quantity": quantity, "schedule_change_at": schedule_change_at},
        )

    async def cancel_subscription(self, subscription_id: str, *, at_cycle_end: bool = False) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )

    # -- Orders --------------------------------------------------------------

    async def create_order(
        self,
        amount: int,
        *,
        receipt: str,
        currency: str = "INR",
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a one-time order for *amount* minor units (paise)."""
        return await self._request(
            "POST",
            "/orders",
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )

    async def fetch_order(self, order_id: str) -> dict[str, Any]:
        """Return the order as the provider recorded it, including its notes."""
        return await self._request("GET", f"/orders/{order_id}")

    # -- Internal helpers ----------------------------------------------------

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self._configured:
            raise ProviderUnavailableError("Payment provider is not configured")

        try:
            response = await self._client.request(method, path, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Razorpay returned %d for %s %s: %s",
                exc.response.status_code,
                method,
                path,
                exc.response.text[:500],
            )
            raise ProviderUnavailableError(
                f"Payment provider rejected {method} {path} ({exc.response.status_code})"
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Razorpay request failed for %s %s: %s", method, path, exc)
            raise ProviderUnavailableError("Payment provider is unreachable") from exc
