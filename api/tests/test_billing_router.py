"""Tests for api/api/routers/billing.py

Covers:
- POST /billing/create-order: owner-only, plan validation, seats subscription
- POST /billing/verify-payment: signature check, activation, duplicate replay
  without a second referral reward, remembered failures
- POST /billing/webhook: signature check, remembered bad deliveries,
  malformed signed bodies, foreign-app filtering, dedup, cancellation cascade
- Seat renewal webhooks applying a scheduled reduction, with the fallback
  when the provider quantity update fails
- GET /billing/subscription: read model and membership check
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import pytest
from api.services import billing_service
from billing_engine.errors import ProviderUnavailableError
from conftest import (
    FIRM_ID,
    MEMBER_ID,
    OTHER_FIRM_ID,
    OTHER_OWNER_ID,
    WEBHOOK_SECRET,
    activate_subscription,
    auth_headers,
    sign,
)
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _verify_body(payment_id: str = "pay_1", subscription_id: str = "sub_base", **overrides: Any) -> dict[str, Any]:
    body = {
        "razorpay_payment_id": payment_id,
        "razorpay_subscription_id": subscription_id,
        "razorpay_signature": sign(f"{payment_id}|{subscription_id}"),
        "firmId": FIRM_ID,
        "plan": "monthly",
    }
    body.update(overrides)
    return body


def _webhook(
    event: str,
    *,
    firm_id: str = FIRM_ID,
    subscription_id: str = "sub_base",
    notes_type: str = "base",
    app: str = "valuquick",
    payment_id: str | None = "pay_hook_1",
    current_end: int | None = None,
    quantity: int | None = None,
) -> bytes:
    payload: dict[str, Any] = {
        "subscription": {
            "entity": {
                "id": subscription_id,
                "status": "active",
                "current_end": current_end,
                "quantity": quantity,
                "notes": {"app": app, "firmId": firm_id, "plan": "monthly", "type": notes_type},
            }
        }
    }
    if payment_id is not None:
        payload["payment"] = {"entity": {"id": payment_id, "subscription_id": subscription_id, "notes": []}}
    return json.dumps({"event": event, "payload": payload}).encode("utf-8")


async def _post_webhook(client: AsyncClient, body: bytes, signature: str | None = None) -> Any:
    headers = {"Content-Type": "application/json"}
    headers["X-Razorpay-Signature"] = signature if signature is not None else sign(body, WEBHOOK_SECRET)
    return await client.post("/api/v1/billing/webhook", content=body, headers=headers)


# ---------------------------------------------------------------------------
# POST /billing/create-order
# ---------------------------------------------------------------------------


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_owner_creates_base_subscription(self, client: AsyncClient, mock_razorpay) -> None:
        resp = await client.post("/api/v1/billing/create-order", json={"plan": "monthly", "firmId": FIRM_ID})

        assert resp.status_code == 200
        data = resp.json()
        assert data["subscriptionId"] == "sub_base"
        assert data["seatsSubscriptionId"] is None
        assert data["keyId"] == "rzp_test_key"
        assert data["amount"] == 100_000
        call = mock_razorpay.create_subscription.await_args_list[0]
        assert call.args[0] == "plan_monthly"
        assert call.kwargs["total_count"] == 120
        assert call.kwargs["notes"]["app"] == "valuquick"
        assert call.kwargs["notes"]["firmId"] == FIRM_ID

    @pytest.mark.asyncio
    async def test_additional_seats_create_second_subscription(self, client: AsyncClient, mock_razorpay) -> None:
        resp = await client.post(
            "/api/v1/billing/create-order",
            json={"plan": "yearly", "firmId": FIRM_ID, "additionalSeats": 2},
        )

        assert resp.status_code == 200
        assert resp.json()["seatsSubscriptionId"] == "sub_seats"
        seats_call = mock_razorpay.create_subscription.await_args_list[1]
        assert seats_call.args[0] == "plan_seat_yearly"
        assert seats_call.kwargs["quantity"] == 2
        assert seats_call.kwargs["total_count"] == 10
        assert seats_call.kwargs["notes"]["type"] == "seats"

    @pytest.mark.asyncio
    async def test_member_cannot_subscribe(self, client: AsyncClient, mock_razorpay) -> None:
        resp = await client.post(
            "/api/v1/billing/create-order",
            json={"plan": "monthly", "firmId": FIRM_ID},
            headers=auth_headers(MEMBER_ID),
        )

        assert resp.status_code == 403
        assert resp.json()["detail"] == "Only firm owners can subscribe"
        mock_razorpay.create_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self, client: AsyncClient, mock_razorpay) -> None:
        resp = await client.post("/api/v1/billing/create-order", json={"plan": "weekly", "firmId": FIRM_ID})

        assert resp.status_code == 400
        assert "Invalid plan" in resp.json()["detail"]
        mock_razorpay.create_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfigured_plan_is_503(self, client: AsyncClient, test_settings) -> None:
        test_settings.razorpay_plan_monthly = ""

        resp = await client.post("/api/v1/billing/create-order", json={"plan": "monthly", "firmId": FIRM_ID})

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/create-order",
            json={"plan": "monthly", "firmId": FIRM_ID},
            headers={"Authorization": ""},
        )

        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# POST /billing/verify-payment
# ---------------------------------------------------------------------------


class TestVerifyPayment:
    @pytest.mark.asyncio
    async def test_valid_signature_activates_subscription(self, client: AsyncClient, mock_notifier) -> None:
        resp = await client.post("/api/v1/billing/verify-payment", json=_verify_body())

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "duplicate": False, "referralRewarded": False}

        view = await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})
        data = view.json()
        assert data["status"] == "active"
        assert data["plan"] == "monthly"
        assert data["isValid"] is True
        assert data["currentPeriodEnd"] is not None
        mock_notifier.notify_new_subscription.assert_awaited_once()
        args = mock_notifier.notify_new_subscription.await_args.args
        assert args == ("Acme Valuers", "monthly", 100_000, "owner@example.com")

    @pytest.mark.asyncio
    async def test_seats_subscription_recorded_on_verify(self, client: AsyncClient) -> None:
        body = _verify_body(seatsSubscriptionId="sub_seats", additionalSeats=3)
        resp = await client.post("/api/v1/billing/verify-payment", json=body)
        assert resp.status_code == 200

        seats = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()["seats"]
        assert seats["purchased"] == 3
        assert seats["total"] == 4
        assert seats["subscriptionId"] == "sub_seats"
        assert seats["status"] == "active"

    @pytest.mark.asyncio
    async def test_replay_returns_duplicate(self, client: AsyncClient, mock_notifier) -> None:
        first = await client.post("/api/v1/billing/verify-payment", json=_verify_body())
        second = await client.post("/api/v1/billing/verify-payment", json=_verify_body())

        assert first.json()["duplicate"] is False
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert mock_notifier.notify_new_subscription.await_count == 1

    @pytest.mark.asyncio
    async def test_replay_does_not_extend_referral_twice(self, client: AsyncClient, session_factory) -> None:
        other = auth_headers(OTHER_OWNER_ID)
        await activate_subscription(session_factory, FIRM_ID, days_left=10)
        code = (await client.get("/api/v1/referrals/code", params={"firmId": FIRM_ID})).json()["code"]
        applied = await client.post(
            "/api/v1/referrals/apply", json={"code": code, "firmId": OTHER_FIRM_ID}, headers=other
        )
        assert applied.status_code == 200
        body = _verify_body("pay_ref", "sub_ref", firmId=OTHER_FIRM_ID)

        async def period_ends() -> tuple[datetime, datetime]:
            referrer = await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})
            referee = await client.get("/api/v1/billing/subscription", params={"firmId": OTHER_FIRM_ID}, headers=other)
            return (
                datetime.fromisoformat(referrer.json()["currentPeriodEnd"]),
                datetime.fromisoformat(referee.json()["currentPeriodEnd"]),
            )

        first = await client.post("/api/v1/billing/verify-payment", json=body, headers=other)
        assert first.json()["referralRewarded"] is True
        after_first = await period_ends()

        replay = await client.post("/api/v1/billing/verify-payment", json=body, headers=other)

        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True
        assert replay.json()["referralRewarded"] is False
        assert await period_ends() == after_first

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_and_remembered(self, client: AsyncClient) -> None:
        bad = _verify_body(razorpay_signature="0" * 64)
        resp = await client.post("/api/v1/billing/verify-payment", json=bad)

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid payment signature"

        # The same payment stays rejected even with a correct signature.
        retry = await client.post("/api/v1/billing/verify-payment", json=_verify_body())
        assert retry.status_code == 400

        view = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()
        assert view["status"] is None
        assert view["isValid"] is False

    @pytest.mark.asyncio
    async def test_member_cannot_verify(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/verify-payment",
            json=_verify_body(),
            headers=auth_headers(MEMBER_ID),
        )

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_fields_are_422(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/billing/verify-payment", json={"firmId": FIRM_ID, "plan": "monthly"})

        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# POST /billing/webhook
# ---------------------------------------------------------------------------


class TestWebhook:
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient) -> None:
        body = _webhook("subscription.charged")
        resp = await client.post(
            "/api/v1/billing/webhook",
            content=body,
            headers={"Content-Type": "application/json"},
        )

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, client: AsyncClient) -> None:
        body = _webhook("subscription.charged")
        resp = await _post_webhook(client, body + b" ", signature=sign(body, WEBHOOK_SECRET))

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid webhook signature"

    @pytest.mark.asyncio
    async def test_repeated_bad_delivery_skips_verification(self, client: AsyncClient, monkeypatch) -> None:
        calls: list[bytes | str] = []
        real_verify = billing_service.verify

        def counting_verify(message: bytes | str, signature: str, secret: str) -> bool:
            calls.append(message)
            return real_verify(message, signature, secret)

        monkeypatch.setattr(billing_service, "verify", counting_verify)
        body = _webhook("subscription.charged", current_end=4_102_444_800)

        first = await _post_webhook(client, body, signature="0" * 64)
        second = await _post_webhook(client, body, signature="0" * 64)

        assert first.status_code == 400
        assert second.status_code == 400
        assert len(calls) == 1

        # A correctly signed delivery of the same body is still accepted.
        resp = await _post_webhook(client, body)
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "event": "subscription.charged"}
        assert len(calls) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[]", b'{"payload": {}}'])
    async def test_signed_malformed_body_acknowledged(self, client: AsyncClient, body: bytes) -> None:
        resp = await _post_webhook(client, body)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "ignored": True}

    @pytest.mark.asyncio
    async def test_webhook_needs_no_bearer_token(self, app) -> None:
        body = _webhook("subscription.charged", current_end=4_102_444_800)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            resp = await _post_webhook(anonymous, body)

        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_charged_event_activates_firm(self, client: AsyncClient) -> None:
        body = _webhook("subscription.charged", current_end=4_102_444_800)
        resp = await _post_webhook(client, body)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "event": "subscription.charged"}
        view = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()
        assert view["status"] == "active"
        assert view["currentPeriodEnd"].startswith("2100-01-01")

    @pytest.mark.asyncio
    async def test_foreign_app_ignored(self, client: AsyncClient) -> None:
        body = _webhook("subscription.charged", app="other-app")
        resp = await _post_webhook(client, body)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "ignored": True, "event": "subscription.charged"}
        view = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()
        assert view["status"] is None

    @pytest.mark.asyncio
    async def test_unknown_firm_ignored(self, client: AsyncClient) -> None:
        resp = await _post_webhook(client, _webhook("subscription.charged", firm_id="ghost-firm"))

        assert resp.status_code == 200
        assert resp.json()["ignored"] is True

    @pytest.mark.asyncio
    async def test_unhandled_event_ignored(self, client: AsyncClient) -> None:
        resp = await _post_webhook(client, _webhook("invoice.paid"))

        assert resp.status_code == 200
        assert resp.json()["ignored"] is True

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, client: AsyncClient, mock_notifier) -> None:
        body = _webhook("subscription.charged")
        first = await _post_webhook(client, body)
        second = await _post_webhook(client, body)

        assert first.json().get("duplicate") is None
        assert second.json()["duplicate"] is True
        assert mock_notifier.notify_new_subscription.await_count == 1

    @pytest.mark.asyncio
    async def test_base_cancellation_cascades_to_seats(
        self, client: AsyncClient, session_factory, mock_razorpay, mock_notifier
    ) -> None:
        await activate_subscription(
            session_factory,
            seats_subscription_id="sub_seats_1",
            seats_purchased=2,
            seats_total=3,
            seats_status="active",
        )

        resp = await _post_webhook(client, _webhook("subscription.cancelled", subscription_id="sub_firm-1"))

        assert resp.status_code == 200
        mock_razorpay.cancel_subscription.assert_awaited_once_with("sub_seats_1")
        mock_notifier.notify_subscription_cancelled.assert_awaited_once()
        view = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()
        assert view["status"] == "cancelled"
        assert view["seats"]["status"] == "cancelled"
        assert view["isValid"] is False

    @pytest.mark.asyncio
    async def test_halted_marks_past_due(self, client: AsyncClient, session_factory) -> None:
        await activate_subscription(session_factory)

        resp = await _post_webhook(client, _webhook("subscription.halted", payment_id=None))

        assert resp.status_code == 200
        view = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()
        assert view["status"] == "past_due"

    @pytest.mark.asyncio
    async def test_unconfigured_secret_is_503(self, client: AsyncClient, test_settings) -> None:
        test_settings.razorpay_webhook_secret = SecretStr("")

        resp = await _post_webhook(client, _webhook("subscription.charged"))

        assert resp.status_code == 503


# ---------------------------------------------------------------------------
# Seat renewal applying a scheduled reduction
# ---------------------------------------------------------------------------


async def _schedule_reduction(client: AsyncClient, session_factory, new_count: int = 2) -> None:
    await activate_subscription(
        session_factory,
        seats_subscription_id="sub_seats_1",
        seats_purchased=5,
        seats_total=6,
        seats_status="active",
    )
    resp = await client.post("/api/v1/seats/reduce", json={"firmId": FIRM_ID, "newSeatCount": new_count})
    assert resp.status_code == 200
    assert resp.json()["pendingReduction"] == new_count


async def _seats(client: AsyncClient) -> dict[str, Any]:
    view = await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})
    return view.json()["seats"]


class TestSeatRenewal:
    @pytest.mark.asyncio
    async def test_renewal_applies_pending_reduction(
        self, client: AsyncClient, session_factory, mock_razorpay
    ) -> None:
        await _schedule_reduction(client, session_factory)

        body = _webhook("subscription.charged", subscription_id="sub_seats_1", notes_type="seats", quantity=5)
        resp = await _post_webhook(client, body)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "event": "subscription.charged"}
        mock_razorpay.update_subscription.assert_awaited_once_with("sub_seats_1", quantity=2)
        seats = await _seats(client)
        assert seats["purchased"] == 2
        assert seats["total"] == 3
        assert seats["pendingReduction"] is None
        status = (await client.get("/api/v1/seats/reduce", params={"firmId": FIRM_ID})).json()
        assert status["hasPendingReduction"] is False

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_reduction_pending(
        self, client: AsyncClient, session_factory, mock_razorpay
    ) -> None:
        mock_razorpay.update_subscription.side_effect = ProviderUnavailableError("gateway timeout")
        await _schedule_reduction(client, session_factory)

        body = _webhook("subscription.charged", subscription_id="sub_seats_1", notes_type="seats", quantity=5)
        resp = await _post_webhook(client, body)

        assert resp.status_code == 200
        mock_razorpay.update_subscription.assert_awaited_once_with("sub_seats_1", quantity=2)
        seats = await _seats(client)
        assert seats["purchased"] == 5
        assert seats["status"] == "active"
        assert seats["pendingReduction"] == 2


# ---------------------------------------------------------------------------
# GET /billing/subscription
# ---------------------------------------------------------------------------


class TestSubscriptionView:
    @pytest.mark.asyncio
    async def test_no_subscription_shows_trial_allowance(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})

        assert resp.status_code == 200
        data = resp.json()
        assert data["firmId"] == FIRM_ID
        assert data["plan"] is None
        assert data["isValid"] is False
        assert data["seats"]["total"] == 1
        assert data["trialReportsUsed"] == 0
        assert data["trialReportsRemaining"] == 2

    @pytest.mark.asyncio
    async def test_member_can_read(self, client: AsyncClient, session_factory) -> None:
        await activate_subscription(session_factory)

        resp = await client.get(
            "/api/v1/billing/subscription",
            params={"firmId": FIRM_ID},
            headers=auth_headers(MEMBER_ID),
        )

        assert resp.status_code == 200
        assert resp.json()["isValid"] is True

    @pytest.mark.asyncio
    async def test_outsider_denied(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/subscription", params={"firmId": OTHER_FIRM_ID})

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_firm_id_required(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/subscription")

        assert resp.status_code == 422
