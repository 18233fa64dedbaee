"""Tests for api/api/routers/referrals.py

Covers:
- GET /referrals/code: lazy generation and stability
- POST /referrals/apply: normalisation, self-referral, reuse, ownership
- GET /referrals/stats and the reward granted on the referee's first
  verified payment
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from billing_engine.referral import REFERRAL_CODE_ALPHABET
from conftest import (
    FIRM_ID,
    MEMBER_ID,
    OTHER_FIRM_ID,
    OTHER_OWNER_ID,
    activate_subscription,
    auth_headers,
    sign,
)
from httpx import AsyncClient

OTHER = auth_headers(OTHER_OWNER_ID)


async def _code(client: AsyncClient, firm_id: str = FIRM_ID) -> str:
    resp = await client.get("/api/v1/referrals/code", params={"firmId": firm_id})
    assert resp.status_code == 200
    return resp.json()["code"]


async def _apply(client: AsyncClient, code: str, firm_id: str = OTHER_FIRM_ID, headers=OTHER):
    return await client.post("/api/v1/referrals/apply", json={"code": code, "firmId": firm_id}, headers=headers)


class TestReferralCode:
    @pytest.mark.asyncio
    async def test_code_is_generated_once(self, client: AsyncClient) -> None:
        first = await _code(client)
        second = await _code(client)

        assert first == second
        assert len(first) == 6
        assert set(first) <= set(REFERRAL_CODE_ALPHABET)

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_code(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/referrals/code", params={"firmId": OTHER_FIRM_ID})

        assert resp.status_code == 403


class TestApplyReferral:
    @pytest.mark.asyncio
    async def test_apply_normalises_code(self, client: AsyncClient) -> None:
        code = await _code(client)

        resp = await _apply(client, f"  {code.lower()} ")

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "referrerFirmId": FIRM_ID}

    @pytest.mark.asyncio
    async def test_second_code_rejected(self, client: AsyncClient) -> None:
        code = await _code(client)
        await _apply(client, code)

        resp = await _apply(client, code)

        assert resp.status_code == 409
        assert resp.json()["detail"] == "This firm has already used a referral code"

    @pytest.mark.asyncio
    async def test_self_referral_rejected(self, client: AsyncClient) -> None:
        code = await _code(client)

        resp = await _apply(client, code, firm_id=FIRM_ID, headers=auth_headers())

        assert resp.status_code == 400
        assert resp.json()["detail"] == "A firm cannot refer itself"

    @pytest.mark.asyncio
    async def test_malformed_code_rejected(self, client: AsyncClient) -> None:
        resp = await _apply(client, "abc!")

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid referral code"

    @pytest.mark.asyncio
    async def test_unknown_code_is_404(self, client: AsyncClient) -> None:
        resp = await _apply(client, "ZZZZZZ")

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Referral code not found"

    @pytest.mark.asyncio
    async def test_member_cannot_apply(self, client: AsyncClient) -> None:
        resp = await _apply(client, "ABCDEF", firm_id=FIRM_ID, headers=auth_headers(MEMBER_ID))

        assert resp.status_code == 403
        assert resp.json()["detail"] == "Only firm owners can apply a referral code"


class TestReferralReward:
    @pytest.mark.asyncio
    async def test_first_payment_rewards_both_firms(self, client: AsyncClient, session_factory) -> None:
        await activate_subscription(session_factory, FIRM_ID, days_left=10)
        code = await _code(client)
        await _apply(client, code)

        stats = (await client.get("/api/v1/referrals/stats", params={"firmId": FIRM_ID})).json()
        assert stats == {"totalReferrals": 1, "rewardedReferrals": 0, "pendingReferrals": 1, "bonusDaysEarned": 0}

        payment = {
            "razorpay_payment_id": "pay_ref",
            "razorpay_subscription_id": "sub_ref",
            "razorpay_signature": sign("pay_ref|sub_ref"),
            "firmId": OTHER_FIRM_ID,
            "plan": "monthly",
        }
        resp = await client.post("/api/v1/billing/verify-payment", json=payment, headers=OTHER)
        assert resp.json()["referralRewarded"] is True

        stats = (await client.get("/api/v1/referrals/stats", params={"firmId": FIRM_ID})).json()
        assert stats == {"totalReferrals": 1, "rewardedReferrals": 1, "pendingReferrals": 0, "bonusDaysEarned": 30}

        now = datetime.now(UTC)
        referrer = (await client.get("/api/v1/billing/subscription", params={"firmId": FIRM_ID})).json()
        referee = (
            await client.get("/api/v1/billing/subscription", params={"firmId": OTHER_FIRM_ID}, headers=OTHER)
        ).json()
        assert datetime.fromisoformat(referrer["currentPeriodEnd"]) > now + timedelta(days=39)
        assert datetime.fromisoformat(referee["currentPeriodEnd"]) > now + timedelta(days=55)
