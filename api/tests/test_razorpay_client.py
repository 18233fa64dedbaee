"""Tests for api/api/services/razorpay_client.py

Covers:
- Request shape (method, path, basic auth, JSON payload) for each call
- Error mapping: non-2xx and transport failures become ProviderUnavailableError
- Unconfigured clients refuse to call out
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest
from api.services.razorpay_client import RazorpayClient
from billing_engine.errors import ProviderUnavailableError


class _Recorder:
    """httpx handler that records requests and replies with a canned response."""

    def __init__(self, status_code: int = 200, body: dict | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._status = status_code
        self._body = body if body is not None else {"id": "sub_123"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self._status, json=self._body)

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def _client(handler, key_id: str = "rzp_test", key_secret: str = "secret") -> RazorpayClient:
    return RazorpayClient(
        key_id,
        key_secret,
        base_url="https://razorpay.test/v1",
        transport=httpx.MockTransport(handler),
    )


class TestRequests:
    @pytest.mark.asyncio
    async def test_create_subscription(self) -> None:
        recorder = _Recorder()
        client = _client(recorder)

        result = await client.create_subscription(
            "plan_monthly", total_count=120, quantity=2, start_at=1_700_000_000, notes={"app": "valuquick"}
        )
        await client.close()

        request = recorder.requests[0]
        assert result == {"id": "sub_123"}
        assert request.method == "POST"
        assert request.url.path == "/v1/subscriptions"
        expected_auth = "Basic " + base64.b64encode(b"rzp_test:secret").decode()
        assert request.headers["Authorization"] == expected_auth
        assert recorder.last_json == {
            "plan_id": "plan_monthly",
            "total_count": 120,
            "quantity": 2,
            "customer_notify": 1,
            "notes": {"app": "valuquick"},
            "start_at": 1_700_000_000,
        }

    @pytest.mark.asyncio
    async def test_update_subscription(self) -> None:
        recorder = _Recorder()
        client = _client(recorder)

        await client.update_subscription("sub_9", quantity=4)

        assert recorder.requests[0].method == "PATCH"
        assert recorder.requests[0].url.path == "/v1/subscriptions/sub_9"
        assert recorder.last_json == {"quantity": 4, "schedule_change_at": "now"}

    @pytest.mark.asyncio
    async def test_cancel_subscription(self) -> None:
        recorder = _Recorder()
        client = _client(recorder)

        await client.cancel_subscription("sub_9")

        assert recorder.requests[0].url.path == "/v1/subscriptions/sub_9/cancel"
        assert recorder.last_json == {"cancel_at_cycle_end": 0}

    @pytest.mark.asyncio
    async def test_create_order(self) -> None:
        recorder = _Recorder(body={"id": "order_1"})
        client = _client(recorder)

        result = await client.create_order(40_002, receipt="seats_firm-1_1")

        assert result["id"] == "order_1"
        assert recorder.last_json == {"amount": 40_002, "currency": "INR", "receipt": "seats_firm-1_1", "notes": {}}

    @pytest.mark.asyncio
    async def test_fetch_order(self) -> None:
        recorder = _Recorder(body={"id": "order_1", "notes": {"additionalSeats": "2"}})
        client = _client(recorder)

        result = await client.fetch_order("order_1")

        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/v1/orders/order_1"
        assert request.content == b""
        assert result["notes"]["additionalSeats"] == "2"


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_error_mapped(self) -> None:
        client = _client(_Recorder(status_code=400, body={"error": {"description": "bad plan"}}))

        with pytest.raises(ProviderUnavailableError, match=r"rejected POST /subscriptions \(400\)"):
            await client.create_subscription("plan_x", total_count=1)

    @pytest.mark.asyncio
    async def test_transport_error_mapped(self) -> None:
        def _boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(_boom)

        with pytest.raises(ProviderUnavailableError, match="unreachable"):
            await client.create_order(100, receipt="r")

    @pytest.mark.asyncio
    async def test_unconfigured_client_never_calls_out(self) -> None:
        recorder = _Recorder()
        client = _client(recorder, key_secret="")

        assert client.configured is False
        with pytest.raises(ProviderUnavailableError, match="not configured"):
            await client.cancel_subscription("sub_1")
        assert recorder.requests == []

    def test_provider_error_status(self) -> None:
        assert ProviderUnavailableError("x").status_code == 503
