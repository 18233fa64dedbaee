"""Billing endpoints: subscription checkout, payment verification, webhooks and status."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, Query, Request

from api.dependencies import NotifierDep, RazorpayDep, SessionDep, SettingsDep, TTLCacheDep, UserDep
from api.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    SubscriptionView,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAck,
)
from api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def _service(
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
) -> BillingService:
    return BillingService(session, settings, razorpay=razorpay, notifier=notifier, cache=cache)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> CreateOrderResponse:
    """Create the provider subscription(s) for a plan purchase.

    Only the firm owner may subscribe.  When ``additionalSeats`` is
    positive a second, per-seat subscription is created alongside the
    base one.
    """
    service = _service(session, settings, razorpay, notifier, cache)
    return await service.create_order(user_id, body)


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> VerifyPaymentResponse:
    """Verify the checkout callback signature and activate the subscription.

    Replays of an already-verified payment return ``duplicate: true``
    without touching the subscription again.
    """
    service = _service(session, settings, razorpay, notifier, cache)
    return await service.verify_payment(user_id, body)


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def razorpay_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
    x_razorpay_signature: str | None = Header(None),
) -> WebhookAck:
    """Handle a Razorpay webhook delivery.

    Bypasses bearer authentication; the HMAC over the raw body is the
    credential.  Events for other applications or unknown firms are
    acknowledged and ignored so the provider stops retrying them.
    """
    body = await request.body()
    service = _service(session, settings, razorpay, notifier, cache)
    return await service.handle_webhook(body, x_razorpay_signature)


@router.get("/subscription", response_model=SubscriptionView)
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    notifier: NotifierDep,
    cache: TTLCacheDep,
    user_id: UserDep,
    firm_id: str = Query(..., alias="firmId", min_length=1),
) -> SubscriptionView:
    """Return the firm's subscription with ``isValid`` evaluated now."""
    service = _service(session, settings, razorpay, notifier, cache)
    return await service.get_subscription(user_id, firm_id)
