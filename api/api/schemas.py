"""Shared Pydantic request and response models for API endpoints.

Field names are snake_case in Python and camelCase on the wire (the web
client's convention).  The provider callback fields keep their
``razorpay_*`` names exactly as the checkout widget relays them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Subscription purchase and verification
# ---------------------------------------------------------------------------


class CreateOrderRequest(_WireModel):
    """Request body for ``POST /billing/create-order``."""

    plan: str
    firm_id: str = Field(..., min_length=1)
    additional_seats: int = Field(0, ge=0)


class CreateOrderResponse(_WireModel):
    subscription_id: str
    seats_subscription_id: str | None = None
    key_id: str
    plan: str
    amount: int = Field(..., description="Base plan price in paise.")
    additional_seats: int = 0


class VerifyPaymentRequest(_WireModel):
    """Client-relayed checkout callback for a subscription payment."""

    razorpay_payment_id: str = Field(..., alias="razorpay_payment_id", min_length=1)
    razorpay_subscription_id: str = Field(..., alias="razorpay_subscription_id", min_length=1)
    razorpay_signature: str = Field(..., alias="razorpay_signature", min_length=1)
    firm_id: str = Field(..., min_length=1)
    plan: str
    seats_subscription_id: str | None = None
    additional_seats: int = Field(0, ge=0)


class VerifyPaymentResponse(_WireModel):
    success: bool
    duplicate: bool = False
    referral_rewarded: bool = False


class WebhookAck(_WireModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    ignored: bool | None = None
    duplicate: bool | None = None
    event: str | None = None


# ---------------------------------------------------------------------------
# Subscription view
# ---------------------------------------------------------------------------


class SeatCounts(_WireModel):
    included: int = 1
    purchased: int = 0
    total: int = 1


class SeatsView(SeatCounts):
    subscription_id: str | None = None
    status: str | None = None
    period_end: datetime | None = None
    pending_reduction: int | None = None


class SubscriptionView(_WireModel):
    """Stored subscription plus the derived entitlement flag."""

    firm_id: str
    plan: str | None = None
    status: str | None = None
    is_valid: bool = False
    current_period_end: datetime | None = None
    seats: SeatsView = Field(default_factory=SeatsView)
    trial_reports_used: int = 0
    trial_reports_remaining: int = 0


# ---------------------------------------------------------------------------
# Seats
# ---------------------------------------------------------------------------


class SeatCalculateRequest(_WireModel):
    firm_id: str = Field(..., min_length=1)
    additional_seats: int


class SeatCostBreakdown(_WireModel):
    seat_price: int
    daily_rate: int
    days_charged: int
    per_seat_pro_rated: int
    total_pro_rated: int


class SeatCostDisplay(_WireModel):
    pro_rated: str
    recurring: str
    per_seat: str


class SeatCostResponse(_WireModel):
    """Pro-rated cost preview for adding seats."""

    current_seats: int
    current_purchased: int
    additional_seats: int
    new_total_seats: int
    new_purchased_seats: int
    plan: str
    days_remaining: int
    period_end: datetime
    pro_rated_amount: int
    recurring_amount: int
    breakdown: SeatCostBreakdown
    display: SeatCostDisplay


class SeatPurchaseRequest(_WireModel):
    firm_id: str = Field(..., min_length=1)
    additional_seats: int


class SeatOrderResponse(_WireModel):
    order_id: str
    amount: int
    currency: str
    firm_id: str
    additional_seats: int
    new_total_purchased: int
    plan: str
    key_id: str


class SeatVerifyRequest(_WireModel):
    """Client-relayed checkout callback for a one-time seat order."""

    razorpay_order_id: str = Field(..., alias="razorpay_order_id", min_length=1)
    razorpay_payment_id: str = Field(..., alias="razorpay_payment_id", min_length=1)
    razorpay_signature: str = Field(..., alias="razorpay_signature", min_length=1)
    firm_id: str = Field(..., min_length=1)
    additional_seats: int = Field(..., ge=1)


class SeatVerifyResponse(_WireModel):
    success: bool
    duplicate: bool = False
    seats_subscription_id: str | None = None
    seats: SeatCounts | None = None


class SeatReduceRequest(_WireModel):
    firm_id: str = Field(..., min_length=1)
    new_seat_count: int


class ReductionStatusResponse(_WireModel):
    has_pending_reduction: bool
    pending_reduction: int | None = None
    current_seats: SeatCounts
    effective_date: datetime | None = None


class ReductionResponse(_WireModel):
    success: bool = True
    message: str
    pending_reduction: int | None = None
    current: SeatCounts
    after_renewal: SeatCounts | None = None
    effective_date: datetime | None = None


# ---------------------------------------------------------------------------
# Trial and entitlement
# ---------------------------------------------------------------------------


class TrialCheckRequest(_WireModel):
    device_id: str = Field(..., min_length=1, max_length=256)
    persistent_device_id: str | None = Field(None, max_length=256)
    firm_id: str | None = None


class TrialRecordRequest(_WireModel):
    device_id: str = Field(..., min_length=1, max_length=256)
    persistent_device_id: str | None = Field(None, max_length=256)
    firm_id: str = Field(..., min_length=1)


class TrialDecisionResponse(_WireModel):
    eligible: bool
    reason: str | None = None
    ip_prefix: str


class TrialRecordResponse(_WireModel):
    success: bool = True
    ip_prefix: str


class ReportAuthorizeRequest(_WireModel):
    firm_id: str = Field(..., min_length=1)


class ReportAuthorizationResponse(_WireModel):
    allowed: bool
    subscribed: bool
    trial_reports_used: int
    trial_reports_remaining: int


# ---------------------------------------------------------------------------
# Admin abuse management
# ---------------------------------------------------------------------------


class IpTrialView(_WireModel):
    ip_prefix: str
    linked_firm_ids: list[str] = Field(default_factory=list)
    linked_device_ids: list[str] = Field(default_factory=list)
    linked_user_ids: list[str] = Field(default_factory=list)
    is_whitelisted: bool = False
    created_at: datetime | None = None
    trial_activated_at: datetime | None = None
    updated_at: datetime | None = None


class DeviceTrialView(_WireModel):
    device_id: str
    firm_activated: str | None = None
    ip_prefix: str | None = None
    reports_generated: int = 0
    linked_user_ids: list[str] = Field(default_factory=list)
    is_whitelisted: bool = False
    activated_at: datetime | None = None
    created_at: datetime | None = None


class AbuseListResponse(_WireModel):
    ip_trials: list[IpTrialView]
    device_trials: list[DeviceTrialView]


class AbuseActionRequest(_WireModel):
    type: Literal["ip", "device"]
    id: str = Field(..., min_length=1)
    action: Literal["whitelist", "remove", "reset"]


class AbuseActionResponse(_WireModel):
    success: bool


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


class ReferralCodeResponse(_WireModel):
    code: str


class ReferralApplyRequest(_WireModel):
    code: str = Field(..., min_length=1, max_length=32)
    firm_id: str = Field(..., min_length=1)


class ReferralApplyResponse(_WireModel):
    success: bool
    referrer_firm_id: str


class ReferralStatsResponse(_WireModel):
    total_referrals: int
    rewarded_referrals: int
    pending_referrals: int
    bonus_days_earned: int
