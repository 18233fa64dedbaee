"""Razorpay subscription billing: checkout, payment verification and webhooks.

Every state change flows through :func:`billing_engine.subscription.transition`.
This service supplies the surrounding orchestration: firm authorisation,
signature checks, idempotency, provider calls and notifications.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from billing_engine.errors import ProviderUnavailableError, SignatureMismatchError, ValidationError
from billing_engine.idempotency import (
    IdempotencyGuard,
    KeyValueTTLCache,
    payment_key,
    webhook_key,
    webhook_signature_key,
)
from billing_engine.pricing import PLAN_PRICING, Plan, parse_plan, provider_total_count
from billing_engine.referral import ReferralRewardProcessor
from billing_engine.signatures import payment_message, verify
from billing_engine.state.repository import FirmRepository, SubscriptionRepository
from billing_engine.subscription import (
    CancelProviderSubscription,
    PaymentVerified,
    ProviderAction,
    SubscriptionState,
    Transition,
    is_subscription_valid,
    transition,
)
from billing_engine.webhooks import parse_webhook, to_event
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    SeatsView,
    SubscriptionView,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAck,
)
from api.services.email_service import EmailNotifier, send_best_effort
from api.services.firm_access import require_member, require_owner
from api.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)


async def execute_provider_action(razorpay: RazorpayClient, action: ProviderAction) -> None:
    """Carry out a provider-side change requested by a transition."""
    if isinstance(action, CancelProviderSubscription):
        await razorpay.cancel_subscription(action.subscription_id)
    else:
        await razorpay.update_subscription(action.subscription_id, quantity=action.quantity)
    logger.info("Provider action completed: %s", action)


class BillingService:
    """Subscription billing operations.

    Parameters
    ----------
    session:
        Active database session; the request dependency commits it.
    settings:
        API settings containing Razorpay configuration.
    razorpay:
        Payment provider client.
    notifier:
        Admin e-mail notifier.
    cache:
        TTL cache backing the idempotency guard.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        razorpay: RazorpayClient,
        notifier: EmailNotifier,
        cache: KeyValueTTLCache,
    ) -> None:
        self._session = session
        self._settings = settings
        self._razorpay = razorpay
        self._notifier = notifier
        self._firms = FirmRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._guard = IdempotencyGuard(cache, settings.idempotency_ttl_seconds)

    # -- Checkout ------------------------------------------------------------

    async def create_order(self, user_id: str, request: CreateOrderRequest) -> CreateOrderResponse:
        """Create the base provider subscription (and a seats one if requested)."""
        plan = parse_plan(request.plan)
        await require_owner(self._firms, request.firm_id, user_id, "Only firm owners can subscribe")

        plan_id = self._settings.plan_id(plan)
        if not plan_id:
            raise ProviderUnavailableError("Subscription plans not configured. Please contact support.")

        seat_plan_id = ""
        if request.additional_seats > 0:
            seat_plan_id = self._settings.seat_plan_id(plan)
            if not seat_plan_id:
                raise ProviderUnavailableError("Seat plans not configured. Please contact support.")

        app = self._settings.app_identifier
        subscription = await self._razorpay.create_subscription(
            plan_id,
            total_count=provider_total_count(plan),
            notes={
                "app": app,
                "firmId": request.firm_id,
                "plan": plan.value,
                "type": "base",
                "additionalSeats": str(request.additional_seats),
            },
        )

        seats_subscription_id: str | None = None
        if seat_plan_id:
            seats_subscription = await self._razorpay.create_subscription(
                seat_plan_id,
                total_count=provider_total_count(plan),
                quantity=request.additional_seats,
                notes={
                    "app": app,
                    "firmId": request.firm_id,
                    "plan": plan.value,
                    "type": "seats",
                    "seatCount": str(request.additional_seats),
                },
            )
            seats_subscription_id = seats_subscription["id"]

        logger.info("Created %s subscription %s for firm %s", plan.value, subscription["id"], request.firm_id)
        return CreateOrderResponse(
            subscription_id=subscription["id"],
            seats_subscription_id=seats_subscription_id,
            key_id=self._razorpay.key_id,
            plan=plan.value,
            amount=PLAN_PRICING[plan].amount,
            additional_seats=request.additional_seats,
        )

    # -- Direct payment verification -----------------------------------------

    async def verify_payment(self, user_id: str, request: VerifyPaymentRequest) -> VerifyPaymentResponse:
        """Verify a client-relayed subscription payment and activate the plan.

        Raises
        ------
        SignatureMismatchError
            If the HMAC does not match, or the same payment previously
            failed verification.
        """
        plan = parse_plan(request.plan)
        await require_owner(
            self._firms,
            request.firm_id,
            user_id,
            "Only firm owners can verify subscription payments",
        )

        key = payment_key(request.razorpay_payment_id, request.razorpay_subscription_id)
        prior = await self._guard.lookup(key)
        if prior is not None:
            return self._replay(prior)

        secret = self._settings.razorpay_key_secret.get_secret_value()
        if not secret:
            raise ProviderUnavailableError("Payment system not configured")

        message = payment_message(request.razorpay_payment_id, request.razorpay_subscription_id)
        if not verify(message, request.razorpay_signature, secret):
            await self._record_failure(key)
            logger.warning("Invalid payment signature for firm %s", request.firm_id)
            raise SignatureMismatchError("Invalid payment signature")

        if not await self._guard.claim(key, {"success": True}):
            return self._replay(await self._guard.lookup(key) or {"success": True})

        now = datetime.now(UTC)
        row = await self._subscriptions.get_for_update(request.firm_id)
        event = PaymentVerified(
            plan=plan,
            subscription_id=request.razorpay_subscription_id,
            payment_id=request.razorpay_payment_id,
            seats_subscription_id=request.seats_subscription_id,
            additional_seats=request.additional_seats,
        )
        result = transition(SubscriptionState.from_row(request.firm_id, row), event, now)
        await self._subscriptions.apply(request.firm_id, result.patch)
        logger.info("Payment %s verified; firm %s active on %s", request.razorpay_payment_id, request.firm_id, plan.value)

        processor = ReferralRewardProcessor(self._session, bonus_days=self._settings.referral_bonus_days)
        rewarded = await processor.process(request.firm_id, plan, now)

        await self._notify(request.firm_id, result, plan)
        return VerifyPaymentResponse(success=True, referral_rewarded=rewarded)

    @staticmethod
    def _replay(prior: dict[str, Any]) -> VerifyPaymentResponse:
        if prior.get("success"):
            return VerifyPaymentResponse(success=True, duplicate=True)
        raise SignatureMismatchError("Invalid payment signature")

    async def _record_failure(self, key: str) -> None:
        """Persist a failed verification before the error rolls back the request."""
        await self._guard.remember(key, {"success": False})
        await self._session.commit()

    # -- Webhooks ------------------------------------------------------------

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookAck:
        """Verify, dedup and apply one provider webhook delivery.

        Raises
        ------
        SignatureMismatchError
            If the signature header is missing or does not match the body.
        ProviderUnavailableError
            If no webhook secret is configured, or a required provider
            call failed and the transition has no fallback.
        """
        secret = self._settings.razorpay_webhook_secret.get_secret_value()
        if not secret:
            raise ProviderUnavailableError("Webhook secret not configured")

        attempt = hashlib.sha256(raw_body + b"|" + (signature or "").encode("utf-8")).hexdigest()
        rejected_key = webhook_signature_key(attempt)
        if await self._guard.seen(rejected_key):
            logger.info("Repeated webhook with a previously rejected signature (attempt %s)", attempt)
            raise SignatureMismatchError("Invalid webhook signature")
        if not signature or not verify(raw_body, signature, secret):
            await self._record_failure(rejected_key)
            logger.warning("Rejected webhook with invalid signature (attempt %s)", attempt)
            raise SignatureMismatchError("Invalid webhook signature")

        try:
            envelope = parse_webhook(raw_body)
        except ValidationError as exc:
            # Signed but unparseable bodies are acknowledged and never applied.
            logger.warning("Ignoring signed webhook with malformed body: %s", exc)
            return WebhookAck(ignored=True)
        if not envelope.belongs_to(self._settings.app_identifier):
            logger.info("Ignoring %s webhook for another application", envelope.event)
            return WebhookAck(ignored=True, event=envelope.event)

        mapped = to_event(envelope)
        if mapped is None:
            return WebhookAck(ignored=True, event=envelope.event)
        firm_id, event = mapped

        firm = await self._firms.get(firm_id)
        if firm is None:
            logger.warning("Webhook %s references unknown firm %s", envelope.event, firm_id)
            return WebhookAck(ignored=True, event=envelope.event)

        key = webhook_key(envelope.event, envelope.subscription_id, envelope.payment_id)
        if not await self._guard.claim(key, {"success": True}):
            return WebhookAck(duplicate=True, event=envelope.event)

        row = await self._subscriptions.get_for_update(firm_id)
        state = SubscriptionState.from_row(firm_id, row)
        result = transition(state, event, datetime.now(UTC))
        applied = await self._execute(firm_id, result)
        logger.info(
            "Webhook %s applied to firm %s (%s)",
            envelope.event,
            firm_id,
            type(event).__name__,
            extra={"firm_id": firm_id, "event": envelope.event, "subscription_id": envelope.subscription_id},
        )

        plan = Plan(applied.patch["plan"]) if "plan" in applied.patch else state.plan
        await self._notify(firm_id, applied, plan)
        return WebhookAck(event=envelope.event)

    async def _execute(self, firm_id: str, result: Transition) -> Transition:
        """Run the provider action, then persist the matching patch.

        Returns the transition that was actually applied (the fallback when
        the provider action failed).
        """
        applied = result
        if result.provider_action is not None:
            try:
                await execute_provider_action(self._razorpay, result.provider_action)
            except ProviderUnavailableError:
                if result.fallback is None:
                    raise
                logger.warning(
                    "Provider action %s failed for firm %s; applying fallback",
                    result.provider_action,
                    firm_id,
                    exc_info=True,
                )
                applied = result.fallback

        if not await self._subscriptions.apply(firm_id, applied.patch):
            logger.warning("No subscription row for firm %s; patch skipped", firm_id)

        if result.cascade_action is not None:
            try:
                await execute_provider_action(self._razorpay, result.cascade_action)
            except ProviderUnavailableError:
                logger.warning("Cascade %s failed for firm %s", result.cascade_action, firm_id, exc_info=True)
        return applied

    async def _notify(self, firm_id: str, result: Transition, plan: Plan | None) -> None:
        if result.notify is None:
            return
        firm = await self._firms.get(firm_id)
        if firm is None:
            return
        owner = await self._firms.get_user(firm.owner_id)
        owner_email = owner.email if owner is not None and owner.email else firm.owner_id
        plan_name = plan.value if plan is not None else "unknown"

        if result.notify == "subscription":
            amount = PLAN_PRICING[plan].amount if plan is not None else 0
            await send_best_effort(
                self._notifier.notify_new_subscription(firm.name, plan_name, amount, owner_email),
                f"subscription for {firm_id}",
            )
        elif result.notify == "cancellation":
            await send_best_effort(
                self._notifier.notify_subscription_cancelled(firm.name, plan_name, owner_email),
                f"cancellation for {firm_id}",
            )

    # -- Read model ----------------------------------------------------------

    async def get_subscription(self, user_id: str, firm_id: str) -> SubscriptionView:
        """Return the stored subscription with ``is_valid`` computed now."""
        await require_member(self._firms, firm_id, user_id)
        firm = await self._firms.get(firm_id)
        row = await self._subscriptions.get(firm_id)
        state = SubscriptionState.from_row(firm_id, row)

        trial_used = firm.trial_reports_used if firm is not None else 0
        trial_limit = self._settings.trial_report_limit
        is_valid = is_subscription_valid(
            state.status,
            state.current_period_end,
            datetime.now(UTC),
            grace=timedelta(hours=self._settings.grace_period_hours),
        )
        return SubscriptionView(
            firm_id=firm_id,
            plan=state.plan.value if state.plan else None,
            status=state.status.value if state.status else None,
            is_valid=is_valid,
            current_period_end=state.current_period_end,
            seats=SeatsView(
                included=state.seats.included,
                purchased=state.seats.purchased,
                total=state.seats.total,
                subscription_id=state.seats.subscription_id,
                status=state.seats.status.value if state.seats.status else None,
                period_end=state.seats.period_end,
                pending_reduction=state.seats.pending_reduction,
            ),
            trial_reports_used=trial_used,
            trial_reports_remaining=max(trial_limit - trial_used, 0),
        )
