"""Per-seat licensing: cost preview, one-time purchase and reduction scheduling."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_engine.errors import (
    ConflictError,
    NotFoundError,
    ProviderUnavailableError,
    SignatureMismatchError,
    ValidationError,
)
from billing_engine.idempotency import IdempotencyGuard, KeyValueTTLCache, seat_payment_key
from billing_engine.pricing import (
    CURRENCY,
    INCLUDED_SEATS,
    Plan,
    compute_seat_cost,
    format_inr,
    provider_total_count,
)
from billing_engine.signatures import order_message, verify
from billing_engine.state.repository import FirmRepository, SubscriptionRepository
from billing_engine.state.tables import SubscriptionTable
from billing_engine.subscription import (
    ReductionScheduled,
    SeatsPurchased,
    SubscriptionState,
    SubscriptionStatus,
    transition,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.schemas import (
    ReductionResponse,
    ReductionStatusResponse,
    SeatCalculateRequest,
    SeatCostBreakdown,
    SeatCostDisplay,
    SeatCostResponse,
    SeatCounts,
    SeatOrderResponse,
    SeatPurchaseRequest,
    SeatReduceRequest,
    SeatVerifyRequest,
    SeatVerifyResponse,
)
from api.services.firm_access import require_member, require_owner
from api.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)


def _counts(purchased: int) -> SeatCounts:
    return SeatCounts(included=INCLUDED_SEATS, purchased=purchased, total=INCLUDED_SEATS + purchased)


class SeatService:
    """Seat operations for firms with an active base subscription."""

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        razorpay: RazorpayClient,
        cache: KeyValueTTLCache,
    ) -> None:
        self._session = session
        self._settings = settings
        self._razorpay = razorpay
        self._firms = FirmRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._guard = IdempotencyGuard(cache, settings.idempotency_ttl_seconds)

    async def _active_subscription(self, firm_id: str, *, for_update: bool = False) -> SubscriptionTable:
        if for_update:
            row = await self._subscriptions.get_for_update(firm_id)
        else:
            row = await self._subscriptions.get(firm_id)
        if row is None:
            raise NotFoundError("No active subscription found")
        if row.status != SubscriptionStatus.ACTIVE.value:
            raise ConflictError("Subscription is not active")
        return row

    # -- Preview and purchase ------------------------------------------------

    async def calculate(self, user_id: str, request: SeatCalculateRequest) -> SeatCostResponse:
        """Pro-rated cost of adding seats for the rest of the current cycle."""
        await require_member(self._firms, request.firm_id, user_id)
        row = await self._active_subscription(request.firm_id)
        if row.current_period_end is None:
            raise ConflictError("Unable to determine billing cycle")

        plan = Plan(row.plan)
        cost = compute_seat_cost(plan, row.current_period_end, request.additional_seats, datetime.now(UTC))
        return SeatCostResponse(
            current_seats=row.seats_total,
            current_purchased=row.seats_purchased,
            additional_seats=request.additional_seats,
            new_total_seats=row.seats_total + request.additional_seats,
            new_purchased_seats=row.seats_purchased + request.additional_seats,
            plan=plan.value,
            days_remaining=cost.days_remaining,
            period_end=row.current_period_end,
            pro_rated_amount=cost.total_pro_rated,
            recurring_amount=cost.recurring_amount,
            breakdown=SeatCostBreakdown(
                seat_price=cost.seat_price,
                daily_rate=round(cost.daily_rate),
                days_charged=cost.days_remaining,
                per_seat_pro_rated=cost.per_seat_pro_rated,
                total_pro_rated=cost.total_pro_rated,
            ),
            display=SeatCostDisplay(
                pro_rated=format_inr(cost.total_pro_rated),
                recurring=format_inr(cost.recurring_amount),
                per_seat=format_inr(cost.per_seat_pro_rated),
            ),
        )

    async def purchase(self, user_id: str, request: SeatPurchaseRequest) -> SeatOrderResponse:
        """Create a one-time provider order for the pro-rated seat charge."""
        await require_owner(self._firms, request.firm_id, user_id, "Only firm owners can purchase additional seats")
        row = await self._active_subscription(request.firm_id)
        if row.current_period_end is None:
            raise ConflictError("Unable to determine billing cycle")

        plan = Plan(row.plan)
        if not self._settings.seat_plan_id(plan):
            raise ProviderUnavailableError("Seat plans not configured. Please contact support.")

        now = datetime.now(UTC)
        cost = compute_seat_cost(plan, row.current_period_end, request.additional_seats, now)
        if cost.total_pro_rated <= 0:
            raise ConflictError("The current billing cycle has ended; renew before adding seats")

        new_total = row.seats_purchased + request.additional_seats
        order = await self._razorpay.create_order(
            cost.total_pro_rated,
            receipt=f"seats_{request.firm_id}_{int(now.timestamp() * 1000)}",
            currency=CURRENCY,
            notes={
                "app": self._settings.app_identifier,
                "type": "seat_purchase",
                "firmId": request.firm_id,
                "additionalSeats": str(request.additional_seats),
                "newTotalPurchased": str(new_total),
                "plan": plan.value,
            },
        )
        logger.info("Seat order %s created for firm %s (+%d)", order["id"], request.firm_id, request.additional_seats)
        return SeatOrderResponse(
            order_id=order["id"],
            amount=cost.total_pro_rated,
            currency=CURRENCY,
            firm_id=request.firm_id,
            additional_seats=request.additional_seats,
            new_total_purchased=new_total,
            plan=plan.value,
            key_id=self._razorpay.key_id,
        )

    async def verify(self, user_id: str, request: SeatVerifyRequest) -> SeatVerifyResponse:
        """Verify a seat order payment and grow the recurring seats subscription.

        The existing seats subscription has its quantity raised; when there
        is none (or the update fails) a new one is created that starts
        billing at the current period end, since the pro-rated charge
        already covers the rest of this cycle.
        The seat count comes from the provider's copy of the order; a request
        claiming a different count is rejected.
        """
        await require_owner(self._firms, request.firm_id, user_id, "Only firm owners can purchase additional seats")

        key = seat_payment_key(request.razorpay_order_id, request.razorpay_payment_id)
        prior = await self._guard.lookup(key)
        if prior is not None:
            return self._replay(prior)

        secret = self._settings.razorpay_key_secret.get_secret_value()
        if not secret:
            raise ProviderUnavailableError("Payment system not configured")

        message = order_message(request.razorpay_order_id, request.razorpay_payment_id)
        if not verify(message, request.razorpay_signature, secret):
            await self._guard.remember(key, {"success": False})
            await self._session.commit()
            logger.warning("Invalid seat payment signature for firm %s", request.firm_id)
            raise SignatureMismatchError("Invalid payment signature")

        additional = await self._paid_seats(request)

        row = await self._subscriptions.get_for_update(request.firm_id)
        if row is None:
            raise NotFoundError("No subscription found")

        plan = Plan(row.plan)
        seat_plan_id = self._settings.seat_plan_id(plan)
        if not seat_plan_id:
            raise ProviderUnavailableError("Seat plan not configured")

        new_total = row.seats_purchased + additional
        if not await self._guard.claim(key, {"success": True, "purchased": new_total}):
            return self._replay(await self._guard.lookup(key) or {"success": True})

        seats_subscription_id = row.seats_subscription_id
        period_end = None
        if seats_subscription_id:
            try:
                await self._razorpay.update_subscription(seats_subscription_id, quantity=new_total)
            except ProviderUnavailableError:
                logger.warning(
                    "Updating seats subscription %s failed; creating a new one",
                    seats_subscription_id,
                    exc_info=True,
                )
                seats_subscription_id = None

        if not seats_subscription_id:
            start_at = int(row.current_period_end.timestamp()) if row.current_period_end else None
            created = await self._razorpay.create_subscription(
                seat_plan_id,
                total_count=provider_total_count(plan),
                quantity=new_total,
                start_at=start_at,
                notes={
                    "app": self._settings.app_identifier,
                    "type": "seats",
                    "firmId": request.firm_id,
                    "plan": plan.value,
                },
            )
            seats_subscription_id = created["id"]
            period_end = row.current_period_end

        state = SubscriptionState.from_row(request.firm_id, row)
        event = SeatsPurchased(purchased=new_total, seats_subscription_id=seats_subscription_id, period_end=period_end)
        result = transition(state, event, datetime.now(UTC))
        await self._subscriptions.apply(request.firm_id, result.patch)
        logger.info("Firm %s now has %d purchased seats", request.firm_id, new_total)

        return SeatVerifyResponse(success=True, seats_subscription_id=seats_subscription_id, seats=_counts(new_total))

    async def _paid_seats(self, request: SeatVerifyRequest) -> int:
        """Seat count recorded on the paid order at purchase time.

        The checkout signature covers only ``order_id|payment_id``, so the
        count is read back from the provider's copy of the order notes.
        """
        order = await self._razorpay.fetch_order(request.razorpay_order_id)
        notes = order.get("notes") or {}
        if (
            notes.get("app") != self._settings.app_identifier
            or notes.get("type") != "seat_purchase"
            or notes.get("firmId") != request.firm_id
        ):
            logger.warning("Order %s is not a seat order for firm %s", request.razorpay_order_id, request.firm_id)
            raise ValidationError("Order does not belong to this firm's seat purchase")
        try:
            paid = int(notes["additionalSeats"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Order is missing its seat count") from exc
        if paid != request.additional_seats:
            logger.warning(
                "Seat count mismatch on order %s: paid for %d, requested %d",
                request.razorpay_order_id,
                paid,
                request.additional_seats,
            )
            raise ValidationError("Seat count does not match the paid order")
        return paid

    @staticmethod
    def _replay(prior: dict[str, Any]) -> SeatVerifyResponse:
        if not prior.get("success"):
            raise SignatureMismatchError("Invalid payment signature")
        purchased = prior.get("purchased")
        return SeatVerifyResponse(
            success=True,
            duplicate=True,
            seats=_counts(purchased) if purchased is not None else None,
        )

    # -- Reductions ----------------------------------------------------------

    async def reduction_status(self, user_id: str, firm_id: str) -> ReductionStatusResponse:
        await require_member(self._firms, firm_id, user_id)
        row = await self._subscriptions.get(firm_id)
        if row is None:
            raise NotFoundError("No subscription found")
        return ReductionStatusResponse(
            has_pending_reduction=row.seats_pending_reduction is not None,
            pending_reduction=row.seats_pending_reduction,
            current_seats=_counts(row.seats_purchased),
            effective_date=row.current_period_end,
        )

    async def reduce(self, user_id: str, request: SeatReduceRequest) -> ReductionResponse:
        """Schedule (or cancel) a seat reduction for the next renewal.

        Raises
        ------
        ConflictError
            If the firm has more members than the reduced seat total.
        """
        await require_owner(self._firms, request.firm_id, user_id, "Only firm owners can reduce seats")
        row = await self._active_subscription(request.firm_id, for_update=True)
        member_count = await self._firms.count_members(request.firm_id)

        state = SubscriptionState.from_row(request.firm_id, row)
        result = transition(state, ReductionScheduled(request.new_seat_count, member_count), datetime.now(UTC))
        await self._subscriptions.apply(request.firm_id, result.patch)

        current = _counts(state.seats.purchased)
        pending = result.patch["seats_pending_reduction"]
        if pending is None:
            logger.info("Pending seat reduction cancelled for firm %s", request.firm_id)
            return ReductionResponse(message="Pending seat reduction cancelled", current=current)

        after = _counts(pending)
        logger.info("Firm %s scheduled reduction to %d purchased seats", request.firm_id, pending)
        return ReductionResponse(
            message=f"Seats will be reduced to {after.total} at next renewal",
            pending_reduction=pending,
            current=current,
            after_renewal=after,
            effective_date=row.current_period_end,
        )
