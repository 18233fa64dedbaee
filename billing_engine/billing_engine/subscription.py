"""Subscription state machine.

Every verified billing event is turned into a :class:`Transition`: a
targeted column patch for the ``subscriptions`` row plus, where the payment
provider must also change, a provider action.  The caller executes the
provider action first and persists the patch only once it succeeded, so
local state never records an entitlement the provider does not have.

Each transition is an idempotent "set to X" rather than an incremental
delta, which tolerates out-of-order webhook delivery.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Union

from billing_engine.pricing import INCLUDED_SEATS, Plan, plan_period_end
from billing_engine.seats import plan_reduction

DEFAULT_GRACE_PERIOD = timedelta(hours=24)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SeatStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# State snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SeatState:
    """Per-seat licensing sub-record of a subscription."""

    purchased: int = 0
    subscription_id: str | None = None
    period_end: datetime | None = None
    status: SeatStatus | None = None
    pending_reduction: int | None = None
    included: int = INCLUDED_SEATS

    @property
    def total(self) -> int:
        return self.included + self.purchased


@dataclass(frozen=True)
class SubscriptionState:
    """Read-only snapshot of a firm's subscription row.

    ``plan`` and ``status`` are ``None`` when the firm has no subscription
    yet (still on trial).
    """

    firm_id: str
    plan: Plan | None = None
    status: SubscriptionStatus | None = None
    provider_subscription_id: str | None = None
    provider_payment_id: str | None = None
    current_period_end: datetime | None = None
    created_at: datetime | None = None
    seats: SeatState = field(default_factory=SeatState)

    @property
    def exists(self) -> bool:
        return self.status is not None

    @classmethod
    def from_row(cls, firm_id: str, row: Any | None) -> SubscriptionState:
        """Build a snapshot from a ``SubscriptionTable`` row (or ``None``)."""
        if row is None:
            return cls(firm_id=firm_id)
        return cls(
            firm_id=firm_id,
            plan=Plan(row.plan) if row.plan else None,
            status=SubscriptionStatus(row.status) if row.status else None,
            provider_subscription_id=row.provider_subscription_id,
            provider_payment_id=row.provider_payment_id,
            current_period_end=row.current_period_end,
            created_at=row.created_at,
            seats=SeatState(
                purchased=row.seats_purchased or 0,
                subscription_id=row.seats_subscription_id,
                period_end=row.seats_period_end,
                status=SeatStatus(row.seats_status) if row.seats_status else None,
                pending_reduction=row.seats_pending_reduction,
            ),
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentVerified:
    """Direct (client-relayed) payment verification succeeded."""

    plan: Plan
    subscription_id: str
    payment_id: str
    seats_subscription_id: str | None = None
    additional_seats: int = 0


@dataclass(frozen=True)
class BaseCharged:
    """Webhook ``subscription.charged`` / ``subscription.activated`` for a base subscription."""

    plan: Plan
    subscription_id: str
    payment_id: str | None = None
    current_end: datetime | None = None


@dataclass(frozen=True)
class SeatsCharged:
    """Webhook ``subscription.charged`` / ``subscription.activated`` for a seats subscription."""

    subscription_id: str
    quantity: int | None = None
    current_end: datetime | None = None


@dataclass(frozen=True)
class BaseCancelled:
    subscription_id: str


@dataclass(frozen=True)
class SeatsCancelled:
    subscription_id: str


@dataclass(frozen=True)
class BaseHalted:
    """``subscription.halted`` or ``payment.failed`` on the base subscription."""

    subscription_id: str | None = None


@dataclass(frozen=True)
class SeatsHalted:
    """``subscription.halted`` or ``payment.failed`` on the seats subscription."""

    subscription_id: str | None = None


@dataclass(frozen=True)
class SeatsPurchased:
    """A one-time seat order was verified; *purchased* is the new total."""

    purchased: int
    seats_subscription_id: str
    period_end: datetime | None = None


@dataclass(frozen=True)
class ReductionScheduled:
    new_count: int
    member_count: int


Event = Union[
    PaymentVerified,
    BaseCharged,
    SeatsCharged,
    BaseCancelled,
    SeatsCancelled,
    BaseHalted,
    SeatsHalted,
    SeatsPurchased,
    ReductionScheduled,
]


# ---------------------------------------------------------------------------
# Provider actions and transitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CancelProviderSubscription:
    subscription_id: str


@dataclass(frozen=True)
class UpdateProviderQuantity:
    subscription_id: str
    quantity: int


ProviderAction = Union[CancelProviderSubscription, UpdateProviderQuantity]


@dataclass(frozen=True)
class Transition:
    """Outcome of applying one event to a subscription snapshot.

    Attributes
    ----------
    patch:
        Column name to new value for the ``subscriptions`` row.  ``None``
        values clear the column.
    provider_action:
        Must succeed before *patch* is persisted.
    fallback:
        Applied instead of *patch* when *provider_action* fails.  ``None``
        means the failure propagates.
    cascade_action:
        Best-effort provider call; a failure is logged and ignored.
    notify:
        Admin notification to send after commit (``"subscription"`` or
        ``"cancellation"``), if any.
    """

    patch: dict[str, Any]
    provider_action: ProviderAction | None = None
    fallback: Transition | None = None
    cascade_action: ProviderAction | None = None
    notify: str | None = None


def _seat_counts(purchased: int) -> dict[str, Any]:
    return {
        "seats_included": INCLUDED_SEATS,
        "seats_purchased": purchased,
        "seats_total": INCLUDED_SEATS + purchased,
    }


def _set_purchased(state: SubscriptionState, purchased: int) -> dict[str, Any]:
    """Seat counts for *purchased*, dropping a pending reduction it makes moot.

    A pending reduction must stay below the purchased count.
    """
    patch = _seat_counts(purchased)
    pending = state.seats.pending_reduction
    if pending is not None and purchased <= pending:
        patch["seats_pending_reduction"] = None
    return patch


def _on_payment_verified(state: SubscriptionState, event: PaymentVerified, now: datetime) -> Transition:
    period_end = plan_period_end(event.plan, now)
    patch: dict[str, Any] = {
        "plan": event.plan.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "provider_subscription_id": event.subscription_id,
        "provider_payment_id": event.payment_id,
        "current_period_end": period_end,
        "updated_at": now,
    }
    if state.created_at is None:
        patch["created_at"] = now
    if event.seats_subscription_id:
        patch.update(_set_purchased(state, event.additional_seats))
        patch["seats_subscription_id"] = event.seats_subscription_id
        patch["seats_status"] = SeatStatus.ACTIVE.value
        patch["seats_period_end"] = period_end
    return Transition(patch=patch, notify="subscription")


def _on_base_charged(state: SubscriptionState, event: BaseCharged, now: datetime) -> Transition:
    patch: dict[str, Any] = {
        "plan": event.plan.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "provider_subscription_id": event.subscription_id,
        "provider_payment_id": event.payment_id,
        "current_period_end": event.current_end or plan_period_end(event.plan, now),
        "updated_at": now,
    }
    if state.created_at is None:
        patch["created_at"] = now
    return Transition(patch=patch, notify="subscription")


def _seats_renewal(state: SubscriptionState, event: SeatsCharged, now: datetime) -> Transition:
    quantity = event.quantity or state.seats.purchased or 0
    patch: dict[str, Any] = {
        **_set_purchased(state, quantity),
        "seats_status": SeatStatus.ACTIVE.value,
        "updated_at": now,
    }
    if event.current_end is not None:
        patch["seats_period_end"] = event.current_end
    return Transition(patch=patch)


def _on_seats_charged(state: SubscriptionState, event: SeatsCharged, now: datetime) -> Transition:
    pending = state.seats.pending_reduction
    if pending is None:
        return _seats_renewal(state, event, now)

    # Provider failure keeps the pending reduction for the next renewal.
    fallback = _seats_renewal(state, event, now)
    subscription_id = state.seats.subscription_id or event.subscription_id

    if pending == 0:
        return Transition(
            patch={
                **_seat_counts(0),
                "seats_subscription_id": None,
                "seats_period_end": None,
                "seats_status": SeatStatus.CANCELLED.value,
                "seats_pending_reduction": None,
                "updated_at": now,
            },
            provider_action=CancelProviderSubscription(subscription_id),
            fallback=fallback,
        )

    patch = {
        **_seat_counts(pending),
        "seats_status": SeatStatus.ACTIVE.value,
        "seats_pending_reduction": None,
        "updated_at": now,
    }
    if event.current_end is not None:
        patch["seats_period_end"] = event.current_end
    return Transition(
        patch=patch,
        provider_action=UpdateProviderQuantity(subscription_id, pending),
        fallback=fallback,
    )


def _on_base_cancelled(state: SubscriptionState, event: BaseCancelled, now: datetime) -> Transition:
    cascade = None
    if state.seats.subscription_id:
        cascade = CancelProviderSubscription(state.seats.subscription_id)
    return Transition(
        patch={
            "status": SubscriptionStatus.CANCELLED.value,
            "seats_status": SeatStatus.CANCELLED.value,
            "updated_at": now,
        },
        cascade_action=cascade,
        notify="cancellation",
    )


def _on_seats_cancelled(state: SubscriptionState, event: SeatsCancelled, now: datetime) -> Transition:
    return Transition(
        patch={
            **_seat_counts(0),
            "seats_status": SeatStatus.CANCELLED.value,
            "seats_pending_reduction": None,
            "updated_at": now,
        }
    )


def _on_base_halted(state: SubscriptionState, event: BaseHalted, now: datetime) -> Transition:
    return Transition(patch={"status": SubscriptionStatus.PAST_DUE.value, "updated_at": now})


def _on_seats_halted(state: SubscriptionState, event: SeatsHalted, now: datetime) -> Transition:
    return Transition(patch={"seats_status": SeatStatus.PAST_DUE.value, "updated_at": now})


def _on_seats_purchased(state: SubscriptionState, event: SeatsPurchased, now: datetime) -> Transition:
    patch: dict[str, Any] = {
        **_set_purchased(state, event.purchased),
        "seats_subscription_id": event.seats_subscription_id,
        "seats_status": SeatStatus.ACTIVE.value,
        "updated_at": now,
    }
    if event.period_end is not None:
        patch["seats_period_end"] = event.period_end
    return Transition(patch=patch)


def _on_reduction_scheduled(state: SubscriptionState, event: ReductionScheduled, now: datetime) -> Transition:
    pending = plan_reduction(state.seats.purchased, event.new_count, event.member_count)
    return Transition(patch={"seats_pending_reduction": pending, "updated_at": now})


_HANDLERS: dict[type, Callable[[SubscriptionState, Any, datetime], Transition]] = {
    PaymentVerified: _on_payment_verified,
    BaseCharged: _on_base_charged,
    SeatsCharged: _on_seats_charged,
    BaseCancelled: _on_base_cancelled,
    SeatsCancelled: _on_seats_cancelled,
    BaseHalted: _on_base_halted,
    SeatsHalted: _on_seats_halted,
    SeatsPurchased: _on_seats_purchased,
    ReductionScheduled: _on_reduction_scheduled,
}


def transition(state: SubscriptionState, event: Event, now: datetime) -> Transition:
    """Compute the effect of *event* on *state* at time *now*.

    Raises
    ------
    TypeError
        If *event* is not one of the known event types.
    ConflictError
        For a :class:`ReductionScheduled` below the member count.
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported subscription event: {type(event).__name__}")
    return handler(state, event, now)


# ---------------------------------------------------------------------------
# Entitlement
# ---------------------------------------------------------------------------


def is_subscription_valid(
    status: SubscriptionStatus | str | None,
    current_period_end: datetime | None,
    now: datetime,
    grace: timedelta = DEFAULT_GRACE_PERIOD,
) -> bool:
    """Effective entitlement: active and not past the period end plus grace.

    Recomputed on every check; never cache the result beyond one request.
    """
    if status is None or SubscriptionStatus(status) is not SubscriptionStatus.ACTIVE:
        return False
    if current_period_end is not None and now > current_period_end + grace:
        return False
    return True
