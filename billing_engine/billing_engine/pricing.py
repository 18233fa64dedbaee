"""Plan catalogue, calendar period arithmetic, and seat proration.

All monetary amounts are integers in paise (minor units of INR).  The
proration maths uses :class:`fractions.Fraction` so that
``ceil(daily_rate * days)`` never drifts because of binary floating point.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from fractions import Fraction

from pydantic import BaseModel, Field

from billing_engine.errors import ValidationError

APP_IDENTIFIER = "valuquick"
CURRENCY = "INR"
INCLUDED_SEATS = 1

# Provider-side billing cycles requested for a new subscription.
YEARLY_TOTAL_COUNT = 10
DEFAULT_TOTAL_COUNT = 120


class Plan(str, Enum):
    """Recurring billing plans offered to firms."""

    MONTHLY = "monthly"
    HALFYEARLY = "halfyearly"
    YEARLY = "yearly"


def parse_plan(raw: str) -> Plan:
    """Convert a plan string into a :class:`Plan`.

    Raises :class:`ValidationError` for anything outside the catalogue.
    """
    try:
        return Plan(raw)
    except ValueError:
        raise ValidationError(f"Invalid plan '{raw}'. Valid plans: {[p.value for p in Plan]}")


@dataclass(frozen=True)
class PlanPrice:
    """Base subscription price for one plan."""

    name: str
    amount: int
    display_amount: str
    period_months: int


@dataclass(frozen=True)
class SeatPrice:
    """Per-seat price for one plan."""

    amount: int
    display_amount: str
    period_days: int


PLAN_PRICING: dict[Plan, PlanPrice] = {
    Plan.MONTHLY: PlanPrice(name="Monthly", amount=100_000, display_amount="₹1,000", period_months=1),
    Plan.HALFYEARLY: PlanPrice(name="6 Months", amount=500_000, display_amount="₹5,000", period_months=6),
    Plan.YEARLY: PlanPrice(name="Yearly", amount=900_000, display_amount="₹9,000", period_months=12),
}

SEAT_PRICING: dict[Plan, SeatPrice] = {
    Plan.MONTHLY: SeatPrice(amount=40_000, display_amount="₹400", period_days=30),
    Plan.HALFYEARLY: SeatPrice(amount=200_000, display_amount="₹2,000", period_days=180),
    Plan.YEARLY: SeatPrice(amount=360_000, display_amount="₹3,600", period_days=365),
}


def provider_total_count(plan: Plan) -> int:
    """Number of billing cycles to request when creating a provider subscription."""
    return YEARLY_TOTAL_COUNT if plan is Plan.YEARLY else DEFAULT_TOTAL_COUNT


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------


def add_months(moment: datetime, months: int) -> datetime:
    """Return *moment* shifted by *months* calendar months.

    The day of month is clamped to the last day of the target month, so
    ``Jan 31 + 1 month`` is ``Feb 28`` (or ``Feb 29`` in a leap year).
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def plan_period_end(plan: Plan, start: datetime) -> datetime:
    """Return the end of a billing cycle for *plan* starting at *start*."""
    return add_months(start, PLAN_PRICING[plan].period_months)


# ---------------------------------------------------------------------------
# Proration
# ---------------------------------------------------------------------------

_ONE_DAY = timedelta(days=1)


class SeatCost(BaseModel):
    """Result of :func:`compute_seat_cost`."""

    seat_price: int = Field(..., description="Full-cycle price of one seat in paise.")
    daily_rate: float = Field(..., description="Seat price divided by the plan's period in days.")
    days_remaining: int = Field(..., ge=0)
    per_seat_pro_rated: int = Field(..., ge=0)
    total_pro_rated: int = Field(..., ge=0)
    recurring_amount: int = Field(..., ge=0)


def days_remaining(current_period_end: datetime, now: datetime) -> int:
    """Whole days left in the cycle, rounded up and floored at zero."""
    remaining = current_period_end - now
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining / _ONE_DAY)


def compute_seat_cost(
    plan: Plan,
    current_period_end: datetime,
    additional_seats: int,
    now: datetime,
) -> SeatCost:
    """Compute the pro-rated and recurring charge for extra seats.

    Parameters
    ----------
    plan:
        The firm's base plan; selects the seat price and period length.
    current_period_end:
        End of the firm's current billing cycle.
    additional_seats:
        Number of seats to add.  Must be a positive integer.
    now:
        Reference time.  A period end in the past yields zero owed now.

    Returns
    -------
    SeatCost
        ``per_seat_pro_rated`` is rounded *up* so the firm is never
        under-charged; ``recurring_amount`` is the full-cycle price that
        applies from the next renewal.
    """
    if isinstance(additional_seats, bool) or not isinstance(additional_seats, int) or additional_seats < 1:
        raise ValidationError("additional_seats must be a positive integer")

    pricing = SEAT_PRICING[plan]
    days = days_remaining(current_period_end, now)
    daily_rate = Fraction(pricing.amount, pricing.period_days)
    per_seat = math.ceil(daily_rate * days)

    return SeatCost(
        seat_price=pricing.amount,
        daily_rate=float(daily_rate),
        days_remaining=days,
        per_seat_pro_rated=per_seat,
        total_pro_rated=per_seat * additional_seats,
        recurring_amount=pricing.amount * additional_seats,
    )


# ---------------------------------------------------------------------------
# Display formatting
# ---------------------------------------------------------------------------


def _group_indian(digits: str) -> str:
    """Apply Indian digit grouping (``12,34,567``) to a string of digits."""
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups: list[str] = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups) + "," + tail


def format_inr(paise: int) -> str:
    """Render an amount in paise as an ``en-IN`` rupee string, e.g. ``₹1,20,000.00``."""
    sign = "-" if paise < 0 else ""
    rupees, fraction = divmod(abs(paise), 100)
    return f"{sign}₹{_group_indian(str(rupees))}.{fraction:02d}"
