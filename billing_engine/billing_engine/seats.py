"""Seat reduction scheduling.

Reductions never take effect mid-cycle.  :func:`plan_reduction` only
decides what ``pending_reduction`` should become; the seats-renewal
transition in :mod:`billing_engine.subscription` applies it at the next
renewal boundary.
"""

from __future__ import annotations

from billing_engine.errors import ConflictError, ValidationError
from billing_engine.pricing import INCLUDED_SEATS


def reduction_conflict_message(new_total: int, member_count: int) -> str:
    """Human-readable explanation of why a reduction was refused."""
    overage = member_count - new_total
    return (
        f"Cannot reduce to {new_total} seats. You have {member_count} team members. "
        f"Remove {overage} member(s) first."
    )


def plan_reduction(purchased: int, new_count: int, member_count: int) -> int | None:
    """Decide the pending reduction for a requested purchased-seat count.

    Parameters
    ----------
    purchased:
        Seats currently purchased (excluding the included seat).
    new_count:
        Requested purchased-seat count after the next renewal.
    member_count:
        Current number of firm members.  The new total may not drop below it.

    Returns
    -------
    int | None
        ``None`` when the request cancels any pending reduction
        (``new_count >= purchased``), otherwise the value to store.

    Raises
    ------
    ValidationError
        If *new_count* is not a non-negative integer.
    ConflictError
        If the new total would be smaller than the member count.
    """
    if isinstance(new_count, bool) or not isinstance(new_count, int) or new_count < 0:
        raise ValidationError("new_seat_count must be a non-negative integer")

    new_total = INCLUDED_SEATS + new_count
    if member_count > new_total:
        raise ConflictError(reduction_conflict_message(new_total, member_count))

    if new_count >= purchased:
        return None
    return new_count
