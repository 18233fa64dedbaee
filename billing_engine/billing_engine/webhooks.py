"""Parsing of payment-provider webhook deliveries into subscription events.

The provider account may be shared with unrelated applications, so every
delivery is checked for this application's identifier in the entity notes
before anything else is read from it.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billing_engine.errors import ValidationError
from billing_engine.pricing import Plan
from billing_engine.subscription import (
    BaseCancelled,
    BaseCharged,
    BaseHalted,
    Event,
    SeatsCancelled,
    SeatsCharged,
    SeatsHalted,
)

logger = logging.getLogger(__name__)

CHARGED_EVENTS = frozenset({"subscription.charged", "subscription.activated"})
CANCELLED_EVENTS = frozenset({"subscription.cancelled"})
FAILED_EVENTS = frozenset({"subscription.halted", "payment.failed"})
RECOGNISED_EVENTS = CHARGED_EVENTS | CANCELLED_EVENTS | FAILED_EVENTS


class EntityNotes(BaseModel):
    """Free-form metadata attached to provider entities at creation time."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    app: str | None = None
    firm_id: str | None = Field(default=None, alias="firmId")
    plan: str | None = None
    type: str | None = None


def _coerce_notes(value: Any) -> Any:
    # The provider serialises empty notes as an empty list.
    if value is None or (isinstance(value, list) and not value):
        return {}
    return value


class SubscriptionEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    plan_id: str | None = None
    status: str | None = None
    quantity: int | None = None
    current_end: int | None = None
    notes: EntityNotes = Field(default_factory=EntityNotes)

    _normalise_notes = field_validator("notes", mode="before")(_coerce_notes)


class PaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    subscription_id: str | None = None
    order_id: str | None = None
    status: str | None = None
    notes: EntityNotes = Field(default_factory=EntityNotes)

    _normalise_notes = field_validator("notes", mode="before")(_coerce_notes)


class _SubscriptionWrapper(BaseModel):
    entity: SubscriptionEntity


class _PaymentWrapper(BaseModel):
    entity: PaymentEntity


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription: _SubscriptionWrapper | None = None
    payment: _PaymentWrapper | None = None


class WebhookEnvelope(BaseModel):
    """Top-level webhook document: ``{"event": ..., "payload": {...}}``."""

    model_config = ConfigDict(extra="ignore")

    event: str
    payload: WebhookPayload = Field(default_factory=WebhookPayload)

    @property
    def subscription(self) -> SubscriptionEntity | None:
        return self.payload.subscription.entity if self.payload.subscription else None

    @property
    def payment(self) -> PaymentEntity | None:
        return self.payload.payment.entity if self.payload.payment else None

    @property
    def subscription_id(self) -> str | None:
        if self.subscription is not None:
            return self.subscription.id
        return self.payment.subscription_id if self.payment is not None else None

    @property
    def payment_id(self) -> str | None:
        return self.payment.id if self.payment is not None else None

    def belongs_to(self, app_identifier: str) -> bool:
        """True if either entity carries *app_identifier* in its notes."""
        sub_app = self.subscription.notes.app if self.subscription is not None else None
        pay_app = self.payment.notes.app if self.payment is not None else None
        return app_identifier in (sub_app, pay_app)


def parse_webhook(raw_body: bytes) -> WebhookEnvelope:
    """Parse a raw webhook body.  Only call after the signature was verified.

    Raises
    ------
    ValidationError
        If the body is not JSON or lacks the ``event`` field.
    """
    try:
        data = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Malformed webhook body: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Malformed webhook body: expected a JSON object")
    try:
        return WebhookEnvelope.model_validate(data)
    except ValueError as exc:
        raise ValidationError(f"Malformed webhook body: {exc}") from exc


def to_event(envelope: WebhookEnvelope) -> tuple[str, Event] | None:
    """Map a recognised webhook delivery to ``(firm_id, event)``.

    Returns ``None`` for unrecognised events and for deliveries that lack
    the firm id (or, for base charges, a valid plan) in their notes.  Those
    are acknowledged without any state change.
    """
    if envelope.event not in RECOGNISED_EVENTS:
        logger.info("Unhandled webhook event: %s", envelope.event)
        return None

    sub = envelope.subscription
    if sub is None:
        logger.info("Webhook %s carries no subscription entity; ignoring", envelope.event)
        return None

    firm_id = sub.notes.firm_id
    if not firm_id:
        logger.warning("Webhook %s for %s is missing firmId in notes", envelope.event, sub.id)
        return None

    is_seats = sub.notes.type == "seats"
    current_end = datetime.fromtimestamp(sub.current_end, UTC) if sub.current_end else None

    if envelope.event in CHARGED_EVENTS:
        if is_seats:
            return firm_id, SeatsCharged(subscription_id=sub.id, quantity=sub.quantity, current_end=current_end)
        try:
            plan = Plan(sub.notes.plan or "")
        except ValueError:
            logger.warning("Webhook %s for firm %s has invalid plan %r", envelope.event, firm_id, sub.notes.plan)
            return None
        return firm_id, BaseCharged(
            plan=plan,
            subscription_id=sub.id,
            payment_id=envelope.payment_id,
            current_end=current_end,
        )

    if envelope.event in CANCELLED_EVENTS:
        event: Event = SeatsCancelled(sub.id) if is_seats else BaseCancelled(sub.id)
        return firm_id, event

    return firm_id, (SeatsHalted(sub.id) if is_seats else BaseHalted(sub.id))
