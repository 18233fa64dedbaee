"""Error taxonomy shared by the billing engine and the API layer.

Every domain error carries the HTTP status code it maps to so that the
FastAPI exception handler can translate it without a lookup table.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing-domain failures."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(BillingError):
    """Missing, invalid or expired caller credential."""

    status_code = 401


class AuthorizationError(BillingError):
    """Caller lacks the firm role required for the operation."""

    status_code = 403


class ValidationError(BillingError):
    """Malformed or out-of-range input, rejected before any provider call."""

    status_code = 400


class NotFoundError(BillingError):
    """A referenced firm, subscription or record does not exist."""

    status_code = 404


class ConflictError(BillingError):
    """The request conflicts with the firm's current state.

    Raised for seat reductions below the active member count and for
    operations that require an active subscription.
    """

    status_code = 409


class SignatureMismatchError(BillingError):
    """Payment or webhook HMAC verification failed."""

    status_code = 400


class ProviderUnavailableError(BillingError):
    """The payment provider is not configured or the call failed."""

    status_code = 503


class NonCriticalSideEffectError(BillingError):
    """A best-effort side effect (e-mail, referral bonus, alert) failed.

    Never surfaced to the client: callers catch it, log it and continue.
    """
