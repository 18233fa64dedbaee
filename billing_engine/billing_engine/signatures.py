"""HMAC-SHA256 signature verification for payment callbacks and webhooks."""

from __future__ import annotations

import hashlib
import hmac


def compute_signature(message: bytes | str, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of *message* under *secret*."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify(message: bytes | str, signature: str, secret: str) -> bool:
    """Validate a provider signature in constant time.

    Parameters
    ----------
    message:
        The signed bytes.  For webhooks this must be the raw, unparsed
        request body.
    signature:
        Hex digest supplied by the caller.
    secret:
        Shared secret (API key secret or webhook secret).

    Returns
    -------
    bool
        ``True`` only if the digests match exactly.  An empty secret or
        signature never verifies.
    """
    if not secret or not signature:
        return False
    expected = compute_signature(message, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def payment_message(payment_id: str, subscription_id: str) -> str:
    """Signed payload for a subscription payment callback."""
    return f"{payment_id}|{subscription_id}"


def order_message(order_id: str, payment_id: str) -> str:
    """Signed payload for a one-time order payment callback."""
    return f"{order_id}|{payment_id}"
