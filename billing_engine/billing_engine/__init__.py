"""Billing and entitlement reconciliation engine.

Pure domain logic (proration, signatures, idempotency, trial gating, the
subscription state machine, seat reduction scheduling, referral rewards)
plus the SQLAlchemy persistence layer under :mod:`billing_engine.state`.
"""

__version__ = "0.4.0"
