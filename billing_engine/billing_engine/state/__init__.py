"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_engine.state.database import create_tables, get_engine
from billing_engine.state.repository import (
    FirmRepository,
    IdempotencyKeyRepository,
    ReferralRepository,
    SubscriptionRepository,
    TrialRepository,
)

__all__ = [
    "FirmRepository",
    "IdempotencyKeyRepository",
    "ReferralRepository",
    "SubscriptionRepository",
    "TrialRepository",
    "create_tables",
    "get_engine",
]
