"""HTTP API for subscription billing, seat licensing and trial entitlement."""

__version__ = "0.4.0"
