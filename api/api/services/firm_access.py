"""Firm-level authorisation checks shared by the billing services."""

from __future__ import annotations

import logging

from billing_engine.errors import AuthorizationError
from billing_engine.state.repository import FirmRepository

logger = logging.getLogger(__name__)


async def require_member(
    firms: FirmRepository,
    firm_id: str,
    user_id: str,
    message: str = "You do not have access to this firm",
) -> str:
    """Return the caller's firm role, raising ``AuthorizationError`` for outsiders."""
    role = await firms.get_member_role(firm_id, user_id)
    if role is None:
        logger.info("User %s denied access to firm %s", user_id, firm_id)
        raise AuthorizationError(message)
    return role


async def require_owner(firms: FirmRepository, firm_id: str, user_id: str, message: str) -> None:
    """Raise ``AuthorizationError`` unless the caller owns the firm."""
    role = await firms.get_member_role(firm_id, user_id)
    if role != "owner":
        logger.info("User %s is not the owner of firm %s", user_id, firm_id)
        raise AuthorizationError(message)
