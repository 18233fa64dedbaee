"""Platform role checks.

Two platform roles exist: ordinary ``user`` accounts and ``admin``
operators who may manage trial-abuse records.  Firm-level authority
(owner vs member) is a separate concept checked by the services against
firm membership, not by this module.

Usage in routers::

    from api.middleware.rbac import Role, require_role

    @router.get("/abuse")
    async def list_abuse(
        ...,
        _role: Role = Depends(require_role(Role.ADMIN)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Platform roles ordered by privilege level."""

    USER = 0
    ADMIN = 1


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


def get_user_role(request: Request) -> Role:
    """Extract and validate the role set by :class:`AuthenticationMiddleware`.

    Raises
    ------
    HTTPException(401)
        If the request carries no authenticated identity.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum role level."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role < min_role:
            logger.info("Role check failed: has=%s, required=%s", role.name, min_role.name)
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient role: '{role.name.lower()}' requires at least '{min_role.name.lower()}'",
            )
        return role

    return _guard
