"""Authentication middleware that validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with ``sub``
(user identity), ``email`` and ``role``.  When the token omits a role
claim, the least-privileged ``"user"`` role applies.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.  The payment
webhook is public because the provider authenticates it with an HMAC
signature over the body instead of a bearer token.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenManager, build_token_config

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/v1/billing/webhook"

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        WEBHOOK_PATH,
    }
)

_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``sub``, ``email`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any, token_manager: TokenManager | None = None) -> None:
        super().__init__(app)
        self._token_manager = token_manager or TokenManager(build_token_config())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403; anything else is 401.
            if "expired" in error_msg.lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {error_msg}"})

        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.role = claims.role or "user"

        return await call_next(request)
