"""Bearer-token issuing and validation.

Tokens have the form ``bmdev.<urlsafe-b64 JSON payload>.<hex HMAC-SHA256>``
where the signature covers the JSON payload bytes.  The shared secret
comes from the ``JWT_SECRET`` environment variable.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
import uuid

from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "bmdev"


class TokenConfig(BaseModel):
    """Signing parameters for :class:`TokenManager`."""

    jwt_secret: SecretStr
    issuer: str = "valuquick"
    token_ttl_seconds: int = 3600
    max_token_ttl_seconds: int = 86400


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    email: str | None = None
    role: str = "user"
    iss: str = "valuquick"
    iat: float = Field(default_factory=time.time)
    exp: float = Field(default_factory=lambda: time.time() + 3600)
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)


class TokenManager:
    """Issue and validate HMAC-signed bearer tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        subject: str,
        *,
        email: str | None = None,
        role: str = "user",
        ttl_seconds: int | None = None,
    ) -> str:
        """Return a signed token for *subject*.

        The lifetime is capped at ``max_token_ttl_seconds``.
        """
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        claims = TokenClaims(sub=subject, email=email, role=role, iss=self._config.issuer, iat=now, exp=now + ttl)
        payload_json = claims.model_dump_json()
        body = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{body}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify the signature and expiry of *token*.

        Raises
        ------
        PermissionError
            If the token is malformed, tampered with, or expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid token signature")

        try:
            claims = TokenClaims.model_validate(json.loads(payload_json))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PermissionError("Malformed token claims") from exc

        if claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims


def build_token_config() -> TokenConfig:
    """Construct a :class:`TokenConfig` from the environment.

    Without ``JWT_SECRET`` a random per-process secret is generated, so
    tokens do not survive a restart.  ``create_app`` refuses to start
    that way outside the dev environment.
    """
    secret = os.environ.get("JWT_SECRET", "")
    if not secret:
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning("JWT_SECRET not set; generated random per-process secret.")
    return TokenConfig(
        jwt_secret=SecretStr(secret),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
        max_token_ttl_seconds=int(os.environ.get("MAX_TOKEN_TTL_SECONDS", "86400")),
    )
