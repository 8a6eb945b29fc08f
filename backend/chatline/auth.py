# backend/chatline/auth.py
"""
Bearer token validation for realtime connections.

Tokens are issued elsewhere; this module only verifies them with the shared
secret and extracts the caller's identity. The user id is read from the
``userId`` claim, falling back to ``sub``; the display name from
``displayName`` then ``username``.
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional, cast

import jwt
from jwt import PyJWTError

from .core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str
    username: str


def _secret_value(secret_obj: Any) -> str:
    getter = getattr(secret_obj, "get_secret_value", None)
    if callable(getter):
        return cast(str, getter())
    return cast(str, secret_obj)


def decode_access_token(token: str, config: Optional[Settings] = None) -> Dict[str, Any]:
    """Decode and verify a JWT. Raises PyJWTError on any failure."""
    config = config or default_settings
    payload_raw = jwt.decode(
        token,
        _secret_value(config.secret_key),
        algorithms=[config.algorithm],
        options={"verify_aud": False},
    )
    return cast(Dict[str, Any], payload_raw)


class JwtIdentityVerifier:
    """Validates a bearer token and yields the identity it carries."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def validate(self, token: Optional[str]) -> Optional[Identity]:
        if not token:
            return None
        try:
            payload = decode_access_token(token, self.config)
        except PyJWTError as e:
            logger.info(f"[AUTH] Rejected token: {e}")
            return None

        user_id = payload.get("userId") or payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            logger.info("[AUTH] Token has no user id claim")
            return None
        username = str(payload.get("username") or user_id)
        display_name = str(payload.get("displayName") or username)
        return Identity(user_id=user_id, display_name=display_name, username=username)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
