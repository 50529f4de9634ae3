"""
JWT Service: owner session tokens.

Access token:  15 minutes (configurable via JWT_ACCESS_EXPIRES)
Algorithm:     HS256

Token payload:
{
    "sub": "<owner_id>",
    "email": "<owner email, optional>",
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}

Recipients never hold a JWT; their authority is the signing token.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from signflow.core.exceptions import AuthorizationError, ConfigurationError


DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes
ALGORITHM = "HS256"


def _get_secret() -> str:
    secret = current_app.config.get("JWT_SECRET_KEY") or current_app.config.get("SECRET_KEY")
    if not secret:
        raise ConfigurationError("Session signing key is not configured")
    return secret


def _get_access_expires() -> int:
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


def generate_owner_token(owner_id: str, email: str | None = None) -> str:
    """Generate a short-lived owner access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(owner_id),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=_get_access_expires()),
        "jti": str(uuid.uuid4()),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def decode_owner_token(token: str) -> dict:
    """
    Decode and verify an owner token.

    Returns the payload dict on success.
    Raises AuthorizationError for expired, malformed or wrong-type tokens.
    """
    secret = _get_secret()
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthorizationError("Session has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthorizationError("Invalid session token") from exc

    if payload.get("type") != "access" or not payload.get("sub"):
        raise AuthorizationError("Invalid session token")
    return payload
