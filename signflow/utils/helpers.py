"""
Shared request and time helpers.

SQLite drops tzinfo on round-trip, so every timestamp read back from the
database goes through ``as_utc`` before it is compared with ``utcnow()``.
"""

from __future__ import annotations

import ipaddress
import secrets
from datetime import datetime, timezone

from flask import has_request_context, request

SIGNING_TOKEN_BYTES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_datetime(value) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed).  Bad input gives None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def new_signing_token() -> str:
    """64 hex chars of CSPRNG output."""
    return secrets.token_hex(SIGNING_TOKEN_BYTES)


def get_client_ip() -> str | None:
    """Return the originating client IP, honouring X-Forwarded-For."""
    if not has_request_context():
        return None
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.remote_addr


def normalize_ip(raw: str | None) -> tuple[str | None, str | None]:
    """Return ``(ip, unavailable_reason)``.

    Loopback addresses say nothing about the signer, so they are stored as
    absent with reason ``loopback``.  Missing or unparsable input gives
    reason ``unavailable``.
    """
    value = (raw or "").strip()
    if value.startswith("::ffff:"):
        value = value[len("::ffff:"):]
    if not value:
        return None, "unavailable"
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return None, "unavailable"
    if addr.is_loopback or addr.is_unspecified:
        return None, "loopback"
    return str(addr), None
