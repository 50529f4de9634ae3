"""
Owner authentication decorators.

Owner routes carry ``Authorization: Bearer <jwt>``; the verified ``sub``
becomes ``g.owner_id``.  Recipient routes never use this module, their
authority is the signing token in the request.

Usage:
    @documents_bp.route("/documents", methods=["GET"])
    @owner_required
    def list_documents():
        ...
"""

import functools
import logging

from flask import g, request

from signflow.core.exceptions import AuthorizationError
from signflow.services.jwt_service import decode_owner_token

logger = logging.getLogger(__name__)


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def owner_required(f):
    """Reject the request with 401 unless a valid owner token is present."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        token = bearer_token()
        if token is None:
            raise AuthorizationError("Authentication required")
        payload = decode_owner_token(token)
        g.owner_id = payload["sub"]
        g.owner_email = payload.get("email")
        return f(*args, **kwargs)

    return decorated
