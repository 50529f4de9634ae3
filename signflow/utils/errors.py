"""Standardised API error responses.

Usage
-----
    from signflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Document not found")
    return api_error(E.VALIDATION, "token is required")
    return error_response(exc)   # any SigningError
"""

from __future__ import annotations

from flask import jsonify

from signflow.core.exceptions import SigningError


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # HTTP 400
    VALIDATION = "ERR_VALIDATION"

    # HTTP 401 / 410
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    LINK_EXPIRED = "ERR_LINK_EXPIRED"

    # HTTP 403
    SEQUENCE = "ERR_SEQUENCE"

    # HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # HTTP 409
    CONFLICT = "ERR_CONFLICT"
    INVARIANT = "ERR_INVARIANT"
    INTEGRITY = "ERR_INTEGRITY"

    # HTTP 500
    STORAGE = "ERR_STORAGE"
    CONFIGURATION = "ERR_CONFIGURATION"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION: 400,
    E.UNAUTHORIZED: 401,
    E.LINK_EXPIRED: 410,
    E.SEQUENCE: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT: 409,
    E.INVARIANT: 409,
    E.INTEGRITY: 409,
    E.STORAGE: 500,
    E.CONFIGURATION: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation, safe to show to the recipient.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (digests, violated rules, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def error_response(exc: SigningError):
    """Render a service-layer exception with its own status and code."""
    return api_error(exc.code, exc.message, status=exc.status_code, details=exc.details)
