"""Standardised API responses.

Every endpoint answers with the envelope ``{success, message, data}``;
errors add a machine-readable ``code`` and optional ``details``.

Usage
-----
    from reftrack.utils.errors import api_error, api_response, E

    return api_response(ref.to_dict(), "Reference created", status=201)
    return api_error(E.NOT_FOUND, "Reference not found")
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (all carry the ERR_ prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    EMPTY_HOLDER_SET = "ERR_EMPTY_HOLDER_SET"

    # Authentication / permissions – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_CURRENT_HOLDER = "ERR_NOT_CURRENT_HOLDER"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    REOPEN_PENDING = "ERR_REOPEN_PENDING"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"

    # Throttling – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Transient – HTTP 503
    TIMEOUT = "ERR_TIMEOUT"
    DATASTORE_UNAVAILABLE = "ERR_DATASTORE_UNAVAILABLE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.EMPTY_HOLDER_SET: 400,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_CURRENT_HOLDER: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INVALID_TRANSITION: 409,
    E.REOPEN_PENDING: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.RATE_LIMITED: 429,
    E.TIMEOUT: 503,
    E.DATASTORE_UNAVAILABLE: 503,
    E.INTERNAL: 500,
}


def api_response(data=None, message: str = "OK", *, status: int = 200):
    """Return a successful envelope ``(jsonify(body), status)``."""
    return jsonify({"success": True, "message": message, "data": data}), status


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
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, version numbers, …).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "success": False,
        "message": message,
        "data": None,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def domain_error_response(exc):
    """Render any ``DomainError`` through :func:`api_error`."""
    return api_error(exc.code, exc.message, status=exc.http_status, details=exc.details or None)
