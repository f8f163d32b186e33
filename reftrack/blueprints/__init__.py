"""
Reference Routing Engine
Blueprint registry and shared view helpers.
"""

import logging

from flask import g, request
from werkzeug.exceptions import HTTPException

from reftrack.core.exceptions import DomainError, ValidationError
from reftrack.utils.errors import E, api_error, domain_error_response

logger = logging.getLogger(__name__)


def current_actor():
    """The user resolved by the actor context middleware."""
    return g.actor


def json_body() -> dict:
    """Request JSON object; anything else is a ValidationError."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def optional_bool(value, field: str, default: bool = False) -> bool:
    """JSON boolean or absent; strings such as "false" are rejected."""
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be true or false", details={field: "boolean"})
    return value


def optional_int(value, field: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: str(value)}) from exc


def register_error_handlers(bp) -> None:
    """Render DomainError and unexpected failures through the envelope."""

    @bp.errorhandler(DomainError)
    def _handle_domain_error(error: DomainError):
        if error.http_status >= 500:
            logger.error("%s: %s", type(error).__name__, error.message,
                         extra={"path": request.path})
        return domain_error_response(error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return api_error(E.INTERNAL if error.code >= 500 else E.VALIDATION_INVALID,
                             error.description or error.name, status=error.code)
        logger.exception("Unexpected error in %s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
