"""Shared utility functions.

commit_or_raise:           commit the session, translating SQLAlchemy failures
translate_datastore_errors: same translation for flush-time failures
parse_datetime:            ISO-8601 parsing for request payloads
parse_int_list:            comma/array query-arg parsing
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm.exc import StaleDataError

from reftrack.core.exceptions import (
    ConcurrentModification,
    ConflictError,
    DatastoreTimeout,
    DatastoreUnavailable,
    ValidationError,
)
from reftrack.models import db

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("timeout", "timed out", "database is locked", "statement_timeout", "canceling statement")


# ── Database error translation ───────────────────────────────────────────────

@contextmanager
def translate_datastore_errors(reference_id: int | None = None):
    """Roll back and re-raise SQLAlchemy failures as domain errors.

    StaleDataError   → ConcurrentModification (version check failed on flush)
    IntegrityError   → ConflictError
    pool timeout     → DatastoreTimeout
    OperationalError → DatastoreTimeout / DatastoreUnavailable
    """
    try:
        yield
    except StaleDataError as exc:
        db.session.rollback()
        logger.info("Version check failed on flush", extra={"reference_id": reference_id})
        raise ConcurrentModification(reference_id) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error: %s", exc.orig)
        raise ConflictError("Duplicate or constraint violation", details={"constraint": str(exc.orig)}) from exc
    except PoolTimeoutError as exc:
        db.session.rollback()
        logger.error("Connection pool timeout")
        raise DatastoreTimeout("Timed out waiting for a database connection") from exc
    except OperationalError as exc:
        db.session.rollback()
        text = str(exc.orig).lower()
        if any(marker in text for marker in _TIMEOUT_MARKERS):
            logger.error("Database operation timed out: %s", exc.orig)
            raise DatastoreTimeout("Database operation timed out") from exc
        logger.exception("Database operational error")
        raise DatastoreUnavailable("Database unavailable") from exc


def commit_or_raise(reference_id: int | None = None) -> None:
    """Commit the current session or raise a domain error after rollback.

    Usage::

        with translate_datastore_errors(ref.id):
            ...mutate...
        commit_or_raise(ref.id)
    """
    with translate_datastore_errors(reference_id):
        db.session.commit()


# ── Input parsing ────────────────────────────────────────────────────────────

def parse_datetime(value, field: str = "datetime"):
    """Parse an ISO-8601 string to an aware datetime (UTC if no offset given).

    Returns None for empty input; raises ValidationError for malformed input.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"{field} must be an ISO-8601 datetime",
                                  details={field: str(value)}) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_int_list(values, field: str) -> list[int]:
    """Coerce a list of ids (ints or numeric strings) to ints."""
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        values = [values]
    result = []
    for raw in values:
        try:
            result.append(int(raw))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{field} must contain integer ids",
                                  details={field: str(raw)}) from exc
    return result
