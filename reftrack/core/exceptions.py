"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register a single
handler against ``DomainError`` and get a consistent envelope and HTTP
status everywhere.  Each class carries its machine-readable ``code`` and
``http_status`` so the mapping lives next to the error, not in the views.

Usage:
    from reftrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Reference", resource_id=42)
    raise ValidationError("subject is required", details={"subject": "missing"})
"""


class DomainError(Exception):
    """Base class for all errors the engine surfaces to its callers."""

    code = "ERR_INTERNAL"
    http_status = 500
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ── Input / access ───────────────────────────────────────────────────────────


class ValidationError(DomainError):
    """Raised when input is malformed or violates a field-level rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_INVALID"
    http_status = 400


class AuthorizationError(DomainError):
    """Raised when the actor lacks the capability for an action or scope."""

    code = "ERR_FORBIDDEN"
    http_status = 403


class NotFoundError(DomainError):
    """Raised when a requested resource does not exist within the given scope.

    A reference in the other scope partition is indistinguishable from a
    missing one: both raise NotFoundError.

    Args:
        resource: Human-readable entity name (e.g. "Reference", "User").
        resource_id: The key that was looked up.
        scope: Optional partition that was enforced. For logging only.
    """

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        scope: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.scope = scope
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ConflictError(DomainError):
    """Raised when an insert would violate a unique constraint."""

    code = "ERR_CONFLICT_DUPLICATE"
    http_status = 409


# ── Lifecycle rule violations ────────────────────────────────────────────────


class InvalidTransition(DomainError):
    """Raised when a status change is not allowed by REFERENCE_TRANSITIONS."""

    code = "ERR_INVALID_TRANSITION"
    http_status = 409

    def __init__(self, ref_code: str, current: str, target: str, reason: str | None = None):
        msg = f"Cannot move reference {ref_code} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"current_status": current, "target_status": target})
        self.ref_code = ref_code
        self.current_status = current
        self.target_status = target


class NotCurrentHolder(DomainError):
    """Raised when the actor does not currently hold the reference."""

    code = "ERR_NOT_CURRENT_HOLDER"
    http_status = 403

    def __init__(self, ref_code: str, user_id: int):
        super().__init__(f"User {user_id} is not a current holder of reference {ref_code}")
        self.ref_code = ref_code
        self.user_id = user_id


class EmptyHolderSet(DomainError):
    """Raised when a hand-off names no recipients."""

    code = "ERR_EMPTY_HOLDER_SET"
    http_status = 400

    def __init__(self, ref_code: str | None = None):
        target = f"reference {ref_code}" if ref_code else "a new reference"
        super().__init__(f"At least one holder is required for {target}")


class ReopenAlreadyPending(DomainError):
    """Raised when a reopen request is filed while another is unresolved."""

    code = "ERR_REOPEN_PENDING"
    http_status = 409

    def __init__(self, ref_code: str, request_id: str | None):
        super().__init__(f"Reference {ref_code} already has a pending reopen request ({request_id})")
        self.ref_code = ref_code
        self.request_id = request_id


# ── Transient ────────────────────────────────────────────────────────────────


class ConcurrentModification(DomainError):
    """Raised when the version token the caller read is no longer current.

    The caller should refetch the reference and retry with fresh state.
    """

    code = "ERR_CONCURRENT_MODIFICATION"
    http_status = 409
    retryable = True

    def __init__(self, reference_id: int | None, expected: int | None = None, actual: int | None = None):
        msg = f"Reference id={reference_id} was modified concurrently"
        if expected is not None:
            msg += f" (expected version {expected}, found {actual})"
        super().__init__(msg, details={"expected_version": expected, "current_version": actual})
        self.reference_id = reference_id


class DatastoreTimeout(DomainError):
    """Raised when a datastore call exceeds its configured timeout."""

    code = "ERR_TIMEOUT"
    http_status = 503
    retryable = True


class DatastoreUnavailable(DomainError):
    """Raised when the datastore cannot be reached or rejects the connection."""

    code = "ERR_DATASTORE_UNAVAILABLE"
    http_status = 503
    retryable = True
