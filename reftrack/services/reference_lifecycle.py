"""
Reference Lifecycle Service

Owns every mutation of a reference:
  - create_reference: new reference + seed movement (status Open)
  - apply_movement:   hand-off and/or status change, one movement per call
  - set_priority:     versioned priority change (not a hand-off, no movement)
  - request_reopen / resolve_reopen: the only way out of Closed

A movement insert and the reference update it describes are flushed and
committed together.  The ``version`` column guards against lost updates:
a caller-supplied ``expected_version`` is checked up front, and the ORM
re-checks the token on flush, so the slower of two concurrent writers gets
ConcurrentModification and changes nothing.

Usage:
    from reftrack.services.reference_lifecycle import apply_movement

    result = apply_movement(
        "local", ref_id, actor,
        next_holders=[42], next_status="InProgress", remarks="Please review",
        expected_version=3,
    )
"""

import logging

from flask import current_app
from sqlalchemy import select

from reftrack.core.exceptions import (
    AuthorizationError,
    ConcurrentModification,
    ConflictError,
    EmptyHolderSet,
    InvalidTransition,
    NotCurrentHolder,
    ReopenAlreadyPending,
    ValidationError,
)
from reftrack.models import db
from reftrack.models.audit import write_audit
from reftrack.models.base import utcnow
from reftrack.models.identity import User
from reftrack.models.reference import (
    DELIVERY_MODES,
    PRIORITY_MEDIUM,
    REFERENCE_PRIORITIES,
    REFERENCE_STATUSES,
    SCOPE_LOCAL,
    STATUS_CLOSED,
    STATUS_OPEN,
    STATUS_REOPENED,
    Reference,
    ReferenceHolder,
    ReferenceParticipant,
    validate_reference_transition,
)
from reftrack.services import events
from reftrack.services.code_generator import generate_ref_code, generate_reopen_request_id
from reftrack.services.helpers.scoped_queries import can_view, get_reference, require_scope
from reftrack.services.identity_store import IdentityStore
from reftrack.services.movement_ledger import append_movement, find_by_idempotency_key
from reftrack.services.permission import check_permission, get_evaluator
from reftrack.services.snapshot import IdentitySnapshot
from reftrack.utils.helpers import commit_or_raise, translate_datastore_errors

logger = logging.getLogger(__name__)

DEFAULT_FORWARD_REMARKS = "Forwarded for consideration/perusal/necessary action please"

_SELF_ROUTING_ALLOWED = {STATUS_CLOSED, STATUS_REOPENED}
_SUBJECT_MAX = 500


# ── Validation helpers ───────────────────────────────────────────────────────

def validate_remarks(remarks, *, field: str = "remarks") -> str:
    """Strip *remarks*; require it and enforce REMARKS_WORD_LIMIT."""
    text = (remarks or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    limit = current_app.config.get("REMARKS_WORD_LIMIT", 150)
    words = len(text.split())
    if words > limit:
        raise ValidationError(
            f"{field} exceed the maximum word limit of {limit} words (current: {words})",
            details={field: f"max {limit} words"},
        )
    return text


def _validate_priority(priority) -> str:
    if priority not in REFERENCE_PRIORITIES:
        raise ValidationError(
            f"Invalid priority: {priority}",
            details={"priority": f"one of {', '.join(REFERENCE_PRIORITIES)}"},
        )
    return priority


def _check_version(ref: Reference, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != ref.version:
        raise ConcurrentModification(ref.id, int(expected_version), ref.version)


def _authorize_actor(ref: Reference, actor: User, *, override: bool, authorized: bool) -> None:
    """Capability and reach checks for a holder-driven mutation.

    Holders act on what they hold; ``override`` skips the holder check but
    only reaches references the actor can see (own lab for delegated admins).
    """
    if not authorized:
        check_permission(actor, ref.scope, "override" if override else "move")
    if override:
        if not can_view(ref, actor):
            raise AuthorizationError(f"Override on {ref.ref_code} is outside your reach",
                                     details={"lab_name": ref.lab_name})
    elif not ref.is_held_by(actor.id):
        raise NotCurrentHolder(ref.ref_code, actor.id)


def _replay_movement(ref: Reference, existing, actor: User, key: str, *,
                     override: bool, authorized: bool) -> dict:
    """Answer a retried request with the movement it already produced."""
    if existing.performed_by_id == actor.id and can_view(ref, actor):
        if not authorized:
            check_permission(actor, ref.scope, "override" if override else "move")
        return _movement_result(ref, existing, ref.status, replayed=True)
    # Someone else's key: refuse as the plain request would, else report reuse
    _authorize_actor(ref, actor, override=override, authorized=authorized)
    raise ConflictError("Idempotency key already belongs to another movement",
                        details={"idempotency_key": key})



def _holder_rows(users) -> list[ReferenceHolder]:
    return [
        ReferenceHolder(user_id=u.id, position=i, **IdentitySnapshot.from_user(u).columns())
        for i, u in enumerate(users)
    ]


def _set_holders(ref: Reference, users) -> None:
    """Replace holders and recompute the first-holder derived fields."""
    ref.holders = _holder_rows(users)
    ref.marked_to_division = users[0].division
    ref.pending_lab = users[0].lab_name


def _add_participants(ref: Reference, user_ids) -> None:
    known = ref.participant_ids
    for uid in user_ids:
        if uid not in known:
            ref.participants.append(ReferenceParticipant(user_id=uid))
            known.add(uid)


def _check_local_holders(ref_lab: str | None, holders, *, single: bool) -> None:
    if single and len(holders) != 1:
        raise ValidationError("Local references are marked to exactly one user",
                              details={"marked_to": "exactly one holder"})
    for user in holders:
        if user.lab_name != ref_lab and not user.is_superuser:
            raise AuthorizationError(
                f"{user.full_name} is not in lab '{ref_lab}'; local references stay within the lab",
                details={"user_id": user.id, "lab_name": user.lab_name},
            )


def _check_active(holders) -> None:
    inactive = [u.id for u in holders if u.status != "active"]
    if inactive:
        raise ValidationError("Cannot mark a reference to inactive users",
                              details={"inactive_user_ids": inactive})


def _closing_holders(ref: Reference) -> list[User]:
    """Who receives a reference that is closed without explicit recipients.

    Lab administrators for local references (superusers if the lab has
    none), superusers for global ones; falls back to the current holders.
    """
    if current_app.config.get("CLOSE_ROUTES_TO_ADMINS", True):
        roles = get_evaluator().roles_with(ref.scope, "resolve_reopen")
        stmt = (
            select(User)
            .where(User.role.in_(roles), User.status == "active")
            .order_by(User.id)
        )
        admins = list(db.session.execute(stmt).scalars().all())
        if ref.scope == SCOPE_LOCAL:
            lab_admins = [u for u in admins if u.lab_name == ref.lab_name and not u.is_superuser]
            admins = lab_admins or [u for u in admins if u.is_superuser]
        if admins:
            return admins
    return IdentityStore.get_users(ref.marked_to)


def _movement_result(ref: Reference, movement, previous_status: str, *, replayed: bool = False) -> dict:
    return {
        "reference": ref.to_dict(),
        "movement": movement.to_dict(),
        "previous_status": previous_status,
        "new_status": ref.status,
        "idempotent_replay": replayed,
    }


def _emit(signal, ref: Reference, **payload) -> None:
    # Receivers are fire-and-forget; a failing sink never fails the mutation
    try:
        signal.send(ref, **payload)
    except Exception:
        logger.exception("Event receiver failed for %s", signal.name,
                         extra={"scope": ref.scope, "reference_id": ref.id})


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════

def create_reference(
    scope: str,
    actor: User,
    *,
    subject: str,
    marked_to,
    remarks: str,
    priority: str | None = None,
    eoffice_no: str | None = None,
    delivery_mode: str | None = None,
    delivery_details: str | None = None,
    sent_at=None,
) -> dict:
    """
    Create a reference with its seed movement (status Open).

    Args:
        scope: "local" or "global".
        actor: Creating user; becomes created_by and first participant.
        marked_to: Initial holder ids/emails (exactly one for local scope).

    Returns:
        {"reference": dict, "movement": dict}

    Raises:
        ValidationError, EmptyHolderSet, AuthorizationError, NotFoundError
    """
    require_scope(scope)
    check_permission(actor, scope, "create")

    subject = (subject or "").strip()
    if not subject:
        raise ValidationError("subject is required", details={"subject": "required"})
    if len(subject) > _SUBJECT_MAX:
        raise ValidationError(f"subject exceeds {_SUBJECT_MAX} characters")
    remarks = validate_remarks(remarks)
    priority = _validate_priority(priority or PRIORITY_MEDIUM)

    if scope == SCOPE_LOCAL:
        if delivery_mode or delivery_details or sent_at:
            raise ValidationError("Delivery metadata applies to global references only")
    elif delivery_mode is not None and delivery_mode not in DELIVERY_MODES:
        raise ValidationError(
            f"Invalid delivery mode: {delivery_mode}",
            details={"delivery_mode": f"one of {', '.join(sorted(DELIVERY_MODES))}"},
        )

    holders = IdentityStore.resolve_users(marked_to or [])
    if not holders:
        raise EmptyHolderSet()
    if [u.id for u in holders] == [actor.id]:
        raise ValidationError("You cannot mark a reference to yourself")
    _check_active(holders)
    if scope == SCOPE_LOCAL:
        _check_local_holders(actor.lab_name, holders, single=True)

    now = utcnow()
    ref = Reference(
        scope=scope,
        ref_code=generate_ref_code(scope),
        subject=subject,
        remarks=remarks,
        eoffice_no=(eoffice_no or "").strip() or None,
        delivery_mode=delivery_mode,
        delivery_details=delivery_details,
        sent_at=sent_at,
        status=STATUS_OPEN,
        priority=priority,
        created_by_id=actor.id,
        created_by_details=IdentitySnapshot.from_user(actor).to_dict(),
        lab_name=actor.lab_name,
        created_at=now,
        updated_at=now,
    )
    with translate_datastore_errors():
        _set_holders(ref, holders)
        _add_participants(ref, [actor.id] + [u.id for u in holders])
        db.session.add(ref)
        db.session.flush()

        movement = append_movement(ref, actor, holders, STATUS_OPEN, remarks, movement_date=now)
        write_audit(
            entity_type="reference",
            entity_id=ref.id,
            action="reference.create",
            actor_user_id=actor.id,
            scope=scope,
            diff={"status": {"old": None, "new": STATUS_OPEN}, "marked_to": {"old": [], "new": ref.marked_to}},
        )
    commit_or_raise(ref.id)

    logger.info("Reference %s created", ref.ref_code,
                extra={"scope": scope, "reference_id": ref.id, "actor_id": actor.id,
                       "event_type": "reference.create"})
    result = {"reference": ref.to_dict(), "movement": movement.to_dict()}
    _emit(events.reference_moved, ref, movement=movement, actor_id=actor.id)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Movements
# ═════════════════════════════════════════════════════════════════════════════

def apply_movement(
    scope: str,
    reference_id: int,
    actor: User,
    next_holders,
    next_status: str,
    remarks: str,
    *,
    expected_version: int | None = None,
    override: bool = False,
    idempotency_key: str | None = None,
    authorized: bool = False,
) -> dict:
    """
    Hand a reference to *next_holders* with status *next_status*.

    Args:
        next_holders: Recipient ids/emails.  May be empty only when closing,
            in which case the reference is routed to the scope administrators.
        expected_version: Version token the caller read; stale → ConcurrentModification.
        override: Act without being a holder (requires the ``override`` capability).
        idempotency_key: Client key; a retry with the same key returns the
            original movement without writing.
        authorized: The caller already consulted the permission evaluator
            for this request (bulk actions check once per batch).

    Returns:
        {"reference", "movement", "previous_status", "new_status", "idempotent_replay"}

    Raises:
        NotCurrentHolder, InvalidTransition, EmptyHolderSet, ValidationError,
        AuthorizationError, ConcurrentModification, DatastoreTimeout
    """
    ref = get_reference(scope, reference_id)

    if idempotency_key:
        existing = find_by_idempotency_key(ref.id, idempotency_key)
        if existing is not None:
            return _replay_movement(ref, existing, actor, idempotency_key,
                                    override=override, authorized=authorized)

    _authorize_actor(ref, actor, override=override, authorized=authorized)
    _check_version(ref, expected_version)

    if next_status not in REFERENCE_STATUSES:
        raise ValidationError(f"Invalid status: {next_status}",
                              details={"status": f"one of {', '.join(REFERENCE_STATUSES)}"})
    if next_status == STATUS_REOPENED:
        raise InvalidTransition(ref.ref_code, ref.status, next_status,
                                "reopening requires an approved reopen request")
    remarks = validate_remarks(remarks)

    return _move(ref, actor, next_holders, next_status, remarks, idempotency_key=idempotency_key)


def _move(
    ref: Reference,
    actor: User,
    next_holders,
    next_status: str,
    remarks: str,
    *,
    idempotency_key: str | None = None,
    audit_action: str = "reference.move",
    extra_changes=None,
) -> dict:
    """Validate the transition and write movement + reference update atomically."""
    if not validate_reference_transition(ref.status, next_status):
        raise InvalidTransition(ref.ref_code, ref.status, next_status)

    if next_holders:
        holders = IdentityStore.resolve_users(next_holders)
        _check_active(holders)
        if ref.scope == SCOPE_LOCAL:
            _check_local_holders(ref.lab_name, holders, single=True)
    elif next_status == STATUS_CLOSED:
        holders = _closing_holders(ref)
    else:
        holders = []
    if not holders:
        raise EmptyHolderSet(ref.ref_code)
    if next_status not in _SELF_ROUTING_ALLOWED and [u.id for u in holders] == [actor.id]:
        raise ValidationError("A holder cannot reassign a reference to themself only")

    now = utcnow()
    previous_status = ref.status
    previous_holders = ref.marked_to
    with translate_datastore_errors(ref.id):
        movement = append_movement(
            ref, actor, holders, next_status, remarks,
            idempotency_key=idempotency_key, movement_date=now,
        )
        _set_holders(ref, holders)
        _add_participants(ref, [actor.id] + [u.id for u in holders])
        ref.status = next_status
        ref.remarks = remarks
        ref.updated_at = now
        if next_status == STATUS_CLOSED:
            ref.closed_at = now
        elif previous_status == STATUS_CLOSED:
            ref.closed_at = None
        if extra_changes:
            extra_changes(ref)
        write_audit(
            entity_type="reference",
            entity_id=ref.id,
            action=audit_action,
            actor_user_id=actor.id,
            scope=ref.scope,
            diff={
                "status": {"old": previous_status, "new": next_status},
                "marked_to": {"old": previous_holders, "new": ref.marked_to},
            },
        )
    try:
        commit_or_raise(ref.id)
    except ConflictError:
        # Lost an idempotency-key race: the other request's movement stands
        if idempotency_key:
            existing = find_by_idempotency_key(ref.id, idempotency_key)
            if existing is not None and existing.performed_by_id == actor.id:
                db.session.refresh(ref)
                return _movement_result(ref, existing, ref.status, replayed=True)
        raise

    logger.info("Reference %s moved %s → %s", ref.ref_code, previous_status, next_status,
                extra={"scope": ref.scope, "reference_id": ref.id, "actor_id": actor.id,
                       "event_type": audit_action})
    result = _movement_result(ref, movement, previous_status)
    _emit(events.reference_moved, ref, movement=movement, actor_id=actor.id)
    return result


def set_priority(
    scope: str,
    reference_id: int,
    actor: User,
    priority: str,
    *,
    expected_version: int | None = None,
    override: bool = False,
    authorized: bool = False,
) -> dict:
    """
    Change the priority of a reference the actor holds.

    Priority is not a hand-off, so no movement is recorded; the version
    token still advances.  Setting the current priority is a no-op.
    """
    ref = get_reference(scope, reference_id)
    _authorize_actor(ref, actor, override=override, authorized=authorized)
    if ref.status == STATUS_CLOSED:
        raise InvalidTransition(ref.ref_code, ref.status, ref.status,
                                "priority cannot change on a closed reference")
    _check_version(ref, expected_version)
    priority = _validate_priority(priority)

    previous = ref.priority
    if previous == priority:
        return {"reference": ref.to_dict(), "previous_priority": previous, "changed": False}

    with translate_datastore_errors(ref.id):
        ref.priority = priority
        ref.updated_at = utcnow()
        write_audit(
            entity_type="reference",
            entity_id=ref.id,
            action="reference.priority",
            actor_user_id=actor.id,
            scope=scope,
            diff={"priority": {"old": previous, "new": priority}},
        )
    commit_or_raise(ref.id)
    logger.info("Reference %s priority %s → %s", ref.ref_code, previous, priority,
                extra={"scope": scope, "reference_id": ref.id, "actor_id": actor.id,
                       "event_type": "reference.priority"})
    return {"reference": ref.to_dict(), "previous_priority": previous, "changed": True}


# ═════════════════════════════════════════════════════════════════════════════
# Reopen flow
# ═════════════════════════════════════════════════════════════════════════════

def request_reopen(scope: str, reference_id: int, actor: User, reason: str) -> dict:
    """
    File a reopen request on a Closed reference.  Status does not change.

    Raises:
        InvalidTransition: reference is not Closed.
        ReopenAlreadyPending: another request is unresolved.
        AuthorizationError: actor never took part in the reference.
    """
    ref = get_reference(scope, reference_id)
    check_permission(actor, scope, "request_reopen")
    if actor.id not in ref.participant_ids:
        raise AuthorizationError("Only participants of a reference may request reopening")
    if ref.status != STATUS_CLOSED:
        raise InvalidTransition(ref.ref_code, ref.status, STATUS_REOPENED,
                                "only closed references can be reopened")
    if ref.has_pending_reopen:
        raise ReopenAlreadyPending(ref.ref_code, ref.reopen_request_id)
    reason = validate_remarks(reason, field="reason")

    now = utcnow()
    with translate_datastore_errors(ref.id):
        ref.reopen_request_id = generate_reopen_request_id(now)
        ref.reopen_requested_by_id = actor.id
        ref.reopen_reason = reason
        ref.reopen_requested_at = now
        ref.updated_at = now
        write_audit(
            entity_type="reference",
            entity_id=ref.id,
            action="reference.reopen_request",
            actor_user_id=actor.id,
            scope=scope,
            diff={"reopen_request_id": {"old": None, "new": ref.reopen_request_id}, "reason": reason},
        )
    commit_or_raise(ref.id)

    logger.info("Reopen requested for %s (%s)", ref.ref_code, ref.reopen_request_id,
                extra={"scope": scope, "reference_id": ref.id, "actor_id": actor.id,
                       "event_type": "reference.reopen_request"})
    result = {"reference": ref.to_dict(), "request_id": ref.reopen_request_id}
    _emit(events.reopen_requested, ref, actor_id=actor.id)
    return result


def _clear_reopen_request(ref: Reference) -> None:
    ref.reopen_request_id = None
    ref.reopen_requested_by_id = None
    ref.reopen_reason = None
    ref.reopen_requested_at = None


def resolve_reopen(scope: str, reference_id: int, approver: User, approve: bool) -> dict:
    """
    Approve or deny the pending reopen request.

    Approval records a Closed → Reopened movement handing the reference back
    to the requester; denial only clears the request.

    Returns:
        {"reference", "approved", "request_id", "movement" (approval only)}
    """
    ref = get_reference(scope, reference_id)
    check_permission(approver, scope, "resolve_reopen")
    if scope == SCOPE_LOCAL and not approver.is_superuser and approver.lab_name != ref.lab_name:
        raise AuthorizationError("Reopen requests are resolved by administrators of the owning lab")
    if not ref.has_pending_reopen:
        raise ValidationError(f"Reference {ref.ref_code} has no pending reopen request")

    request_id = ref.reopen_request_id
    requester_id = ref.reopen_requested_by_id
    reason = ref.reopen_reason

    if approve:
        remarks = f"Reopened as per request no. {request_id}, Reason: {reason}"
        moved = _move(
            ref, approver, [requester_id], STATUS_REOPENED, remarks,
            audit_action="reference.reopen_approve",
            extra_changes=_clear_reopen_request,
        )
        result = {"reference": moved["reference"], "movement": moved["movement"],
                  "approved": True, "request_id": request_id}
    else:
        with translate_datastore_errors(ref.id):
            _clear_reopen_request(ref)
            ref.updated_at = utcnow()
            write_audit(
                entity_type="reference",
                entity_id=ref.id,
                action="reference.reopen_reject",
                actor_user_id=approver.id,
                scope=scope,
                diff={"reopen_request_id": {"old": request_id, "new": None}},
            )
        commit_or_raise(ref.id)
        result = {"reference": ref.to_dict(), "approved": False, "request_id": request_id}

    logger.info("Reopen request %s %s", request_id, "approved" if approve else "rejected",
                extra={"scope": scope, "reference_id": ref.id, "actor_id": approver.id,
                       "event_type": "reference.reopen_approve" if approve else "reference.reopen_reject"})
    _emit(events.reopen_resolved, ref, approved=approve, requester_id=requester_id,
          request_id=request_id, actor_id=approver.id)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Read
# ═════════════════════════════════════════════════════════════════════════════

def get_reference_for(scope: str, reference_id: int, actor: User) -> Reference:
    """Scoped lookup plus visibility check for a single reference."""
    ref = get_reference(scope, reference_id)
    if not can_view(ref, actor):
        raise AuthorizationError(f"Not authorized to view reference {ref.ref_code}")
    return ref
