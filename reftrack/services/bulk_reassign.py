"""
Bulk Reassignment Service

Applies one action to many references on behalf of one actor:
  - reassign:     {"type": "reassign", "marked_to": [..], "remarks": ".."}
  - markPriority: {"type": "markPriority", "priority": "High"}
  - close:        {"type": "close", "remarks": ".."}

Best-effort batch: each reference is checked and mutated independently in
its own transaction, so one ineligible id never rolls back another.  Only
structural problems (no ids, unknown or malformed action) and a scope the
actor may not bulk-act on fail the whole call.  The permission evaluator is
consulted once per batch.

Items run on a bounded thread pool (BULK_MAX_WORKERS), each worker inside
its own application context and therefore its own session.  With one
worker the items run inline on the calling thread.

Returns:
    {"succeeded": [ids], "failed": [{"id", "reason", "message"}]}
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from flask import current_app

from reftrack.core.exceptions import (
    ConcurrentModification,
    DomainError,
    InvalidTransition,
    NotCurrentHolder,
    NotFoundError,
    ValidationError,
)
from reftrack.models import db
from reftrack.models.audit import write_audit
from reftrack.models.reference import REFERENCE_PRIORITIES, STATUS_CLOSED, STATUS_IN_PROGRESS
from reftrack.services.helpers.scoped_queries import get_reference_or_none, require_scope
from reftrack.services.identity_store import IdentityStore
from reftrack.services.permission import check_permission
from reftrack.services.reference_lifecycle import (
    DEFAULT_FORWARD_REMARKS,
    apply_movement,
    set_priority,
)
from reftrack.utils.helpers import commit_or_raise, parse_int_list

logger = logging.getLogger(__name__)

ACTION_REASSIGN = "reassign"
ACTION_MARK_PRIORITY = "markPriority"
ACTION_CLOSE = "close"
BULK_ACTIONS = (ACTION_REASSIGN, ACTION_MARK_PRIORITY, ACTION_CLOSE)

# Actions that may not touch a Closed reference
_OPEN_ONLY_ACTIONS = {ACTION_REASSIGN, ACTION_MARK_PRIORITY}


def _parse_action(action) -> dict:
    """Normalise and validate the action payload (batch-fatal on error)."""
    if not isinstance(action, dict) or action.get("type") not in BULK_ACTIONS:
        kind = action.get("type") if isinstance(action, dict) else action
        raise ValidationError(f"Unknown bulk action: {kind!r}",
                              details={"action": f"one of {', '.join(BULK_ACTIONS)}"})
    kind = action["type"]
    if kind == ACTION_REASSIGN:
        marked_to = action.get("marked_to") or []
        if not isinstance(marked_to, list) or not marked_to:
            raise ValidationError("reassign requires a non-empty marked_to list")
        return {"type": kind, "marked_to": marked_to,
                "remarks": action.get("remarks") or DEFAULT_FORWARD_REMARKS}
    if kind == ACTION_MARK_PRIORITY:
        if action.get("priority") not in REFERENCE_PRIORITIES:
            raise ValidationError(f"Invalid priority: {action.get('priority')}")
        return {"type": kind, "priority": action["priority"]}
    if not (action.get("remarks") or "").strip():
        raise ValidationError("close requires remarks")
    return {"type": kind, "remarks": action["remarks"], "marked_to": action.get("marked_to") or []}


def _failure(reference_id: int, exc: DomainError) -> dict:
    reason = "NotFound" if isinstance(exc, NotFoundError) else type(exc).__name__
    return {"id": reference_id, "ok": False, "reason": reason, "message": exc.message}


def _apply_one(scope: str, actor_id: int, reference_id: int, action: dict, retries: int) -> dict:
    """Eligibility check + mutation for a single id; never raises DomainError."""
    actor = IdentityStore.get_user(actor_id)
    attempt = 0
    while True:
        try:
            ref = get_reference_or_none(scope, reference_id)
            if ref is None:
                raise NotFoundError(resource="Reference", resource_id=reference_id, scope=scope)
            if not ref.is_held_by(actor.id):
                raise NotCurrentHolder(ref.ref_code, actor.id)
            if action["type"] in _OPEN_ONLY_ACTIONS and ref.status == STATUS_CLOSED:
                raise InvalidTransition(ref.ref_code, ref.status, ref.status,
                                        "closed references are not eligible")

            if action["type"] == ACTION_REASSIGN:
                apply_movement(scope, ref.id, actor, action["marked_to"], STATUS_IN_PROGRESS,
                               action["remarks"], authorized=True)
            elif action["type"] == ACTION_CLOSE:
                apply_movement(scope, ref.id, actor, action["marked_to"], STATUS_CLOSED,
                               action["remarks"], authorized=True)
            else:
                set_priority(scope, ref.id, actor, action["priority"], authorized=True)
            return {"id": reference_id, "ok": True}
        except ConcurrentModification as exc:
            attempt += 1
            if attempt > retries:
                return _failure(reference_id, exc)
            db.session.expire_all()
            logger.debug("Bulk item conflicted, retrying (attempt %d)", attempt,
                         extra={"scope": scope, "reference_id": reference_id})
        except DomainError as exc:
            return _failure(reference_id, exc)


def _apply_in_context(app, scope, actor_id, reference_id, action, retries) -> dict:
    with app.app_context():
        return _apply_one(scope, actor_id, reference_id, action, retries)


def bulk_apply(scope: str, actor, reference_ids, action) -> dict:
    """
    Apply *action* to every reference in *reference_ids* the actor holds.

    Raises:
        ValidationError: empty id list, unknown action or malformed payload.
        AuthorizationError: the actor's role may not bulk-act in *scope*.
    """
    require_scope(scope)
    ids = list(dict.fromkeys(parse_int_list(reference_ids, "reference_ids")))
    if not ids:
        raise ValidationError("reference_ids must not be empty", details={"reference_ids": "required"})
    parsed = _parse_action(action)
    check_permission(actor, scope, "bulk")

    workers = current_app.config.get("BULK_MAX_WORKERS", 4)
    retries = current_app.config.get("BULK_CONFLICT_RETRIES", 3)
    if workers <= 1 or len(ids) == 1:
        outcomes = [_apply_one(scope, actor.id, rid, parsed, retries) for rid in ids]
    else:
        app = current_app._get_current_object()
        with ThreadPoolExecutor(max_workers=min(workers, len(ids))) as pool:
            futures = [
                pool.submit(_apply_in_context, app, scope, actor.id, rid, parsed, retries)
                for rid in ids
            ]
            outcomes = [f.result() for f in futures]

    succeeded = [o["id"] for o in outcomes if o["ok"]]
    failed = [{"id": o["id"], "reason": o["reason"], "message": o["message"]} for o in outcomes if not o["ok"]]

    write_audit(
        entity_type="bulk",
        entity_id=scope,
        action="reference.bulk",
        actor_user_id=actor.id,
        scope=scope,
        diff={"action": parsed["type"], "succeeded": succeeded, "failed": failed},
    )
    commit_or_raise()
    logger.info("Bulk %s: %d succeeded, %d failed", parsed["type"], len(succeeded), len(failed),
                extra={"scope": scope, "actor_id": actor.id, "event_type": "reference.bulk"})
    return {"succeeded": succeeded, "failed": failed}
