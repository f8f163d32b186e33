"""
Scope-partitioned query helpers.

Every reference lookup goes through these helpers so that the local and
global partitions never leak into each other: a reference id from the other
partition is indistinguishable from a missing one (NotFoundError → 404).

Visibility rules (list views, dashboards, single-reference reads):
  1. local scope: non-superusers only see references owned by their lab.
  2. actors whose role holds ``view_all`` in the scope see every reference
     that passes rule 1; everyone else only sees references they take part in.

Usage:
    ref = get_reference("local", ref_id)
    stmt = select(Reference).where(*visibility_clauses(actor, "local"))
"""

import logging

from sqlalchemy import select

from reftrack.core.exceptions import NotFoundError, ValidationError
from reftrack.models import db
from reftrack.models.reference import REFERENCE_SCOPES, SCOPE_LOCAL, Reference, ReferenceParticipant
from reftrack.services.permission import get_evaluator

logger = logging.getLogger(__name__)


def require_scope(scope: str) -> str:
    if scope not in REFERENCE_SCOPES:
        raise ValidationError(f"Unknown scope '{scope}'", details={"scope": "must be local or global"})
    return scope


def get_reference_or_none(scope: str, reference_id: int) -> Reference | None:
    require_scope(scope)
    stmt = select(Reference).where(Reference.id == reference_id, Reference.scope == scope)
    return db.session.execute(stmt).scalar_one_or_none()


def get_reference(scope: str, reference_id: int) -> Reference:
    """Fetch a reference by id within *scope* or raise NotFoundError."""
    ref = get_reference_or_none(scope, reference_id)
    if ref is None:
        logger.debug("Reference lookup missed", extra={"scope": scope, "reference_id": reference_id})
        raise NotFoundError(resource="Reference", resource_id=reference_id, scope=scope)
    return ref


def visibility_clauses(actor, scope: str) -> list:
    """WHERE clauses restricting a Reference select to what *actor* may see."""
    clauses = [Reference.scope == require_scope(scope)]
    if scope == SCOPE_LOCAL and not actor.is_superuser:
        clauses.append(Reference.lab_name == actor.lab_name)
    if not get_evaluator().can_act_on(actor.role, scope, "view_all"):
        clauses.append(Reference.participants.any(ReferenceParticipant.user_id == actor.id))
    return clauses


def can_view(ref: Reference, actor) -> bool:
    """In-memory twin of :func:`visibility_clauses` for an already-loaded reference."""
    if ref.scope == SCOPE_LOCAL and not actor.is_superuser and ref.lab_name != actor.lab_name:
        return False
    if get_evaluator().can_act_on(actor.role, ref.scope, "view_all"):
        return True
    return actor.id in ref.participant_ids
