"""
Reference Query Builder

Turns a declarative filter mapping into SQLAlchemy WHERE clauses, then
lists one page of the references the actor may see.

Filter keys (AND across keys, OR within one key's values):
    status[]      any of the given statuses
    priority[]    any of the given priorities
    markedTo[]    current holder id or e-mail; ``me`` is the listing actor
    createdBy[]   creator id or e-mail; ``me`` is the listing actor
    division[]    pending division
    labs[]        owning lab
    subject       case-insensitive substring of subject or ref code
    pendingDays   created at least N days ago and not Closed
    scope         partition (must agree with the route's scope)

Multi-value keys accept a list or a comma-separated string, with or without
the ``[]`` suffix.  Unknown keys are ignored.

Usage:
    spec = build_query({"status": ["Open"], "markedTo": ["me"]}, "local")
    page = list_references("local", actor, filters, "daysSinceCreated", "asc", 1, 10)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import false, func, or_, select

from reftrack.core.exceptions import ValidationError
from reftrack.models import db
from reftrack.models.base import utcnow
from reftrack.models.identity import User
from reftrack.models.reference import (
    REFERENCE_PRIORITIES,
    REFERENCE_STATUSES,
    STATUS_CLOSED,
    Reference,
    ReferenceHolder,
)
from reftrack.services.helpers.scoped_queries import require_scope, visibility_clauses

logger = logging.getLogger(__name__)

ME = "me"

# API sort keys → stored columns
SORTABLE_COLUMNS = {
    "id": Reference.id,
    "refCode": Reference.ref_code,
    "ref_code": Reference.ref_code,
    "subject": Reference.subject,
    "status": Reference.status,
    "priority": Reference.priority,
    "division": Reference.marked_to_division,
    "marked_to_division": Reference.marked_to_division,
    "pendingLab": Reference.pending_lab,
    "pending_lab": Reference.pending_lab,
    "lab": Reference.lab_name,
    "lab_name": Reference.lab_name,
    "createdAt": Reference.created_at,
    "created_at": Reference.created_at,
    "updatedAt": Reference.updated_at,
    "updated_at": Reference.updated_at,
    "closedAt": Reference.closed_at,
    "closed_at": Reference.closed_at,
}
DAYS_SINCE_CREATED = "daysSinceCreated"
SORT_ORDERS = ("asc", "desc")


@dataclass
class QuerySpec:
    """Result of :func:`build_query`: static clauses plus actor-relative flags."""

    scope: str
    clauses: list = field(default_factory=list)
    # (ids, emails, includes_me) per identity key; "me" resolves at list time
    marked_to: tuple | None = None
    created_by: tuple | None = None
    # Set when a key can never match (e.g. a scope filter naming the other partition)
    empty: bool = False

    def where(self, actor=None) -> list:
        clauses = [Reference.scope == self.scope, *self.clauses]
        if self.empty:
            clauses.append(false())
        if self.marked_to:
            clauses.append(_holder_clause(*_resolve_me(self.marked_to, actor)))
        if self.created_by:
            clauses.append(_creator_clause(*_resolve_me(self.created_by, actor)))
        return clauses


# ── Value parsing ────────────────────────────────────────────────────────────

def _get(filters, key: str):
    """Look a key up with or without the ``[]`` suffix; lists stay lists."""
    for name in (f"{key}[]", key):
        if hasattr(filters, "getlist"):
            values = filters.getlist(name)
            if len(values) > 1:
                return values
        if name in filters:
            return filters[name]
    return None


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        raw = list(value)
    else:
        raw = str(value).split(",")
    return [str(v).strip() for v in raw if str(v).strip()]


def _choices(value, allowed, key: str) -> list[str]:
    values = _as_list(value)
    bad = [v for v in values if v not in allowed]
    if bad:
        raise ValidationError(f"Invalid {key}: {', '.join(bad)}",
                              details={key: f"one of {', '.join(allowed)}"})
    return values


def _identity_keys(value, key: str) -> tuple[list[int], list[str], bool]:
    """Split identity filter values into (ids, emails, includes_me)."""
    ids, emails, me = [], [], False
    for v in _as_list(value):
        if v.lower() == ME:
            me = True
        elif v.isdigit():
            ids.append(int(v))
        elif "@" in v:
            emails.append(v.lower())
        else:
            raise ValidationError(f"Invalid {key} value: {v}",
                                  details={key: "user id, e-mail or 'me'"})
    return ids, emails, me


def _resolve_me(keys: tuple, actor) -> tuple[list[int], list[str]]:
    ids, emails, me = keys
    if me and actor is not None:
        ids = [*ids, actor.id]
    return ids, emails


def _holder_clause(ids: list[int], emails: list[str]):
    conditions = []
    if ids:
        conditions.append(ReferenceHolder.user_id.in_(ids))
    if emails:
        conditions.append(func.lower(ReferenceHolder.email).in_(emails))
    return Reference.holders.any(or_(*conditions)) if conditions else false()


def _creator_clause(ids: list[int], emails: list[str]):
    conditions = []
    if ids:
        conditions.append(Reference.created_by_id.in_(ids))
    if emails:
        conditions.append(Reference.created_by_id.in_(select(User.id).where(func.lower(User.email).in_(emails))))
    return or_(*conditions) if conditions else false()


# ── Builder ──────────────────────────────────────────────────────────────────

def build_query(filters, scope: str, *, now: datetime | None = None) -> QuerySpec:
    """Translate *filters* into a :class:`QuerySpec` for *scope*.

    Does not touch the database.  Raises ValidationError on malformed values.
    """
    require_scope(scope)
    filters = filters or {}
    now = now or utcnow()
    spec = QuerySpec(scope=scope)

    requested_scope = _get(filters, "scope")
    if requested_scope not in (None, ""):
        require_scope(requested_scope)
        if requested_scope != scope:
            spec.empty = True

    statuses = _choices(_get(filters, "status"), REFERENCE_STATUSES, "status")
    if statuses:
        spec.clauses.append(Reference.status.in_(statuses))

    priorities = _choices(_get(filters, "priority"), REFERENCE_PRIORITIES, "priority")
    if priorities:
        spec.clauses.append(Reference.priority.in_(priorities))

    marked_to = _identity_keys(_get(filters, "markedTo"), "markedTo")
    if any(marked_to):
        spec.marked_to = marked_to

    created_by = _identity_keys(_get(filters, "createdBy"), "createdBy")
    if any(created_by):
        spec.created_by = created_by

    divisions = _as_list(_get(filters, "division"))
    if divisions:
        spec.clauses.append(Reference.marked_to_division.in_(divisions))

    labs = _as_list(_get(filters, "labs"))
    if labs:
        spec.clauses.append(Reference.lab_name.in_(labs))

    subject = (_get(filters, "subject") or "")
    if isinstance(subject, list):
        subject = subject[0] if subject else ""
    subject = subject.strip()
    if subject:
        spec.clauses.append(or_(
            Reference.subject.icontains(subject, autoescape=True),
            Reference.ref_code.icontains(subject, autoescape=True),
        ))

    pending_days = _get(filters, "pendingDays")
    if pending_days not in (None, ""):
        try:
            days = int(pending_days)
        except (TypeError, ValueError) as exc:
            raise ValidationError("pendingDays must be a non-negative integer",
                                  details={"pendingDays": str(pending_days)}) from exc
        if days < 0:
            raise ValidationError("pendingDays must be a non-negative integer",
                                  details={"pendingDays": str(pending_days)})
        spec.clauses.append(Reference.created_at <= now - timedelta(days=days))
        spec.clauses.append(Reference.status != STATUS_CLOSED)

    return spec


def order_by_clauses(sort_by: str | None, sort_order: str | None) -> list:
    """ORDER BY for a sort key; ``id`` in the same direction breaks ties."""
    sort_by = sort_by or "createdAt"
    sort_order = (sort_order or "desc").lower()
    if sort_order not in SORT_ORDERS:
        raise ValidationError(f"Invalid sort order: {sort_order}", details={"sortOrder": "asc or desc"})

    descending = sort_order == "desc"
    if sort_by == DAYS_SINCE_CREATED:
        # More days since creation means an earlier created_at
        column = Reference.created_at
        descending = not descending
    elif sort_by in SORTABLE_COLUMNS:
        column = SORTABLE_COLUMNS[sort_by]
    else:
        raise ValidationError(f"Cannot sort by '{sort_by}'",
                              details={"sortBy": ", ".join([DAYS_SINCE_CREATED, *SORTABLE_COLUMNS])})

    if descending:
        return [column.desc(), Reference.id.desc()]
    return [column.asc(), Reference.id.asc()]


def _page_args(page, limit) -> tuple[int, int]:
    default = current_app.config.get("DEFAULT_PAGE_SIZE", 10)
    maximum = current_app.config.get("MAX_PAGE_SIZE", 100)
    try:
        page = int(page) if page not in (None, "") else 1
        limit = int(limit) if limit not in (None, "") else default
    except (TypeError, ValueError) as exc:
        raise ValidationError("page and limit must be integers") from exc
    if page < 1:
        raise ValidationError("page must be >= 1", details={"page": str(page)})
    if not 1 <= limit <= maximum:
        raise ValidationError(f"limit must be between 1 and {maximum}", details={"limit": str(limit)})
    return page, limit


# ── Listing ──────────────────────────────────────────────────────────────────

def list_references(
    scope: str,
    actor,
    filters=None,
    sort_by: str | None = None,
    sort_order: str | None = None,
    page=1,
    limit=None,
    *,
    now: datetime | None = None,
) -> dict:
    """One page of references visible to *actor* matching *filters*.

    Returns:
        {"items": [...], "pagination": {"total", "current_page", "total_pages", "limit"}}
    """
    now = now or utcnow()
    spec = build_query(filters, scope, now=now)
    page, limit = _page_args(page, limit)
    stmt = (
        select(Reference)
        .where(*spec.where(actor), *visibility_clauses(actor, scope))
        .order_by(*order_by_clauses(sort_by, sort_order))
    )
    result = db.paginate(stmt, page=page, per_page=limit, error_out=False, count=True)
    total = result.total or 0
    logger.debug("Listed %d/%d references", len(result.items), total,
                 extra={"scope": scope, "actor_id": actor.id})
    return {
        "items": [ref.to_dict(now) for ref in result.items],
        "pagination": {
            "total": total,
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "limit": limit,
        },
    }


def get_filter_options(scope: str, actor) -> dict:
    """Distinct values for filter dropdowns, limited to what *actor* can see."""
    visible = select(Reference.id).where(*visibility_clauses(actor, scope))

    def distinct(column):
        stmt = (
            select(column).distinct()
            .where(Reference.id.in_(visible), column.is_not(None))
            .order_by(column)
        )
        return list(db.session.execute(stmt).scalars())

    creators = db.session.execute(
        select(User.id, User.full_name, User.email).distinct()
        .join(Reference, Reference.created_by_id == User.id)
        .where(Reference.id.in_(visible))
        .order_by(User.full_name)
    ).all()
    holders = db.session.execute(
        select(ReferenceHolder.user_id, ReferenceHolder.full_name, ReferenceHolder.email).distinct()
        .where(ReferenceHolder.reference_id.in_(visible))
        .order_by(ReferenceHolder.full_name)
    ).all()

    return {
        "divisions": distinct(Reference.marked_to_division),
        "statuses": distinct(Reference.status),
        "priorities": distinct(Reference.priority),
        "labs": distinct(Reference.lab_name),
        "creators": [{"id": r.id, "full_name": r.full_name, "email": r.email} for r in creators],
        "holders": [{"id": r.user_id, "full_name": r.full_name, "email": r.email} for r in holders],
    }
