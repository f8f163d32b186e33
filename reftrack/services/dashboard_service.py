"""
Dashboard aggregation.

All counters come from ONE ``SELECT SUM(CASE ...)`` over the references the
actor can see in a scope, so the cost stays a single scan however many
counters are added.  Nothing is cached: the numbers always reflect the
latest committed state, the same state the list view reads.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import case, exists, false, func, select

from reftrack.models import db
from reftrack.models.base import utcnow
from reftrack.models.reference import (
    NON_TERMINAL_STATUSES,
    PRIORITY_HIGH,
    STATUS_CLOSED,
    Reference,
    ReferenceHolder,
)
from reftrack.services.helpers.scoped_queries import visibility_clauses

logger = logging.getLogger(__name__)

PENDING_DAYS_THRESHOLD = 7


def _count_if(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def month_start(now: datetime) -> datetime:
    """First instant of *now*'s calendar month (UTC)."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_dashboard_stats(scope: str, actor, *, now: datetime | None = None) -> dict:
    """Rollup counters for *actor* in *scope*.

    Returns:
        {"open_count", "high_priority_count", "pending_7_days_count",
         "closed_this_month_count", "closed_count", "marked_to_user_count",
         "pending_in_division_count", "total_references"}
    """
    now = now or utcnow()
    active = Reference.status.in_(NON_TERMINAL_STATUSES)
    held_by_actor = exists().where(
        ReferenceHolder.reference_id == Reference.id,
        ReferenceHolder.user_id == actor.id,
    )
    if actor.division:
        in_division = Reference.marked_to_division == actor.division
    else:
        in_division = false()

    stmt = select(
        _count_if(active).label("open_count"),
        _count_if(active & (Reference.priority == PRIORITY_HIGH)).label("high_priority_count"),
        _count_if(active & (Reference.created_at <= now - timedelta(days=PENDING_DAYS_THRESHOLD)))
        .label("pending_7_days_count"),
        _count_if((Reference.status == STATUS_CLOSED) & (Reference.closed_at >= month_start(now)))
        .label("closed_this_month_count"),
        _count_if(Reference.status == STATUS_CLOSED).label("closed_count"),
        _count_if(active & held_by_actor).label("marked_to_user_count"),
        _count_if(active & in_division).label("pending_in_division_count"),
        func.count(Reference.id).label("total_references"),
    ).where(*visibility_clauses(actor, scope))

    row = db.session.execute(stmt).mappings().one()
    stats = {key: int(value or 0) for key, value in row.items()}
    logger.debug("Dashboard computed", extra={"scope": scope, "actor_id": actor.id})
    return stats
