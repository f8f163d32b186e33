"""
Notification sink.

Stores in-app notifications for routing events.  Subscribes to the
reference signals; each receiver runs after the sender's commit, writes in
its own commit, and on a database failure rolls back and logs instead of
raising (delivery is fire-and-forget for the engine).
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from reftrack.models import db
from reftrack.models.identity import SUPERUSER_ROLES, User
from reftrack.models.notification import Notification
from reftrack.models.reference import SCOPE_LOCAL
from reftrack.services import events
from reftrack.services.permission import get_evaluator

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_id, title, category, message="", scope=None, reference_id=None):
        """Create a single notification record (committed)."""
        notif = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            scope=scope,
            reference_id=reference_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, recipient_ids, title, category, message="", scope=None, reference_id=None):
        """One notification per distinct recipient, committed together."""
        notifications = []
        for rid in dict.fromkeys(recipient_ids):
            notif = Notification(
                recipient_id=rid,
                title=title,
                message=message,
                category=category,
                scope=scope,
                reference_id=reference_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, *, unread_only=False, limit=50, offset=0):
        """Notifications for a recipient, newest first."""
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return list(db.session.execute(stmt.offset(offset).limit(limit)).scalars())


# ── Signal receivers ─────────────────────────────────────────────────────────

def _deliver(event: str, ref, **kwargs) -> None:
    try:
        NotificationService.broadcast(scope=ref.scope, reference_id=ref.id, **kwargs)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Notification write failed for %s", event,
                         extra={"scope": ref.scope, "reference_id": ref.id, "event_type": event})


def _on_reference_moved(ref, movement=None, actor_id=None, **kwargs):
    recipients = [uid for uid in movement.marked_to if uid != actor_id]
    if not recipients:
        return
    _deliver(
        "reference.move", ref,
        recipient_ids=recipients,
        title=f"{ref.ref_code} marked to you",
        message=f"{ref.subject} ({movement.status_on_movement}): {movement.remarks}",
        category="REFERENCE_ASSIGNED",
    )


def _reopen_approvers(ref) -> list[int]:
    roles = get_evaluator().roles_with(ref.scope, "resolve_reopen")
    stmt = select(User.id).where(User.role.in_(roles), User.status == "active")
    if ref.scope == SCOPE_LOCAL:
        # Lab admins plus superusers, who are not bound to a lab
        stmt = stmt.where((User.lab_name == ref.lab_name) | User.role.in_(SUPERUSER_ROLES))
    return list(db.session.execute(stmt.order_by(User.id)).scalars())


def _on_reopen_requested(ref, actor_id=None, **kwargs):
    recipients = [uid for uid in _reopen_approvers(ref) if uid != actor_id]
    if not recipients:
        return
    _deliver(
        "reference.reopen_request", ref,
        recipient_ids=recipients,
        title=f"Reopen requested for {ref.ref_code}",
        message=f"Request {ref.reopen_request_id}: {ref.reopen_reason}",
        category="REOPEN_REQUEST",
    )


def _on_reopen_resolved(ref, approved=False, requester_id=None, request_id=None, **kwargs):
    if requester_id is None:
        return
    verdict = "approved" if approved else "rejected"
    _deliver(
        "reference.reopen_resolve", ref,
        recipient_ids=[requester_id],
        title=f"Reopen request {request_id} {verdict}",
        message=f"{ref.ref_code}: {ref.subject}",
        category="REOPEN_APPROVED" if approved else "REOPEN_REJECTED",
    )


def init_notifications(app) -> None:
    """Connect the in-app notification sink to the reference signals."""
    events.reference_moved.connect(_on_reference_moved)
    events.reopen_requested.connect(_on_reopen_requested)
    events.reopen_resolved.connect(_on_reopen_resolved)
