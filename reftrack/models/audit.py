"""
Reference Routing Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json

from reftrack.models import db
from reftrack.models.base import isoformat, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"reference", "identity", "bulk"}

AUDIT_ACTIONS = {
    "reference.create",
    "reference.move",
    "reference.priority",
    "reference.reopen_request",
    "reference.reopen_approve",
    "reference.reopen_reject",
    "reference.repair",
    "reference.bulk",
    "identity.update",
    "identity.sync",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries the old→new snapshot of the
    fields the action touched.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(10), nullable=True, comment="local | global for reference events")

    # Polymorphic entity reference
    entity_type = db.Column(db.String(30), nullable=False, comment="reference | identity | bulk")
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(db.String(60), nullable=False, comment="reference.move | identity.sync | …")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system-triggered entries (e.g. identity sync)",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": isoformat(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    scope: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control; the row commits or rolls back with the change
    it describes.
    """
    log = AuditLog(
        scope=scope,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
