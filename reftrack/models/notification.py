"""
Reference Routing Engine
Notification domain model.

Models:
    - Notification: in-app notification record
"""

from reftrack.models import db
from reftrack.models.base import isoformat, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"REFERENCE_ASSIGNED", "REOPEN_REQUEST", "REOPEN_APPROVED", "REOPEN_REJECTED"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False)

    # Link to source reference
    scope = db.Column(db.String(10), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "scope": self.scope,
            "reference_id": self.reference_id,
            "is_read": self.is_read,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
