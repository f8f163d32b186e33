"""
Shared column helpers for reference-domain models.

IdentitySnapshotMixin adds the five display columns copied from a user
record at a point in time.  Holder and movement-recipient rows embed it.
"""

from datetime import datetime, timezone

from reftrack.models import db

SNAPSHOT_FIELDS = ("full_name", "email", "lab_name", "division", "designation")

# Fields the synchroniser may refresh; email is the stable key
REFRESHABLE_FIELDS = ("full_name", "lab_name", "division", "designation")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


class IdentitySnapshotMixin:
    """Point-in-time copy of a user's display attributes."""

    full_name = db.Column(db.String(200), nullable=False, default="")
    email = db.Column(db.String(255), nullable=False, default="")
    lab_name = db.Column(db.String(120), nullable=True)
    division = db.Column(db.String(120), nullable=True)
    designation = db.Column(db.String(120), nullable=True)

    def snapshot_dict(self) -> dict:
        return {f: getattr(self, f) for f in SNAPSHOT_FIELDS}

    def apply_snapshot(self, snapshot) -> bool:
        """Copy refreshable fields from *snapshot*; return True if anything changed."""
        changed = False
        for field in REFRESHABLE_FIELDS:
            new = getattr(snapshot, field)
            if getattr(self, field) != new:
                setattr(self, field, new)
                changed = True
        return changed
