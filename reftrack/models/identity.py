"""
Reference Routing Engine
Identity model — the user directory the engine reads display data from.

The directory itself is owned elsewhere; this table is the engine's view of
it.  Writes go through ``IdentityStore.update_identity`` so that the change
signal fires and embedded snapshots get refreshed.
"""

from reftrack.models import db
from reftrack.models.base import isoformat, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_USER = "User"
ROLE_INTER_LAB_SENDER = "Inter Lab sender"
ROLE_DELEGATED_ADMIN = "Delegated Admin"
ROLE_SUPERADMIN = "Superadmin"

USER_ROLES = [ROLE_USER, ROLE_INTER_LAB_SENDER, ROLE_DELEGATED_ADMIN, ROLE_SUPERADMIN]
SUPERUSER_ROLES = {ROLE_SUPERADMIN}
USER_STATUSES = {"active", "inactive"}


class User(db.Model):
    """A person who can create, hold or act on references."""

    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_lab_role", "lab_name", "role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(200), nullable=False)
    lab_name = db.Column(db.String(120), nullable=True, index=True)
    division = db.Column(db.String(120), nullable=True)
    designation = db.Column(db.String(120), nullable=True)
    role = db.Column(db.String(30), nullable=False, default=ROLE_USER)
    status = db.Column(db.String(20), nullable=False, default="active")

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_superuser(self) -> bool:
        return self.role in SUPERUSER_ROLES

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "lab_name": self.lab_name,
            "division": self.division,
            "designation": self.designation,
            "role": self.role,
            "status": self.status,
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
