"""
Reference Routing Engine
Reference domain model.

Models:
    - Reference: a routable document, partitioned by scope (local | global)
    - ReferenceHolder: ordered current holder(s) with their identity snapshot
    - ReferenceParticipant: append-only set of everyone ever involved
    - Movement: immutable ledger entry for one hand-off
    - MovementRecipient: ordered recipients of a movement with snapshots

State machine:
    Open       → InProgress, Closed
    InProgress → InProgress, Closed
    Closed     → Reopened   (approved reopen request only)
    Reopened   → InProgress, Closed
"""

from datetime import datetime

from sqlalchemy.orm import validates

from reftrack.models import db
from reftrack.models.base import IdentitySnapshotMixin, as_utc, isoformat, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

SCOPE_LOCAL = "local"
SCOPE_GLOBAL = "global"
REFERENCE_SCOPES = (SCOPE_LOCAL, SCOPE_GLOBAL)

REF_CODE_PREFIX = {SCOPE_LOCAL: "LREF", SCOPE_GLOBAL: "GREF"}

STATUS_OPEN = "Open"
STATUS_IN_PROGRESS = "InProgress"
STATUS_CLOSED = "Closed"
STATUS_REOPENED = "Reopened"
REFERENCE_STATUSES = [STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_CLOSED, STATUS_REOPENED]
NON_TERMINAL_STATUSES = [STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_REOPENED]

PRIORITY_LOW = "Low"
PRIORITY_MEDIUM = "Medium"
PRIORITY_HIGH = "High"
REFERENCE_PRIORITIES = [PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH]

DELIVERY_MODES = {"Eoffice", "Email", "Physical"}

REFERENCE_TRANSITIONS = {
    STATUS_OPEN:        [STATUS_IN_PROGRESS, STATUS_CLOSED],
    STATUS_IN_PROGRESS: [STATUS_IN_PROGRESS, STATUS_CLOSED],
    STATUS_CLOSED:      [STATUS_REOPENED],
    STATUS_REOPENED:    [STATUS_IN_PROGRESS, STATUS_CLOSED],
}


def validate_reference_transition(old_status, new_status):
    """Return True if Reference status transition is valid."""
    return new_status in REFERENCE_TRANSITIONS.get(old_status, [])


class Reference(db.Model):
    """
    Routable document record.

    Holders, division/lab and status are mutated only together with a new
    Movement row.  ``version`` is the optimistic-concurrency token: every
    UPDATE of this row checks and increments it.
    """

    __tablename__ = "reference_records"
    __table_args__ = (
        db.Index("ix_refs_scope_status", "scope", "status"),
        db.Index("ix_refs_scope_priority_status", "scope", "priority", "status"),
        db.Index("ix_refs_scope_division_status", "scope", "marked_to_division", "status"),
        db.Index("ix_refs_scope_lab_created", "scope", "lab_name", "created_at"),
        db.Index("ix_refs_scope_creator", "scope", "created_by_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(10), nullable=False, comment="local | global")
    ref_code = db.Column(db.String(20), nullable=False, unique=True)

    # Content
    subject = db.Column(db.String(500), nullable=False)
    remarks = db.Column(db.Text, nullable=False, default="")
    eoffice_no = db.Column(db.String(100), nullable=True)
    delivery_mode = db.Column(db.String(20), nullable=True, comment="Eoffice | Email | Physical")
    delivery_details = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Lifecycle
    status = db.Column(db.String(20), nullable=False, default=STATUS_OPEN)
    priority = db.Column(db.String(10), nullable=False, default=PRIORITY_MEDIUM)

    # Routing
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_by_details = db.Column(db.JSON, nullable=False, comment="snapshot at creation, never refreshed")
    lab_name = db.Column(db.String(120), nullable=True, comment="owning lab (creator's lab)")
    marked_to_division = db.Column(db.String(120), nullable=True, comment="division of first holder")
    pending_lab = db.Column(db.String(120), nullable=True, comment="lab of first holder")

    # Pending reopen request
    reopen_request_id = db.Column(db.String(30), nullable=True, unique=True)
    reopen_requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reopen_reason = db.Column(db.Text, nullable=True)
    reopen_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)

    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    version = db.Column(db.Integer, nullable=False)

    holders = db.relationship(
        "ReferenceHolder",
        order_by="ReferenceHolder.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    participants = db.relationship(
        "ReferenceParticipant",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("scope")
    def _validate_scope(self, key, value):
        if value not in REFERENCE_SCOPES:
            raise ValueError(f"Unknown reference scope: {value!r}")
        if self.scope is not None and self.scope != value:
            raise ValueError("Reference scope is immutable")
        return value

    # ── Derived views ────────────────────────────────────────────────────

    @property
    def marked_to(self) -> list[int]:
        return [h.user_id for h in self.holders]

    @property
    def marked_to_details(self) -> list[dict]:
        return [h.snapshot_dict() for h in self.holders]

    @property
    def pending_division(self) -> str | None:
        return self.marked_to_division

    @property
    def participant_ids(self) -> set[int]:
        return {p.user_id for p in self.participants}

    @property
    def has_pending_reopen(self) -> bool:
        return self.reopen_request_id is not None

    def is_held_by(self, user_id: int) -> bool:
        return user_id in self.marked_to

    def days_since_created(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        return max((now - as_utc(self.created_at)).days, 0)

    def to_dict(self, now: datetime | None = None) -> dict:
        reopen = None
        if self.has_pending_reopen:
            reopen = {
                "request_id": self.reopen_request_id,
                "requested_by": self.reopen_requested_by_id,
                "reason": self.reopen_reason,
                "requested_at": isoformat(self.reopen_requested_at),
            }
        return {
            "id": self.id,
            "ref_code": self.ref_code,
            "scope": self.scope,
            "subject": self.subject,
            "remarks": self.remarks,
            "eoffice_no": self.eoffice_no,
            "delivery_mode": self.delivery_mode,
            "delivery_details": self.delivery_details,
            "sent_at": isoformat(self.sent_at),
            "status": self.status,
            "priority": self.priority,
            "created_by": self.created_by_id,
            "created_by_details": self.created_by_details,
            "created_lab": self.lab_name,
            "marked_to": self.marked_to,
            "marked_to_details": self.marked_to_details,
            "marked_to_division": self.marked_to_division,
            "pending_division": self.pending_division,
            "pending_lab": self.pending_lab,
            "participants": sorted(self.participant_ids),
            "reopen_request": reopen,
            "days_since_created": self.days_since_created(now),
            "closed_at": isoformat(self.closed_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "version": self.version,
        }

    def __repr__(self):
        return f"<Reference {self.id}: {self.ref_code} [{self.status}]>"


class ReferenceHolder(IdentitySnapshotMixin, db.Model):
    """One current holder of a reference; rows are replaced on every movement."""

    __tablename__ = "reference_holders"
    __table_args__ = (
        db.Index("ix_holders_user_reference", "user_id", "reference_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_id = db.Column(
        db.Integer, db.ForeignKey("reference_records.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<ReferenceHolder ref={self.reference_id} user={self.user_id}>"


class ReferenceParticipant(db.Model):
    """Membership row: the user has been involved with the reference at some point."""

    __tablename__ = "reference_participants"
    __table_args__ = (
        db.UniqueConstraint("reference_id", "user_id", name="uq_participant_reference_user"),
        db.Index("ix_participants_user_reference", "user_id", "reference_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_id = db.Column(
        db.Integer, db.ForeignKey("reference_records.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    added_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Movement(db.Model):
    """
    Immutable hand-off record.

    Ordered by (movement_date, id), a reference's movements reconstruct its
    current status, holders and pending division.
    """

    __tablename__ = "reference_movements"
    __table_args__ = (
        db.Index("ix_movements_reference_date", "reference_id", "movement_date", "id"),
        db.UniqueConstraint("reference_id", "idempotency_key", name="uq_movement_idempotency"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_id = db.Column(
        db.Integer, db.ForeignKey("reference_records.id", ondelete="CASCADE"), nullable=False,
    )
    performed_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    performed_by_details = db.Column(db.JSON, nullable=False)
    status_on_movement = db.Column(db.String(20), nullable=False)
    remarks = db.Column(db.Text, nullable=False, default="")
    movement_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    idempotency_key = db.Column(db.String(80), nullable=True)

    recipients = db.relationship(
        "MovementRecipient",
        order_by="MovementRecipient.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def marked_to(self) -> list[int]:
        return [r.user_id for r in self.recipients]

    def to_dict(self):
        return {
            "id": self.id,
            "reference_id": self.reference_id,
            "performed_by": self.performed_by_id,
            "performed_by_details": self.performed_by_details,
            "marked_to": self.marked_to,
            "marked_to_details": [r.snapshot_dict() for r in self.recipients],
            "status_on_movement": self.status_on_movement,
            "remarks": self.remarks,
            "movement_date": isoformat(self.movement_date),
        }

    def __repr__(self):
        return f"<Movement {self.id}: ref={self.reference_id} → {self.status_on_movement}>"


class MovementRecipient(IdentitySnapshotMixin, db.Model):
    """Recipient of a movement, with the snapshot taken when it was recorded."""

    __tablename__ = "movement_recipients"
    __table_args__ = (
        db.Index("ix_recipients_user", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    movement_id = db.Column(
        db.Integer, db.ForeignKey("reference_movements.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
