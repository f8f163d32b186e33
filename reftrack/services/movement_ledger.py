"""
Movement Ledger — append-only hand-off history of every reference.

There is no update or delete path here.  ``append_movement`` is the only
writer and is called by the lifecycle service inside the same transaction
that updates the reference.  Reads come back as a ``MovementHistory``: a
lazy, restartable iterable that re-runs its query on every iteration.

Replay folds the ordered ledger back into (status, holders, pending
division/lab); comparing that with the live record is the consistency check,
and copying it over the live record is the repair tool.

Usage:
    from reftrack.services.movement_ledger import list_movements, check_consistency

    for movement in list_movements("local", ref_id):
        ...
    report = check_consistency("local", ref_id)
"""

import logging
from datetime import datetime

from sqlalchemy import func, select

from reftrack.models import db
from reftrack.models.audit import write_audit
from reftrack.models.base import utcnow
from reftrack.models.reference import (
    STATUS_OPEN,
    Movement,
    MovementRecipient,
    ReferenceHolder,
    validate_reference_transition,
)
from reftrack.services.helpers.scoped_queries import get_reference
from reftrack.services.snapshot import IdentitySnapshot
from reftrack.utils.helpers import commit_or_raise

logger = logging.getLogger(__name__)

REPLAYED_FIELDS = ("status", "marked_to", "marked_to_division", "pending_lab")


class MovementHistory:
    """Ordered (movement_date, id) view over one reference's movements.

    Iterating streams rows from the database in chunks; iterating again
    re-executes the query, so the sequence always reflects committed state.
    """

    def __init__(self, reference_id: int, chunk_size: int = 100):
        self.reference_id = reference_id
        self.chunk_size = chunk_size

    def _statement(self):
        return (
            select(Movement)
            .where(Movement.reference_id == self.reference_id)
            .order_by(Movement.movement_date, Movement.id)
        )

    def __iter__(self):
        stmt = self._statement().execution_options(yield_per=self.chunk_size)
        yield from db.session.execute(stmt).scalars()

    def __len__(self) -> int:
        stmt = select(func.count(Movement.id)).where(Movement.reference_id == self.reference_id)
        return db.session.execute(stmt).scalar() or 0

    def latest(self) -> Movement | None:
        stmt = (
            select(Movement)
            .where(Movement.reference_id == self.reference_id)
            .order_by(Movement.movement_date.desc(), Movement.id.desc())
            .limit(1)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def to_list(self) -> list[dict]:
        return [m.to_dict() for m in self]


# ── Write ─────────────────────────────────────────────────────────────────────

def append_movement(
    ref,
    performer,
    recipients,
    status: str,
    remarks: str,
    *,
    idempotency_key: str | None = None,
    movement_date: datetime | None = None,
) -> Movement:
    """Add a movement and its recipient snapshots to the session (no commit)."""
    movement = Movement(
        reference_id=ref.id,
        performed_by_id=performer.id,
        performed_by_details=IdentitySnapshot.from_user(performer).to_dict(),
        status_on_movement=status,
        remarks=remarks,
        movement_date=movement_date or utcnow(),
        idempotency_key=idempotency_key,
    )
    movement.recipients = [
        MovementRecipient(user_id=user.id, position=i, **IdentitySnapshot.from_user(user).columns())
        for i, user in enumerate(recipients)
    ]
    db.session.add(movement)
    return movement


def find_by_idempotency_key(reference_id: int, key: str) -> Movement | None:
    stmt = select(Movement).where(
        Movement.reference_id == reference_id,
        Movement.idempotency_key == key,
    )
    return db.session.execute(stmt).scalar_one_or_none()


# ── Read ──────────────────────────────────────────────────────────────────────

def list_movements(scope: str, reference_id: int) -> MovementHistory:
    """Return the lazy ordered history of a reference in *scope*."""
    ref = get_reference(scope, reference_id)
    return MovementHistory(ref.id)


def _fold(history: MovementHistory) -> dict:
    state = {
        "status": None,
        "marked_to": [],
        "marked_to_division": None,
        "pending_lab": None,
        "movement_count": 0,
        "violations": [],
    }
    for movement in history:
        previous = state["status"]
        status = movement.status_on_movement
        if previous is None:
            if status != STATUS_OPEN:
                state["violations"].append(
                    {"movement_id": movement.id, "reason": f"first movement has status '{status}'"}
                )
        elif not validate_reference_transition(previous, status):
            state["violations"].append(
                {"movement_id": movement.id, "reason": f"illegal transition {previous} → {status}"}
            )
        first = movement.recipients[0] if movement.recipients else None
        state["status"] = status
        state["marked_to"] = movement.marked_to
        state["marked_to_division"] = first.division if first else None
        state["pending_lab"] = first.lab_name if first else None
        state["movement_count"] += 1
    return state


def replay_state(scope: str, reference_id: int) -> dict:
    """Recompute status, holders and pending division/lab purely from the ledger."""
    ref = get_reference(scope, reference_id)
    state = _fold(MovementHistory(ref.id))
    state["reference_id"] = ref.id
    return state


def check_consistency(scope: str, reference_id: int) -> dict:
    """Compare the replayed state with the live reference record.

    Returns:
        {"reference_id", "consistent", "mismatches": {field: {"live", "replayed"}},
         "replayed", "violations"}
    """
    ref = get_reference(scope, reference_id)
    replayed = _fold(MovementHistory(ref.id))
    mismatches = {}
    for field in REPLAYED_FIELDS:
        live = getattr(ref, field)
        if live != replayed[field]:
            mismatches[field] = {"live": live, "replayed": replayed[field]}
    if mismatches:
        logger.warning(
            "Reference drifted from its ledger: %s", ", ".join(sorted(mismatches)),
            extra={"scope": scope, "reference_id": ref.id, "event_type": "ledger.drift"},
        )
    return {
        "reference_id": ref.id,
        "consistent": not mismatches and not replayed["violations"],
        "mismatches": mismatches,
        "replayed": {f: replayed[f] for f in REPLAYED_FIELDS},
        "violations": replayed["violations"],
    }


# ── Repair ────────────────────────────────────────────────────────────────────

def repair_from_ledger(scope: str, reference_id: int, *, actor_id: int | None = None) -> dict:
    """Overwrite drifted live fields with the replayed values.

    Holders are rebuilt from the latest movement's recipient snapshots.
    No-op (and no version bump) when the record already matches.
    """
    report = check_consistency(scope, reference_id)
    if not report["mismatches"]:
        return {**report, "repaired": False}

    ref = get_reference(scope, reference_id)
    latest = MovementHistory(ref.id).latest()
    ref.status = latest.status_on_movement
    ref.holders = [
        ReferenceHolder(user_id=r.user_id, position=r.position, **r.snapshot_dict())
        for r in latest.recipients
    ]
    ref.marked_to_division = report["replayed"]["marked_to_division"]
    ref.pending_lab = report["replayed"]["pending_lab"]
    ref.updated_at = utcnow()
    write_audit(
        entity_type="reference",
        entity_id=ref.id,
        action="reference.repair",
        actor_user_id=actor_id,
        scope=scope,
        diff=report["mismatches"],
    )
    commit_or_raise(ref.id)
    logger.info("Reference repaired from ledger",
                extra={"scope": scope, "reference_id": ref.id, "event_type": "reference.repair"})
    return {**check_consistency(scope, reference_id), "repaired": True}
