"""
Identity Snapshot Synchroniser

Keeps the identity copies embedded in *current* routing state in line with
the user directory:
  - holder rows of every reference the identity currently holds
  - pending division / lab of references where it is the first holder
  - recipient rows of each affected reference's latest movement

Never touched: ``created_by_details``, performer snapshots, and recipients
of older movements (those record history as it was).

The fan-out is processed in keyset-paginated batches of
IDENTITY_SYNC_BATCH_SIZE references, one commit per batch.  Rows are
compared before writing, so a reference's version only advances when one
of its rows really changed and a repeated sync is a no-op.  When no holder
row of the identity differs from its snapshot the scan is skipped; the
check reads the stored rows, so every worker process reaches the same
answer.

Usage:
    from reftrack.services.identity_sync import sync_identity

    stats = sync_identity(user_id)               # skipped if no stored copy is stale
    stats = sync_identity(user_id, force=True)   # full rescan
"""

import logging

from flask import current_app
from sqlalchemy import or_, select

from reftrack.core.exceptions import ConcurrentModification, DomainError
from reftrack.models import db
from reftrack.models.audit import write_audit
from reftrack.models.base import REFRESHABLE_FIELDS, utcnow
from reftrack.models.reference import Reference, ReferenceHolder
from reftrack.services.events import identity_changed
from reftrack.services.identity_store import IdentityStore
from reftrack.services.movement_ledger import MovementHistory
from reftrack.utils.helpers import commit_or_raise, translate_datastore_errors

logger = logging.getLogger(__name__)

_BATCH_RETRIES = 3


def has_stale_copies(snapshot) -> bool:
    """True if any current holder row of the identity lags behind *snapshot*."""
    drift = [getattr(ReferenceHolder, f).is_distinct_from(getattr(snapshot, f)) for f in REFRESHABLE_FIELDS]
    stmt = (
        select(ReferenceHolder.id)
        .where(ReferenceHolder.user_id == snapshot.user_id, or_(*drift))
        .limit(1)
    )
    return db.session.execute(stmt).first() is not None


# ── Per-reference refresh ────────────────────────────────────────────────────

def _sync_reference(ref: Reference, snapshot, counters: dict) -> bool:
    """Refresh every current copy of *snapshot* inside one reference."""
    changed = False
    for holder in ref.holders:
        if holder.user_id == snapshot.user_id and holder.apply_snapshot(snapshot):
            counters["holder_rows_updated"] += 1
            changed = True

    if ref.holders and ref.holders[0].user_id == snapshot.user_id:
        if ref.marked_to_division != snapshot.division:
            ref.marked_to_division = snapshot.division
            changed = True
        if ref.pending_lab != snapshot.lab_name:
            ref.pending_lab = snapshot.lab_name
            changed = True

    latest = MovementHistory(ref.id).latest()
    if latest is not None:
        for recipient in latest.recipients:
            if recipient.user_id == snapshot.user_id and recipient.apply_snapshot(snapshot):
                counters["movement_rows_updated"] += 1
                changed = True

    if changed:
        ref.updated_at = utcnow()
    return changed


def _sync_batch(reference_ids: list[int], snapshot) -> tuple[list[int], dict]:
    counters = {"holder_rows_updated": 0, "movement_rows_updated": 0}
    stmt = select(Reference).where(Reference.id.in_(reference_ids)).order_by(Reference.id)
    updated = []
    with translate_datastore_errors():
        for ref in db.session.execute(stmt).scalars():
            if _sync_reference(ref, snapshot, counters):
                updated.append(ref.id)
        if updated:
            write_audit(
                entity_type="identity",
                entity_id=snapshot.user_id,
                action="identity.sync",
                diff={"reference_ids": updated, "snapshot": snapshot.to_dict()},
            )
    commit_or_raise()
    return updated, counters


# ── Entry points ─────────────────────────────────────────────────────────────

def sync_identity(user_id: int, *, force: bool = False, batch_size: int | None = None) -> dict:
    """
    Propagate the current snapshot of *user_id* into embedded copies.

    Returns:
        {"identity_id", "skipped", "batches", "references_scanned",
         "references_updated", "holder_rows_updated", "movement_rows_updated"}
    """
    snapshot = IdentityStore.get_identity(user_id)
    stats = {
        "identity_id": user_id,
        "skipped": False,
        "batches": 0,
        "references_scanned": 0,
        "references_updated": 0,
        "holder_rows_updated": 0,
        "movement_rows_updated": 0,
    }
    if not force and not has_stale_copies(snapshot):
        stats["skipped"] = True
        return stats

    batch_size = batch_size or current_app.config.get("IDENTITY_SYNC_BATCH_SIZE", 200)
    last_id = 0
    while True:
        stmt = (
            select(ReferenceHolder.reference_id)
            .where(ReferenceHolder.user_id == user_id, ReferenceHolder.reference_id > last_id)
            .distinct()
            .order_by(ReferenceHolder.reference_id)
            .limit(batch_size)
        )
        reference_ids = list(db.session.execute(stmt).scalars().all())
        if not reference_ids:
            break

        for attempt in range(1, _BATCH_RETRIES + 1):
            try:
                updated, counters = _sync_batch(reference_ids, snapshot)
                break
            except ConcurrentModification:
                # A movement landed mid-batch; rerun the batch on fresh rows
                if attempt == _BATCH_RETRIES:
                    raise
                logger.info("Identity sync batch conflicted, retrying (attempt %d)", attempt,
                            extra={"identity_id": user_id})

        stats["batches"] += 1
        stats["references_scanned"] += len(reference_ids)
        stats["references_updated"] += len(updated)
        stats["holder_rows_updated"] += counters["holder_rows_updated"]
        stats["movement_rows_updated"] += counters["movement_rows_updated"]
        last_id = reference_ids[-1]

    logger.info("Identity %s synced: %d/%d references updated", user_id,
                stats["references_updated"], stats["references_scanned"],
                extra={"identity_id": user_id, "event_type": "identity.sync"})
    return stats


def _on_identity_changed(snapshot, **kwargs):
    try:
        return sync_identity(snapshot.user_id)
    except DomainError as exc:
        # Stale rows remain, so the next update or a manual sync picks them up
        logger.error("Identity sync failed: %s", exc.message,
                     extra={"identity_id": snapshot.user_id, "event_type": "identity.sync"})
        return {"identity_id": snapshot.user_id, "error": exc.code}


def init_identity_sync(app) -> None:
    """Subscribe the synchroniser to identity change signals."""
    identity_changed.connect(_on_identity_changed)
