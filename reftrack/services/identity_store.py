"""
Identity Store — read access to the user directory plus the one write path
that keeps embedded snapshots honest.

Usage:
    from reftrack.services.identity_store import IdentityStore

    snap = IdentityStore.get_identity(user_id)
    users = IdentityStore.resolve_users([3, "a.rao@lab.in"])
    IdentityStore.update_identity(user_id, division="Finance", actor_id=1)
"""

import logging

from sqlalchemy import select

from reftrack.core.exceptions import NotFoundError, ValidationError
from reftrack.models import db
from reftrack.models.audit import write_audit
from reftrack.models.base import REFRESHABLE_FIELDS
from reftrack.models.identity import USER_ROLES, USER_STATUSES, User
from reftrack.services.events import identity_changed
from reftrack.services.snapshot import IdentitySnapshot
from reftrack.utils.helpers import commit_or_raise

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = REFRESHABLE_FIELDS + ("role", "status")


class IdentityStore:
    """Stateless accessors over the ``users`` table."""

    # ── Read ──────────────────────────────────────────────────────────────

    @staticmethod
    def get_user(user_id: int) -> User:
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError(resource="User", resource_id=user_id)
        return user

    @staticmethod
    def get_identity(user_id: int) -> IdentitySnapshot:
        return IdentitySnapshot.from_user(IdentityStore.get_user(user_id))

    @staticmethod
    def get_identities(user_ids) -> list[IdentitySnapshot]:
        return [IdentitySnapshot.from_user(u) for u in IdentityStore.get_users(user_ids)]

    @staticmethod
    def get_users(user_ids) -> list[User]:
        """Load users in the order given; raise NotFoundError on the first unknown id."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        rows = db.session.execute(select(User).where(User.id.in_(ids))).scalars().all()
        by_id = {u.id: u for u in rows}
        for uid in ids:
            if uid not in by_id:
                raise NotFoundError(resource="User", resource_id=uid)
        return [by_id[uid] for uid in ids]

    @staticmethod
    def find_by_emails(emails) -> list[User]:
        emails = [e.strip().lower() for e in emails if e]
        if not emails:
            return []
        stmt = select(User).where(db.func.lower(User.email).in_(emails))
        return list(db.session.execute(stmt).scalars().all())

    @staticmethod
    def resolve_users(keys) -> list[User]:
        """Resolve a mixed list of ids / emails to users, order preserved.

        Raises:
            ValidationError: a key is neither an int nor an email.
            NotFoundError: a key does not match any user.
        """
        users = []
        for key in keys:
            if isinstance(key, int) or (isinstance(key, str) and key.isdigit()):
                users.append(IdentityStore.get_user(int(key)))
            elif isinstance(key, str) and "@" in key:
                found = IdentityStore.find_by_emails([key])
                if not found:
                    raise NotFoundError(resource="User", resource_id=key)
                users.append(found[0])
            else:
                raise ValidationError("Holders must be user ids or emails", details={"holder": str(key)})
        unique = {}
        for user in users:
            unique.setdefault(user.id, user)
        return list(unique.values())

    # ── Write ─────────────────────────────────────────────────────────────

    @staticmethod
    def update_identity(user_id: int, *, actor_id: int | None = None, **fields) -> dict:
        """
        Update directory fields of a user and broadcast the change.

        ``email`` and ``id`` are stable keys and cannot be changed here.
        The ``identity_changed`` signal is sent after commit, and only when a
        snapshot field actually changed.

        Returns:
            {"identity": dict, "changed_fields": [..], "sync": dict | None}
        """
        if "email" in fields or "id" in fields:
            raise ValidationError("email and id are stable keys and cannot be updated")
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown identity fields: {', '.join(sorted(unknown))}")
        if "role" in fields and fields["role"] not in USER_ROLES:
            raise ValidationError(f"Invalid role: {fields['role']}")
        if "status" in fields and fields["status"] not in USER_STATUSES:
            raise ValidationError(f"Invalid status: {fields['status']}")
        if "full_name" in fields and not (fields["full_name"] or "").strip():
            raise ValidationError("full_name cannot be empty")

        user = IdentityStore.get_user(user_id)
        diff = {}
        for field, new in fields.items():
            old = getattr(user, field)
            if old != new:
                setattr(user, field, new)
                diff[field] = {"old": old, "new": new}

        if not diff:
            return {"identity": user.to_dict(), "changed_fields": [], "sync": None}

        write_audit(
            entity_type="identity",
            entity_id=user.id,
            action="identity.update",
            actor_user_id=actor_id,
            diff=diff,
        )
        commit_or_raise()
        logger.info("Identity updated", extra={"identity_id": user.id, "event_type": "identity.update"})

        snapshot_fields = [f for f in diff if f in REFRESHABLE_FIELDS]
        sync_result = None
        if snapshot_fields:
            responses = identity_changed.send(
                IdentitySnapshot.from_user(user), changed_fields=snapshot_fields,
            )
            for _receiver, value in responses:
                if isinstance(value, dict):
                    sync_result = value

        return {"identity": user.to_dict(), "changed_fields": sorted(diff), "sync": sync_result}
