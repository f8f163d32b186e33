"""Identity snapshots — immutable display projections of a user record."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from reftrack.models.base import SNAPSHOT_FIELDS


@dataclass(frozen=True)
class IdentitySnapshot:
    """Point-in-time copy of a user's display attributes."""

    user_id: int
    full_name: str
    email: str
    lab_name: str | None
    division: str | None
    designation: str | None

    @classmethod
    def from_user(cls, user) -> IdentitySnapshot:
        return cls(
            user_id=user.id,
            full_name=user.full_name,
            email=user.email,
            lab_name=user.lab_name,
            division=user.division,
            designation=user.designation,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def columns(self) -> dict:
        """Keyword arguments for an IdentitySnapshotMixin row."""
        return {f: getattr(self, f) for f in SNAPSHOT_FIELDS}
