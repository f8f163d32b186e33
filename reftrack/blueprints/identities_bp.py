"""
Identity Blueprint — directory updates and snapshot re-sync.

Endpoints:
    PATCH  /api/v1/identities/<id>        update display fields (fires sync)
    POST   /api/v1/identities/<id>/sync   force a full re-sync of embedded copies

Users may edit their own display fields; role/status changes and forced
syncs are reserved for superusers.
"""

import logging

from flask import Blueprint

from reftrack.blueprints import current_actor, json_body, register_error_handlers
from reftrack.core.exceptions import AuthorizationError, ValidationError
from reftrack.services.identity_store import IdentityStore
from reftrack.services.identity_sync import sync_identity
from reftrack.utils.errors import api_response

logger = logging.getLogger(__name__)

identities_bp = Blueprint("identities", __name__, url_prefix="/api/v1/identities")
register_error_handlers(identities_bp)

_ADMIN_ONLY_FIELDS = {"role", "status"}
# Keyword names taken by update_identity itself
_RESERVED_FIELDS = {"user_id", "actor_id"}


@identities_bp.route("/<int:user_id>", methods=["PATCH"])
def update(user_id):
    """Body: any of {full_name, lab_name, division, designation, role, status}"""
    actor = current_actor()
    data = json_body()
    reserved = _RESERVED_FIELDS & set(data)
    if reserved:
        raise ValidationError(f"Cannot set {', '.join(sorted(reserved))}",
                              details={f: "not updatable" for f in sorted(reserved)})
    if not actor.is_superuser:
        if actor.id != user_id:
            raise AuthorizationError("Only superusers may update other identities")
        if _ADMIN_ONLY_FIELDS & set(data):
            raise AuthorizationError("Only superusers may change role or status")
    result = IdentityStore.update_identity(user_id, actor_id=actor.id, **data)
    message = "Identity updated" if result["changed_fields"] else "Identity unchanged"
    return api_response(result, message)


@identities_bp.route("/<int:user_id>/sync", methods=["POST"])
def sync(user_id):
    actor = current_actor()
    if not actor.is_superuser:
        raise AuthorizationError("Only superusers may force an identity sync")
    IdentityStore.get_user(user_id)
    stats = sync_identity(user_id, force=True)
    logger.info("Forced identity sync", extra={"identity_id": user_id, "actor_id": actor.id})
    return api_response(stats, "Identity synchronised")
