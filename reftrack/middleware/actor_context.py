"""
Actor Context Middleware — resolves the acting user for API requests.

Session issuance lives outside this service: the gateway in front of it
authenticates the caller and forwards the user id in ``X-Actor-Id``.  This
hook loads that user into ``g.actor`` for the route handlers.

  - missing / malformed header      → 401 ERR_UNAUTHENTICATED
  - unknown or inactive user        → 401 ERR_UNAUTHENTICATED
  - health endpoints                → skipped
"""

import logging

from flask import g, request

from reftrack.models import db
from reftrack.models.identity import User
from reftrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-Id"

# Paths that skip actor resolution
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_actor_context(app):
    """Register actor resolution as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor = None

        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith(ACTOR_SKIP_PREFIXES):
            return None

        raw = request.headers.get(ACTOR_HEADER, "").strip()
        if not raw.isdigit():
            return api_error(E.UNAUTHENTICATED, f"Missing or malformed {ACTOR_HEADER} header")

        actor = db.session.get(User, int(raw))
        if actor is None or actor.status != "active":
            logger.warning("Rejected unknown or inactive actor %s", raw,
                           extra={"path": request.path, "remote_addr": request.remote_addr})
            return api_error(E.UNAUTHENTICATED, "Unknown or inactive actor")

        g.actor = actor
        return None
