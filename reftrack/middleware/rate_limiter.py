"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter
instance is created in reftrack/__init__.py with no default limits; this
module applies granular limits per route category.

Usage:
    from reftrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)


def actor_rate_limit_key():
    """Rate limit key: the acting user if resolved, else remote IP."""
    actor = getattr(g, "actor", None)
    if actor is not None:
        return f"actor:{actor.id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per actor):
        - Reference routes:  120/minute
        - Identity routes:   30/minute
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("references")
    if bp:
        limiter.limit("120/minute", key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("identities")
    if bp:
        limiter.limit("30/minute", key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — references: 120/min, identities: 30/min")
