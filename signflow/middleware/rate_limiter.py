"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in signflow/__init__.py with no default
limits; this module applies limits per route category.

Signing links are bearer secrets delivered by email, so the recipient
routes get the strictest limit to slow down token guessing.

Usage:
    from signflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

DEFAULT_SIGNING_LIMIT = "30/minute"
OWNER_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Signing endpoints:  SIGNING_RATE_LIMIT (default 30/minute)
        - Owner endpoints:    120/minute
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    signing_limit = app.config.get("SIGNING_RATE_LIMIT", DEFAULT_SIGNING_LIMIT)
    bp = app.blueprints.get("signing")
    if bp:
        limiter.limit(signing_limit)(bp)

    bp = app.blueprints.get("documents")
    if bp:
        limiter.limit(OWNER_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: signing=%s owner=%s", signing_limit, OWNER_LIMIT)
