"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in equiptrack/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from equiptrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Lifecycle endpoints (clearance, accountability, inspection): 60/minute
        - Equipment status lookups:                                      200/minute
        - Health check:                                                  exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("clearance", "accountability", "inspection"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("equipment_status")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — lifecycle: %s, lookups: %s", WRITE_LIMIT, READ_LIMIT)
