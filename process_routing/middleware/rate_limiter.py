"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in process_routing/__init__.py with no
default limits; this module applies limits per route category.

Usage:
    from process_routing.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "300/minute"

_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _template_limit():
    """Limit string for the current request: writes are stricter than reads."""
    return WRITE_LIMIT if flask_request.method in _WRITE_METHODS else READ_LIMIT


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Template writes:  60/minute  (POST/PUT/DELETE, incl. activation)
        - Template reads:   300/minute (GET: editor polling and lookups)
        - Health check:     exempt

    Rate limiting is disabled in testing mode or when RATELIMIT_ENABLED is false.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("process_templates")
    if bp:
        limiter.limit(_template_limit)(bp)

    # Health check: exempt from rate limiting
    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured, template writes: %s, template reads: %s",
        WRITE_LIMIT, READ_LIMIT,
    )
