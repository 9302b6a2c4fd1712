"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in itp_tracker/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from itp_tracker.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

READ_RATE_LIMIT = "300/minute"


def rate_limit_key():
    """Limit key: field user id when the caller identified itself, else remote IP.

    Several crew members often share one site connection, so the IP alone
    would throttle the whole crew together.
    """
    user = getattr(g, "current_user", None)
    if user and user.get("id"):
        return f"user:{user['id']}"
    return flask_request.remote_addr or "unknown"


def _limit_for_method(write_limit):
    return READ_RATE_LIMIT if flask_request.method == "GET" else write_limit


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per user, falling back to remote IP):
        - ITP / NCR / lot writes:  ITP_WRITE_RATE_LIMIT (default 120/minute)
        - ITP / NCR / lot reads:   300/minute (live-update polling)
        - Health check:               exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("ITP_WRITE_RATE_LIMIT", "120/minute")
    for bp_name in ("itp", "ncr", "project"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(lambda: _limit_for_method(write_limit), key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — write: %s, read: %s", write_limit, READ_RATE_LIMIT)
