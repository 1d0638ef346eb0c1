"""
Per-blueprint rate limits for the protocol API (Flask-Limiter).

The Limiter is created in app/__init__.py without default limits. Writes and
reads on the protocol blueprint get separate budgets from config
(RATELIMIT_WRITE, RATELIMIT_READ); health probes are never limited.
"""

import logging

logger = logging.getLogger(__name__)

_WRITE_METHODS = ["POST", "PUT", "PATCH", "DELETE"]


def init_rate_limits(app, limiter):
    """Attach limits once blueprints are registered. No-op when TESTING."""
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("RATELIMIT_WRITE", "60/minute")
    read_limit = app.config.get("RATELIMIT_READ", "200/minute")

    protocol = app.blueprints.get("protocol")
    if protocol is not None:
        limiter.limit(write_limit, methods=_WRITE_METHODS)(protocol)
        limiter.limit(read_limit, methods=["GET"])(protocol)

    health = app.blueprints.get("health")
    if health is not None:
        limiter.exempt(health)

    app.logger.info("Rate limits on protocol API: write %s, read %s", write_limit, read_limit)
