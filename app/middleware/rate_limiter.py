"""
Rate limiting configuration.

The Limiter instance is created in app/__init__.py with no default limits;
this module applies limits per blueprint.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
# Import endpoints parse whole workbooks
IMPORT_LIMIT = "10/minute"

_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _is_read():
    return request.method not in _WRITE_METHODS


def _is_not_import():
    return "/import" not in request.path or request.method == "GET"


def init_rate_limits(app, limiter):
    """
    Limits (per remote IP) on the procurement blueprint:
        - Import uploads:   10/minute
        - Write requests:   60/minute  (POST/PUT/DELETE)
        - Read requests:    200/minute
        - Health probes:    exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("procurement")
    if bp:
        limiter.limit(IMPORT_LIMIT, exempt_when=_is_not_import)(bp)
        limiter.limit(WRITE_LIMIT, exempt_when=_is_read)(bp)
        limiter.limit(READ_LIMIT, methods=["GET"])(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: import %s, write %s, read %s",
        IMPORT_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
