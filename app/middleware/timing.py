"""
Request timing middleware.

Assigns a request id, measures duration, and logs every API request
(slow ones as warnings, 5xx as errors).  Adds X-Request-ID and
X-Request-Duration-Ms headers to all responses.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Probe endpoints excluded from request logs
_SKIP_LOG = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})

SLOW_THRESHOLD_MS = 1000


def _plan_id_from_request():
    view_args = request.view_args or {}
    plan_id = view_args.get("plan_id")
    return int(plan_id) if plan_id is not None else None


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.path in _SKIP_LOG or not request.path.startswith("/api/"):
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "remote_addr": request.remote_addr,
            "request_id": g.request_id,
            "plan_id": _plan_id_from_request(),
            "actor_id": getattr(g, "actor_id", None),
        }
        if response.status_code >= 500:
            log = logger.error
            label = "Server error"
        elif duration_ms > SLOW_THRESHOLD_MS:
            log = logger.warning
            label = "Slow request"
        else:
            log = logger.debug
            label = "Request"
        log("%s: %s %s %d (%.0fms)", label, request.method, request.path,
            response.status_code, duration_ms, extra=extra)
        return response
