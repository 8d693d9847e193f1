"""
Actor Context Middleware — resolves who is calling.

Identity is established upstream (API gateway / SSO).  The gateway
forwards the resolved actor as headers:

    X-Actor-Id          opaque user id, recorded in history and audit
    X-Actor-Role        one of app.models.procurement.ROLES
    X-Actor-Agency-Id   the actor's agency (absent for DNPM / admin users)

This middleware copies them onto ``flask.g`` for every API request.  It
never rejects a request on its own; endpoints that act on behalf of an
actor are wrapped with ``@require_actor``.

Usage:
    @procurement_bp.route("/plans/<int:plan_id>/transition", methods=["POST"])
    @require_actor
    def transition_plan(plan_id):
        ... g.actor_id, g.actor_role, g.actor_agency_id ...
"""

import functools
import logging

from flask import g, request

from app.models.procurement import ROLES
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
ACTOR_AGENCY_HEADER = "X-Actor-Agency-Id"


def _header(name):
    value = request.headers.get(name, "").strip()
    return value or None


def init_actor_context(app):
    """Register the actor context before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor_id = _header(ACTOR_ID_HEADER)
        g.actor_role = (_header(ACTOR_ROLE_HEADER) or "").lower() or None
        g.actor_agency_id = _header(ACTOR_AGENCY_HEADER)


def require_actor(f):
    """Decorator: 401 unless the request carries an actor id and a known role."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor_id = getattr(g, "actor_id", None)
        actor_role = getattr(g, "actor_role", None)
        if not actor_id or not actor_role:
            return api_error(
                E.UNAUTHENTICATED,
                f"{ACTOR_ID_HEADER} and {ACTOR_ROLE_HEADER} headers are required",
            )
        if actor_role not in ROLES:
            logger.warning("Unknown actor role '%s' on %s", actor_role, request.path,
                           extra={"actor_id": actor_id, "actor_role": actor_role})
            return api_error(
                E.FORBIDDEN,
                f"Unknown role '{actor_role}'",
                details={"allowed_roles": sorted(ROLES)},
            )
        return f(*args, **kwargs)

    return decorated
