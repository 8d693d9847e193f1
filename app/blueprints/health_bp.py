"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — dependency status (database, reference catalogs)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.reference import CATALOG_MODELS

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe — always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Reference catalogs ───────────────────────────────────────────
    # Empty catalogs mean every import row fails; report, don't fail.
    if overall:
        try:
            counts = {kind: model.query.filter_by(active=True).count()
                      for kind, model in CATALOG_MODELS.items()}
            empty = sorted(k for k, n in counts.items() if n == 0)
            checks["reference_catalogs"] = {
                "status": "ok" if not empty else "empty",
                "counts": counts,
            }
            if empty:
                checks["reference_catalogs"]["detail"] = (
                    "run `flask seed-reference-data` to install the defaults"
                )
        except SQLAlchemyError as exc:
            db.session.rollback()
            checks["reference_catalogs"] = {"status": "error", "detail": str(exc)}

    checks["app"] = {
        "name": "Procurement Plan Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
