"""
Health probes for the protocol review service.

    GET /api/v1/health/ready   process is up (no I/O)
    GET /api/v1/health/live    database reachable and workflow tables present
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

_REQUIRED_TABLES = ("protocol_applications", "review_events", "board_members")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Database round-trip plus a schema presence check."""
    checks = {}
    try:
        started = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        existing = set(inspect(db.engine).get_table_names())
        checks["database"] = {
            "status": "ok",
            "latency_ms": round((time.perf_counter() - started) * 1000, 1),
        }
        missing = [t for t in _REQUIRED_TABLES if t not in existing]
        checks["schema"] = {"status": "error" if missing else "ok", "missing_tables": missing}
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Liveness probe: database unreachable: %s", exc)
        checks["database"] = {"status": "error", "detail": str(exc)}

    healthy = all(c["status"] == "ok" for c in checks.values())
    checks["app"] = {
        "name": "Protocol Review Workflow Engine",
        "config": current_app.config.get("ENV_NAME"),
        "testing": current_app.testing,
    }
    return jsonify({"status": "healthy" if healthy else "degraded", "checks": checks}), (
        200 if healthy else 503
    )
