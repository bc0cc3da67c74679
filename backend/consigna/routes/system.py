# backend/consigna/routes/system.py
"""
System health endpoint.
"""

import time
from flask import Blueprint, current_app, jsonify

from ..extensions import db
from ..models import Agreement, CountingSession, Permission, User
from ..models.consignments import SESSION_STATUS_ACTIVE
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        permission_count = db.session.query(Permission).count()
        agreement_count = db.session.query(Agreement).count()
        active_sessions = db.session.query(CountingSession).filter_by(status=SESSION_STATUS_ACTIVE).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "permissions": permission_count,
                "agreements": agreement_count,
                "active_counting_sessions": active_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"

    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }), 200 if healthy else 503
