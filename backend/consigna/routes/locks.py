# backend/consigna/routes/locks.py
"""
Administrative counting lock routes: list held locks and force-release them.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ConsignmentError
from ..extensions import db
from ..permissions import MANAGE_COUNT_LOCKS
from ..services import lock_service
from ..validation import clean_text


locks_bp = Blueprint("locks", __name__, url_prefix="/api/counting/locks")


@locks_bp.get("")
@require_auth
@require_permission(MANAGE_COUNT_LOCKS)
def list_locks():
    locks = lock_service.list_active_sessions()
    return jsonify({"locks": locks, "count": len(locks)}), 200


@locks_bp.post("/<int:session_id>/release")
@require_auth
@require_permission(MANAGE_COUNT_LOCKS)
def release_session(session_id: int):
    """
    Force-release one counting session.

    Request body (optional):
    {"reason": str}
    """
    data = request.get_json(silent=True) or {}

    try:
        session = lock_service.release(
            session_id,
            g.current_user.id,
            forced=True,
            reason=clean_text(data.get("reason"), "reason"),
        )
        return jsonify({"session": session.to_dict()}), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to release counting session")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@locks_bp.post("/agreements/<int:agreement_id>/release")
@require_auth
@require_permission(MANAGE_COUNT_LOCKS)
def release_agreement(agreement_id: int):
    """Force-release whichever session currently holds the agreement."""
    data = request.get_json(silent=True) or {}

    try:
        session = lock_service.force_release_agreement(
            agreement_id,
            g.current_user.id,
            reason=clean_text(data.get("reason"), "reason"),
        )
        return jsonify({"session": session.to_dict()}), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to release agreement lock")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500
