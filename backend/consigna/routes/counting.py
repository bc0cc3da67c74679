# backend/consigna/routes/counting.py
"""
Counting session API routes.

Thin adapters over count_service and lock_service; the acting user is
always the authenticated user.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ConsignmentError, ValidationError
from ..extensions import db
from ..permissions import COUNT_CONSIGNMENTS, MANAGE_COUNT_LOCKS
from ..services import count_service, lock_service, permission_service
from ..validation import clean_text, coerce_int


counting_bp = Blueprint("counting", __name__, url_prefix="/api/counting/sessions")


def _internal_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@counting_bp.post("")
@require_auth
@require_permission(COUNT_CONSIGNMENTS)
def start_session():
    """
    Take the counting lock on an agreement.

    Request body:
    {
        "agreement_id": int,
        "resume": bool (optional)  // return own active session instead of 409
    }

    Returns:
        201: Session created
        200: Own active session resumed
        409: Agreement already being counted (LOCK_HELD, names the holder)
    """
    data = request.get_json(silent=True) or {}

    try:
        agreement_id = coerce_int(data.get("agreement_id"), "agreement_id")

        if data.get("resume"):
            session, resumed = count_service.start_or_resume_session(agreement_id, g.current_user.id)
        else:
            session, resumed = lock_service.acquire(agreement_id, g.current_user.id), False

        return jsonify({"session": session.to_dict(), "resumed": resumed}), 200 if resumed else 201

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to start counting session")


@counting_bp.get("/mine")
@require_auth
def my_session():
    """The caller's active counting session, or null."""
    session = lock_service.get_active_session_for_user(g.current_user.id)
    return jsonify({"session": session.to_dict() if session else None}), 200


@counting_bp.get("/<int:session_id>")
@require_auth
@require_permission(COUNT_CONSIGNMENTS)
def get_session(session_id: int):
    try:
        summary = count_service.get_session_summary(session_id)

        # Other users' sessions are visible to lock managers only
        holder_id = summary["session"]["user_id"]
        if holder_id != g.current_user.id and not permission_service.user_has_permission(
            g.current_user.id, MANAGE_COUNT_LOCKS
        ):
            permission_service.deny_permission(
                g.current_user.id,
                MANAGE_COUNT_LOCKS,
                message=f"Counting session {session_id} is held by another user",
                resource=request.path,
                ip_address=request.remote_addr,
                user_agent=request.headers.get("User-Agent"),
                reason="Not the session holder",
            )

        return jsonify(summary), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to load counting session")


@counting_bp.put("/<int:session_id>/lines")
@require_auth
@require_permission(COUNT_CONSIGNMENTS)
def record_count(session_id: int):
    """
    Record counted quantities (last write wins per product).

    Request body, single line or batch:
    {"product_id": str, "quantity": number}
    {"lines": [{"product_id": str, "quantity": number}, ...]}

    Each line is its own unit of work; a failing line stops the batch and
    earlier lines stay recorded.
    """
    data = request.get_json(silent=True) or {}
    entries = data.get("lines") if "lines" in data else [data]

    try:
        if not isinstance(entries, list) or not entries:
            raise ValidationError("lines must be a non-empty list", field="lines")

        recorded = []
        for entry in entries:
            entry = entry if isinstance(entry, dict) else {}
            line = count_service.record_count(
                session_id,
                entry.get("product_id"),
                entry.get("quantity"),
                g.current_user.id,
            )
            recorded.append(line.to_dict())

        return jsonify({"lines": recorded}), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to record count")


@counting_bp.post("/<int:session_id>/submit")
@require_auth
@require_permission(COUNT_CONSIGNMENTS)
def submit_session(session_id: int):
    """
    Close the session and create its pending boleta.

    Returns:
        201: Boleta created
        409: Session not active
        422: Nothing counted (EMPTY_COUNT)
    """
    try:
        boleta = count_service.submit_session(session_id, g.current_user.id)
        return jsonify({"boleta": boleta.to_dict()}), 201

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to submit counting session")


@counting_bp.post("/<int:session_id>/cancel")
@require_auth
@require_permission(COUNT_CONSIGNMENTS)
def cancel_session(session_id: int):
    """Holder abandons the count; no boleta is created."""
    data = request.get_json(silent=True) or {}

    try:
        session = count_service.cancel_session(
            session_id,
            g.current_user.id,
            reason=clean_text(data.get("reason"), "reason"),
        )
        return jsonify({"session": session.to_dict()}), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to cancel counting session")
