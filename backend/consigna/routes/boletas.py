# backend/consigna/routes/boletas.py
"""
Restock boleta API routes: list, details, status changes, line corrections.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ConsignmentError, ValidationError
from ..extensions import db
from ..permissions import VIEW_BOLETAS
from ..services import boleta_service
from ..validation import coerce_int, parse_datetime_param


boletas_bp = Blueprint("boletas", __name__, url_prefix="/api/boletas")


def _internal_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@boletas_bp.get("")
@require_auth
@require_permission(VIEW_BOLETAS)
def list_boletas():
    """
    List boletas, newest first.

    Query params:
        status: comma-separated statuses (e.g. "pending,approved")
        agreement_id: int
        from, to: ISO-8601 bounds on created_at
        limit (default 100), offset (default 0)
    """
    try:
        raw_status = request.args.get("status")
        statuses = [s.strip() for s in raw_status.split(",") if s.strip()] if raw_status else None

        agreement_id = request.args.get("agreement_id")
        rows, total = boleta_service.list_boletas(
            statuses=statuses,
            agreement_id=coerce_int(agreement_id, "agreement_id") if agreement_id else None,
            date_from=parse_datetime_param(request.args.get("from"), "from"),
            date_to=parse_datetime_param(request.args.get("to"), "to"),
            limit=coerce_int(request.args.get("limit", "100"), "limit"),
            offset=coerce_int(request.args.get("offset", "0"), "offset"),
        )

        return jsonify({
            "items": [b.to_dict() for b in rows],
            "total": total,
        }), 200

    except ConsignmentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to list boletas")


@boletas_bp.get("/<int:boleta_id>")
@require_auth
@require_permission(VIEW_BOLETAS)
def get_boleta(boleta_id: int):
    try:
        return jsonify(boleta_service.get_boleta_details(boleta_id)), 200
    except ConsignmentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to load boleta")


@boletas_bp.post("/<int:boleta_id>/status")
@require_auth
@require_permission(VIEW_BOLETAS)
def change_status(boleta_id: int):
    """
    Move a boleta to a new status.

    Request body:
    {
        "status": "approved" | "sent" | "invoiced" | "canceled",
        "notes": str (optional),
        "erp_invoice_number": str (required for "invoiced")
    }

    The capability for the target status is checked by the service.

    Returns:
        200: Transition applied
        403: Missing capability for the target status
        409: Transition not allowed from the current status
    """
    data = request.get_json(silent=True) or {}

    try:
        new_status = data.get("status")
        if not isinstance(new_status, str) or not new_status.strip():
            raise ValidationError("status is required", field="status")

        boleta = boleta_service.transition_boleta(
            boleta_id,
            new_status.strip(),
            g.current_user.id,
            notes=data.get("notes"),
            erp_invoice_number=data.get("erp_invoice_number"),
        )
        return jsonify({"boleta": boleta.to_dict()}), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to change boleta status")


@boletas_bp.patch("/<int:boleta_id>/lines")
@require_auth
@require_permission(VIEW_BOLETAS)
def edit_lines(boleta_id: int):
    """
    Correct replenish quantities while the boleta is pending.

    Request body:
    {
        "lines": [{"line_id": int, "replenish_quantity": number}, ...],
        "notes": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        boleta_service.update_boleta_lines(
            boleta_id,
            data.get("lines"),
            g.current_user.id,
            notes=data.get("notes"),
        )
        return jsonify(boleta_service.get_boleta_details(boleta_id)), 200

    except ConsignmentError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to edit boleta lines")
