# Overview: Service-layer operations for restock boletas; creation, status lifecycle and reads.

"""
Restock Boleta Lifecycle Service

================================================================================
PURPOSE: Turn a submitted count into a numbered replenishment document and
move it forward through its lifecycle with a complete audit trail.
================================================================================

STATE MACHINE:
    pending -> approved -> sent -> invoiced
    pending | approved | sent -> canceled

    pending:  Created from a submitted count, quantities may be corrected
    approved: Reviewed, ready to ship
    sent:     Merchandise dispatched to the client
    invoiced: TERMINAL, ERP invoice number recorded
    canceled: TERMINAL

RULES (NON-NEGOTIABLE):
1. Cannot skip states (pending -> sent is forbidden)
2. Cannot reverse states (sent -> approved is forbidden)
3. Same-status "transitions" are rejected, not ignored
4. Every status change appends exactly one history entry (creation included)
5. The capability for the target status is re-checked on every attempt

================================================================================
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update

from ..errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import BoletaHistoryEntry, BoletaLine, ConsignedProduct, CountingLine, CountingSession, RestockBoleta, User
from ..models.boletas import (
    BOLETA_STATUS_APPROVED,
    BOLETA_STATUS_CANCELED,
    BOLETA_STATUS_INVOICED,
    BOLETA_STATUS_PENDING,
    BOLETA_STATUS_SENT,
    BOLETA_STATUSES,
)
from ..permissions import APPROVE_BOLETAS, CANCEL_BOLETAS, INVOICE_BOLETAS, SEND_BOLETAS
from ..time_utils import utcnow
from ..validation import clean_text, coerce_int, coerce_quantity
from .concurrency import lock_for_update, run_in_transaction
from .permission_service import require_permission
from .sequence_service import next_boleta_number


# The only legal moves. Anything else is an InvalidTransitionError.
TRANSITIONS = {
    BOLETA_STATUS_PENDING: {BOLETA_STATUS_APPROVED, BOLETA_STATUS_CANCELED},
    BOLETA_STATUS_APPROVED: {BOLETA_STATUS_SENT, BOLETA_STATUS_CANCELED},
    BOLETA_STATUS_SENT: {BOLETA_STATUS_INVOICED, BOLETA_STATUS_CANCELED},
    BOLETA_STATUS_INVOICED: set(),
    BOLETA_STATUS_CANCELED: set(),
}

# Capability required to move a boleta INTO each status
REQUIRED_PERMISSIONS = {
    BOLETA_STATUS_APPROVED: APPROVE_BOLETAS,
    BOLETA_STATUS_SENT: SEND_BOLETAS,
    BOLETA_STATUS_INVOICED: INVOICE_BOLETAS,
    BOLETA_STATUS_CANCELED: CANCEL_BOLETAS,
}


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, set())


def validate_transition(current: str, requested: str, boleta_id: int | None = None) -> None:
    """
    Raise InvalidTransitionError unless (current -> requested) is in TRANSITIONS.

    Unknown status names are an input problem (ValidationError).
    """
    if requested not in BOLETA_STATUSES:
        raise ValidationError(
            f"Invalid status '{requested}'. Must be one of: {', '.join(BOLETA_STATUSES)}",
            field="status",
        )
    if not can_transition(current, requested):
        raise InvalidTransitionError(current, requested, boleta_id=boleta_id)


def _get_actor(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", user_id=user_id)
    return user


def _append_history(
    boleta: RestockBoleta,
    status: str,
    actor: User,
    occurred_at: datetime,
    notes: str | None = None,
) -> BoletaHistoryEntry:
    entry = BoletaHistoryEntry(
        boleta_id=boleta.id,
        occurred_at=occurred_at,
        status=status,
        notes=notes,
        actor_user_id=actor.id,
        actor_name=actor.display_name,
    )
    db.session.add(entry)
    return entry


def create_boleta_from_session(session: CountingSession, user_id: int) -> RestockBoleta:
    """
    Build the pending boleta for a counting session.

    Runs inside the submit transaction and never commits: the number
    allocation, the boleta, its lines and the creation history entry are
    committed or rolled back together with the session status change.

    replenish_quantity = max(0, max_stock - counted_quantity)
    """
    actor = _get_actor(user_id)

    counted = (
        db.session.query(CountingLine)
        .filter(CountingLine.session_id == session.id)
        .order_by(CountingLine.product_id.asc())
        .all()
    )

    products = {
        p.product_id: p
        for p in db.session.query(ConsignedProduct).filter(ConsignedProduct.agreement_id == session.agreement_id)
    }

    # Resolve every product before consuming a number
    for line in counted:
        if line.product_id not in products:
            raise NotFoundError(
                f"Product {line.product_id} is not part of agreement {session.agreement_id}",
                product_id=line.product_id,
                agreement_id=session.agreement_id,
            )

    consecutive = next_boleta_number(session.agreement_id)
    now = utcnow()

    boleta = RestockBoleta(
        consecutive=consecutive,
        agreement_id=session.agreement_id,
        session_id=session.id,
        status=BOLETA_STATUS_PENDING,
        created_by_user_id=session.user_id,
        submitted_by_user_id=user_id,
        created_at=now,
    )
    db.session.add(boleta)
    db.session.flush()  # Get ID

    for line in counted:
        product = products[line.product_id]
        db.session.add(BoletaLine(
            boleta_id=boleta.id,
            product_id=product.product_id,
            product_description=product.description,
            client_product_code=product.client_product_code,
            counted_quantity=line.counted_quantity,
            replenish_quantity=max(0.0, product.max_stock - line.counted_quantity),
            max_stock=product.max_stock,
            price_cents=product.price_cents,
            is_manually_edited=False,
        ))

    _append_history(
        boleta,
        BOLETA_STATUS_PENDING,
        actor,
        now,
        notes=f"Created from counting session {session.id}",
    )
    db.session.flush()

    return boleta


def transition_boleta(
    boleta_id: int,
    new_status: str,
    user_id: int,
    *,
    notes: str | None = None,
    erp_invoice_number: str | None = None,
) -> RestockBoleta:
    """
    Move a boleta to new_status.

    Order of checks:
    1. boleta exists (NotFoundError)
    2. (current -> new_status) is in TRANSITIONS (InvalidTransitionError)
    3. user holds REQUIRED_PERMISSIONS[new_status] (PermissionDeniedError)
    4. invoicing carries an ERP invoice number (ValidationError)

    The status change is a compare-and-set on the status and version that
    were read. When two transitions race, one wins and the other gets
    InvalidTransitionError against the status the winner left behind; a
    line edit committed in between gives ConflictError.
    """
    def _op():
        boleta = lock_for_update(
            db.session.query(RestockBoleta).filter(RestockBoleta.id == boleta_id)
        ).first()
        if boleta is None:
            raise NotFoundError(f"Boleta {boleta_id} not found", boleta_id=boleta_id)

        previous = boleta.status
        validate_transition(previous, new_status, boleta_id=boleta_id)

        require_permission(user_id, REQUIRED_PERMISSIONS[new_status], resource=f"boleta:{boleta_id}")

        invoice_number = clean_text(erp_invoice_number, "erp_invoice_number", max_length=64)
        if new_status == BOLETA_STATUS_INVOICED and invoice_number is None:
            raise ValidationError("erp_invoice_number is required to invoice a boleta", field="erp_invoice_number")
        history_notes = clean_text(notes, "notes")

        actor = _get_actor(user_id)
        now = utcnow()

        changes = {"status": new_status}
        if new_status == BOLETA_STATUS_APPROVED:
            changes.update(approved_by_user_id=actor.id, approved_at=now)
        elif new_status == BOLETA_STATUS_SENT:
            changes["sent_at"] = now
        elif new_status == BOLETA_STATUS_INVOICED:
            changes.update(invoiced_at=now, erp_invoice_number=invoice_number)
        elif new_status == BOLETA_STATUS_CANCELED:
            changes["canceled_at"] = now

        # Compare-and-set: a concurrent transition or line edit leaves rowcount at 0
        result = db.session.execute(
            update(RestockBoleta)
            .where(
                RestockBoleta.id == boleta_id,
                RestockBoleta.status == previous,
                RestockBoleta.version_id == boleta.version_id,
            )
            .values(version_id=RestockBoleta.version_id + 1, **changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.refresh(boleta)
            if boleta.status != previous:
                raise InvalidTransitionError(boleta.status, new_status, boleta_id=boleta_id)
            raise ConflictError(f"Boleta {boleta_id} was modified concurrently", boleta_id=boleta_id)

        db.session.refresh(boleta)
        _append_history(boleta, new_status, actor, now, notes=history_notes)
        db.session.flush()

        return boleta, previous

    boleta, previous = run_in_transaction(_op)
    current_app.logger.info(
        "Boleta %s (agreement=%s consecutive=%s) %s -> %s by user %s",
        boleta_id, boleta.agreement_id, boleta.consecutive, previous, new_status, user_id,
    )
    return boleta


def approve_boleta(boleta_id: int, user_id: int, notes: str | None = None) -> RestockBoleta:
    return transition_boleta(boleta_id, BOLETA_STATUS_APPROVED, user_id, notes=notes)


def send_boleta(boleta_id: int, user_id: int, notes: str | None = None) -> RestockBoleta:
    return transition_boleta(boleta_id, BOLETA_STATUS_SENT, user_id, notes=notes)


def invoice_boleta(boleta_id: int, user_id: int, erp_invoice_number: str, notes: str | None = None) -> RestockBoleta:
    return transition_boleta(
        boleta_id,
        BOLETA_STATUS_INVOICED,
        user_id,
        notes=notes,
        erp_invoice_number=erp_invoice_number,
    )


def cancel_boleta(boleta_id: int, user_id: int, notes: str | None = None) -> RestockBoleta:
    return transition_boleta(boleta_id, BOLETA_STATUS_CANCELED, user_id, notes=notes)


def get_boleta(boleta_id: int) -> RestockBoleta:
    boleta = db.session.get(RestockBoleta, boleta_id)
    if boleta is None:
        raise NotFoundError(f"Boleta {boleta_id} not found", boleta_id=boleta_id)
    return boleta


def get_boleta_details(boleta_id: int) -> dict:
    """Boleta header with agreement, lines, totals and full history."""
    boleta = get_boleta(boleta_id)

    lines = [line.to_dict() for line in boleta.lines]
    total_replenish_cents = sum(
        int(round(line.replenish_quantity * line.price_cents)) for line in boleta.lines
    )

    return {
        "boleta": boleta.to_dict(),
        "agreement": boleta.agreement.to_dict(),
        "lines": lines,
        "history": [entry.to_dict() for entry in boleta.history],
        "totals": {
            "line_count": len(lines),
            "replenish_quantity": sum(line.replenish_quantity for line in boleta.lines),
            "replenish_value_cents": total_replenish_cents,
        },
    }


def list_boletas(
    *,
    statuses: list[str] | None = None,
    agreement_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[RestockBoleta], int]:
    """
    Filtered, newest-first page of boletas.

    date_from/date_to bound created_at (both inclusive).
    Returns (rows, total_matching).
    """
    for status in statuses or []:
        if status not in BOLETA_STATUSES:
            raise ValidationError(f"Invalid status filter '{status}'", field="status")

    max_limit = current_app.config.get("BOLETA_LIST_MAX_LIMIT", 500)
    if limit < 1 or limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}", field="limit")
    if offset < 0:
        raise ValidationError("offset must be >= 0", field="offset")
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must be before date_to", field="date_from")

    query = db.session.query(RestockBoleta)
    if statuses:
        query = query.filter(RestockBoleta.status.in_(statuses))
    if agreement_id is not None:
        query = query.filter(RestockBoleta.agreement_id == agreement_id)
    if date_from is not None:
        query = query.filter(RestockBoleta.created_at >= date_from)
    if date_to is not None:
        query = query.filter(RestockBoleta.created_at <= date_to)

    total = query.count()
    rows = (
        query.order_by(RestockBoleta.created_at.desc(), RestockBoleta.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return rows, total


def update_boleta_lines(
    boleta_id: int,
    edits: list[dict],
    user_id: int,
    *,
    notes: str | None = None,
) -> RestockBoleta:
    """
    Correct replenish quantities on a pending boleta.

    edits: [{"line_id": int, "replenish_quantity": number}, ...]

    Requires APPROVE_BOLETAS. Lines whose quantity actually changes are
    flagged is_manually_edited. This is not a status change, so no history
    entry is written.
    """
    if not isinstance(edits, list) or not edits:
        raise ValidationError("edits must be a non-empty list", field="edits")

    parsed: dict[int, float] = {}
    for edit in edits:
        if not isinstance(edit, dict):
            raise ValidationError("Each edit must be an object", field="edits")
        line_id = coerce_int(edit.get("line_id"), "line_id")
        parsed[line_id] = coerce_quantity(edit.get("replenish_quantity"), "replenish_quantity")

    clean_notes = clean_text(notes, "notes")

    def _op():
        boleta = lock_for_update(
            db.session.query(RestockBoleta).filter(RestockBoleta.id == boleta_id)
        ).first()
        if boleta is None:
            raise NotFoundError(f"Boleta {boleta_id} not found", boleta_id=boleta_id)

        require_permission(user_id, APPROVE_BOLETAS, resource=f"boleta:{boleta_id}")

        if boleta.status != BOLETA_STATUS_PENDING:
            raise ConflictError(
                f"Boleta {boleta_id} can only be edited while pending (status: {boleta.status})",
                boleta_id=boleta_id,
                status=boleta.status,
            )

        lines = {line.id: line for line in boleta.lines}
        for line_id, quantity in parsed.items():
            line = lines.get(line_id)
            if line is None:
                raise NotFoundError(f"Line {line_id} not found on boleta {boleta_id}", line_id=line_id)
            if line.replenish_quantity != quantity:
                line.replenish_quantity = quantity
                line.is_manually_edited = True

        # Bump the version so a transition that read the old content fails
        values = {"version_id": RestockBoleta.version_id + 1}
        if clean_notes is not None:
            values["notes"] = clean_notes
        result = db.session.execute(
            update(RestockBoleta)
            .where(
                RestockBoleta.id == boleta_id,
                RestockBoleta.status == BOLETA_STATUS_PENDING,
                RestockBoleta.version_id == boleta.version_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Boleta {boleta_id} was modified concurrently", boleta_id=boleta_id)

        db.session.flush()
        return boleta

    boleta = run_in_transaction(_op)
    current_app.logger.info("Boleta %s lines edited by user %s", boleta_id, user_id)
    return boleta
