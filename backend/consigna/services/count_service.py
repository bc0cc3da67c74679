# Overview: Service-layer operations for counting sessions; record, cancel and submit counts.

"""
Consignment counting service.

WHY: A counter walks the client's shelves and records how many units of
each consigned product are still there. Submitting the count produces the
restock boleta that brings every product back up to its max stock.

LIFECYCLE:
1. ACTIVE: Session holds the agreement lock, counts being recorded
2. SUBMITTED: Converted into exactly one pending boleta (same transaction)
3. CANCELED: Abandoned by the holder or force-released; lines are kept

Only the holder records, cancels or submits. Everything that changes state
goes through run_in_transaction: one commit or one rollback.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..errors import EmptyCountError, NotFoundError, SessionNotActiveError
from ..extensions import db
from ..models import ConsignedProduct, CountingLine, CountingSession, RestockBoleta
from ..models.consignments import SESSION_STATUS_ACTIVE, SESSION_STATUS_SUBMITTED
from ..permissions import COUNT_CONSIGNMENTS
from ..time_utils import utcnow
from ..validation import clean_text, coerce_quantity
from . import boleta_service, lock_service
from .concurrency import lock_for_update, run_in_transaction
from .permission_service import deny_permission, require_permission


def _get_session(session_id: int) -> CountingSession:
    session = db.session.get(CountingSession, session_id)
    if session is None:
        raise NotFoundError(f"Counting session {session_id} not found", session_id=session_id)
    return session


def _ensure_held_by(session: CountingSession, user_id: int) -> None:
    """Session must be active and owned by user_id (checked in that order)."""
    if session.status != SESSION_STATUS_ACTIVE:
        raise SessionNotActiveError(session.id, session.status)
    if session.user_id != user_id:
        deny_permission(
            user_id,
            COUNT_CONSIGNMENTS,
            message=f"Counting session {session.id} is held by another user",
            resource=f"counting_session:{session.id}",
            reason="Not the session holder",
        )


def record_count(session_id: int, product_id: str, quantity, user_id: int) -> CountingLine:
    """
    Create or overwrite the counted quantity of one product (last write wins).

    Raises:
        ValidationError: quantity is not a finite number >= 0
        NotFoundError: unknown session, or product not in the session's agreement
        SessionNotActiveError: session submitted, canceled or force-released
        PermissionDeniedError: caller is not the holder
    """
    counted = coerce_quantity(quantity, "quantity")
    product_id = clean_text(product_id, "product_id", required=True, max_length=64)

    def _op():
        session = lock_for_update(
            db.session.query(CountingSession).filter(CountingSession.id == session_id)
        ).first()
        if session is None:
            raise NotFoundError(f"Counting session {session_id} not found", session_id=session_id)

        _ensure_held_by(session, user_id)

        product = (
            db.session.query(ConsignedProduct)
            .filter_by(agreement_id=session.agreement_id, product_id=product_id)
            .first()
        )
        if product is None:
            raise NotFoundError(
                f"Product {product_id} is not part of agreement {session.agreement_id}",
                product_id=product_id,
                agreement_id=session.agreement_id,
            )

        line = (
            db.session.query(CountingLine)
            .filter_by(session_id=session.id, product_id=product_id)
            .first()
        )
        if line is None:
            line = CountingLine(
                session_id=session.id,
                product_id=product_id,
                counted_quantity=counted,
                updated_at=utcnow(),
            )
            db.session.add(line)
        else:
            line.counted_quantity = counted
            line.updated_at = utcnow()

        db.session.flush()
        return line

    return run_in_transaction(_op)


def cancel_session(session_id: int, user_id: int, reason: str | None = None) -> CountingSession:
    """Holder abandons the count. No boleta is created; lines are kept."""
    return lock_service.release(session_id, user_id, forced=False, reason=reason)


def submit_session(session_id: int, user_id: int) -> RestockBoleta:
    """
    Close an active session and create its pending boleta, atomically.

    Session -> submitted, number allocation, boleta, lines and the
    creation history entry share one transaction. If any step fails the
    session is still active and the agreement counter is unchanged.
    """
    def _op():
        session = lock_for_update(
            db.session.query(CountingSession).filter(CountingSession.id == session_id)
        ).first()
        if session is None:
            raise NotFoundError(f"Counting session {session_id} not found", session_id=session_id)

        require_permission(user_id, COUNT_CONSIGNMENTS, resource=f"counting_session:{session_id}")
        _ensure_held_by(session, user_id)

        line_count = db.session.query(CountingLine).filter_by(session_id=session.id).count()
        if line_count == 0:
            raise EmptyCountError(session.id)

        # Compare-and-set: a concurrent release or submit leaves rowcount at 0
        result = db.session.execute(
            update(CountingSession)
            .where(
                CountingSession.id == session_id,
                CountingSession.status == SESSION_STATUS_ACTIVE,
            )
            .values(
                status=SESSION_STATUS_SUBMITTED,
                closed_at=utcnow(),
                closed_by_user_id=user_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.refresh(session)
            raise SessionNotActiveError(session_id, session.status)

        return boleta_service.create_boleta_from_session(session, user_id)

    boleta = run_in_transaction(_op)
    current_app.logger.info(
        "Counting session %s submitted by user %s: boleta %s (agreement=%s consecutive=%s)",
        session_id, user_id, boleta.id, boleta.agreement_id, boleta.consecutive,
    )
    return boleta


def start_or_resume_session(agreement_id: int, user_id: int) -> tuple[CountingSession, bool]:
    """
    Return the caller's own active session on the agreement, or acquire a new one.

    Returns (session, resumed). Another user's session still raises LockHeldError.
    """
    existing = lock_service.get_active_session_for_agreement(agreement_id)
    if existing is not None and existing.user_id == user_id:
        return existing, True

    return lock_service.acquire(agreement_id, user_id), False


def get_session_summary(session_id: int) -> dict:
    """
    Session header plus one row per consigned product of the agreement,
    with the counted quantity (None when not counted yet).
    """
    session = _get_session(session_id)

    counted = {line.product_id: line for line in session.lines}
    products = []
    for product in session.agreement.products:
        line = counted.get(product.product_id)
        products.append({
            "product_id": product.product_id,
            "description": product.description,
            "client_product_code": product.client_product_code,
            "max_stock": product.max_stock,
            "counted_quantity": line.counted_quantity if line else None,
        })

    return {
        "session": session.to_dict(),
        "agreement": session.agreement.to_dict(),
        "lines": [line.to_dict() for line in session.lines],
        "products": products,
        "counted_count": len(counted),
        "product_count": len(products),
    }
