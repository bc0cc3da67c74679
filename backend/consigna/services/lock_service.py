# Overview: Service-layer operations for counting locks; one active counting session per agreement.

"""
Counting lock manager.

WHY: Two people counting the same client's stock at the same time produce
two boletas for one replenishment. The lock is the active CountingSession
row itself: the partial unique index on (agreement_id) WHERE status='active'
makes "acquire" a single conditional insert, so there is no separate lock
table and nothing to clean up when a session ends.

LIFECYCLE:
1. acquire: insert an active session (fails with LockHeldError if one exists)
2. release: active -> canceled by the holder, or forced by an administrator
3. submit (count_service): active -> submitted, inside the boleta transaction

There is no expiry. A lock is held until it is submitted, canceled or
force-released.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import LockHeldError, NotFoundError, SessionNotActiveError, ValidationError
from ..extensions import db
from ..models import Agreement, CountingLine, CountingSession, User
from ..models.consignments import SESSION_STATUS_ACTIVE, SESSION_STATUS_CANCELED
from ..permissions import COUNT_CONSIGNMENTS, MANAGE_COUNT_LOCKS
from ..time_utils import to_utc_z, utcnow
from .concurrency import run_in_transaction
from .permission_service import deny_permission, require_permission


def _holder_of(agreement_id: int) -> CountingSession | None:
    return (
        db.session.query(CountingSession)
        .filter(
            CountingSession.agreement_id == agreement_id,
            CountingSession.status == SESSION_STATUS_ACTIVE,
        )
        .first()
    )


def acquire(agreement_id: int, user_id: int) -> CountingSession:
    """
    Take the counting lock on an agreement.

    Returns the new active session. Raises LockHeldError naming the current
    holder when another active session exists, including one held by the
    same user (use start_or_resume_session to pick that one up).
    """
    def _op():
        agreement = db.session.get(Agreement, agreement_id)
        if agreement is None:
            raise NotFoundError(f"Agreement {agreement_id} not found", agreement_id=agreement_id)
        if not agreement.is_active:
            raise ValidationError(f"Agreement {agreement_id} is not active", agreement_id=agreement_id)

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id)

        require_permission(user_id, COUNT_CONSIGNMENTS, resource=f"agreement:{agreement_id}")

        session = CountingSession(
            agreement_id=agreement_id,
            user_id=user_id,
            status=SESSION_STATUS_ACTIVE,
        )
        db.session.add(session)

        try:
            db.session.flush()
        except IntegrityError:
            # Partial unique index: somebody already holds this agreement
            db.session.rollback()
            holder = _holder_of(agreement_id)
            raise LockHeldError(
                agreement_id=agreement_id,
                session_id=holder.id if holder else None,
                holder_user_id=holder.user_id if holder else None,
                holder_name=holder.holder.display_name if holder and holder.holder else None,
            )

        return session

    session = run_in_transaction(_op)
    current_app.logger.info(
        "Counting lock acquired: agreement=%s session=%s user=%s", agreement_id, session.id, user_id
    )
    return session


def list_active_sessions() -> list[dict]:
    """Snapshot of every held lock, oldest first, with holder and agreement names."""
    rows = (
        db.session.query(CountingSession, Agreement, User)
        .join(Agreement, Agreement.id == CountingSession.agreement_id)
        .join(User, User.id == CountingSession.user_id)
        .filter(CountingSession.status == SESSION_STATUS_ACTIVE)
        .order_by(CountingSession.created_at.asc(), CountingSession.id.asc())
        .all()
    )

    result = []
    for session, agreement, user in rows:
        line_count = db.session.query(CountingLine).filter_by(session_id=session.id).count()
        result.append({
            "session_id": session.id,
            "agreement_id": agreement.id,
            "client_id": agreement.client_id,
            "client_name": agreement.client_name,
            "holder_user_id": user.id,
            "holder_username": user.username,
            "holder_name": user.display_name,
            "started_at": to_utc_z(session.created_at),
            "line_count": line_count,
        })
    return result


def release(
    session_id: int,
    acting_user_id: int,
    *,
    forced: bool = False,
    reason: str | None = None,
) -> CountingSession:
    """
    Release a counting lock (active -> canceled).

    Non-forced: only the holder may release their own session.
    Forced: any user with MANAGE_COUNT_LOCKS; checked on every call.

    The counted lines stay attached to the canceled session. Releasing a
    session that is no longer active raises SessionNotActiveError.
    """
    def _op():
        session = db.session.get(CountingSession, session_id)
        if session is None:
            raise NotFoundError(f"Counting session {session_id} not found", session_id=session_id)

        if forced:
            require_permission(acting_user_id, MANAGE_COUNT_LOCKS, resource=f"counting_session:{session_id}")
        elif session.user_id != acting_user_id:
            deny_permission(
                acting_user_id,
                MANAGE_COUNT_LOCKS,
                message=f"Counting session {session_id} is held by another user",
                resource=f"counting_session:{session_id}",
                reason="Not the session holder",
            )

        # Compare-and-set: only one closer wins
        result = db.session.execute(
            update(CountingSession)
            .where(
                CountingSession.id == session_id,
                CountingSession.status == SESSION_STATUS_ACTIVE,
            )
            .values(
                status=SESSION_STATUS_CANCELED,
                closed_at=utcnow(),
                closed_by_user_id=acting_user_id,
                force_released=forced,
                close_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.refresh(session)
            raise SessionNotActiveError(session_id, session.status)

        return session

    session = run_in_transaction(_op)
    current_app.logger.info(
        "Counting lock released: agreement=%s session=%s by=%s forced=%s",
        session.agreement_id, session_id, acting_user_id, forced,
    )
    return session


def force_release_agreement(agreement_id: int, acting_user_id: int, reason: str | None = None) -> CountingSession:
    """Administrative release of whatever session currently holds an agreement."""
    if db.session.get(Agreement, agreement_id) is None:
        raise NotFoundError(f"Agreement {agreement_id} not found", agreement_id=agreement_id)

    holder = _holder_of(agreement_id)
    if holder is None:
        raise NotFoundError(f"Agreement {agreement_id} has no active counting session", agreement_id=agreement_id)

    return release(holder.id, acting_user_id, forced=True, reason=reason)


def get_active_session_for_user(user_id: int) -> CountingSession | None:
    return (
        db.session.query(CountingSession)
        .filter(
            CountingSession.user_id == user_id,
            CountingSession.status == SESSION_STATUS_ACTIVE,
        )
        .order_by(CountingSession.created_at.desc(), CountingSession.id.desc())
        .first()
    )


def get_active_session_for_agreement(agreement_id: int) -> CountingSession | None:
    return _holder_of(agreement_id)
