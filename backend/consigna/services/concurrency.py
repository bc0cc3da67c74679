# Overview: Transaction boundary and row-locking helpers shared by the services.

from __future__ import annotations

from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ConsignmentError, PersistenceError
from ..extensions import db
from ..models import SecurityEvent
from ..time_utils import utcnow


T = TypeVar("T")

# Session.info flag set while run_in_transaction owns the session
UNIT_OF_WORK_KEY = "consigna.unit_of_work"


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE (it serializes writers at the
    database level instead), but other DBs will honor it.
    """
    return query.with_for_update()


def in_unit_of_work() -> bool:
    return bool(db.session.info.get(UNIT_OF_WORK_KEY))


def _write_deferred_audit(exc: ConsignmentError) -> None:
    """Persist the security event a refused unit of work carried out of its rollback."""
    audit = getattr(exc, "audit", None)
    if not audit:
        return
    exc.audit = None

    try:
        db.session.add(SecurityEvent(**audit, occurred_at=utcnow()))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record %s for user %s", audit["event_type"], audit["user_id"])


def run_in_transaction(func: Callable[[], T]) -> T:
    """
    Execute ``func`` as one unit of work: commit on success, roll back on
    any failure.

    Business failures (ConsignmentError) propagate unchanged. Storage
    failures, including optimistic-lock conflicts (StaleDataError), are
    wrapped in PersistenceError. Nothing is retried here; a caller that
    wants to retry a PersistenceError must do so itself.

    A permission denial raised inside ``func`` carries its security event
    out of the rollback; it is committed on its own afterwards, so the
    refused work never lands with it.
    """
    session_info = db.session.info
    outer = session_info.get(UNIT_OF_WORK_KEY, False)
    session_info[UNIT_OF_WORK_KEY] = True
    try:
        result = func()
        db.session.commit()
        return result
    except ConsignmentError as exc:
        db.session.rollback()
        _write_deferred_audit(exc)
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("Unit of work rolled back: %s", exc)
        raise PersistenceError(f"Storage operation failed: {exc.__class__.__name__}") from exc
    except Exception:
        db.session.rollback()
        raise
    finally:
        session_info[UNIT_OF_WORK_KEY] = outer
