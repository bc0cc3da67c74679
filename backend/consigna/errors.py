# Overview: Typed failures raised by the counting and boleta services.

"""
Every business-rule violation surfaces to the immediate caller as one of
these exceptions. Routes turn them into JSON bodies using ``to_dict()`` and
``status_code``; CLI commands print ``str(exc)``.

Nothing here is retried automatically: a lock conflict or an invalid
transition would give the same answer until some other state changes.
"""

from __future__ import annotations


class ConsignmentError(Exception):
    """Base class for failures reported back to the caller."""

    code = "CONSIGNMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(ConsignmentError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(ConsignmentError):
    """Unknown agreement, product, session, boleta or user id."""

    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(ConsignmentError):
    """Raised when user lacks required permission."""

    code = "PERMISSION_DENIED"
    status_code = 403

    def __init__(self, message: str, permission: str | None = None):
        super().__init__(message, permission=permission)
        self.permission = permission
        # SecurityEvent fields left for run_in_transaction to write after its rollback
        self.audit: dict | None = None


class LockHeldError(ConsignmentError):
    """The agreement is already being counted by someone."""

    code = "LOCK_HELD"
    status_code = 409

    def __init__(self, agreement_id: int, session_id: int | None, holder_user_id: int | None, holder_name: str | None):
        super().__init__(
            f"Agreement {agreement_id} is already being counted by {holder_name or 'another user'}",
            agreement_id=agreement_id,
            session_id=session_id,
            holder_user_id=holder_user_id,
            holder_name=holder_name,
        )
        self.agreement_id = agreement_id
        self.session_id = session_id
        self.holder_user_id = holder_user_id
        self.holder_name = holder_name


class SessionNotActiveError(ConsignmentError):
    """Operation attempted on a submitted, canceled or force-released session."""

    code = "SESSION_NOT_ACTIVE"
    status_code = 409

    def __init__(self, session_id: int, status: str | None):
        super().__init__(
            f"Counting session {session_id} is not active (status: {status})",
            session_id=session_id,
            status=status,
        )
        self.session_id = session_id
        self.status = status


class EmptyCountError(ConsignmentError):
    """Submit attempted on a session with no counted lines."""

    code = "EMPTY_COUNT"
    status_code = 422

    def __init__(self, session_id: int):
        super().__init__(f"Counting session {session_id} has no counted lines", session_id=session_id)
        self.session_id = session_id


class InvalidTransitionError(ConsignmentError):
    """Boleta status change not present in the transition table."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str, boleta_id: int | None = None):
        super().__init__(
            f"Cannot move boleta from '{current}' to '{requested}'",
            boleta_id=boleta_id,
            current_status=current,
            requested_status=requested,
        )
        self.current = current
        self.requested = requested
        self.boleta_id = boleta_id


class ConflictError(ConsignmentError):
    """409-level business rule conflict (e.g., editing a non-pending boleta)."""

    code = "CONFLICT"
    status_code = 409


class PersistenceError(ConsignmentError):
    """Underlying storage failure; the unit of work was rolled back."""

    code = "PERSISTENCE_FAILURE"
    status_code = 503
