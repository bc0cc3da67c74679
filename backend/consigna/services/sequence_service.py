# Overview: Per-agreement boleta number allocation.

from __future__ import annotations

from sqlalchemy import update

from ..errors import NotFoundError
from ..extensions import db
from ..models import Agreement


def next_boleta_number(agreement_id: int) -> int:
    """
    Atomically allocate the next consecutive number for an agreement.

    The increment is executed SQL-side (``next = next + 1``) so concurrent
    callers on the same agreement serialize on the agreement row and never
    read the same value. The function only flushes: it must run inside the
    caller's transaction (the one that inserts the boleta), so a rollback
    returns the number and a commit consumes it for good.

    Returns the value the counter held before the increment.
    """
    stmt = (
        update(Agreement)
        .where(Agreement.id == agreement_id)
        .values(next_boleta_number=Agreement.next_boleta_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        raise NotFoundError(f"Agreement {agreement_id} not found", agreement_id=agreement_id)

    current = (
        db.session.query(Agreement.next_boleta_number)
        .filter(Agreement.id == agreement_id)
        .scalar()
    )

    return current - 1
