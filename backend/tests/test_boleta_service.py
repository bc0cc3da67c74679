"""
Boleta lifecycle tests.

Verifies:
- Only the transitions in the table are accepted
- Every successful transition appends exactly one history entry
- Capabilities are re-checked on every attempt
- Manual line corrections while pending
- Listing filters and details
"""

from datetime import timedelta

import pytest

from consigna.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from consigna.models import BoletaHistoryEntry, RestockBoleta
from consigna.models.boletas import (
    BOLETA_STATUS_APPROVED,
    BOLETA_STATUS_CANCELED,
    BOLETA_STATUS_INVOICED,
    BOLETA_STATUS_PENDING,
    BOLETA_STATUS_SENT,
    BOLETA_STATUSES,
)
from consigna.services import boleta_service, count_service, lock_service, permission_service
from consigna.time_utils import utcnow


def _submit_count(agreement_id, user_id, counts):
    session = lock_service.acquire(agreement_id, user_id)
    for product_id, quantity in counts.items():
        count_service.record_count(session.id, product_id, quantity, user_id)
    return count_service.submit_session(session.id, user_id)


@pytest.fixture
def boleta(db_session, agreement, counter):
    """Pending boleta #7 on agreement X: P counted 3 (replenish 7), Q counted 1 (replenish 4)."""
    return _submit_count(agreement.id, counter.id, {"P": 3, "Q": 1})


def _history_statuses(db_session, boleta_id):
    entries = (
        db_session.query(BoletaHistoryEntry)
        .filter_by(boleta_id=boleta_id)
        .order_by(BoletaHistoryEntry.id)
        .all()
    )
    return [e.status for e in entries]


class TestTransitionTable:

    @pytest.mark.parametrize(
        "current,requested",
        [
            (BOLETA_STATUS_PENDING, BOLETA_STATUS_APPROVED),
            (BOLETA_STATUS_APPROVED, BOLETA_STATUS_SENT),
            (BOLETA_STATUS_SENT, BOLETA_STATUS_INVOICED),
            (BOLETA_STATUS_PENDING, BOLETA_STATUS_CANCELED),
            (BOLETA_STATUS_APPROVED, BOLETA_STATUS_CANCELED),
            (BOLETA_STATUS_SENT, BOLETA_STATUS_CANCELED),
        ],
    )
    def test_allowed(self, current, requested):
        assert boleta_service.can_transition(current, requested)
        boleta_service.validate_transition(current, requested)

    @pytest.mark.parametrize(
        "current,requested",
        [
            (current, requested)
            for current in BOLETA_STATUSES
            for requested in BOLETA_STATUSES
            if requested not in boleta_service.TRANSITIONS[current]
        ],
    )
    def test_everything_else_is_rejected(self, current, requested):
        with pytest.raises(InvalidTransitionError) as exc_info:
            boleta_service.validate_transition(current, requested)

        assert exc_info.value.current == current
        assert exc_info.value.requested == requested

    def test_terminal_states_have_no_exits(self):
        assert boleta_service.TRANSITIONS[BOLETA_STATUS_INVOICED] == set()
        assert boleta_service.TRANSITIONS[BOLETA_STATUS_CANCELED] == set()

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            boleta_service.validate_transition(BOLETA_STATUS_PENDING, "archived")


class TestHappyPath:

    def test_full_lifecycle(self, db_session, boleta, supervisor):
        approved = boleta_service.approve_boleta(boleta.id, supervisor.id, notes="Looks right")
        assert approved.status == BOLETA_STATUS_APPROVED
        assert approved.approved_by_user_id == supervisor.id
        assert approved.approved_at is not None

        sent = boleta_service.send_boleta(boleta.id, supervisor.id)
        assert sent.status == BOLETA_STATUS_SENT
        assert sent.sent_at is not None

        invoiced = boleta_service.invoice_boleta(boleta.id, supervisor.id, erp_invoice_number="FAC-0042")
        assert invoiced.status == BOLETA_STATUS_INVOICED
        assert invoiced.invoiced_at is not None
        assert invoiced.erp_invoice_number == "FAC-0042"

        assert _history_statuses(db_session, boleta.id) == [
            BOLETA_STATUS_PENDING,
            BOLETA_STATUS_APPROVED,
            BOLETA_STATUS_SENT,
            BOLETA_STATUS_INVOICED,
        ]

    def test_history_records_actor_and_note(self, db_session, boleta, supervisor):
        boleta_service.approve_boleta(boleta.id, supervisor.id, notes="Looks right")

        entry = (
            db_session.query(BoletaHistoryEntry)
            .filter_by(boleta_id=boleta.id, status=BOLETA_STATUS_APPROVED)
            .one()
        )
        assert entry.actor_user_id == supervisor.id
        assert entry.actor_name == "Sam Supervisor"
        assert entry.notes == "Looks right"

    @pytest.mark.parametrize("steps", [0, 1, 2])
    def test_cancel_from_any_open_status(self, db_session, boleta, supervisor, steps):
        if steps >= 1:
            boleta_service.approve_boleta(boleta.id, supervisor.id)
        if steps >= 2:
            boleta_service.send_boleta(boleta.id, supervisor.id)

        canceled = boleta_service.cancel_boleta(boleta.id, supervisor.id, notes="Client closed")

        assert canceled.status == BOLETA_STATUS_CANCELED
        assert canceled.canceled_at is not None
        assert len(_history_statuses(db_session, boleta.id)) == 1 + steps + 1


class TestRejectedTransitions:

    def test_approve_a_sent_boleta(self, db_session, boleta, supervisor):
        boleta_service.approve_boleta(boleta.id, supervisor.id)
        boleta_service.send_boleta(boleta.id, supervisor.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            boleta_service.approve_boleta(boleta.id, supervisor.id)

        assert exc_info.value.current == BOLETA_STATUS_SENT
        assert exc_info.value.requested == BOLETA_STATUS_APPROVED
        assert db_session.get(RestockBoleta, boleta.id).status == BOLETA_STATUS_SENT

    def test_canceled_is_terminal(self, db_session, boleta, supervisor):
        boleta_service.cancel_boleta(boleta.id, supervisor.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            boleta_service.approve_boleta(boleta.id, supervisor.id)

        assert exc_info.value.current == BOLETA_STATUS_CANCELED
        assert _history_statuses(db_session, boleta.id) == [BOLETA_STATUS_PENDING, BOLETA_STATUS_CANCELED]

    def test_cannot_skip_to_invoiced(self, db_session, boleta, supervisor):
        with pytest.raises(InvalidTransitionError):
            boleta_service.invoice_boleta(boleta.id, supervisor.id, erp_invoice_number="FAC-1")

        assert db_session.get(RestockBoleta, boleta.id).status == BOLETA_STATUS_PENDING

    def test_cannot_skip_to_sent(self, db_session, boleta, supervisor):
        with pytest.raises(InvalidTransitionError):
            boleta_service.send_boleta(boleta.id, supervisor.id)

    def test_same_status_is_rejected(self, db_session, boleta, supervisor):
        boleta_service.approve_boleta(boleta.id, supervisor.id)

        with pytest.raises(InvalidTransitionError):
            boleta_service.approve_boleta(boleta.id, supervisor.id)

        assert len(_history_statuses(db_session, boleta.id)) == 2

    def test_invoiced_cannot_be_canceled(self, db_session, boleta, supervisor):
        boleta_service.approve_boleta(boleta.id, supervisor.id)
        boleta_service.send_boleta(boleta.id, supervisor.id)
        boleta_service.invoice_boleta(boleta.id, supervisor.id, erp_invoice_number="FAC-9")

        with pytest.raises(InvalidTransitionError):
            boleta_service.cancel_boleta(boleta.id, supervisor.id)

    @pytest.mark.parametrize("invoice_number", [None, "", "   "])
    def test_invoice_requires_erp_number(self, db_session, boleta, supervisor, invoice_number):
        boleta_service.approve_boleta(boleta.id, supervisor.id)
        boleta_service.send_boleta(boleta.id, supervisor.id)

        with pytest.raises(ValidationError):
            boleta_service.transition_boleta(
                boleta.id, BOLETA_STATUS_INVOICED, supervisor.id, erp_invoice_number=invoice_number
            )

        assert db_session.get(RestockBoleta, boleta.id).status == BOLETA_STATUS_SENT
        assert len(_history_statuses(db_session, boleta.id)) == 3

    def test_unknown_boleta(self, db_session, supervisor):
        with pytest.raises(NotFoundError):
            boleta_service.approve_boleta(999_999, supervisor.id)


class TestPermissions:

    @pytest.mark.parametrize(
        "action,permission",
        [
            (lambda b, u: boleta_service.approve_boleta(b, u), "APPROVE_BOLETAS"),
            (lambda b, u: boleta_service.cancel_boleta(b, u), "CANCEL_BOLETAS"),
        ],
    )
    def test_counter_cannot_decide(self, db_session, boleta, counter, action, permission):
        with pytest.raises(PermissionDeniedError) as exc_info:
            action(boleta.id, counter.id)

        assert exc_info.value.permission == permission
        assert db_session.get(RestockBoleta, boleta.id).status == BOLETA_STATUS_PENDING
        assert _history_statuses(db_session, boleta.id) == [BOLETA_STATUS_PENDING]

    def test_capability_is_rechecked_each_time(self, db_session, agreement, boleta, supervisor, counter):
        second = _submit_count(agreement.id, counter.id, {"R": 2})

        boleta_service.approve_boleta(boleta.id, supervisor.id)

        permission_service.grant_permission_override(
            user_id=supervisor.id,
            permission_code="APPROVE_BOLETAS",
            granted_by_user_id=None,
            override_type="DENY",
            reason="Suspended",
        )

        with pytest.raises(PermissionDeniedError):
            boleta_service.approve_boleta(second.id, supervisor.id)

        assert db_session.get(RestockBoleta, second.id).status == BOLETA_STATUS_PENDING

    def test_grant_override_enables_transition(self, db_session, boleta, counter):
        permission_service.grant_permission_override(
            user_id=counter.id,
            permission_code="APPROVE_BOLETAS",
            granted_by_user_id=None,
            override_type="GRANT",
        )

        approved = boleta_service.approve_boleta(boleta.id, counter.id)
        assert approved.status == BOLETA_STATUS_APPROVED

    def test_invalid_transition_reported_before_permission(self, db_session, boleta, counter):
        # Counter lacks SEND_BOLETAS, but pending -> sent is illegal for everyone
        with pytest.raises(InvalidTransitionError):
            boleta_service.send_boleta(boleta.id, counter.id)


class TestHistoryIsAppendOnly:

    def test_update_is_rejected(self, db_session, boleta):
        entry = db_session.query(BoletaHistoryEntry).filter_by(boleta_id=boleta.id).one()
        entry.notes = "rewritten"

        with pytest.raises(ValueError):
            db_session.flush()
        db_session.rollback()

    def test_delete_is_rejected(self, db_session, boleta):
        entry = db_session.query(BoletaHistoryEntry).filter_by(boleta_id=boleta.id).one()
        db_session.delete(entry)

        with pytest.raises(ValueError):
            db_session.flush()
        db_session.rollback()


class TestUpdateLines:

    def test_supervisor_corrects_quantity(self, db_session, boleta, supervisor):
        lines = {line.product_id: line for line in boleta.lines}

        boleta_service.update_boleta_lines(
            boleta.id,
            [{"line_id": lines["P"].id, "replenish_quantity": 5}],
            supervisor.id,
            notes="Client asked for less",
        )

        refreshed = db_session.get(RestockBoleta, boleta.id)
        by_product = {line.product_id: line for line in refreshed.lines}
        assert by_product["P"].replenish_quantity == 5
        assert by_product["P"].is_manually_edited is True
        assert by_product["Q"].is_manually_edited is False
        assert refreshed.notes == "Client asked for less"

        # Not a status change
        assert _history_statuses(db_session, boleta.id) == [BOLETA_STATUS_PENDING]

    def test_unchanged_value_is_not_flagged(self, db_session, boleta, supervisor):
        line = next(line for line in boleta.lines if line.product_id == "P")

        boleta_service.update_boleta_lines(
            boleta.id, [{"line_id": line.id, "replenish_quantity": 7}], supervisor.id
        )

        assert db_session.get(RestockBoleta, boleta.id).lines[0].is_manually_edited is False

    def test_only_while_pending(self, db_session, boleta, supervisor):
        line_id = boleta.lines[0].id
        boleta_service.approve_boleta(boleta.id, supervisor.id)

        with pytest.raises(ConflictError):
            boleta_service.update_boleta_lines(
                boleta.id, [{"line_id": line_id, "replenish_quantity": 1}], supervisor.id
            )

    def test_requires_approve_capability(self, db_session, boleta, counter):
        with pytest.raises(PermissionDeniedError):
            boleta_service.update_boleta_lines(
                boleta.id, [{"line_id": boleta.lines[0].id, "replenish_quantity": 1}], counter.id
            )

    def test_line_must_belong_to_boleta(self, db_session, boleta, supervisor):
        with pytest.raises(NotFoundError):
            boleta_service.update_boleta_lines(
                boleta.id, [{"line_id": 999_999, "replenish_quantity": 1}], supervisor.id
            )

    @pytest.mark.parametrize(
        "edits",
        [
            [],
            None,
            [{"line_id": "x", "replenish_quantity": 1}],
            [{"line_id": 1, "replenish_quantity": -3}],
            ["not-an-object"],
        ],
    )
    def test_rejects_malformed_edits(self, db_session, boleta, supervisor, edits):
        with pytest.raises(ValidationError):
            boleta_service.update_boleta_lines(boleta.id, edits, supervisor.id)

    def test_edit_then_approve(self, db_session, boleta, supervisor):
        line_id = boleta.lines[0].id
        boleta_service.update_boleta_lines(boleta.id, [{"line_id": line_id, "replenish_quantity": 2}], supervisor.id)

        approved = boleta_service.approve_boleta(boleta.id, supervisor.id)
        assert approved.status == BOLETA_STATUS_APPROVED


class TestReads:

    def test_details(self, db_session, agreement, boleta):
        details = boleta_service.get_boleta_details(boleta.id)

        assert details["boleta"]["consecutive"] == 7
        assert details["boleta"]["client_name"] == "Client CLI-X"
        assert details["agreement"]["id"] == agreement.id
        assert [line["product_id"] for line in details["lines"]] == ["P", "Q"]
        assert [entry["status"] for entry in details["history"]] == [BOLETA_STATUS_PENDING]
        assert details["totals"]["line_count"] == 2
        assert details["totals"]["replenish_quantity"] == 11
        assert details["totals"]["replenish_value_cents"] == 7 * 500 + 4 * 1200

    def test_details_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            boleta_service.get_boleta_details(999_999)

    def test_list_filters(self, db_session, agreement, other_agreement, counter, supervisor):
        first = _submit_count(agreement.id, counter.id, {"P": 1})
        second = _submit_count(agreement.id, counter.id, {"P": 2})
        third = _submit_count(other_agreement.id, counter.id, {"Z": 1})
        boleta_service.approve_boleta(second.id, supervisor.id)

        rows, total = boleta_service.list_boletas()
        assert total == 3
        assert [b.id for b in rows] == [third.id, second.id, first.id]

        rows, total = boleta_service.list_boletas(statuses=[BOLETA_STATUS_PENDING])
        assert total == 2
        assert {b.id for b in rows} == {first.id, third.id}

        rows, total = boleta_service.list_boletas(agreement_id=agreement.id)
        assert {b.consecutive for b in rows} == {7, 8}

        rows, total = boleta_service.list_boletas(limit=1, offset=1)
        assert total == 3
        assert [b.id for b in rows] == [second.id]

    def test_list_date_range(self, db_session, boleta):
        now = utcnow()

        rows, total = boleta_service.list_boletas(date_from=now - timedelta(hours=1), date_to=now + timedelta(hours=1))
        assert total == 1

        rows, total = boleta_service.list_boletas(date_from=now + timedelta(hours=1))
        assert total == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"statuses": ["archived"]},
            {"limit": 0},
            {"limit": 501},
            {"offset": -1},
        ],
    )
    def test_list_rejects_bad_filters(self, db_session, kwargs):
        with pytest.raises(ValidationError):
            boleta_service.list_boletas(**kwargs)
