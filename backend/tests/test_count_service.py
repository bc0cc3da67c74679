"""
Counting session tests.

Verifies:
- record_count upserts with last-write-wins and validates input
- submit creates exactly one numbered boleta atomically
- Empty counts and foreign sessions are rejected
- A failed submit leaves the session active and the counter untouched
"""

import math

import pytest

from consigna.errors import (
    EmptyCountError,
    LockHeldError,
    NotFoundError,
    PermissionDeniedError,
    SessionNotActiveError,
    ValidationError,
)
from consigna.models import Agreement, ConsignedProduct, CountingLine, CountingSession, RestockBoleta, SecurityEvent
from consigna.models.boletas import BOLETA_STATUS_PENDING
from consigna.models.consignments import (
    SESSION_STATUS_ACTIVE,
    SESSION_STATUS_CANCELED,
    SESSION_STATUS_SUBMITTED,
)
from consigna.permissions import COUNT_CONSIGNMENTS
from consigna.services import count_service, lock_service


@pytest.fixture
def session(db_session, agreement, counter):
    """Active counting session on agreement X held by the counter."""
    return lock_service.acquire(agreement.id, counter.id)


class TestRecordCount:

    def test_creates_line(self, db_session, session, counter):
        line = count_service.record_count(session.id, "P", 3, counter.id)

        assert line.session_id == session.id
        assert line.product_id == "P"
        assert line.counted_quantity == 3

    def test_last_write_wins(self, db_session, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)
        count_service.record_count(session.id, "P", 9, counter.id)
        count_service.record_count(session.id, "P", 2.5, counter.id)

        lines = db_session.query(CountingLine).filter_by(session_id=session.id).all()
        assert len(lines) == 1
        assert lines[0].counted_quantity == 2.5

    def test_zero_is_a_valid_count(self, db_session, session, counter):
        line = count_service.record_count(session.id, "Q", 0, counter.id)
        assert line.counted_quantity == 0

    @pytest.mark.parametrize("quantity", [-1, -0.5, math.nan, math.inf, "abc", True, None, [3]])
    def test_rejects_invalid_quantity(self, db_session, session, counter, quantity):
        with pytest.raises(ValidationError):
            count_service.record_count(session.id, "P", quantity, counter.id)

        assert db_session.query(CountingLine).filter_by(session_id=session.id).count() == 0

    def test_product_must_belong_to_agreement(self, db_session, session, counter, other_agreement):
        # "Z" exists, but only under agreement Y
        with pytest.raises(NotFoundError):
            count_service.record_count(session.id, "Z", 1, counter.id)

    def test_only_holder_records(self, db_session, session, counter_b):
        with pytest.raises(PermissionDeniedError):
            count_service.record_count(session.id, "P", 1, counter_b.id)

        assert db_session.query(CountingLine).filter_by(session_id=session.id).count() == 0
        event = db_session.query(SecurityEvent).one()
        assert event.user_id == counter_b.id
        assert event.action == COUNT_CONSIGNMENTS
        assert event.reason == "Not the session holder"

    def test_rejected_on_closed_session(self, db_session, session, counter):
        count_service.cancel_session(session.id, counter.id)

        with pytest.raises(SessionNotActiveError):
            count_service.record_count(session.id, "P", 1, counter.id)

    def test_unknown_session(self, db_session, counter):
        with pytest.raises(NotFoundError):
            count_service.record_count(999_999, "P", 1, counter.id)


class TestSubmit:

    def test_creates_numbered_boleta(self, db_session, agreement, session, counter, counter_b):
        """Agreement X starts at 7; counting P=3 with max stock 10 replenishes 7."""
        count_service.record_count(session.id, "P", 3, counter.id)

        boleta = count_service.submit_session(session.id, counter.id)

        assert boleta.consecutive == 7
        assert boleta.status == BOLETA_STATUS_PENDING
        assert boleta.agreement_id == agreement.id
        assert boleta.session_id == session.id
        assert boleta.created_by_user_id == counter.id
        assert boleta.submitted_by_user_id == counter.id

        assert len(boleta.lines) == 1
        line = boleta.lines[0]
        assert line.product_id == "P"
        assert line.counted_quantity == 3
        assert line.replenish_quantity == 7
        assert line.max_stock == 10
        assert line.price_cents == 500
        assert line.product_description == "Product P"
        assert line.client_product_code == "CX-P"
        assert line.is_manually_edited is False

        assert db_session.get(Agreement, agreement.id).next_boleta_number == 8

        closed = db_session.get(CountingSession, session.id)
        assert closed.status == SESSION_STATUS_SUBMITTED
        assert closed.closed_by_user_id == counter.id

        # Lock is free again
        assert lock_service.get_active_session_for_agreement(agreement.id) is None
        assert lock_service.acquire(agreement.id, counter_b.id).user_id == counter_b.id

    def test_creation_history_entry(self, db_session, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)

        boleta = count_service.submit_session(session.id, counter.id)

        assert len(boleta.history) == 1
        entry = boleta.history[0]
        assert entry.status == BOLETA_STATUS_PENDING
        assert entry.actor_user_id == counter.id
        assert entry.actor_name == "Carla Counter"
        assert entry.occurred_at is not None

    def test_replenish_clamps_at_zero(self, db_session, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)
        count_service.record_count(session.id, "Q", 9, counter.id)  # max stock 5
        count_service.record_count(session.id, "R", 8, counter.id)  # exactly max

        boleta = count_service.submit_session(session.id, counter.id)

        by_product = {line.product_id: line for line in boleta.lines}
        assert by_product["P"].replenish_quantity == 7
        assert by_product["Q"].replenish_quantity == 0
        assert by_product["R"].replenish_quantity == 0

    def test_lines_are_snapshots(self, db_session, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)
        boleta = count_service.submit_session(session.id, counter.id)

        product = db_session.query(ConsignedProduct).filter_by(product_id="P").one()
        product.max_stock = 50
        product.price_cents = 9999
        product.description = "Renamed"
        db_session.commit()

        line = db_session.get(RestockBoleta, boleta.id).lines[0]
        assert line.max_stock == 10
        assert line.price_cents == 500
        assert line.product_description == "Product P"
        assert line.replenish_quantity == 7

    def test_empty_count(self, db_session, agreement, session, counter):
        with pytest.raises(EmptyCountError):
            count_service.submit_session(session.id, counter.id)

        assert db_session.query(RestockBoleta).count() == 0
        assert db_session.get(CountingSession, session.id).status == SESSION_STATUS_ACTIVE
        assert db_session.get(Agreement, agreement.id).next_boleta_number == 7

    def test_submit_twice(self, db_session, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)
        count_service.submit_session(session.id, counter.id)

        with pytest.raises(SessionNotActiveError) as exc_info:
            count_service.submit_session(session.id, counter.id)

        assert exc_info.value.status == SESSION_STATUS_SUBMITTED
        assert db_session.query(RestockBoleta).count() == 1

    def test_only_holder_submits(self, db_session, session, counter, supervisor):
        count_service.record_count(session.id, "P", 3, counter.id)

        with pytest.raises(PermissionDeniedError):
            count_service.submit_session(session.id, supervisor.id)

        assert db_session.get(CountingSession, session.id).status == SESSION_STATUS_ACTIVE

    def test_failure_rolls_back_everything(self, db_session, agreement, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)
        count_service.record_count(session.id, "Q", 1, counter.id)

        # Product removed from the catalog while the count was open
        db_session.query(ConsignedProduct).filter_by(agreement_id=agreement.id, product_id="Q").delete()
        db_session.commit()

        with pytest.raises(NotFoundError):
            count_service.submit_session(session.id, counter.id)

        assert db_session.get(CountingSession, session.id).status == SESSION_STATUS_ACTIVE
        assert db_session.get(Agreement, agreement.id).next_boleta_number == 7
        assert db_session.query(RestockBoleta).count() == 0

    def test_failure_inside_boleta_creation_keeps_number(self, db_session, agreement, session, counter, monkeypatch):
        from consigna.services import boleta_service

        count_service.record_count(session.id, "P", 3, counter.id)
        original = boleta_service.create_boleta_from_session

        def _explode(counting_session, user_id):
            original(counting_session, user_id)
            raise RuntimeError("disk full")

        monkeypatch.setattr(boleta_service, "create_boleta_from_session", _explode)

        with pytest.raises(RuntimeError):
            count_service.submit_session(session.id, counter.id)

        assert db_session.get(CountingSession, session.id).status == SESSION_STATUS_ACTIVE
        assert db_session.get(Agreement, agreement.id).next_boleta_number == 7
        assert db_session.query(RestockBoleta).count() == 0

        monkeypatch.undo()
        boleta = count_service.submit_session(session.id, counter.id)
        assert boleta.consecutive == 7

    def test_consecutive_numbers_increase(self, db_session, agreement, counter):
        numbers = []
        for quantity in (1, 2, 3):
            counting = lock_service.acquire(agreement.id, counter.id)
            count_service.record_count(counting.id, "P", quantity, counter.id)
            numbers.append(count_service.submit_session(counting.id, counter.id).consecutive)

        assert numbers == [7, 8, 9]


class TestCancel:

    def test_cancel_produces_no_boleta(self, db_session, agreement, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)

        canceled = count_service.cancel_session(session.id, counter.id, reason="Wrong client")

        assert canceled.status == SESSION_STATUS_CANCELED
        assert canceled.force_released is False
        assert canceled.close_reason == "Wrong client"
        assert db_session.query(RestockBoleta).count() == 0
        assert db_session.query(CountingLine).filter_by(session_id=session.id).count() == 1
        assert db_session.get(Agreement, agreement.id).next_boleta_number == 7

    def test_cannot_submit_after_cancel(self, db_session, session, counter):
        count_service.record_count(session.id, "P", 3, counter.id)
        count_service.cancel_session(session.id, counter.id)

        with pytest.raises(SessionNotActiveError):
            count_service.submit_session(session.id, counter.id)


class TestStartOrResume:

    def test_resumes_own_session(self, db_session, agreement, session, counter):
        resumed, was_resumed = count_service.start_or_resume_session(agreement.id, counter.id)

        assert was_resumed is True
        assert resumed.id == session.id

    def test_starts_new_session(self, db_session, agreement, counter):
        started, was_resumed = count_service.start_or_resume_session(agreement.id, counter.id)

        assert was_resumed is False
        assert started.status == SESSION_STATUS_ACTIVE

    def test_does_not_take_over_foreign_session(self, db_session, agreement, session, counter_b):
        with pytest.raises(LockHeldError):
            count_service.start_or_resume_session(agreement.id, counter_b.id)


class TestSessionSummary:

    def test_lists_all_products_with_counts(self, db_session, agreement, session, counter):
        count_service.record_count(session.id, "Q", 2, counter.id)

        summary = count_service.get_session_summary(session.id)

        assert summary["session"]["id"] == session.id
        assert summary["agreement"]["client_id"] == "CLI-X"
        assert summary["product_count"] == 3
        assert summary["counted_count"] == 1
        counted = {p["product_id"]: p["counted_quantity"] for p in summary["products"]}
        assert counted == {"P": None, "Q": 2, "R": None}

    def test_unknown_session(self, db_session):
        with pytest.raises(NotFoundError):
            count_service.get_session_summary(999_999)
