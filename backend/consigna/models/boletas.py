from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z


BOLETA_STATUS_PENDING = "pending"
BOLETA_STATUS_APPROVED = "approved"
BOLETA_STATUS_SENT = "sent"
BOLETA_STATUS_INVOICED = "invoiced"
BOLETA_STATUS_CANCELED = "canceled"

BOLETA_STATUSES = (
    BOLETA_STATUS_PENDING,
    BOLETA_STATUS_APPROVED,
    BOLETA_STATUS_SENT,
    BOLETA_STATUS_INVOICED,
    BOLETA_STATUS_CANCELED,
)


class RestockBoleta(db.Model):
    """
    Replenishment document produced from a submitted counting session.

    LIFECYCLE (see boleta_service.TRANSITIONS):
    pending -> approved -> sent -> invoiced
    pending | approved | sent -> canceled

    The consecutive number is assigned once, inside the creation
    transaction, and is unique per agreement.
    """
    __tablename__ = "restock_boletas"
    __table_args__ = (
        db.UniqueConstraint("agreement_id", "consecutive", name="uq_restock_boletas_agreement_consecutive"),
        db.UniqueConstraint("session_id", name="uq_restock_boletas_session"),
        db.Index("ix_restock_boletas_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    consecutive = db.Column(db.Integer, nullable=False)
    agreement_id = db.Column(db.Integer, db.ForeignKey("consignment_agreements.id"), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("counting_sessions.id"), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=BOLETA_STATUS_PENDING, index=True)

    # User attribution for accountability
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    submitted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Timestamps for each lifecycle stage
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    invoiced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    erp_invoice_number = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    agreement = db.relationship("Agreement", backref=db.backref("boletas", lazy=True))
    session = db.relationship("CountingSession", backref=db.backref("boleta", uselist=False))
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    submitted_by = db.relationship("User", foreign_keys=[submitted_by_user_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])
    lines = db.relationship(
        "BoletaLine",
        backref="boleta",
        lazy=True,
        order_by="BoletaLine.id",
    )
    history = db.relationship(
        "BoletaHistoryEntry",
        backref="boleta",
        lazy=True,
        order_by="BoletaHistoryEntry.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<RestockBoleta id={self.id} agreement_id={self.agreement_id} consecutive={self.consecutive} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "consecutive": self.consecutive,
            "agreement_id": self.agreement_id,
            "client_name": self.agreement.client_name if self.agreement else None,
            "session_id": self.session_id,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "submitted_by_user_id": self.submitted_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "sent_at": to_utc_z(self.sent_at) if self.sent_at else None,
            "invoiced_at": to_utc_z(self.invoiced_at) if self.invoiced_at else None,
            "canceled_at": to_utc_z(self.canceled_at) if self.canceled_at else None,
            "erp_invoice_number": self.erp_invoice_number,
            "notes": self.notes,
        }


class BoletaLine(db.Model):
    """
    Snapshot of one product at boleta creation time.

    description, max_stock and price_cents are copies, not references:
    later catalog edits must not change an issued document.
    """
    __tablename__ = "boleta_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    boleta_id = db.Column(db.Integer, db.ForeignKey("restock_boletas.id"), nullable=False, index=True)

    product_id = db.Column(db.String(64), nullable=False)
    product_description = db.Column(db.String(255), nullable=False)
    client_product_code = db.Column(db.String(64), nullable=True)

    counted_quantity = db.Column(db.Float, nullable=False)
    replenish_quantity = db.Column(db.Float, nullable=False)
    max_stock = db.Column(db.Float, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)

    is_manually_edited = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "boleta_id": self.boleta_id,
            "product_id": self.product_id,
            "product_description": self.product_description,
            "client_product_code": self.client_product_code,
            "counted_quantity": self.counted_quantity,
            "replenish_quantity": self.replenish_quantity,
            "max_stock": self.max_stock,
            "price_cents": self.price_cents,
            "is_manually_edited": self.is_manually_edited,
        }


class BoletaHistoryEntry(db.Model):
    """
    Audit record of one boleta status change (creation included).

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "boleta_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    boleta_id = db.Column(db.Integer, db.ForeignKey("restock_boletas.id"), nullable=False, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    # Name at the time of the action
    actor_name = db.Column(db.String(255), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "boleta_id": self.boleta_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "status": self.status,
            "notes": self.notes,
            "actor_user_id": self.actor_user_id,
            "actor_name": self.actor_name,
        }


@event.listens_for(BoletaHistoryEntry, "before_update")
def _reject_history_update(_mapper, _connection, target: BoletaHistoryEntry) -> None:
    raise ValueError(f"Boleta history entry {target.id} is append-only and cannot be updated")


@event.listens_for(BoletaHistoryEntry, "before_delete")
def _reject_history_delete(_mapper, _connection, target: BoletaHistoryEntry) -> None:
    raise ValueError(f"Boleta history entry {target.id} is append-only and cannot be deleted")
