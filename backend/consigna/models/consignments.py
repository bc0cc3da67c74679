from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from ..time_utils import to_utc_z


SESSION_STATUS_ACTIVE = "active"
SESSION_STATUS_SUBMITTED = "submitted"
SESSION_STATUS_CANCELED = "canceled"

SESSION_STATUSES = (SESSION_STATUS_ACTIVE, SESSION_STATUS_SUBMITTED, SESSION_STATUS_CANCELED)


class Agreement(db.Model):
    """
    Client consignment contract.

    The agreement owns the boleta numbering counter. next_boleta_number is
    only ever changed by sequence_service.next_boleta_number, as a SQL-side
    increment inside the transaction that creates the boleta.
    """
    __tablename__ = "consignment_agreements"
    __table_args__ = (
        db.CheckConstraint("next_boleta_number >= 1", name="ck_agreements_next_number_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    client_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    client_name = db.Column(db.String(255), nullable=False)
    erp_warehouse_id = db.Column(db.String(64), nullable=True)

    next_boleta_number = db.Column(db.Integer, nullable=False, default=1)

    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    products = db.relationship(
        "ConsignedProduct",
        backref="agreement",
        lazy=True,
        order_by="ConsignedProduct.product_id",
    )

    def __repr__(self) -> str:
        return f"<Agreement id={self.id} client_id={self.client_id!r} next={self.next_boleta_number}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "client_name": self.client_name,
            "erp_warehouse_id": self.erp_warehouse_id,
            "next_boleta_number": self.next_boleta_number,
            "notes": self.notes,
            "is_active": self.is_active,
        }


class ConsignedProduct(db.Model):
    """
    A product authorized under an agreement, with its stock ceiling and price.

    Read-only for the counting and boleta services; boleta lines copy these
    values at creation time.
    """
    __tablename__ = "consignment_products"
    __table_args__ = (
        db.UniqueConstraint("agreement_id", "product_id", name="uq_consignment_products_agreement_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    agreement_id = db.Column(db.Integer, db.ForeignKey("consignment_agreements.id"), nullable=False, index=True)

    # ERP product code
    product_id = db.Column(db.String(64), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    client_product_code = db.Column(db.String(64), nullable=True)

    max_stock = db.Column(db.Float, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agreement_id": self.agreement_id,
            "product_id": self.product_id,
            "description": self.description,
            "client_product_code": self.client_product_code,
            "max_stock": self.max_stock,
            "price_cents": self.price_cents,
        }


class CountingSession(db.Model):
    """
    Exclusive, in-progress count of one agreement.

    The active row *is* the lock: the partial unique index below allows at
    most one row with status='active' per agreement, so acquiring the lock
    is a single conditional insert.

    LIFECYCLE:
    active -> submitted (converted into exactly one boleta)
    active -> canceled  (holder cancel, or administrative forced release)
    """
    __tablename__ = "counting_sessions"
    __table_args__ = (
        db.Index(
            "uq_counting_sessions_one_active_per_agreement",
            "agreement_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        db.Index("ix_counting_sessions_user_status", "user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    agreement_id = db.Column(db.Integer, db.ForeignKey("consignment_agreements.id"), nullable=False)

    # Lock holder
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SESSION_STATUS_ACTIVE)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    force_released = db.Column(db.Boolean, nullable=False, default=False)
    close_reason = db.Column(db.Text, nullable=True)

    agreement = db.relationship("Agreement")
    holder = db.relationship("User", foreign_keys=[user_id])
    closed_by = db.relationship("User", foreign_keys=[closed_by_user_id])
    lines = db.relationship(
        "CountingLine",
        backref="session",
        lazy=True,
        order_by="CountingLine.product_id",
    )

    @property
    def is_active(self) -> bool:
        return self.status == SESSION_STATUS_ACTIVE

    def __repr__(self) -> str:
        return f"<CountingSession id={self.id} agreement_id={self.agreement_id} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agreement_id": self.agreement_id,
            "user_id": self.user_id,
            "holder_name": self.holder.display_name if self.holder else None,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "closed_by_user_id": self.closed_by_user_id,
            "force_released": self.force_released,
            "close_reason": self.close_reason,
        }


class CountingLine(db.Model):
    """One counted product within a session. Last write wins."""
    __tablename__ = "counting_session_lines"
    __table_args__ = (
        db.UniqueConstraint("session_id", "product_id", name="uq_counting_lines_session_product"),
        db.CheckConstraint("counted_quantity >= 0", name="ck_counting_lines_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("counting_sessions.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=False)
    counted_quantity = db.Column(db.Float, nullable=False)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "product_id": self.product_id,
            "counted_quantity": self.counted_quantity,
            "updated_at": to_utc_z(self.updated_at),
        }
