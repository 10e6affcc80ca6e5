from __future__ import annotations

from ..extensions import db
from boutique.time_utils import utcnow, to_utc_z


SALE_STATUS_PAID = "PAID"
SALE_STATUS_ANNULLED = "ANNULLED"


class Sale(db.Model):
    """
    Sale document.

    LIFECYCLE: registered PAID (stock already decremented) -> ANNULLED
    (stock restored by compensating IN movements). No other transitions.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_sales_code"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable sale code (e.g., "V-000123"), allocated from document_sequences
    code = db.Column(db.String(32), nullable=False)

    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    seller_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_PAID, index=True)

    # Totals (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    # Annulment audit trail
    annulled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    annulled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "SaleLine",
        backref=db.backref("sale", lazy=True),
        lazy=True,
        order_by="SaleLine.id",
        cascade="all, delete-orphan",
    )
    client = db.relationship("Client")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "client_id": self.client_id,
            "seller_user_id": self.seller_user_id,
            "payment_method_id": self.payment_method_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "created_at": to_utc_z(self.created_at),
            "annulled_at": to_utc_z(self.annulled_at) if self.annulled_at else None,
            "annulled_by_user_id": self.annulled_by_user_id,
            "notes": self.notes,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class SaleLine(db.Model):
    """Individual line items on a sale document."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    # max(0, quantity * unit_price_cents - discount_cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)

    # OUT movement written when the sale was registered
    movement_id = db.Column(db.Integer, db.ForeignKey("inventory_movements.id"), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "subtotal_cents": self.subtotal_cents,
            "movement_id": self.movement_id,
        }
