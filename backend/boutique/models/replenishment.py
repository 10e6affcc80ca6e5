from __future__ import annotations

from ..extensions import db
from boutique.time_utils import utcnow, to_utc_z


ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_PARTIAL = "PARTIAL"
ORDER_STATUS_COMPLETE = "COMPLETE"
ORDER_STATUS_CANCELLED = "CANCELLED"

LINE_STATUS_PENDING = "PENDING"
LINE_STATUS_PARTIAL = "PARTIAL"
LINE_STATUS_COMPLETE = "COMPLETE"


class ReplenishmentOrder(db.Model):
    """
    Purchase order to a supplier used to restock inventory.

    Status is derived from the lines on every receipt:
    COMPLETE only when every line is COMPLETE, PARTIAL once anything arrived.
    """
    __tablename__ = "replenishment_orders"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_replenishment_orders_code"),
        db.Index("ix_replenishment_orders_status_expected", "status", "expected_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    expected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    estimated_total_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    supplier = db.relationship("Supplier")
    lines = db.relationship(
        "ReplenishmentOrderLine",
        backref=db.backref("order", lazy=True),
        lazy=True,
        order_by="ReplenishmentOrderLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "supplier_id": self.supplier_id,
            "requested_by_user_id": self.requested_by_user_id,
            "status": self.status,
            "requested_at": to_utc_z(self.requested_at),
            "expected_at": to_utc_z(self.expected_at) if self.expected_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "estimated_total_cents": self.estimated_total_cents,
            "notes": self.notes,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class ReplenishmentOrderLine(db.Model):
    __tablename__ = "replenishment_order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity_requested > 0", name="ck_repl_lines_requested_positive"),
        db.CheckConstraint(
            "quantity_received >= 0 AND quantity_received <= quantity_requested",
            name="ck_repl_lines_received_bounds",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("replenishment_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_requested = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False, default=0)
    estimated_unit_cost_cents = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=LINE_STATUS_PENDING)

    product = db.relationship("Product")

    @property
    def quantity_remaining(self) -> int:
        return max(0, self.quantity_requested - (self.quantity_received or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity_requested": self.quantity_requested,
            "quantity_received": self.quantity_received,
            "quantity_remaining": self.quantity_remaining,
            "estimated_unit_cost_cents": self.estimated_unit_cost_cents,
            "status": self.status,
        }
