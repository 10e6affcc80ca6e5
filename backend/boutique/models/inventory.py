from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from boutique.time_utils import utcnow, to_utc_z


MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_RETURN = "RETURN"

MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT, MOVEMENT_RETURN)


class InventoryMovement(db.Model):
    """
    Immutable ledger entry for one stock-affecting event.

    LEDGER INVARIANTS:
    - Append-only: rows are never updated or deleted (enforced by the mapper hooks below).
    - stock_before/stock_after are snapshots, so the audit trail can be read
      without replaying the whole history.
    - For ADJUSTMENT, quantity is the absolute target stock, not a delta.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_movements_type_occurred", "movement_type", "occurred_at"),
        db.CheckConstraint("stock_after >= 0", name="ck_movements_stock_after_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    stock_before = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Traceability to the aggregate that caused the movement
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True, index=True)
    replenishment_line_id = db.Column(
        db.Integer, db.ForeignKey("replenishment_order_lines.id"), nullable=True, index=True
    )

    note = db.Column(db.String(255), nullable=True)

    product = db.relationship("Product")

    @property
    def delta(self) -> int:
        return self.stock_after - self.stock_before

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "stock_before": self.stock_before,
            "stock_after": self.stock_after,
            "delta": self.delta,
            "occurred_at": to_utc_z(self.occurred_at),
            "actor_user_id": self.actor_user_id,
            "sale_id": self.sale_id,
            "return_id": self.return_id,
            "replenishment_line_id": self.replenishment_line_id,
            "note": self.note,
        }


class ImmutableMovementError(RuntimeError):
    """Raised when code tries to rewrite ledger history."""


@event.listens_for(InventoryMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableMovementError(f"Inventory movement {target.id} is immutable")


@event.listens_for(InventoryMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableMovementError(f"Inventory movement {target.id} cannot be deleted")


ALERT_LOW_STOCK = "LOW_STOCK"
ALERT_OUT_OF_STOCK = "OUT_OF_STOCK"
ALERT_TYPES = (ALERT_LOW_STOCK, ALERT_OUT_OF_STOCK)

URGENCY_LOW = "LOW"
URGENCY_MEDIUM = "MEDIUM"
URGENCY_HIGH = "HIGH"
URGENCY_CRITICAL = "CRITICAL"

# Sort order for dashboards (most urgent first)
URGENCY_PRIORITY = {
    URGENCY_CRITICAL: 4,
    URGENCY_HIGH: 3,
    URGENCY_MEDIUM: 2,
    URGENCY_LOW: 1,
}


class StockAlert(db.Model):
    """
    Advisory alert raised when a product reaches its stock threshold.

    LIFECYCLE: created unread -> marked read. Alerts are never deleted.
    At most one UNREAD alert per (product, alert_type) exists at a time.
    """
    __tablename__ = "stock_alerts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    alert_type = db.Column(db.String(20), nullable=False, index=True)
    urgency = db.Column(db.String(10), nullable=False, index=True)
    message = db.Column(db.String(500), nullable=False)

    stock_at_alert = db.Column(db.Integer, nullable=False)
    threshold = db.Column(db.Integer, nullable=False)

    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    read_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Free text: what the manager did about it (e.g. "replenishment REAB-000012")
    action_taken = db.Column(db.String(500), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "alert_type": self.alert_type,
            "urgency": self.urgency,
            "message": self.message,
            "stock_at_alert": self.stock_at_alert,
            "threshold": self.threshold,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
            "read_at": to_utc_z(self.read_at) if self.read_at else None,
            "read_by_user_id": self.read_by_user_id,
            "action_taken": self.action_taken,
        }


# Backs the in-code dedup check against concurrent sweeps
db.Index(
    "uq_stock_alerts_unread_product_type",
    StockAlert.product_id,
    StockAlert.alert_type,
    unique=True,
    sqlite_where=StockAlert.is_read == db.false(),
    postgresql_where=StockAlert.is_read == db.false(),
)
