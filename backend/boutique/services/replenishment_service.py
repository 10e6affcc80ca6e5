# Overview: Supplier replenishment orders and goods receipt against them.

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Product, ReplenishmentOrder, ReplenishmentOrderLine, Supplier, User
from ..models.inventory import MOVEMENT_IN
from ..models.replenishment import (
    LINE_STATUS_COMPLETE,
    LINE_STATUS_PARTIAL,
    LINE_STATUS_PENDING,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETE,
    ORDER_STATUS_PARTIAL,
    ORDER_STATUS_PENDING,
)
from ..time_utils import normalize_datetime, utcnow
from ..validation import (
    BusinessRuleViolation,
    NotFoundError,
    ValidationError,
    parse_range_bound,
    require_id,
    require_non_negative_int,
    require_positive_int,
)
from .alert_service import evaluate
from .concurrency import lock_for_update, transaction
from .document_service import DOC_REPLENISHMENT, next_document_number
from .ledger_service import apply_movement
from .pagination import paginate_query


ORDER_STATUSES = (ORDER_STATUS_PENDING, ORDER_STATUS_PARTIAL, ORDER_STATUS_COMPLETE, ORDER_STATUS_CANCELLED)

# Orders in these states still accept receipts
RECEIVABLE_STATUSES = {ORDER_STATUS_PENDING, ORDER_STATUS_PARTIAL}


def line_status(quantity_requested: int, quantity_received: int) -> str:
    if quantity_received <= 0:
        return LINE_STATUS_PENDING
    if quantity_received >= quantity_requested:
        return LINE_STATUS_COMPLETE
    return LINE_STATUS_PARTIAL


def order_status(lines) -> str:
    """COMPLETE only if every line is COMPLETE; PARTIAL once anything arrived."""
    lines = list(lines)
    if lines and all(line.status == LINE_STATUS_COMPLETE for line in lines):
        return ORDER_STATUS_COMPLETE
    if any((line.quantity_received or 0) > 0 for line in lines):
        return ORDER_STATUS_PARTIAL
    return ORDER_STATUS_PENDING


def _require_user(user_id, field: str) -> None:
    user_id = require_id(user_id, field)
    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found", details={field: user_id})


def create_order(
    *,
    supplier_id: int,
    requested_by_user_id: int,
    lines: list[dict],
    expected_at=None,
    notes: str | None = None,
) -> ReplenishmentOrder:
    """
    Open a PENDING replenishment order.

    Each line: {"product_id", "quantity", "estimated_unit_cost_cents" (optional)}.
    """
    supplier_id = require_id(supplier_id, "supplier_id")
    if not lines:
        raise ValidationError("A replenishment order requires at least one line")
    try:
        expected_dt = normalize_datetime(expected_at)
    except ValueError:
        raise ValidationError("expected_at must be an ISO-8601 datetime")

    normalized = []
    for index, raw in enumerate(lines):
        product_id = require_id(raw.get("product_id"), f"lines[{index}].product_id")
        quantity = require_positive_int(raw.get("quantity"), f"lines[{index}].quantity")
        cost = raw.get("estimated_unit_cost_cents")
        if cost is not None:
            cost = require_non_negative_int(cost, f"lines[{index}].estimated_unit_cost_cents")
        normalized.append((product_id, quantity, cost))

    with transaction("create_replenishment_order", supplier_id=supplier_id, actor_user_id=requested_by_user_id):
        _require_user(requested_by_user_id, "requested_by_user_id")
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFoundError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
        if not supplier.is_active:
            raise ValidationError(f"Supplier {supplier.name} is not active", details={"supplier_id": supplier_id})

        order = ReplenishmentOrder(
            code=next_document_number(document_type=DOC_REPLENISHMENT),
            supplier_id=supplier_id,
            requested_by_user_id=requested_by_user_id,
            status=ORDER_STATUS_PENDING,
            requested_at=utcnow(),
            expected_at=expected_dt,
            notes=(notes or "").strip() or None,
        )

        estimated_total = 0
        for product_id, quantity, cost in normalized:
            product = db.session.get(Product, product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
            if cost is None:
                cost = product.buy_price_cents
            order.lines.append(ReplenishmentOrderLine(
                product_id=product_id,
                quantity_requested=quantity,
                quantity_received=0,
                estimated_unit_cost_cents=cost,
                status=LINE_STATUS_PENDING,
            ))
            estimated_total += quantity * (cost or 0)

        order.estimated_total_cents = estimated_total
        db.session.add(order)

    current_app.logger.info(
        "Replenishment order created: %s supplier_id=%s lines=%s", order.code, supplier_id, len(normalized)
    )
    return order


def register_receipt(line_id: int, quantity_received: int, actor_user_id: int) -> ReplenishmentOrderLine:
    """
    Receive goods for one order line.

    The quantity is clamped to what is still outstanding on the line; only
    the clamped amount enters stock.
    """
    quantity_received = require_positive_int(quantity_received, "quantity_received")

    with transaction("register_receipt", line_id=line_id, actor_user_id=actor_user_id):
        _require_user(actor_user_id, "actor_user_id")
        line = (
            lock_for_update(db.session.query(ReplenishmentOrderLine).filter_by(id=line_id))
            .populate_existing()
            .first()
        )
        if line is None:
            raise NotFoundError(f"Replenishment line {line_id} not found", details={"line_id": line_id})

        order = line.order
        if order.status not in RECEIVABLE_STATUSES:
            raise BusinessRuleViolation(
                f"Order {order.code} is {order.status} and cannot receive goods",
                details={"order_id": order.id, "status": order.status},
            )

        accepted = min(quantity_received, line.quantity_remaining)
        if accepted <= 0:
            raise BusinessRuleViolation(
                f"Line {line.id} of order {order.code} is already fully received",
                details={"line_id": line.id, "quantity_requested": line.quantity_requested},
            )

        apply_movement(
            product_id=line.product_id,
            movement_type=MOVEMENT_IN,
            quantity=accepted,
            actor_user_id=actor_user_id,
            replenishment_line_id=line.id,
            note=f"Replenishment {order.code}",
        )
        evaluate(line.product_id)

        line.quantity_received = (line.quantity_received or 0) + accepted
        line.status = line_status(line.quantity_requested, line.quantity_received)

        order.status = order_status(order.lines)
        if order.status == ORDER_STATUS_COMPLETE:
            order.completed_at = utcnow()

    if accepted < quantity_received:
        current_app.logger.warning(
            "Receipt for line %s clamped from %s to %s", line_id, quantity_received, accepted
        )
    current_app.logger.info(
        "Goods received: order=%s line=%s quantity=%s order_status=%s",
        order.code, line_id, accepted, order.status,
    )
    return line


def cancel_order(order_id: int, actor_user_id: int, reason: str) -> ReplenishmentOrder:
    """Cancel an order on which nothing has been received yet."""
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")

    with transaction("cancel_replenishment_order", order_id=order_id, actor_user_id=actor_user_id):
        _require_user(actor_user_id, "actor_user_id")
        order = (
            lock_for_update(db.session.query(ReplenishmentOrder).filter_by(id=order_id))
            .populate_existing()
            .first()
        )
        if order is None:
            raise NotFoundError(f"Replenishment order {order_id} not found", details={"order_id": order_id})
        if order.status != ORDER_STATUS_PENDING:
            raise BusinessRuleViolation(
                f"Order {order.code} is {order.status}; only PENDING orders can be cancelled",
                details={"order_id": order.id, "status": order.status},
            )

        order.status = ORDER_STATUS_CANCELLED
        order.cancelled_at = utcnow()
        note = f"CANCELLED: {reason.strip()}"
        order.notes = f"{order.notes}\n{note}" if order.notes else note

    current_app.logger.info("Replenishment order cancelled: %s by user %s", order.code, actor_user_id)
    return order


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> ReplenishmentOrder:
    order = db.session.get(ReplenishmentOrder, order_id)
    if order is None:
        raise NotFoundError(f"Replenishment order {order_id} not found", details={"order_id": order_id})
    return order


def search_orders(
    *,
    supplier_id: int | None = None,
    status: str | None = None,
    start=None,
    end=None,
    page: int | None = 1,
    per_page: int | None = None,
) -> dict:
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(ReplenishmentOrder)
    if supplier_id is not None:
        q = q.filter(ReplenishmentOrder.supplier_id == supplier_id)
    if status is not None:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid order status {status!r}")
        q = q.filter(ReplenishmentOrder.status == status)
    if start_dt is not None:
        q = q.filter(ReplenishmentOrder.requested_at >= start_dt)
    if end_dt is not None:
        q = q.filter(ReplenishmentOrder.requested_at <= end_dt)

    q = q.order_by(ReplenishmentOrder.requested_at.desc(), ReplenishmentOrder.id.desc())
    return paginate_query(q, page=page, per_page=per_page, serialize=lambda o: o.to_dict())


def list_overdue_orders(now: datetime | None = None) -> list[ReplenishmentOrder]:
    """Orders whose expected date has passed and that are still open."""
    now = now or utcnow()
    return (
        db.session.query(ReplenishmentOrder)
        .filter(
            ReplenishmentOrder.expected_at.isnot(None),
            ReplenishmentOrder.expected_at < now,
            ReplenishmentOrder.status.in_(RECEIVABLE_STATUSES),
        )
        .order_by(ReplenishmentOrder.expected_at.asc(), ReplenishmentOrder.id.asc())
        .all()
    )
