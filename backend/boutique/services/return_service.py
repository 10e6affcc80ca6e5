# Overview: Customer return workflow; approval-gated reversal of sold quantities.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Product, Return, ReturnLine, Sale, SaleLine, User
from ..models.documents import (
    RETURN_STATUS_APPROVED,
    RETURN_STATUS_COMPLETED,
    RETURN_STATUS_PENDING,
    RETURN_STATUS_REJECTED,
)
from ..models.inventory import MOVEMENT_RETURN
from ..models.sales import SALE_STATUS_PAID
from ..time_utils import normalize_datetime, utcnow
from ..validation import (
    BusinessRuleViolation,
    NotFoundError,
    ValidationError,
    parse_range_bound,
    require_id,
    require_positive_int,
)
from .alert_service import evaluate
from .concurrency import lock_for_update, transaction
from .document_service import DOC_RETURN, next_document_number
from .ledger_service import apply_movement
from .pagination import paginate_query
"""
Return Lifecycle

    PENDING --approve--> APPROVED --complete--> COMPLETED
       |
       +--reject--> REJECTED (terminal)

- Stock only moves on complete(): one RETURN movement per line.
- A line may not exceed sold - already claimed, where "claimed" counts every
  return of the same sale that is not REJECTED (pending ones reserve quantity).
  This is stricter than "already returned" in the narrow sense, which would
  count only APPROVED and COMPLETED returns.
- Approving an APPROVED return is a no-op.
"""


# Allowed target statuses keyed by current status
RETURN_TRANSITIONS = {
    RETURN_STATUS_PENDING: {RETURN_STATUS_APPROVED, RETURN_STATUS_REJECTED},
    RETURN_STATUS_APPROVED: {RETURN_STATUS_COMPLETED},
    RETURN_STATUS_REJECTED: set(),
    RETURN_STATUS_COMPLETED: set(),
}

RETURN_STATUSES = tuple(RETURN_TRANSITIONS)


def _require_transition(ret: Return, target: str) -> None:
    if target not in RETURN_TRANSITIONS.get(ret.status, set()):
        raise BusinessRuleViolation(
            f"Return {ret.code} cannot move from {ret.status} to {target}",
            details={"return_id": ret.id, "status": ret.status, "target": target},
        )


def is_within_return_window(sale: Sale, now: datetime | None = None, window_days: int = 30) -> bool:
    now = now or utcnow()
    return normalize_datetime(now) <= normalize_datetime(sale.created_at) + timedelta(days=window_days)


def _sold_quantity(sale_id: int, product_id: int) -> int:
    return int(
        db.session.query(func.coalesce(func.sum(SaleLine.quantity), 0))
        .filter(SaleLine.sale_id == sale_id, SaleLine.product_id == product_id)
        .scalar()
        or 0
    )


def _claimed_quantity(sale_id: int, product_id: int) -> int:
    return int(
        db.session.query(func.coalesce(func.sum(ReturnLine.quantity), 0))
        .join(Return, Return.id == ReturnLine.return_id)
        .filter(
            Return.sale_id == sale_id,
            Return.status != RETURN_STATUS_REJECTED,
            ReturnLine.product_id == product_id,
        )
        .scalar()
        or 0
    )


def get_returnable_quantity(sale_id: int, product_id: int) -> int:
    """Quantity of a product in a sale that can still be claimed by a new return."""
    return max(0, _sold_quantity(sale_id, product_id) - _claimed_quantity(sale_id, product_id))


def _refund_cents(lines) -> int:
    return sum(line.quantity * line.product.sell_price_cents for line in lines)


def _lock_return(return_id: int) -> Return:
    ret = (
        lock_for_update(db.session.query(Return).filter_by(id=return_id))
        .populate_existing()
        .first()
    )
    if ret is None:
        raise NotFoundError(f"Return {return_id} not found", details={"return_id": return_id})
    return ret


def _require_user(user_id) -> None:
    user_id = require_id(user_id, "actor_user_id")
    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found", details={"actor_user_id": user_id})


def create_return(
    *,
    sale_id: int,
    actor_user_id: int,
    lines: list[dict],
    reason: str | None = None,
) -> Return:
    """
    Open a PENDING return against a PAID sale.

    Each line: {"product_id", "quantity", "reason" (optional)}.
    """
    if not lines:
        raise ValidationError("A return requires at least one line")

    requested: dict[int, int] = {}
    normalized = []
    for index, raw in enumerate(lines):
        product_id = require_id(raw.get("product_id"), f"lines[{index}].product_id")
        quantity = require_positive_int(raw.get("quantity"), f"lines[{index}].quantity")
        requested[product_id] = requested.get(product_id, 0) + quantity
        normalized.append((product_id, quantity, (raw.get("reason") or "").strip() or None))

    with transaction("create_return", sale_id=sale_id, actor_user_id=actor_user_id):
        _require_user(actor_user_id)
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        if sale.status != SALE_STATUS_PAID:
            raise BusinessRuleViolation(
                f"Sale {sale.code} is {sale.status}; only PAID sales accept returns",
                details={"sale_id": sale.id, "status": sale.status},
            )

        window_days = current_app.config.get("RETURN_WINDOW_DAYS", 30)
        if not is_within_return_window(sale, utcnow(), window_days):
            raise BusinessRuleViolation(
                f"Sale {sale.code} is outside the {window_days}-day return window",
                details={"sale_id": sale.id, "window_days": window_days},
            )

        exceeded = []
        for product_id, quantity in requested.items():
            returnable = get_returnable_quantity(sale.id, product_id)
            if quantity > returnable:
                exceeded.append({
                    "product_id": product_id,
                    "requested_quantity": quantity,
                    "returnable_quantity": returnable,
                })
        if exceeded:
            raise BusinessRuleViolation(
                "Requested return quantity exceeds what can still be returned",
                details={"items": exceeded},
            )

        ret = Return(
            code=next_document_number(document_type=DOC_RETURN),
            sale_id=sale.id,
            status=RETURN_STATUS_PENDING,
            reason=(reason or "").strip() or None,
            created_by_user_id=actor_user_id,
            created_at=utcnow(),
        )
        for product_id, quantity, line_reason in normalized:
            product = db.session.get(Product, product_id)
            ret.lines.append(ReturnLine(
                product_id=product_id,
                product=product,
                quantity=quantity,
                reason=line_reason,
                unit_refund_cents=product.sell_price_cents,
                line_refund_cents=quantity * product.sell_price_cents,
            ))
        ret.total_refund_cents = _refund_cents(ret.lines)
        db.session.add(ret)

    current_app.logger.info(
        "Return created: %s for sale_id=%s refund_cents=%s", ret.code, sale_id, ret.total_refund_cents
    )
    return ret


def approve_return(return_id: int, actor_user_id: int) -> Return:
    with transaction("approve_return", return_id=return_id, actor_user_id=actor_user_id):
        _require_user(actor_user_id)
        ret = _lock_return(return_id)
        if ret.status == RETURN_STATUS_APPROVED:
            return ret
        _require_transition(ret, RETURN_STATUS_APPROVED)

        ret.status = RETURN_STATUS_APPROVED
        ret.approved_at = utcnow()
        ret.approved_by_user_id = actor_user_id

    current_app.logger.info("Return approved: %s by user %s", ret.code, actor_user_id)
    return ret


def reject_return(return_id: int, actor_user_id: int, reason: str) -> Return:
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")

    with transaction("reject_return", return_id=return_id, actor_user_id=actor_user_id):
        _require_user(actor_user_id)
        ret = _lock_return(return_id)
        _require_transition(ret, RETURN_STATUS_REJECTED)

        ret.status = RETURN_STATUS_REJECTED
        ret.rejected_at = utcnow()
        ret.rejected_by_user_id = actor_user_id
        ret.rejection_reason = reason.strip()
        note = f"RECHAZO: {reason.strip()}"
        ret.reason = f"{ret.reason} | {note}" if ret.reason else note

    current_app.logger.info("Return rejected: %s by user %s", ret.code, actor_user_id)
    return ret


def complete_return(return_id: int, actor_user_id: int) -> Return:
    """Put the returned goods back in stock and fix the refund at current sell prices."""
    with transaction("complete_return", return_id=return_id, actor_user_id=actor_user_id):
        _require_user(actor_user_id)
        ret = _lock_return(return_id)
        _require_transition(ret, RETURN_STATUS_COMPLETED)

        for line in ret.lines:
            movement = apply_movement(
                product_id=line.product_id,
                movement_type=MOVEMENT_RETURN,
                quantity=line.quantity,
                actor_user_id=actor_user_id,
                sale_id=ret.sale_id,
                return_id=ret.id,
                note=f"Return {ret.code}",
            )
            line.movement_id = movement.id
            line.unit_refund_cents = line.product.sell_price_cents
            line.line_refund_cents = line.quantity * line.unit_refund_cents
            evaluate(line.product_id)

        ret.total_refund_cents = _refund_cents(ret.lines)
        ret.status = RETURN_STATUS_COMPLETED
        ret.completed_at = utcnow()
        ret.completed_by_user_id = actor_user_id

    current_app.logger.info(
        "Return completed: %s refund_cents=%s", ret.code, ret.total_refund_cents
    )
    return ret


# =============================================================================
# QUERIES
# =============================================================================

def get_return(return_id: int) -> Return:
    ret = db.session.get(Return, return_id)
    if ret is None:
        raise NotFoundError(f"Return {return_id} not found", details={"return_id": return_id})
    return ret


def get_sale_returns(sale_id: int) -> list[Return]:
    return (
        db.session.query(Return)
        .filter_by(sale_id=sale_id)
        .order_by(Return.created_at.asc(), Return.id.asc())
        .all()
    )


def search_returns(
    *,
    sale_id: int | None = None,
    client_id: int | None = None,
    actor_user_id: int | None = None,
    status: str | None = None,
    product_id: int | None = None,
    start=None,
    end=None,
    page: int | None = 1,
    per_page: int | None = None,
) -> dict:
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(Return)
    if sale_id is not None:
        q = q.filter(Return.sale_id == sale_id)
    if client_id is not None:
        q = q.join(Sale, Sale.id == Return.sale_id).filter(Sale.client_id == client_id)
    if actor_user_id is not None:
        q = q.filter(Return.created_by_user_id == actor_user_id)
    if status is not None:
        if status not in RETURN_STATUSES:
            raise ValidationError(f"Invalid return status {status!r}")
        q = q.filter(Return.status == status)
    if product_id is not None:
        q = q.filter(Return.lines.any(ReturnLine.product_id == product_id))
    if start_dt is not None:
        q = q.filter(Return.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(Return.created_at <= end_dt)

    q = q.order_by(Return.created_at.desc(), Return.id.desc())
    return paginate_query(q, page=page, per_page=per_page, serialize=lambda r: r.to_dict())


def count_returns_by_reason(start=None, end=None) -> dict[str, int]:
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(Return.reason, func.count(Return.id))
    if start_dt is not None:
        q = q.filter(Return.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(Return.created_at <= end_dt)

    rows = q.group_by(Return.reason).all()
    return {(reason or "UNSPECIFIED"): int(count) for reason, count in rows}


def most_returned_products(start=None, end=None, limit: int = 10) -> list[dict]:
    """Products ranked by units put back on the shelf (COMPLETED returns only)."""
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")
    limit = require_positive_int(limit, "limit")

    units = func.sum(ReturnLine.quantity).label("units")
    q = (
        db.session.query(Product.id, Product.code, Product.name, units, func.count(func.distinct(Return.id)))
        .join(ReturnLine, ReturnLine.product_id == Product.id)
        .join(Return, Return.id == ReturnLine.return_id)
        .filter(Return.status == RETURN_STATUS_COMPLETED)
    )
    if start_dt is not None:
        q = q.filter(Return.completed_at >= start_dt)
    if end_dt is not None:
        q = q.filter(Return.completed_at <= end_dt)

    rows = (
        q.group_by(Product.id, Product.code, Product.name)
        .order_by(units.desc(), Product.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "product_id": product_id,
            "product_code": code,
            "product_name": name,
            "units_returned": int(total or 0),
            "return_count": int(count or 0),
        }
        for product_id, code, name, total, count in rows
    ]
