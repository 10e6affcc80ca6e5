# Overview: Sale registration and annulment; coordinates sale documents with the stock ledger.

"""
Sales Service

WHY: A sale and its stock decrements must land together or not at all.
register_sale() writes the Sale, its lines, one OUT movement per line and any
resulting stock alerts inside ONE transaction. annul_sale() is the time-boxed
inverse: compensating IN movements, never an edit of the original movements.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Client, PaymentMethod, Product, Return, Sale, SaleLine, User
from ..models.documents import RETURN_STATUS_REJECTED
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT
from ..models.sales import SALE_STATUS_ANNULLED, SALE_STATUS_PAID
from ..time_utils import normalize_datetime, utcnow
from ..validation import (
    BusinessRuleViolation,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    parse_range_bound,
    require_id,
    require_non_negative_int,
    require_positive_int,
    require_price_cents,
)
from .alert_service import evaluate
from .concurrency import lock_for_update, transaction
from .document_service import DOC_SALE, next_document_number
from .ledger_service import apply_movement
from .pagination import paginate_query


# =============================================================================
# TOTALS (pure)
# =============================================================================

def line_subtotal(quantity: int, unit_price_cents: int, discount_cents: int = 0) -> int:
    """max(0, quantity * unit_price - discount)"""
    return max(0, quantity * unit_price_cents - (discount_cents or 0))


def compute_tax(subtotal_cents: int, tax_rate_bps: int) -> int:
    """Tax in cents, rounded half-up (1800 bps = 18%)."""
    return (subtotal_cents * tax_rate_bps + 5_000) // 10_000


def compute_totals(lines, tax_rate_bps: int) -> tuple[int, int, int]:
    """
    Return (subtotal, tax, total) in cents for an iterable of line mappings
    with quantity, unit_price_cents and optional discount_cents.
    """
    subtotal = sum(
        line_subtotal(line["quantity"], line["unit_price_cents"], line.get("discount_cents", 0))
        for line in lines
    )
    tax = compute_tax(subtotal, tax_rate_bps)
    return subtotal, tax, subtotal + tax


# =============================================================================
# REGISTRATION
# =============================================================================

def _require_row(model, row_id, field: str):
    row_id = require_id(row_id, field)
    row = db.session.get(model, row_id)
    if row is None:
        raise NotFoundError(f"{model.__name__} {row_id} not found", details={field: row_id})
    return row


def _normalize_lines(raw_lines) -> list[dict]:
    """Validate line shapes before any product is touched."""
    if not raw_lines:
        raise ValidationError("A sale requires at least one line")

    lines = []
    for index, raw in enumerate(raw_lines):
        prefix = f"lines[{index}]"
        product_id = require_id(raw.get("product_id"), f"{prefix}.product_id")
        quantity = require_positive_int(raw.get("quantity"), f"{prefix}.quantity")
        unit_price = raw.get("unit_price_cents")
        if unit_price is not None:
            unit_price = require_price_cents(unit_price, f"{prefix}.unit_price_cents")
        discount = require_non_negative_int(raw.get("discount_cents", 0) or 0, f"{prefix}.discount_cents")
        lines.append({
            "product_id": product_id,
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "discount_cents": discount,
        })
    return lines


def _lock_products(product_ids) -> dict[int, Product]:
    """Lock every product of the sale in id order (stable lock ordering)."""
    products = {}
    for product_id in sorted(set(product_ids)):
        product = (
            lock_for_update(db.session.query(Product).filter_by(id=product_id))
            .populate_existing()
            .first()
        )
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
        if not product.is_active:
            raise ValidationError(f"Product {product.code} is not active", details={"product_id": product_id})
        products[product_id] = product
    return products


def _validate_stock(lines: list[dict], products: dict[int, Product]) -> None:
    """Check every product before mutating anything; report all shortages at once."""
    requested: dict[int, int] = {}
    for line in lines:
        requested[line["product_id"]] = requested.get(line["product_id"], 0) + line["quantity"]

    insufficient = []
    for product_id, qty in requested.items():
        on_hand = products[product_id].stock
        if on_hand < qty:
            insufficient.append({
                "product_id": product_id,
                "product_code": products[product_id].code,
                "requested_quantity": qty,
                "on_hand": on_hand,
            })

    if insufficient:
        raise InsufficientStockError(
            "Insufficient stock to register sale",
            details={"items": insufficient},
        )


def register_sale(
    *,
    client_id: int,
    seller_user_id: int,
    payment_method_id: int,
    lines: list[dict],
) -> Sale:
    """
    Register a paid sale and decrement stock for every line.

    Each line: {"product_id", "quantity", "unit_price_cents" (defaults to the
    product's sell price), "discount_cents" (default 0)}.

    Raises:
        ValidationError / NotFoundError: bad references or line values
        InsufficientStockError: any product short (nothing is written)
        ConflictError: concurrent update of the same product
    """
    normalized = _normalize_lines(lines)

    with transaction("register_sale", client_id=client_id, seller_user_id=seller_user_id):
        _require_row(Client, client_id, "client_id")
        _require_row(User, seller_user_id, "seller_user_id")
        _require_row(PaymentMethod, payment_method_id, "payment_method_id")

        products = _lock_products(line["product_id"] for line in normalized)
        for line in normalized:
            if line["unit_price_cents"] is None:
                line["unit_price_cents"] = require_price_cents(
                    products[line["product_id"]].sell_price_cents, "sell_price_cents"
                )

        _validate_stock(normalized, products)

        tax_rate_bps = current_app.config.get("SALES_TAX_RATE_BPS", 1800)
        subtotal, tax, total = compute_totals(normalized, tax_rate_bps)

        sale = Sale(
            code=next_document_number(document_type=DOC_SALE),
            client_id=client_id,
            seller_user_id=seller_user_id,
            payment_method_id=payment_method_id,
            status=SALE_STATUS_PAID,
            subtotal_cents=subtotal,
            tax_cents=tax,
            total_cents=total,
            tax_rate_bps=tax_rate_bps,
            created_at=utcnow(),
        )
        db.session.add(sale)
        db.session.flush()

        for line in normalized:
            sale_line = SaleLine(
                product_id=line["product_id"],
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                discount_cents=line["discount_cents"],
                subtotal_cents=line_subtotal(
                    line["quantity"], line["unit_price_cents"], line["discount_cents"]
                ),
            )
            sale.lines.append(sale_line)

            movement = apply_movement(
                product_id=line["product_id"],
                movement_type=MOVEMENT_OUT,
                quantity=line["quantity"],
                actor_user_id=seller_user_id,
                sale_id=sale.id,
                note=f"Sale {sale.code}",
            )
            sale_line.movement_id = movement.id
            evaluate(line["product_id"])

    current_app.logger.info(
        "Sale registered: %s total_cents=%s lines=%s", sale.code, sale.total_cents, len(normalized)
    )
    return sale


# =============================================================================
# ANNULMENT
# =============================================================================

def can_annul(sale: Sale, now: datetime | None = None, window_hours: int = 24) -> bool:
    """PAID and no more than window_hours old (the boundary itself is allowed)."""
    if sale.status != SALE_STATUS_PAID:
        return False
    now = now or utcnow()
    return normalize_datetime(now) - normalize_datetime(sale.created_at) <= timedelta(hours=window_hours)


def annul_sale(sale_id: int, reason: str, actor_user_id: int) -> Sale:
    """
    Annul a PAID sale within the annulment window, restoring stock with one
    IN movement per original line.
    """
    if not reason or not reason.strip():
        raise ValidationError("An annulment reason is required")
    reason = reason.strip()

    with transaction("annul_sale", sale_id=sale_id, actor_user_id=actor_user_id):
        _require_row(User, actor_user_id, "actor_user_id")
        sale = (
            lock_for_update(db.session.query(Sale).filter_by(id=sale_id))
            .populate_existing()
            .first()
        )
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})

        if sale.status != SALE_STATUS_PAID:
            raise BusinessRuleViolation(
                f"Only PAID sales can be annulled (sale {sale.code} is {sale.status})",
                details={"sale_id": sale.id, "status": sale.status},
            )

        window_hours = current_app.config.get("SALE_ANNUL_WINDOW_HOURS", 24)
        now = utcnow()
        if not can_annul(sale, now, window_hours):
            raise BusinessRuleViolation(
                f"Sale {sale.code} is older than {window_hours} hours and can no longer be annulled",
                details={"sale_id": sale.id, "window_hours": window_hours},
            )

        # A returned quantity was already put back on the shelf
        open_returns = (
            db.session.query(func.count(Return.id))
            .filter(Return.sale_id == sale.id, Return.status != RETURN_STATUS_REJECTED)
            .scalar()
        )
        if open_returns:
            raise BusinessRuleViolation(
                f"Sale {sale.code} has returns and cannot be annulled",
                details={"sale_id": sale.id, "returns": open_returns},
            )

        for line in sale.lines:
            apply_movement(
                product_id=line.product_id,
                movement_type=MOVEMENT_IN,
                quantity=line.quantity,
                actor_user_id=actor_user_id,
                sale_id=sale.id,
                note=f"Annulment of sale {sale.code}",
            )
            evaluate(line.product_id)

        sale.status = SALE_STATUS_ANNULLED
        sale.annulled_at = now
        sale.annulled_by_user_id = actor_user_id
        audit = f"ANULADA: {reason}"
        sale.notes = f"{sale.notes}\n{audit}" if sale.notes else audit

    current_app.logger.info("Sale annulled: %s by user %s", sale.code, actor_user_id)
    return sale


# =============================================================================
# QUERIES
# =============================================================================

def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def get_sale_by_code(code: str) -> Sale:
    sale = db.session.query(Sale).filter_by(code=(code or "").strip()).first()
    if sale is None:
        raise NotFoundError(f"Sale {code!r} not found", details={"code": code})
    return sale


def search_sales(
    *,
    code: str | None = None,
    client_id: int | None = None,
    seller_user_id: int | None = None,
    status: str | None = None,
    payment_method_id: int | None = None,
    product_id: int | None = None,
    start=None,
    end=None,
    page: int | None = 1,
    per_page: int | None = None,
) -> dict:
    """Paged sale search, newest first. `code` is a case-insensitive substring match."""
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(Sale)
    if code:
        q = q.filter(Sale.code.ilike(f"%{code.strip()}%"))
    if client_id is not None:
        q = q.filter(Sale.client_id == client_id)
    if seller_user_id is not None:
        q = q.filter(Sale.seller_user_id == seller_user_id)
    if status is not None:
        if status not in (SALE_STATUS_PAID, SALE_STATUS_ANNULLED):
            raise ValidationError(f"Invalid sale status {status!r}")
        q = q.filter(Sale.status == status)
    if payment_method_id is not None:
        q = q.filter(Sale.payment_method_id == payment_method_id)
    if product_id is not None:
        q = q.filter(Sale.lines.any(SaleLine.product_id == product_id))
    if start_dt is not None:
        q = q.filter(Sale.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(Sale.created_at <= end_dt)

    q = q.order_by(Sale.created_at.desc(), Sale.id.desc())
    return paginate_query(q, page=page, per_page=per_page, serialize=lambda s: s.to_dict(include_lines=False))


def get_sales_totals(start=None, end=None, seller_user_id: int | None = None) -> dict:
    """Count and revenue of PAID sales in a period, optionally for one seller."""
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
    ).filter(Sale.status == SALE_STATUS_PAID)
    if seller_user_id is not None:
        q = q.filter(Sale.seller_user_id == seller_user_id)
    if start_dt is not None:
        q = q.filter(Sale.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(Sale.created_at <= end_dt)

    count, total = q.one()
    return {
        "seller_user_id": seller_user_id,
        "sale_count": int(count or 0),
        "total_cents": int(total or 0),
    }
