# Overview: Stock ledger; the single place where Product.stock is mutated.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..models import InventoryMovement, Product
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RETURN,
    MOVEMENT_TYPES,
)
from ..time_utils import utcnow
from ..validation import (
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    parse_range_bound,
    require_non_negative_int,
    require_positive_int,
)
from .concurrency import lock_for_update, transaction
from .pagination import paginate_query
"""
Stock Ledger Invariants (authoritative)

- Product.stock == fold(movements) at all times, folding from 0:
    IN / RETURN   -> stock + quantity
    OUT           -> stock - quantity   (never below zero)
    ADJUSTMENT    -> quantity           (absolute target)
- Every stock change writes exactly one InventoryMovement, in the same
  transaction, carrying stock_before/stock_after snapshots.
- apply_movement() holds the product row lock (FOR UPDATE / BEGIN IMMEDIATE)
  until the caller's transaction ends; it is the serialization point for a product.
- Movements are append-only (see models.inventory mapper hooks).
"""


# Movement arithmetic keyed by movement type: (stock_before, quantity) -> stock_after
STOCK_RULES = {
    MOVEMENT_IN: lambda before, qty: before + qty,
    MOVEMENT_RETURN: lambda before, qty: before + qty,
    MOVEMENT_OUT: lambda before, qty: before - qty,
    MOVEMENT_ADJUSTMENT: lambda before, qty: qty,
}


def next_stock(movement_type: str, stock_before: int, quantity: int) -> int:
    """Pure stock arithmetic for one movement."""
    try:
        rule = STOCK_RULES[movement_type]
    except KeyError:
        raise ValidationError(
            f"Invalid movement_type {movement_type!r}. Must be one of: {', '.join(MOVEMENT_TYPES)}"
        )
    return rule(stock_before, quantity)


def _validate_quantity(movement_type: str, quantity) -> int:
    if movement_type == MOVEMENT_ADJUSTMENT:
        return require_non_negative_int(quantity, "target stock")
    return require_positive_int(quantity, "quantity")


def _get_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        # populate_existing: a product already in the identity map must be re-read under the lock
        query = lock_for_update(query).populate_existing()
    product = query.first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def apply_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    actor_user_id: int,
    sale_id: int | None = None,
    return_id: int | None = None,
    replenishment_line_id: int | None = None,
    note: str | None = None,
    occurred_at: datetime | None = None,
) -> InventoryMovement:
    """
    Append one movement and update the cached stock.

    Participates in the caller's transaction (flush only, no commit).

    For ADJUSTMENT, `quantity` is the target absolute stock.

    Raises:
        ValidationError: unknown type or non-positive quantity
        NotFoundError: product missing
        InsufficientStockError: OUT larger than current stock
    """
    if movement_type not in STOCK_RULES:
        raise ValidationError(
            f"Invalid movement_type {movement_type!r}. Must be one of: {', '.join(MOVEMENT_TYPES)}"
        )
    quantity = _validate_quantity(movement_type, quantity)

    product = _get_product(product_id, lock=True)
    stock_before = product.stock

    if movement_type == MOVEMENT_OUT and quantity > stock_before:
        raise InsufficientStockError(
            f"Insufficient stock for product {product.code}. Available: {stock_before}, requested: {quantity}",
            details={
                "items": [{
                    "product_id": product.id,
                    "requested_quantity": quantity,
                    "on_hand": stock_before,
                }],
            },
        )

    stock_after = next_stock(movement_type, stock_before, quantity)

    movement = InventoryMovement(
        product_id=product.id,
        movement_type=movement_type,
        quantity=quantity,
        stock_before=stock_before,
        stock_after=stock_after,
        occurred_at=occurred_at or utcnow(),
        actor_user_id=actor_user_id,
        sale_id=sale_id,
        return_id=return_id,
        replenishment_line_id=replenishment_line_id,
        note=note,
    )
    product.stock = stock_after

    db.session.add(movement)
    db.session.flush()  # assigns movement.id and bumps product.version_id
    return movement


# =============================================================================
# STANDALONE STOCK OPERATIONS
# =============================================================================

def receive_stock(
    *,
    product_id: int,
    quantity: int,
    actor_user_id: int,
    note: str | None = None,
) -> InventoryMovement:
    """Manual goods-in outside a replenishment order (IN movement)."""
    from .alert_service import evaluate

    with transaction("receive_stock", product_id=product_id, actor_user_id=actor_user_id):
        movement = apply_movement(
            product_id=product_id,
            movement_type=MOVEMENT_IN,
            quantity=quantity,
            actor_user_id=actor_user_id,
            note=note,
        )
        evaluate(product_id)

    current_app.logger.info(
        "Stock received: product_id=%s quantity=%s stock=%s", product_id, quantity, movement.stock_after
    )
    return movement


def adjust_stock(
    *,
    product_id: int,
    target_stock: int,
    actor_user_id: int,
    note: str | None = None,
) -> InventoryMovement:
    """Set stock to a counted value (ADJUSTMENT movement). A note is mandatory for audit."""
    from .alert_service import evaluate

    if not note or not note.strip():
        raise ValidationError("An adjustment requires a note explaining the count")

    with transaction("adjust_stock", product_id=product_id, actor_user_id=actor_user_id):
        movement = apply_movement(
            product_id=product_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity=target_stock,
            actor_user_id=actor_user_id,
            note=note.strip(),
        )
        evaluate(product_id)

    current_app.logger.info(
        "Stock adjusted: product_id=%s %s -> %s", product_id, movement.stock_before, movement.stock_after
    )
    return movement


# =============================================================================
# LEDGER AUDIT
# =============================================================================

def _ordered_movements(product_id: int) -> list[InventoryMovement]:
    return (
        db.session.query(InventoryMovement)
        .filter_by(product_id=product_id)
        .order_by(InventoryMovement.id.asc())
        .all()
    )


def replay_stock(product_id: int) -> int:
    """Fold the movement history of a product into its stock value."""
    stock = 0
    for movement in _ordered_movements(product_id):
        stock = next_stock(movement.movement_type, stock, movement.quantity)
    return stock


def verify_product_stock(product_id: int) -> dict:
    """
    Compare cached stock with the ledger fold.

    Also reports broken chains: a movement whose stock_before differs from
    the previous movement's stock_after.
    """
    product = _get_product(product_id)

    stock = 0
    broken_links = []
    for movement in _ordered_movements(product_id):
        if movement.stock_before != stock:
            broken_links.append({
                "movement_id": movement.id,
                "expected_stock_before": stock,
                "recorded_stock_before": movement.stock_before,
            })
        stock = next_stock(movement.movement_type, stock, movement.quantity)

    return {
        "product_id": product.id,
        "product_code": product.code,
        "cached_stock": product.stock,
        "ledger_stock": stock,
        "consistent": product.stock == stock and not broken_links,
        "broken_links": broken_links,
    }


def find_stock_discrepancies() -> list[dict]:
    """Run verify_product_stock over every product; return only the inconsistent ones."""
    product_ids = [row.id for row in db.session.query(Product.id).order_by(Product.id.asc())]
    reports = (verify_product_stock(product_id) for product_id in product_ids)
    return [report for report in reports if not report["consistent"]]


# =============================================================================
# QUERIES
# =============================================================================

def get_movement(movement_id: int) -> InventoryMovement:
    movement = db.session.get(InventoryMovement, movement_id)
    if movement is None:
        raise NotFoundError(f"Movement {movement_id} not found", details={"movement_id": movement_id})
    return movement


def get_product_trace(product_id: int) -> list[InventoryMovement]:
    """Full chronological history of a product, oldest first."""
    _get_product(product_id)
    return _ordered_movements(product_id)


def search_movements(
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    actor_user_id: int | None = None,
    sale_id: int | None = None,
    start=None,
    end=None,
    page: int | None = 1,
    per_page: int | None = None,
) -> dict:
    """Paged movement search, newest first. Date bounds are inclusive."""
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(InventoryMovement)
    if product_id is not None:
        q = q.filter(InventoryMovement.product_id == product_id)
    if movement_type is not None:
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Invalid movement_type {movement_type!r}")
        q = q.filter(InventoryMovement.movement_type == movement_type)
    if actor_user_id is not None:
        q = q.filter(InventoryMovement.actor_user_id == actor_user_id)
    if sale_id is not None:
        q = q.filter(InventoryMovement.sale_id == sale_id)
    if start_dt is not None:
        q = q.filter(InventoryMovement.occurred_at >= start_dt)
    if end_dt is not None:
        q = q.filter(InventoryMovement.occurred_at <= end_dt)

    q = q.order_by(InventoryMovement.occurred_at.desc(), InventoryMovement.id.desc())
    return paginate_query(q, page=page, per_page=per_page, serialize=lambda m: m.to_dict())


def get_movement_totals(product_id: int, start=None, end=None) -> dict:
    """Units in (IN + RETURN) and out (OUT) for a product over a period."""
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")
    _get_product(product_id)

    inbound = func.coalesce(func.sum(case(
        (InventoryMovement.movement_type.in_([MOVEMENT_IN, MOVEMENT_RETURN]), InventoryMovement.quantity),
        else_=0,
    )), 0)
    outbound = func.coalesce(func.sum(case(
        (InventoryMovement.movement_type == MOVEMENT_OUT, InventoryMovement.quantity),
        else_=0,
    )), 0)

    q = db.session.query(inbound.label("inbound"), outbound.label("outbound")).filter(
        InventoryMovement.product_id == product_id
    )
    if start_dt is not None:
        q = q.filter(InventoryMovement.occurred_at >= start_dt)
    if end_dt is not None:
        q = q.filter(InventoryMovement.occurred_at <= end_dt)

    row = q.one()
    return {
        "product_id": product_id,
        "total_in": int(row.inbound or 0),
        "total_out": int(row.outbound or 0),
    }
