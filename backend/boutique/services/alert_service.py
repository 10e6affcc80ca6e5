# Overview: Stock alert engine; derives advisory alerts from product stock thresholds.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, StockAlert
from ..models.inventory import (
    ALERT_LOW_STOCK,
    ALERT_OUT_OF_STOCK,
    ALERT_TYPES,
    URGENCY_CRITICAL,
    URGENCY_LOW,
    URGENCY_PRIORITY,
)
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, parse_range_bound
from .concurrency import transaction
from .pagination import paginate_query


DEFAULT_URGENCY_BANDS = ((0.25, "HIGH"), (0.5, "MEDIUM"), (1.0, "LOW"))


def classify(stock: int, stock_minimum: int, bands=DEFAULT_URGENCY_BANDS) -> tuple[str, str] | None:
    """
    Map a stock level to (alert_type, urgency), or None when no alert applies.

    stock == 0                      -> OUT_OF_STOCK / CRITICAL
    0 < stock <= stock_minimum      -> LOW_STOCK, urgency from stock / stock_minimum
    """
    if stock <= 0:
        return ALERT_OUT_OF_STOCK, URGENCY_CRITICAL
    if stock_minimum <= 0 or stock > stock_minimum:
        return None

    ratio = stock / stock_minimum
    for upper, urgency in bands:
        if ratio <= upper:
            return ALERT_LOW_STOCK, urgency
    return ALERT_LOW_STOCK, URGENCY_LOW


def _build_message(product: Product, alert_type: str) -> str:
    if alert_type == ALERT_OUT_OF_STOCK:
        return f"CRITICAL: product '{product.name}' ({product.code}) is OUT OF STOCK. Urgent replenishment required."
    return (
        f"Product '{product.name}' ({product.code}) is LOW on stock. "
        f"Current: {product.stock}, minimum: {product.stock_minimum}. Replenishment required."
    )


def _unread_exists(product_id: int, alert_type: str) -> bool:
    return db.session.query(
        db.session.query(StockAlert.id)
        .filter_by(product_id=product_id, alert_type=alert_type, is_read=False)
        .exists()
    ).scalar()


def evaluate(product_id: int) -> StockAlert | None:
    """
    Raise an alert for the product's current stock if one is due.

    Runs inside the caller's transaction, after the stock movement.
    Returns the new alert, or None when the stock is healthy or an unread
    alert of the same type already exists for the product.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})

    bands = current_app.config.get("ALERT_URGENCY_BANDS", DEFAULT_URGENCY_BANDS)
    result = classify(product.stock, product.stock_minimum, bands)
    if result is None:
        return None
    alert_type, urgency = result

    if _unread_exists(product.id, alert_type):
        return None

    alert = StockAlert(
        product_id=product.id,
        alert_type=alert_type,
        urgency=urgency,
        message=_build_message(product, alert_type),
        stock_at_alert=product.stock,
        threshold=product.stock_minimum,
        is_read=False,
    )

    # A concurrent writer may have inserted the same unread alert; the partial
    # unique index rejects ours and only the savepoint is rolled back.
    try:
        with db.session.begin_nested():
            db.session.add(alert)
    except IntegrityError:
        current_app.logger.info(
            "Alert %s for product_id=%s already raised concurrently", alert_type, product.id
        )
        return None

    current_app.logger.info(
        "Stock alert raised: product_id=%s type=%s urgency=%s stock=%s",
        product.id, alert_type, urgency, product.stock,
    )
    return alert


def sweep_all() -> list[StockAlert]:
    """
    Evaluate every active product at or below its minimum.

    Each product is evaluated in its own transaction so one failure does not
    discard the alerts already raised for other products.
    """
    product_ids = [
        row.id
        for row in db.session.query(Product.id)
        .filter(Product.is_active.is_(True), Product.stock <= Product.stock_minimum)
        .order_by(Product.id.asc())
    ]

    created = []
    for product_id in product_ids:
        with transaction("sweep_alerts", product_id=product_id):
            alert = evaluate(product_id)
        if alert is not None:
            created.append(alert)

    current_app.logger.info(
        "Alert sweep finished: %s products checked, %s alerts raised", len(product_ids), len(created)
    )
    return created


# =============================================================================
# READ / ACKNOWLEDGE
# =============================================================================

def get_alert(alert_id: int) -> StockAlert:
    alert = db.session.get(StockAlert, alert_id)
    if alert is None:
        raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})
    return alert


def _mark(alert: StockAlert, actor_user_id: int, now) -> bool:
    if alert.is_read:
        return False
    alert.is_read = True
    alert.read_at = now
    alert.read_by_user_id = actor_user_id
    return True


def mark_read(alert_id: int, actor_user_id: int) -> StockAlert:
    """Acknowledge an alert. Marking an already-read alert changes nothing."""
    with transaction("mark_alert_read", alert_id=alert_id, actor_user_id=actor_user_id):
        alert = get_alert(alert_id)
        changed = _mark(alert, actor_user_id, utcnow())

    if changed:
        current_app.logger.info("Alert %s marked read by user %s", alert_id, actor_user_id)
    return alert


def mark_many_read(alert_ids: list[int], actor_user_id: int) -> int:
    """
    Acknowledge several alerts at once (all or nothing).

    Returns the number of alerts that were unread before the call.
    """
    ids = list(dict.fromkeys(alert_ids or []))
    if not ids:
        raise ValidationError("alert_ids must contain at least one id")

    with transaction("mark_alerts_read", actor_user_id=actor_user_id):
        alerts = db.session.query(StockAlert).filter(StockAlert.id.in_(ids)).all()
        missing = sorted(set(ids) - {alert.id for alert in alerts})
        if missing:
            raise NotFoundError("Some alerts were not found", details={"missing_ids": missing})
        now = utcnow()
        changed = sum(1 for alert in alerts if _mark(alert, actor_user_id, now))

    current_app.logger.info("%s alerts marked read by user %s", changed, actor_user_id)
    return changed


def record_action(alert_id: int, action: str) -> StockAlert:
    """Store what was done about an alert (free text, replaces any previous note)."""
    if not action or not action.strip():
        raise ValidationError("action is required")

    with transaction("record_alert_action", alert_id=alert_id):
        alert = get_alert(alert_id)
        alert.action_taken = action.strip()[:500]
    return alert


def search_alerts(
    *,
    product_id: int | None = None,
    alert_type: str | None = None,
    urgency: str | None = None,
    is_read: bool | None = None,
    start=None,
    end=None,
    page: int | None = 1,
    per_page: int | None = None,
) -> dict:
    start_dt = parse_range_bound(start, "start")
    end_dt = parse_range_bound(end, "end")

    q = db.session.query(StockAlert)
    if product_id is not None:
        q = q.filter(StockAlert.product_id == product_id)
    if alert_type is not None:
        if alert_type not in ALERT_TYPES:
            raise ValidationError(f"Invalid alert type {alert_type!r}")
        q = q.filter(StockAlert.alert_type == alert_type)
    if urgency is not None:
        if urgency not in URGENCY_PRIORITY:
            raise ValidationError(f"Invalid urgency {urgency!r}")
        q = q.filter(StockAlert.urgency == urgency)
    if is_read is not None:
        q = q.filter(StockAlert.is_read.is_(is_read))
    if start_dt is not None:
        q = q.filter(StockAlert.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(StockAlert.created_at <= end_dt)

    q = q.order_by(StockAlert.created_at.desc(), StockAlert.id.desc())
    return paginate_query(q, page=page, per_page=per_page, serialize=lambda a: a.to_dict())


def list_unread_alerts() -> list[StockAlert]:
    """Unread alerts, most urgent first, then newest."""
    alerts = (
        db.session.query(StockAlert)
        .filter(StockAlert.is_read.is_(False))
        .order_by(StockAlert.created_at.desc(), StockAlert.id.desc())
        .all()
    )
    return sorted(alerts, key=lambda a: URGENCY_PRIORITY.get(a.urgency, 0), reverse=True)


def list_critical_alerts() -> list[StockAlert]:
    return (
        db.session.query(StockAlert)
        .filter(StockAlert.is_read.is_(False), StockAlert.urgency == URGENCY_CRITICAL)
        .order_by(StockAlert.created_at.desc(), StockAlert.id.desc())
        .all()
    )


def count_unread_by_urgency() -> dict[str, int]:
    rows = (
        db.session.query(StockAlert.urgency, func.count(StockAlert.id))
        .filter(StockAlert.is_read.is_(False))
        .group_by(StockAlert.urgency)
        .all()
    )
    counts = {urgency: 0 for urgency in URGENCY_PRIORITY}
    counts.update({urgency: int(count) for urgency, count in rows})
    return counts


def list_low_stock_products() -> list[Product]:
    """Active products with 0 < stock <= stock_minimum."""
    return (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.stock > 0,
            Product.stock <= Product.stock_minimum,
        )
        .order_by(Product.stock.asc(), Product.id.asc())
        .all()
    )


def list_out_of_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock == 0)
        .order_by(Product.id.asc())
        .all()
    )
