import pytest

from boutique.extensions import db
from boutique.models import Product, StockAlert
from boutique.models.inventory import (
    ALERT_LOW_STOCK,
    ALERT_OUT_OF_STOCK,
    URGENCY_CRITICAL,
    URGENCY_HIGH,
    URGENCY_LOW,
    URGENCY_MEDIUM,
)
from boutique.services import alert_service, ledger_service
from boutique.validation import NotFoundError, ValidationError


@pytest.mark.parametrize("stock, minimum, expected", [
    (0, 5, (ALERT_OUT_OF_STOCK, URGENCY_CRITICAL)),
    (1, 4, (ALERT_LOW_STOCK, URGENCY_HIGH)),
    (2, 4, (ALERT_LOW_STOCK, URGENCY_MEDIUM)),
    (3, 4, (ALERT_LOW_STOCK, URGENCY_LOW)),
    (4, 4, (ALERT_LOW_STOCK, URGENCY_LOW)),
    (5, 4, None),
    (3, 0, None),
])
def test_classify(stock, minimum, expected):
    assert alert_service.classify(stock, minimum) == expected


def test_classify_custom_bands():
    bands = ((0.1, URGENCY_HIGH), (1.0, URGENCY_MEDIUM))
    assert alert_service.classify(2, 10, bands) == (ALERT_LOW_STOCK, URGENCY_MEDIUM)
    assert alert_service.classify(1, 10, bands) == (ALERT_LOW_STOCK, URGENCY_HIGH)


def _unread(product_id):
    return (
        db.session.query(StockAlert)
        .filter_by(product_id=product_id, is_read=False)
        .order_by(StockAlert.id)
        .all()
    )


def test_unread_alert_is_not_duplicated(make_product, manager):
    product = make_product(stock=10, stock_minimum=5)
    ledger_service.adjust_stock(product_id=product.id, target_stock=4, actor_user_id=manager.id, note="Count")
    ledger_service.adjust_stock(product_id=product.id, target_stock=2, actor_user_id=manager.id, note="Count")

    alerts = _unread(product.id)
    assert len(alerts) == 1
    assert alerts[0].alert_type == ALERT_LOW_STOCK
    assert alerts[0].stock_at_alert == 4
    assert alerts[0].threshold == 5


def test_new_alert_after_previous_was_read(make_product, manager):
    product = make_product(stock=3, stock_minimum=5)
    first = _unread(product.id)[0]
    alert_service.mark_read(first.id, manager.id)

    ledger_service.adjust_stock(product_id=product.id, target_stock=2, actor_user_id=manager.id, note="Count")

    alerts = db.session.query(StockAlert).filter_by(product_id=product.id).all()
    assert len(alerts) == 2
    assert len(_unread(product.id)) == 1


def test_healthy_stock_raises_nothing(make_product):
    product = make_product(stock=10, stock_minimum=5)

    assert alert_service.evaluate(product.id) is None
    assert db.session.query(StockAlert).count() == 0


def test_mark_read_is_idempotent(make_product, manager, seller):
    product = make_product(stock=0)
    ledger_service.receive_stock(product_id=product.id, quantity=1, actor_user_id=manager.id)
    alert = _unread(product.id)[0]

    first = alert_service.mark_read(alert.id, manager.id)
    read_at = first.read_at
    assert first.is_read is True
    assert first.read_by_user_id == manager.id

    second = alert_service.mark_read(alert.id, seller.id)
    assert second.read_at == read_at
    assert second.read_by_user_id == manager.id

    with pytest.raises(NotFoundError):
        alert_service.mark_read(9999, manager.id)


def test_mark_many_read_and_record_action(make_product, manager):
    low = make_product(stock=2, stock_minimum=5)
    empty = make_product(stock=1, stock_minimum=5)
    ledger_service.adjust_stock(product_id=empty.id, target_stock=0, actor_user_id=manager.id, note="Lost")
    ids = [a.id for a in db.session.query(StockAlert).all()]
    assert len(ids) == 3

    assert alert_service.mark_many_read(ids, manager.id) == 3
    assert alert_service.mark_many_read(ids, manager.id) == 0
    with pytest.raises(NotFoundError):
        alert_service.mark_many_read(ids + [9999], manager.id)
    with pytest.raises(ValidationError):
        alert_service.mark_many_read([], manager.id)

    alert = alert_service.record_action(ids[0], "Ordered REAB-000001")
    assert alert.action_taken == "Ordered REAB-000001"
    assert low.id in {a.product_id for a in db.session.query(StockAlert).all()}


def test_sweep_all_raises_missing_alerts(make_product, manager):
    low = make_product(stock=10, stock_minimum=5)
    empty = make_product(stock=10, stock_minimum=5)
    healthy = make_product(stock=10, stock_minimum=5)

    # Bypass the ledger to simulate rows that never went through evaluate()
    db.session.execute(db.update(Product).where(Product.id == low.id).values(stock=3))
    db.session.execute(db.update(Product).where(Product.id == empty.id).values(stock=0))
    db.session.commit()

    created = alert_service.sweep_all()
    assert sorted((a.product_id, a.alert_type) for a in created) == sorted([
        (low.id, ALERT_LOW_STOCK),
        (empty.id, ALERT_OUT_OF_STOCK),
    ])
    assert healthy.id not in {a.product_id for a in created}

    assert alert_service.sweep_all() == []


def test_alert_queries(make_product, manager):
    low = make_product(stock=1, stock_minimum=5)
    empty = make_product(stock=1, stock_minimum=5)
    ledger_service.adjust_stock(product_id=empty.id, target_stock=0, actor_user_id=manager.id, note="Lost")

    unread = alert_service.list_unread_alerts()
    assert unread[0].urgency == URGENCY_CRITICAL

    critical = alert_service.list_critical_alerts()
    assert [a.product_id for a in critical] == [empty.id]

    counts = alert_service.count_unread_by_urgency()
    assert counts[URGENCY_CRITICAL] == 1
    assert counts[URGENCY_HIGH] == 2
    assert counts[URGENCY_LOW] == 0

    assert [p.id for p in alert_service.list_low_stock_products()] == [low.id]
    assert [p.id for p in alert_service.list_out_of_stock_products()] == [empty.id]

    result = alert_service.search_alerts(product_id=empty.id, alert_type=ALERT_OUT_OF_STOCK)
    assert result["pagination"]["total"] == 1
    assert alert_service.get_alert(result["items"][0]["id"]).product_id == empty.id

    with pytest.raises(ValidationError):
        alert_service.search_alerts(urgency="URGENT")
    with pytest.raises(ValidationError):
        alert_service.search_alerts(alert_type="OVERSTOCK")
