from datetime import timedelta

import pytest

from boutique.extensions import db
from boutique.models import InventoryMovement, Product, StockAlert
from boutique.models.inventory import ALERT_LOW_STOCK, MOVEMENT_IN
from boutique.models.replenishment import (
    LINE_STATUS_COMPLETE,
    LINE_STATUS_PARTIAL,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETE,
    ORDER_STATUS_PARTIAL,
    ORDER_STATUS_PENDING,
)
from boutique.services import alert_service, ledger_service, replenishment_service
from boutique.time_utils import utcnow
from boutique.validation import BusinessRuleViolation, NotFoundError, ValidationError


@pytest.fixture
def order(make_product, supplier, manager):
    shirt = make_product(stock=2, stock_minimum=5, buy_price_cents=400)
    jeans = make_product(stock=0, stock_minimum=5, buy_price_cents=1500)
    created = replenishment_service.create_order(
        supplier_id=supplier.id,
        requested_by_user_id=manager.id,
        lines=[
            {"product_id": shirt.id, "quantity": 10},
            {"product_id": jeans.id, "quantity": 4, "estimated_unit_cost_cents": 1400},
        ],
        expected_at=utcnow() + timedelta(days=7),
        notes="Autumn restock",
    )
    return created, shirt, jeans


def _stock(product_id):
    return db.session.get(Product, product_id).stock


def test_create_order(order):
    created, shirt, jeans = order

    assert created.code == "REAB-000001"
    assert created.status == ORDER_STATUS_PENDING
    assert created.estimated_total_cents == 10 * 400 + 4 * 1400
    assert [line.quantity_remaining for line in created.lines] == [10, 4]


def test_create_order_validation(make_product, supplier, manager):
    product = make_product(stock=1)

    with pytest.raises(ValidationError):
        replenishment_service.create_order(supplier_id=supplier.id, requested_by_user_id=manager.id, lines=[])
    with pytest.raises(ValidationError):
        replenishment_service.create_order(
            supplier_id=supplier.id, requested_by_user_id=manager.id,
            lines=[{"product_id": product.id, "quantity": 0}],
        )
    with pytest.raises(NotFoundError):
        replenishment_service.create_order(
            supplier_id=9999, requested_by_user_id=manager.id,
            lines=[{"product_id": product.id, "quantity": 1}],
        )
    with pytest.raises(ValidationError):
        replenishment_service.create_order(
            supplier_id=supplier.id, requested_by_user_id=manager.id,
            lines=[{"product_id": product.id, "quantity": 1}], expected_at="next week",
        )


def test_partial_then_complete_receipt(order, manager):
    created, shirt, jeans = order
    shirt_line, jeans_line = created.lines

    line = replenishment_service.register_receipt(shirt_line.id, 4, manager.id)
    assert line.status == LINE_STATUS_PARTIAL
    assert line.quantity_received == 4
    assert _stock(shirt.id) == 6
    assert replenishment_service.get_order(created.id).status == ORDER_STATUS_PARTIAL

    replenishment_service.register_receipt(shirt_line.id, 6, manager.id)
    assert replenishment_service.get_order(created.id).status == ORDER_STATUS_PARTIAL

    line = replenishment_service.register_receipt(jeans_line.id, 4, manager.id)
    assert line.status == LINE_STATUS_COMPLETE

    done = replenishment_service.get_order(created.id)
    assert done.status == ORDER_STATUS_COMPLETE
    assert done.completed_at is not None
    assert _stock(jeans.id) == 4

    movements = (
        db.session.query(InventoryMovement)
        .filter(InventoryMovement.replenishment_line_id.in_([shirt_line.id, jeans_line.id]))
        .all()
    )
    assert sorted(m.quantity for m in movements) == [4, 4, 6]
    assert all(m.movement_type == MOVEMENT_IN for m in movements)
    assert ledger_service.verify_product_stock(shirt.id)["consistent"]


def test_receipt_is_clamped_to_remaining(order, manager):
    created, shirt, _ = order
    shirt_line = created.lines[0]

    line = replenishment_service.register_receipt(shirt_line.id, 25, manager.id)

    assert line.quantity_received == 10
    assert line.status == LINE_STATUS_COMPLETE
    assert _stock(shirt.id) == 12

    with pytest.raises(BusinessRuleViolation):
        replenishment_service.register_receipt(shirt_line.id, 1, manager.id)
    assert _stock(shirt.id) == 12


def test_receipt_evaluates_alerts(order, manager):
    created, _, jeans = order
    jeans_line = created.lines[1]
    assert [p.id for p in alert_service.list_out_of_stock_products()] == [jeans.id]

    replenishment_service.register_receipt(jeans_line.id, 2, manager.id)

    alerts = db.session.query(StockAlert).filter_by(product_id=jeans.id).all()
    assert [(a.alert_type, a.urgency, a.stock_at_alert) for a in alerts] == [(ALERT_LOW_STOCK, "MEDIUM", 2)]
    assert alert_service.list_out_of_stock_products() == []


def test_cancel_order(order, manager):
    created, shirt, _ = order

    cancelled = replenishment_service.cancel_order(created.id, manager.id, "Supplier out of stock")
    assert cancelled.status == ORDER_STATUS_CANCELLED
    assert cancelled.cancelled_at is not None
    assert "CANCELLED: Supplier out of stock" in cancelled.notes

    with pytest.raises(BusinessRuleViolation):
        replenishment_service.register_receipt(created.lines[0].id, 1, manager.id)
    assert _stock(shirt.id) == 2


def test_cannot_cancel_after_receipt(order, manager):
    created, _, _ = order
    replenishment_service.register_receipt(created.lines[0].id, 1, manager.id)

    with pytest.raises(BusinessRuleViolation):
        replenishment_service.cancel_order(created.id, manager.id, "Too late")
    with pytest.raises(ValidationError):
        replenishment_service.cancel_order(created.id, manager.id, "")


def test_overdue_and_search(order, make_product, supplier, manager):
    created, _, _ = order
    product = make_product(stock=1)
    late = replenishment_service.create_order(
        supplier_id=supplier.id, requested_by_user_id=manager.id,
        lines=[{"product_id": product.id, "quantity": 5}],
        expected_at=utcnow() - timedelta(days=1),
    )
    closed = replenishment_service.create_order(
        supplier_id=supplier.id, requested_by_user_id=manager.id,
        lines=[{"product_id": product.id, "quantity": 5}],
        expected_at=utcnow() - timedelta(days=2),
    )
    replenishment_service.cancel_order(closed.id, manager.id, "Duplicate")

    assert [o.id for o in replenishment_service.list_overdue_orders()] == [late.id]
    assert replenishment_service.list_overdue_orders(utcnow() + timedelta(days=8))[-1].id == created.id

    result = replenishment_service.search_orders(supplier_id=supplier.id, status=ORDER_STATUS_PENDING)
    assert result["pagination"]["total"] == 2
    with pytest.raises(ValidationError):
        replenishment_service.search_orders(status="SHIPPED")
