import pytest

from boutique.extensions import db
from boutique.models import InventoryMovement, Product
from boutique.models.inventory import (
    ImmutableMovementError,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RETURN,
)
from boutique.services import ledger_service
from boutique.services.concurrency import transaction
from boutique.validation import InsufficientStockError, NotFoundError, ValidationError


def _apply(**kwargs):
    with transaction("test_apply_movement"):
        return ledger_service.apply_movement(**kwargs)


def test_next_stock_rules():
    assert ledger_service.next_stock(MOVEMENT_IN, 5, 3) == 8
    assert ledger_service.next_stock(MOVEMENT_RETURN, 5, 3) == 8
    assert ledger_service.next_stock(MOVEMENT_OUT, 5, 3) == 2
    assert ledger_service.next_stock(MOVEMENT_ADJUSTMENT, 5, 3) == 3

    with pytest.raises(ValidationError):
        ledger_service.next_stock("TRANSFER", 5, 3)


def test_receive_stock_records_opening_movement(make_product):
    product = make_product(stock=10)

    trace = ledger_service.get_product_trace(product.id)
    assert len(trace) == 1
    assert trace[0].movement_type == MOVEMENT_IN
    assert (trace[0].stock_before, trace[0].stock_after) == (0, 10)
    assert db.session.get(Product, product.id).stock == 10


def test_out_movement_rejects_overdraw(make_product, manager):
    product = make_product(stock=2)

    with pytest.raises(InsufficientStockError) as excinfo:
        _apply(product_id=product.id, movement_type=MOVEMENT_OUT, quantity=3, actor_user_id=manager.id)

    assert excinfo.value.details["items"][0]["on_hand"] == 2
    assert db.session.get(Product, product.id).stock == 2
    assert len(ledger_service.get_product_trace(product.id)) == 1


@pytest.mark.parametrize("quantity", [0, -1])
def test_non_positive_quantity_rejected(make_product, manager, quantity):
    product = make_product(stock=5)

    with pytest.raises(ValidationError):
        _apply(product_id=product.id, movement_type=MOVEMENT_IN, quantity=quantity, actor_user_id=manager.id)


def test_unknown_product_raises_not_found(db_session, manager):
    with pytest.raises(NotFoundError):
        _apply(product_id=9999, movement_type=MOVEMENT_IN, quantity=1, actor_user_id=manager.id)


def test_adjustment_sets_absolute_stock(make_product, manager):
    product = make_product(stock=10)

    movement = ledger_service.adjust_stock(
        product_id=product.id, target_stock=4, actor_user_id=manager.id, note="Physical count"
    )

    assert movement.quantity == 4
    assert movement.delta == -6
    assert db.session.get(Product, product.id).stock == 4


def test_adjustment_requires_note(make_product, manager):
    product = make_product(stock=10)

    with pytest.raises(ValidationError):
        ledger_service.adjust_stock(product_id=product.id, target_stock=4, actor_user_id=manager.id, note="  ")


def test_stock_equals_replayed_ledger(make_product, manager):
    product = make_product(stock=10)
    _apply(product_id=product.id, movement_type=MOVEMENT_OUT, quantity=4, actor_user_id=manager.id)
    _apply(product_id=product.id, movement_type=MOVEMENT_RETURN, quantity=1, actor_user_id=manager.id)
    ledger_service.adjust_stock(product_id=product.id, target_stock=20, actor_user_id=manager.id, note="Recount")
    _apply(product_id=product.id, movement_type=MOVEMENT_OUT, quantity=5, actor_user_id=manager.id)

    assert ledger_service.replay_stock(product.id) == 15
    report = ledger_service.verify_product_stock(product.id)
    assert report["consistent"] is True
    assert report["cached_stock"] == report["ledger_stock"] == 15
    assert ledger_service.find_stock_discrepancies() == []


def test_verify_detects_drifted_cache(make_product):
    product = make_product(stock=10)
    db.session.execute(db.update(Product).where(Product.id == product.id).values(stock=7))
    db.session.commit()

    report = ledger_service.verify_product_stock(product.id)
    assert report["consistent"] is False
    assert report["ledger_stock"] == 10
    assert [r["product_id"] for r in ledger_service.find_stock_discrepancies()] == [product.id]


def test_movements_are_immutable(make_product):
    product = make_product(stock=3)
    movement = ledger_service.get_product_trace(product.id)[0]

    movement.note = "rewritten"
    with pytest.raises(ImmutableMovementError):
        db.session.flush()
    db.session.rollback()

    movement = db.session.get(InventoryMovement, movement.id)
    db.session.delete(movement)
    with pytest.raises(ImmutableMovementError):
        db.session.flush()
    db.session.rollback()


def test_search_and_totals(make_product, manager):
    product = make_product(stock=10)
    other = make_product(stock=6)
    _apply(product_id=product.id, movement_type=MOVEMENT_OUT, quantity=3, actor_user_id=manager.id)
    _apply(product_id=product.id, movement_type=MOVEMENT_RETURN, quantity=1, actor_user_id=manager.id)

    result = ledger_service.search_movements(product_id=product.id, page=1, per_page=2)
    assert result["pagination"]["total"] == 3
    assert result["pagination"]["has_next"] is True
    assert result["count"] == 2

    negative = ledger_service.search_movements(product_id=product.id, page=1, per_page=-5)
    assert negative["pagination"]["per_page"] == 1
    assert negative["pagination"]["total_pages"] == 3
    assert negative["count"] == 1

    outs = ledger_service.search_movements(movement_type=MOVEMENT_OUT, page=None)
    assert outs["count"] == 1

    totals = ledger_service.get_movement_totals(product.id)
    assert totals == {"product_id": product.id, "total_in": 11, "total_out": 3}
    assert ledger_service.get_movement_totals(other.id)["total_out"] == 0

    with pytest.raises(ValidationError):
        ledger_service.search_movements(start="not-a-date")
