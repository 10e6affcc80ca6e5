from datetime import timedelta

from boutique.extensions import db
from boutique.models import Product
from boutique.services import replenishment_service
from boutique.time_utils import utcnow


def test_alerts_sweep_and_unread(app, make_product):
    product = make_product(stock=10, stock_minimum=5)
    db.session.execute(db.update(Product).where(Product.id == product.id).values(stock=0))
    db.session.commit()

    runner = app.test_cli_runner()

    result = runner.invoke(args=["alerts", "sweep"])
    assert result.exit_code == 0
    assert "Raised 1 alert(s)" in result.output
    assert "OUT_OF_STOCK" in result.output

    result = runner.invoke(args=["alerts", "sweep"])
    assert "No new alerts." in result.output

    result = runner.invoke(args=["alerts", "unread"])
    assert result.exit_code == 0
    assert "CRITICAL" in result.output


def test_ledger_verify(app, make_product):
    good = make_product(stock=10)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "verify"])
    assert result.exit_code == 0
    assert "PASS" in result.output

    db.session.execute(db.update(Product).where(Product.id == good.id).values(stock=3))
    db.session.commit()

    result = runner.invoke(args=["ledger", "verify", "--product-id", str(good.id)])
    assert result.exit_code == 1
    assert "cached=3 ledger=10" in result.output

    result = runner.invoke(args=["ledger", "verify", "--product-id", "9999"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_replenishment_overdue(app, make_product, supplier, manager):
    product = make_product(stock=1)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["replenishment", "overdue"])
    assert "No overdue orders." in result.output

    order = replenishment_service.create_order(
        supplier_id=supplier.id,
        requested_by_user_id=manager.id,
        lines=[{"product_id": product.id, "quantity": 8}],
        expected_at=utcnow() - timedelta(days=3),
    )

    result = runner.invoke(args=["replenishment", "overdue"])
    assert result.exit_code == 0
    assert order.code in result.output


def test_system_init_and_reset_db(app, make_product):
    make_product(stock=4)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "init-db"])
    assert result.exit_code == 0
    assert "Tables created." in result.output
    assert db.session.query(Product).count() == 1

    result = runner.invoke(args=["system", "reset-db"], input="n\n")
    assert result.exit_code == 1
    assert db.session.query(Product).count() == 1

    db.session.commit()
    result = runner.invoke(args=["system", "reset-db", "--yes"])
    assert result.exit_code == 0
    assert "Database reset complete." in result.output
    db.session.expunge_all()
    assert db.session.query(Product).count() == 0
