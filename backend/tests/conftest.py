"""
Pytest fixtures for boutique backend tests.

Provides an in-memory application, per-test table wipe and seeded reference rows.
"""

import pytest

from boutique import create_app
from boutique.extensions import db
from boutique.models import Client, PaymentMethod, Product, Supplier, User
from boutique.services import ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema (Core deletes bypass the movement immutability hooks)
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()
    db.session.expunge_all()


@pytest.fixture
def seller(db_session):
    user = User(username="seller", full_name="Sam Seller", email="seller@boutique.local", is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def manager(db_session):
    user = User(username="manager", full_name="Morgan Manager", email="manager@boutique.local", is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def customer(db_session):
    client = Client(document_number="40112233", first_name="Ana", last_name="Torres", is_active=True)
    db_session.add(client)
    db_session.commit()
    return client


@pytest.fixture
def cash(db_session):
    method = PaymentMethod(name="Cash", is_active=True)
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture
def supplier(db_session):
    row = Supplier(tax_id="20100100100", name="Textiles Andinos", is_active=True)
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def make_product(db_session, manager):
    """Factory: product whose opening stock is recorded as an IN movement."""
    counter = {"n": 0}

    def _make(stock=10, stock_minimum=5, sell_price_cents=1000, buy_price_cents=400, **kwargs):
        counter["n"] += 1
        product = Product(
            code=kwargs.pop("code", f"SKU-{counter['n']:03d}"),
            name=kwargs.pop("name", f"Shirt {counter['n']}"),
            sell_price_cents=sell_price_cents,
            buy_price_cents=buy_price_cents,
            stock=0,
            stock_minimum=stock_minimum,
            is_active=True,
            **kwargs,
        )
        db_session.add(product)
        db_session.commit()
        if stock:
            ledger_service.receive_stock(
                product_id=product.id,
                quantity=stock,
                actor_user_id=manager.id,
                note="Opening stock",
            )
        return product

    return _make


@pytest.fixture
def sale_refs(seller, customer, cash):
    """Keyword arguments shared by every register_sale call."""
    return {
        "client_id": customer.id,
        "seller_user_id": seller.id,
        "payment_method_id": cash.id,
    }
