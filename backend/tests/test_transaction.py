import sqlite3

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from boutique.extensions import db
from boutique.models import Client, InventoryMovement, Product, Sale
from boutique.services import sales_service
from boutique.services.concurrency import run_with_retry, transaction
from boutique.validation import ConflictError, DuplicateError, NotFoundError


def _locked_error():
    return OperationalError("UPDATE products", {}, sqlite3.OperationalError("database is locked"))


def test_stale_data_becomes_conflict(db_session):
    with pytest.raises(ConflictError) as excinfo:
        with transaction("edit_product", product_id=7):
            raise StaleDataError("UPDATE statement on table 'products' expected to update 1 row(s)")

    assert excinfo.value.retryable is True
    assert excinfo.value.details == {"operation": "edit_product", "product_id": 7}


def test_lock_timeout_becomes_conflict(db_session):
    with pytest.raises(ConflictError) as excinfo:
        with transaction("receive_stock"):
            raise _locked_error()

    assert excinfo.value.retryable is True
    assert isinstance(excinfo.value.__cause__, OperationalError)


def test_other_operational_errors_propagate(db_session):
    error = OperationalError("SELECT", {}, sqlite3.OperationalError("no such table: widgets"))

    with pytest.raises(OperationalError):
        with transaction("report"):
            raise error


def test_non_unique_integrity_error_propagates(db_session):
    error = IntegrityError("INSERT", {}, sqlite3.IntegrityError("NOT NULL constraint failed: sales.code"))

    with pytest.raises(IntegrityError):
        with transaction("register_sale"):
            raise error


def test_failed_block_is_rolled_back(db_session):
    with pytest.raises(NotFoundError):
        with transaction("create_client"):
            db.session.add(Client(document_number="55500011", first_name="Lucia", is_active=True))
            db.session.flush()
            raise NotFoundError("Payment method 99 not found")

    assert db.session.query(Client).filter_by(document_number="55500011").count() == 0


def test_duplicate_sale_code_becomes_duplicate_error(make_product, sale_refs):
    product = make_product(stock=5, stock_minimum=1)
    db.session.add(Sale(
        code="V-000001",
        subtotal_cents=1000,
        tax_cents=180,
        total_cents=1180,
        tax_rate_bps=1800,
        **sale_refs,
    ))
    db.session.commit()

    with pytest.raises(DuplicateError):
        sales_service.register_sale(lines=[{"product_id": product.id, "quantity": 2}], **sale_refs)

    assert db.session.query(Sale).count() == 1
    assert db.session.get(Product, product.id).stock == 5
    assert db.session.query(InventoryMovement).filter_by(product_id=product.id).count() == 1


def test_run_with_retry_retries_conflicts_only(db_session):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConflictError("Concurrent update detected, please retry")
        return "done"

    assert run_with_retry(flaky, attempts=3, backoff_base=0) == "done"
    assert len(calls) == 3

    def missing():
        calls.append(1)
        raise NotFoundError("Sale 42 not found")

    calls.clear()
    with pytest.raises(NotFoundError):
        run_with_retry(missing, attempts=3, backoff_base=0)
    assert len(calls) == 1
