# Overview: Transaction scoping and concurrency safeguards shared by every mutating service.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import ConflictError, DomainError, DuplicateError


_LOCK_ERROR_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not obtain lock",
    "could not serialize access",
    "lock wait timeout",
)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there begin_write() takes the
    database write lock instead.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Start the write transaction eagerly.

    SQLite only takes its write lock at the first INSERT/UPDATE, after the
    stock reads. BEGIN IMMEDIATE takes it up front so a concurrent writer
    waits instead of reading stale stock.
    """
    if db.engine.dialect.name != "sqlite":
        return
    dbapi_conn = db.session.connection().connection.driver_connection
    if not dbapi_conn.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "unique" in message or "duplicate" in message


def _format_context(context: dict) -> str:
    return ", ".join(f"{key}={value}" for key, value in context.items() if value is not None)


@contextmanager
def transaction(operation: str, **context):
    """
    Run the block as one all-or-nothing unit of work.

    - Commits on success; rolls back on any exception.
    - Optimistic-lock and lock-timeout failures become ConflictError (caller-retryable).
    - Unique-constraint collisions become DuplicateError.
    - Anything unexpected is logged with the operation context and re-raised.
    """
    ctx = _format_context(context)
    try:
        begin_write()
        yield
        db.session.commit()
    except DomainError as exc:
        db.session.rollback()
        current_app.logger.warning("%s rejected: %s (%s)", operation, exc.message, ctx)
        raise
    except StaleDataError as exc:
        db.session.rollback()
        current_app.logger.warning("%s hit a concurrent update (%s)", operation, ctx)
        raise ConflictError(
            "Concurrent update detected, please retry",
            details={"operation": operation, **context},
        ) from exc
    except OperationalError as exc:
        db.session.rollback()
        if _is_lock_error(exc):
            current_app.logger.warning("%s could not acquire lock (%s)", operation, ctx)
            raise ConflictError(
                "Resource is locked by another transaction, please retry",
                details={"operation": operation, **context},
            ) from exc
        current_app.logger.exception("%s failed (%s)", operation, ctx)
        raise
    except IntegrityError as exc:
        db.session.rollback()
        if _is_unique_violation(exc):
            current_app.logger.warning("%s violated a unique constraint (%s)", operation, ctx)
            raise DuplicateError(
                "Duplicate value for a unique field",
                details={"operation": operation, **context},
            ) from exc
        current_app.logger.exception("%s failed (%s)", operation, ctx)
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("%s failed (%s)", operation, ctx)
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Caller-side retry for operations that raised ConflictError.

    Services never retry on their own; operator jobs (CLI sweep) use this.
    """
    for attempt in range(attempts):
        try:
            return func()
        except ConflictError:
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
