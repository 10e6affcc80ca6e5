# Overview: Atomic document code allocation for sales, returns and replenishment orders.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..validation import ValidationError


DOC_SALE = "SALE"
DOC_RETURN = "RETURN"
DOC_REPLENISHMENT = "REPLENISHMENT"

DOCUMENT_PREFIXES = {
    DOC_SALE: "V",
    DOC_RETURN: "DEV",
    DOC_REPLENISHMENT: "REAB",
}


def _current_number(document_type: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )


def next_document_number(*, document_type: str, pad: int = 6) -> str:
    """
    Atomically allocate the next document code for a type.

    Runs inside the caller's transaction: the UPDATE ... SET next_number =
    next_number + 1 row lock is held until the caller commits, so codes are
    unique and strictly increasing. First use inserts the row; a concurrent
    first insert loses on the unique constraint and falls back to the UPDATE.
    """
    prefix = DOCUMENT_PREFIXES.get(document_type)
    if prefix is None:
        raise ValidationError(f"Unknown document_type {document_type!r}")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_number(document_type) - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current_number(document_type) - 1

    return f"{prefix}-{next_num:0{pad}d}"
