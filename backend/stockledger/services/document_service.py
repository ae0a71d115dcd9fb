# Overview: Service-layer operations for document numbering; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import day_stamp


DOC_TYPE_SALE = "sale"
DOC_TYPE_RETURN = "return"

PREFIXES = {
    DOC_TYPE_SALE: "SALE",
    DOC_TYPE_RETURN: "RET",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(document_type: str, period: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )
    return current - 1


def next_document_number(*, document_type: str, at: datetime | None = None) -> str:
    """
    Allocate the next "<PREFIX>-YYYYMMDD-N" number inside the caller's unit of work.

    N restarts at 1 each day. The counter row is bumped with a single UPDATE,
    so two writers can never read the same value. If the day's row does not
    exist yet it is inserted under a savepoint; losing that insert race falls
    back to the UPDATE. Never commits.
    """
    if document_type not in PREFIXES:
        raise DocumentSequenceError(f"Unknown document_type: {document_type}")

    period = day_stamp(at)
    number = _bump(document_type, period)

    if number is None:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, period=period, next_number=2))
            number = 1
        except IntegrityError:
            number = _bump(document_type, period)
            if number is None:
                raise DocumentSequenceError(f"Could not allocate {document_type} number for {period}")

    return f"{PREFIXES[document_type]}-{period}-{number}"
