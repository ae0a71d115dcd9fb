# Overview: Service-layer operations for the inventory history ledger; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..errors import ValidationFailure
from ..extensions import db
from ..models import InventoryHistory
from ..models.inventory import HISTORY_ACTIONS
"""
Inventory History Invariants (authoritative)

- Append-only: rows are inserted, never updated or deleted (the model's
  mapper listeners refuse both).
- Written inside the same DB transaction as the stock change it records.
- quantity is the signed delta applied to current_stock.
- Independent of StockRecord.movements; both are written for every change.
"""


def record_history(
    *,
    product_id: int,
    branch_id: int,
    action: str,
    quantity: int,
    actor_user_id: int,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
) -> InventoryHistory:
    """Append one history entry. Flushes, never commits."""
    if action not in HISTORY_ACTIONS:
        raise ValidationFailure(f"Unknown history action: {action}")

    entry = InventoryHistory(
        product_id=product_id,
        branch_id=branch_id,
        action=action,
        quantity=quantity,
        reference=reference,
        notes=notes,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_user_id=actor_user_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def has_history(*, action: str, reference_type: str, reference_id: int) -> bool:
    """True if any entry with this action already points at the document."""
    return (
        db.session.query(InventoryHistory.id)
        .filter_by(action=action, reference_type=reference_type, reference_id=reference_id)
        .first()
        is not None
    )


def list_history(
    *,
    product_id: int | None = None,
    branch_id: int | None = None,
    branch_ids: list[int] | None = None,
    action: str | None = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[InventoryHistory], int]:
    """
    Read-only history query, newest first (created_at desc, id desc).

    start/end are inclusive. Returns (page_items, total).
    """
    query = db.session.query(InventoryHistory)

    if product_id is not None:
        query = query.filter(InventoryHistory.product_id == product_id)
    if branch_id is not None:
        query = query.filter(InventoryHistory.branch_id == branch_id)
    elif branch_ids is not None:
        query = query.filter(InventoryHistory.branch_id.in_(branch_ids))
    if action:
        if action not in HISTORY_ACTIONS:
            raise ValidationFailure(f"Unknown history action: {action}")
        query = query.filter(InventoryHistory.action == action)
    if start:
        query = query.filter(InventoryHistory.created_at >= start)
    if end:
        query = query.filter(InventoryHistory.created_at <= end)

    total = query.count()

    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1

    items = (
        query.order_by(InventoryHistory.created_at.desc(), InventoryHistory.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total
