# Overview: Read-only consistency checks over stock records and their movement logs.

from __future__ import annotations

from sqlalchemy import case, func

from ..extensions import db
from ..models import StockMovement, StockRecord
from ..models.inventory import MOVEMENT_IN


def verify_stock_records(*, branch_id: int | None = None) -> list[dict]:
    """
    Return one problem dict per violated rule; an empty list means consistent.

    Rules:
    - current_stock >= 0 and damaged_stock >= 0
    - max_stock_level >= min_stock_level >= 0
    - signed sum of the record's movements == current_stock
    """
    signed = case(
        (StockMovement.type == MOVEMENT_IN, StockMovement.quantity),
        else_=-StockMovement.quantity,
    )
    sums = dict(
        db.session.query(StockMovement.stock_record_id, func.coalesce(func.sum(signed), 0))
        .group_by(StockMovement.stock_record_id)
        .all()
    )

    query = db.session.query(StockRecord)
    if branch_id is not None:
        query = query.filter(StockRecord.branch_id == branch_id)

    problems: list[dict] = []
    for record in query.order_by(StockRecord.id.asc()).all():
        ref = {"stock_record_id": record.id, "product_id": record.product_id, "branch_id": record.branch_id}
        if record.current_stock < 0:
            problems.append({**ref, "rule": "non_negative", "current_stock": record.current_stock})
        if record.damaged_stock < 0:
            problems.append({**ref, "rule": "damaged_non_negative", "damaged_stock": record.damaged_stock})
        if record.min_stock_level < 0 or record.max_stock_level < record.min_stock_level:
            problems.append({
                **ref,
                "rule": "limits",
                "min_stock_level": record.min_stock_level,
                "max_stock_level": record.max_stock_level,
            })
        movement_total = int(sums.get(record.id, 0))
        if movement_total != record.current_stock:
            problems.append({
                **ref,
                "rule": "movement_sum",
                "current_stock": record.current_stock,
                "movement_total": movement_total,
            })
    return problems
