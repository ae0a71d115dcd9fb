# Overview: Service-layer operations for branch stock records; encapsulates business logic and database work.

from __future__ import annotations

import logging

from .. import events
from ..errors import Conflict, InsufficientStock, NotFound, ValidationFailure
from ..extensions import db
from ..models import Product, StockMovement, StockRecord, User
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT, STOCK_STATUS_LOW
from .branch_access_service import ensure_branch_access, get_branch
from .concurrency import lock_for_update
from .ledger_service import record_history
from .unit_of_work import UnitOfWork, unit_of_work
"""
Stock Ledger Invariants (authoritative)

- One StockRecord per (product, branch); created only by explicit create,
  bulk create or first delivery of an order. Sales and returns never create
  records: a missing record is NotFound.
- current_stock is never negative. A debit that would make it negative fails
  with InsufficientStock and the whole unit rolls back.
- Every change of current_stock goes through adjust_quantity, which writes
  exactly one StockMovement and exactly one InventoryHistory row.
- max_stock_level >= min_stock_level >= 0.
- Helpers named *_inner flush but never commit; public functions own the
  unit of work.
"""


logger = logging.getLogger(__name__)


def _ensure_product(product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFound("Product not found", {"product_id": product_id})
    return product


def _validate_limits(min_stock_level: int, max_stock_level: int) -> None:
    if min_stock_level < 0 or max_stock_level < 0:
        raise ValidationFailure(
            "Stock levels must be >= 0",
            {"min_stock_level": min_stock_level, "max_stock_level": max_stock_level},
        )
    if max_stock_level < min_stock_level:
        raise ValidationFailure(
            "max_stock_level must be >= min_stock_level",
            {"min_stock_level": min_stock_level, "max_stock_level": max_stock_level},
        )


def find_stock_record(product_id: int, branch_id: int, *, lock: bool = False) -> StockRecord | None:
    query = db.session.query(StockRecord).filter_by(product_id=product_id, branch_id=branch_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_stock_record(product_id: int, branch_id: int, *, lock: bool = False) -> StockRecord:
    record = find_stock_record(product_id, branch_id, lock=lock)
    if record is None:
        raise NotFound(
            "Stock record not found",
            {"product_id": product_id, "branch_id": branch_id},
        )
    return record


def stock_status(product_id: int, branch_id: int) -> dict:
    record = get_stock_record(product_id, branch_id)
    return {
        "product_id": product_id,
        "branch_id": branch_id,
        "current_stock": record.current_stock,
        "min_stock_level": record.min_stock_level,
        "max_stock_level": record.max_stock_level,
        "stock_status": record.stock_status,
    }


def adjust_quantity(
    uow: UnitOfWork,
    record: StockRecord,
    delta: int,
    *,
    action: str,
    actor_user_id: int,
    reference: str | None = None,
    notes: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
) -> StockRecord:
    """
    The single primitive that changes StockRecord.current_stock.

    Re-reads the row under lock so the check sees the latest committed
    quantity, then applies delta, appends one movement ("in" for credits,
    "out" for debits) and one history entry with the signed delta, and
    queues stock_changed (plus low_stock when the record ends at or below
    its minimum). Flushes, never commits.
    """
    if delta == 0:
        raise ValidationFailure("Quantity change must be non-zero")

    db.session.flush()
    db.session.refresh(record, with_for_update=True)

    new_quantity = record.current_stock + delta
    if new_quantity < 0:
        raise InsufficientStock(
            "Insufficient stock",
            {
                "items": [
                    {
                        "product_id": record.product_id,
                        "branch_id": record.branch_id,
                        "requested": -delta,
                        "available": record.current_stock,
                    }
                ]
            },
        )

    record.current_stock = new_quantity
    record.updated_by_user_id = actor_user_id
    db.session.add(
        StockMovement(
            stock_record=record,
            type=MOVEMENT_IN if delta > 0 else MOVEMENT_OUT,
            quantity=abs(delta),
            reference=reference,
            created_by_user_id=actor_user_id,
        )
    )
    record_history(
        product_id=record.product_id,
        branch_id=record.branch_id,
        action=action,
        quantity=delta,
        actor_user_id=actor_user_id,
        reference=reference,
        notes=notes,
        reference_type=reference_type,
        reference_id=reference_id,
    )

    key = (record.branch_id, record.product_id)
    uow.emit(
        events.stock_changed,
        key=key,
        branch_id=record.branch_id,
        product_id=record.product_id,
        new_quantity=new_quantity,
        change_type=action,
    )
    if record.stock_status == STOCK_STATUS_LOW:
        uow.emit(
            events.low_stock,
            key=key,
            branch_id=record.branch_id,
            product_id=record.product_id,
            current_stock=new_quantity,
            min_stock_level=record.min_stock_level,
        )
    else:
        uow.retract(events.low_stock, key)

    db.session.flush()
    return record


def lock_and_check_availability_inner(branch_id: int, requested: dict[int, int]) -> dict[int, StockRecord]:
    """
    Lock the branch's records for every requested product and verify all of them.

    requested maps product_id -> total quantity to debit (already aggregated,
    so two lines of the same product are checked against their sum).
    Missing records raise NotFound; every shortage is reported together in
    one InsufficientStock before anything is mutated.
    """
    records: dict[int, StockRecord] = {}
    missing: list[int] = []
    insufficient: list[dict] = []

    for product_id in sorted(requested):
        record = find_stock_record(product_id, branch_id, lock=True)
        if record is None:
            missing.append(product_id)
            continue
        records[product_id] = record
        if record.current_stock < requested[product_id]:
            insufficient.append(
                {
                    "product_id": product_id,
                    "branch_id": branch_id,
                    "requested": requested[product_id],
                    "available": record.current_stock,
                }
            )

    if missing:
        raise NotFound(
            "Stock record not found",
            {"branch_id": branch_id, "product_ids": missing},
        )
    if insufficient:
        raise InsufficientStock("Insufficient stock", {"items": insufficient})
    return records


def _create_stock_record_inner(
    uow: UnitOfWork,
    *,
    product_id: int,
    branch_id: int,
    actor_user_id: int,
    initial_stock: int = 0,
    min_stock_level: int = 0,
    max_stock_level: int = 0,
    reference: str | None = None,
) -> StockRecord:
    _ensure_product(product_id)
    if initial_stock < 0:
        raise ValidationFailure("initial_stock must be >= 0", {"product_id": product_id})
    _validate_limits(min_stock_level, max_stock_level)

    if find_stock_record(product_id, branch_id) is not None:
        raise Conflict(
            "Stock record already exists",
            {"product_id": product_id, "branch_id": branch_id},
        )

    record = StockRecord(
        product_id=product_id,
        branch_id=branch_id,
        current_stock=0,
        min_stock_level=min_stock_level,
        max_stock_level=max_stock_level,
        created_by_user_id=actor_user_id,
    )
    db.session.add(record)
    db.session.flush()

    if initial_stock > 0:
        adjust_quantity(
            uow,
            record,
            initial_stock,
            action="restock",
            actor_user_id=actor_user_id,
            reference=reference or "Initial stock",
        )
    return record


def create_stock_record(
    *,
    product_id: int,
    branch_id: int,
    actor: User,
    initial_stock: int = 0,
    min_stock_level: int = 0,
    max_stock_level: int = 0,
) -> StockRecord:
    """Create the (product, branch) record; Conflict if it already exists."""
    with unit_of_work(__name__) as uow:
        get_branch(branch_id)
        ensure_branch_access(actor, branch_id)
        record = _create_stock_record_inner(
            uow,
            product_id=product_id,
            branch_id=branch_id,
            actor_user_id=actor.id,
            initial_stock=initial_stock,
            min_stock_level=min_stock_level,
            max_stock_level=max_stock_level,
        )
    logger.info("Created stock record product=%s branch=%s", product_id, branch_id)
    return record


def ensure_stock_record_inner(
    uow: UnitOfWork, *, product_id: int, branch_id: int, actor_user_id: int
) -> StockRecord:
    """Delivery path only: return the locked record, creating it with zero limits if absent."""
    record = find_stock_record(product_id, branch_id, lock=True)
    if record is not None:
        return record
    return _create_stock_record_inner(
        uow, product_id=product_id, branch_id=branch_id, actor_user_id=actor_user_id
    )


def adjust_stock(
    *,
    product_id: int,
    branch_id: int,
    delta: int,
    actor: User,
    reference: str | None = None,
    notes: str | None = None,
) -> StockRecord:
    """
    Manual stock change: delta > 0 is recorded as "restock", delta < 0 as
    "adjustment". delta == 0 is rejected.
    """
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationFailure("quantity must be a non-zero integer", {"quantity": delta})

    with unit_of_work(__name__) as uow:
        ensure_branch_access(actor, branch_id)
        record = get_stock_record(product_id, branch_id, lock=True)
        adjust_quantity(
            uow,
            record,
            delta,
            action="restock" if delta > 0 else "adjustment",
            actor_user_id=actor.id,
            reference=reference or ("Manual restock" if delta > 0 else "Manual adjustment"),
            notes=notes,
        )
    return record


def set_stock_limits(
    *,
    product_id: int,
    branch_id: int,
    min_stock_level: int,
    max_stock_level: int,
    actor: User,
) -> StockRecord:
    """
    Replace min/max levels. An invalid range leaves the prior limits untouched.

    The change is written to history as a zero-delta "settings_adjustment".
    """
    _validate_limits(min_stock_level, max_stock_level)

    with unit_of_work(__name__) as uow:
        ensure_branch_access(actor, branch_id)
        record = get_stock_record(product_id, branch_id, lock=True)

        note = (
            f"min {record.min_stock_level} -> {min_stock_level}, "
            f"max {record.max_stock_level} -> {max_stock_level}"
        )
        record.min_stock_level = min_stock_level
        record.max_stock_level = max_stock_level
        record.updated_by_user_id = actor.id
        db.session.flush()

        record_history(
            product_id=product_id,
            branch_id=branch_id,
            action="settings_adjustment",
            quantity=0,
            actor_user_id=actor.id,
            reference="Stock limits updated",
            notes=note,
        )

        if record.stock_status == STOCK_STATUS_LOW:
            uow.emit(
                events.low_stock,
                key=(branch_id, product_id),
                branch_id=branch_id,
                product_id=product_id,
                current_stock=record.current_stock,
                min_stock_level=record.min_stock_level,
            )
    return record


def bulk_create_stock(*, branch_id: int, items: list[dict], actor: User) -> list[StockRecord]:
    """
    Create many records for one branch, all or nothing.

    Each item: {product_id, initial_stock?, min_stock_level?, max_stock_level?}.
    Any duplicate product (repeated in the payload or already stocked at the
    branch) is a Conflict listing every duplicate, and nothing is written.
    """
    if not items:
        raise ValidationFailure("items must be a non-empty list")

    seen: set[int] = set()
    repeated: list[int] = []
    for item in items:
        product_id = item["product_id"]
        if product_id in seen:
            repeated.append(product_id)
        seen.add(product_id)
    if repeated:
        raise Conflict("Duplicate products in payload", {"product_ids": sorted(set(repeated))})

    with unit_of_work(__name__) as uow:
        get_branch(branch_id)
        ensure_branch_access(actor, branch_id)

        existing = [
            row[0]
            for row in db.session.query(StockRecord.product_id)
            .filter(StockRecord.branch_id == branch_id, StockRecord.product_id.in_(seen))
            .all()
        ]
        if existing:
            raise Conflict(
                "Stock records already exist",
                {"branch_id": branch_id, "product_ids": sorted(existing)},
            )

        records = [
            _create_stock_record_inner(
                uow,
                product_id=item["product_id"],
                branch_id=branch_id,
                actor_user_id=actor.id,
                initial_stock=item.get("initial_stock", 0),
                min_stock_level=item.get("min_stock_level", 0),
                max_stock_level=item.get("max_stock_level", 0),
                reference="Bulk create",
            )
            for item in items
        ]
    logger.info("Bulk created %d stock records for branch=%s", len(records), branch_id)
    return records


def list_stock(
    *,
    branch_id: int | None = None,
    branch_ids: list[int] | None = None,
    low_stock_only: bool = False,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[StockRecord], int]:
    query = db.session.query(StockRecord)
    if branch_id is not None:
        query = query.filter(StockRecord.branch_id == branch_id)
    elif branch_ids is not None:
        query = query.filter(StockRecord.branch_id.in_(branch_ids))
    if low_stock_only:
        query = query.filter(StockRecord.current_stock <= StockRecord.min_stock_level)

    total = query.count()
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1

    items = (
        query.order_by(StockRecord.branch_id.asc(), StockRecord.product_id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total
