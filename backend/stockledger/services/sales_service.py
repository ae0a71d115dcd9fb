"""
Sales Service - point-of-sale transactions and their stock effect

Only status "completed" holds stock:
- entering completed debits every line ("sale", out movement)
- leaving completed credits every line ("sale_cancelled", in movement)
- completed -> completed with new items credits the old lines and debits
  the new ones in the same unit
- deleting a completed sale credits every line ("sale_deleted"); returns
  that cite it keep the sale number only

Sufficiency is checked per product against the summed line quantities
before anything is written, and every shortage is reported at once.
"""

from __future__ import annotations

import logging

from .. import events
from ..errors import NotFound, ValidationFailure
from ..extensions import db
from ..models import Product, ReturnSaleReference, Sale, SaleLine, User
from ..models.sales import PAYMENT_METHODS, SALE_STATUS_COMPLETED, SALE_STATUSES
from .branch_access_service import ensure_branch_access, get_branch
from .concurrency import lock_for_update
from .document_service import DOC_TYPE_SALE, next_document_number
from .stock_service import adjust_quantity, get_stock_record, lock_and_check_availability_inner
from .unit_of_work import UnitOfWork, unit_of_work


logger = logging.getLogger(__name__)

STATUS_ALIASES = {"canceled": "cancelled"}

EDITABLE_FIELDS = ("payment_method", "total_amount_cents", "customer_name", "customer_phone", "notes")


def normalize_sale_status(status: str | None) -> str:
    if status is None:
        return SALE_STATUS_COMPLETED
    value = STATUS_ALIASES.get(status.strip().lower(), status.strip().lower())
    if value not in SALE_STATUSES:
        raise ValidationFailure(
            f"status must be one of {', '.join(SALE_STATUSES)}",
            {"status": status},
        )
    return value


def _validate_items(items: list[dict]) -> None:
    if not items:
        raise ValidationFailure("Sale must contain at least one item")

    invalid = []
    for index, item in enumerate(items):
        quantity = item.get("quantity")
        unit_price = item.get("unit_price_cents")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            invalid.append({"index": index, "field": "quantity", "value": quantity})
        if not isinstance(unit_price, int) or isinstance(unit_price, bool) or unit_price < 0:
            invalid.append({"index": index, "field": "unit_price_cents", "value": unit_price})
    if invalid:
        raise ValidationFailure("Invalid sale items", {"items": invalid})

    product_ids = {item["product_id"] for item in items}
    found = {
        row[0]
        for row in db.session.query(Product.id).filter(Product.id.in_(product_ids)).all()
    }
    missing = sorted(product_ids - found)
    if missing:
        raise NotFound("Product not found", {"product_ids": missing})


def _aggregate(lines) -> dict[int, int]:
    totals: dict[int, int] = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return totals


def _build_lines(items: list[dict]) -> list[SaleLine]:
    return [
        SaleLine(
            product_id=item["product_id"],
            quantity=item["quantity"],
            unit_price_cents=item["unit_price_cents"],
        )
        for item in items
    ]


def _debit_lines_inner(uow: UnitOfWork, sale: Sale, actor_user_id: int) -> None:
    records = lock_and_check_availability_inner(sale.branch_id, _aggregate(sale.lines))
    for line in sale.lines:
        adjust_quantity(
            uow,
            records[line.product_id],
            -line.quantity,
            action="sale",
            actor_user_id=actor_user_id,
            reference=f"Sale {sale.sale_number}",
            reference_type="sale",
            reference_id=sale.id,
        )


def _credit_lines_inner(
    uow: UnitOfWork, sale: Sale, lines: list[SaleLine], actor_user_id: int, *, action: str
) -> None:
    for line in lines:
        record = get_stock_record(line.product_id, sale.branch_id, lock=True)
        adjust_quantity(
            uow,
            record,
            line.quantity,
            action=action,
            actor_user_id=actor_user_id,
            reference=f"Sale {sale.sale_number}",
            reference_type="sale",
            reference_id=sale.id,
        )


def _sale_event_payload(sale: Sale) -> dict:
    return {
        "sale_id": sale.id,
        "branch_id": sale.branch_id,
        "sale_number": sale.sale_number,
        "status": sale.status,
    }


def create_sale(
    *,
    branch_id: int,
    items: list[dict],
    actor: User,
    status: str | None = None,
    payment_method: str = "cash",
    total_amount_cents: int | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    notes: str | None = None,
) -> Sale:
    """
    Create a sale. A completed sale debits stock for every line, or fails
    with InsufficientStock having written nothing.
    """
    status = normalize_sale_status(status)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationFailure("Invalid payment_method", {"payment_method": payment_method})

    with unit_of_work(__name__) as uow:
        get_branch(branch_id)
        ensure_branch_access(actor, branch_id)
        _validate_items(items)

        if status == SALE_STATUS_COMPLETED:
            # fail fast, before a sale number is consumed
            lock_and_check_availability_inner(branch_id, _aggregate(_build_lines(items)))

        lines = _build_lines(items)
        sale = Sale(
            branch_id=branch_id,
            sale_number=next_document_number(document_type=DOC_TYPE_SALE),
            status=status,
            payment_method=payment_method,
            total_amount_cents=(
                total_amount_cents
                if total_amount_cents is not None
                else sum(line.line_total_cents for line in lines)
            ),
            customer_name=customer_name,
            customer_phone=customer_phone,
            notes=notes,
            created_by_user_id=actor.id,
            lines=lines,
        )
        db.session.add(sale)
        db.session.flush()

        if sale.is_completed:
            _debit_lines_inner(uow, sale, actor.id)

        uow.emit(events.sale_created, **_sale_event_payload(sale))

    logger.info("Created sale %s (%s)", sale.sale_number, sale.status)
    return sale


def update_sale(*, sale_id: int, actor: User, patch: dict) -> Sale:
    """
    Apply a validated patch (status, items, and the EDITABLE_FIELDS).

    Stock moves only when the sale enters or leaves "completed", or when a
    completed sale gets new items.
    """
    with unit_of_work(__name__) as uow:
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFound("Sale not found", {"sale_id": sale_id})
        ensure_branch_access(actor, sale.branch_id)

        was_completed = sale.is_completed
        new_status = normalize_sale_status(patch["status"]) if "status" in patch else sale.status
        will_complete = new_status == SALE_STATUS_COMPLETED

        new_items = patch.get("items")
        if new_items is not None:
            _validate_items(new_items)

        if "payment_method" in patch and patch["payment_method"] not in PAYMENT_METHODS:
            raise ValidationFailure("Invalid payment_method", {"payment_method": patch["payment_method"]})

        if was_completed and (not will_complete or new_items is not None):
            _credit_lines_inner(uow, sale, list(sale.lines), actor.id, action="sale_cancelled")

        if new_items is not None:
            sale.lines = _build_lines(new_items)
            if "total_amount_cents" not in patch:
                sale.total_amount_cents = sum(line.line_total_cents for line in sale.lines)
            db.session.flush()

        sale.status = new_status
        if will_complete and (not was_completed or new_items is not None):
            _debit_lines_inner(uow, sale, actor.id)

        for field in EDITABLE_FIELDS:
            if field in patch:
                setattr(sale, field, patch[field])
        sale.updated_by_user_id = actor.id
        db.session.flush()

        uow.emit(events.sale_updated, **_sale_event_payload(sale))

    return sale


def delete_sale(*, sale_id: int, actor: User) -> dict:
    """Remove a sale; a completed one has every line credited back first."""
    with unit_of_work(__name__) as uow:
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFound("Sale not found", {"sale_id": sale_id})
        ensure_branch_access(actor, sale.branch_id)

        # returns keep the copied sale_number
        for ref in db.session.query(ReturnSaleReference).filter_by(sale_id=sale.id).all():
            ref.sale = None

        if sale.is_completed:
            _credit_lines_inner(uow, sale, list(sale.lines), actor.id, action="sale_deleted")

        payload = _sale_event_payload(sale)
        db.session.delete(sale)
        db.session.flush()

        uow.emit(events.sale_deleted, **payload)

    logger.info("Deleted sale %s", payload["sale_number"])
    return payload


def get_sale(sale_id: int) -> Sale:
    sale = db.session.query(Sale).filter_by(id=sale_id).first()
    if not sale:
        raise NotFound("Sale not found", {"sale_id": sale_id})
    return sale


def list_sales(
    *,
    branch_id: int | None = None,
    branch_ids: list[int] | None = None,
    status: str | None = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[Sale], int]:
    query = db.session.query(Sale)
    if branch_id is not None:
        query = query.filter(Sale.branch_id == branch_id)
    elif branch_ids is not None:
        query = query.filter(Sale.branch_id.in_(branch_ids))
    if status:
        query = query.filter(Sale.status == normalize_sale_status(status))

    total = query.count()
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1

    items = (
        query.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total
