"""
Return Workflow Service

Two flows share one state machine:

    pending_approval -> approved | rejected   (terminal, exactly once)

ORDER FLOW (return against a delivered factory order):
- the order must be delivered, belong to the branch and be no older than
  the return window (days)
- every product must be on the order; quantity <= ordered - already
  returned - held by other pending returns
- stock leaves the branch at creation ("return_pending", out movement)
- review: approved lines are refunded at the order line price, the order
  total drops by the refund (floored at 0), a confirmation note is appended
  to the order, returned_quantity grows and a zero-delta "return_approved"
  history row records each approved line; rejected lines are credited
  back to stock ("return_rejected")

RESTOCK FLOW (branch-initiated, optionally citing sales):
- no stock effect at creation
- review: approved lines are credited ("return_approved"); rejected lines
  have no effect

REVIEW PAYLOAD: must list every return line exactly once with matching
product and quantity. Decision "rejected" requires every line rejected;
"approved" requires at least one approved line (partial approval).
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from .. import events
from ..errors import Conflict, NotFound, ValidationFailure
from ..extensions import db
from ..models import (
    Order,
    OrderLine,
    Product,
    Return,
    ReturnLine,
    ReturnSaleReference,
    ReturnStatusChange,
    Sale,
    User,
)
from ..models.documents import (
    ITEM_STATUS_APPROVED,
    ITEM_STATUS_REJECTED,
    RETURN_FLOW_ORDER,
    RETURN_FLOW_RESTOCK,
    RETURN_STATUS_APPROVED,
    RETURN_STATUS_PENDING,
    RETURN_STATUS_REJECTED,
)
from ..models.orders import ORDER_STATUS_DELIVERED
from ..time_utils import older_than, utcnow
from .branch_access_service import ensure_branch_access, get_branch
from .concurrency import lock_for_update
from .document_service import DOC_TYPE_RETURN, next_document_number
from .ledger_service import record_history
from .stock_service import adjust_quantity, get_stock_record, lock_and_check_availability_inner
from .unit_of_work import UnitOfWork, unit_of_work


logger = logging.getLogger(__name__)

DEFAULT_RETURN_WINDOW_DAYS = 3


def _aggregate(items: list[dict]) -> dict[int, int]:
    totals: dict[int, int] = {}
    for item in items:
        totals[item["product_id"]] = totals.get(item["product_id"], 0) + item["quantity"]
    return totals


def _lock_return(return_id: int) -> Return:
    return_doc = lock_for_update(db.session.query(Return).filter_by(id=return_id)).first()
    if not return_doc:
        raise NotFound("Return not found", {"return_id": return_id})
    return return_doc


def _pending_order_quantities(order_id: int) -> dict[int, int]:
    """Quantities per product already held by pending returns of the order."""
    rows = (
        db.session.query(ReturnLine.product_id, func.sum(ReturnLine.quantity))
        .join(Return, Return.id == ReturnLine.return_id)
        .filter(Return.order_id == order_id, Return.status == RETURN_STATUS_PENDING)
        .group_by(ReturnLine.product_id)
        .all()
    )
    return {product_id: int(qty or 0) for product_id, qty in rows}


def _add_status_change(return_doc: Return, status: str, actor_user_id: int, notes: str | None) -> None:
    return_doc.status_history.append(
        ReturnStatusChange(status=status, changed_by_user_id=actor_user_id, notes=notes)
    )


def _return_event_payload(return_doc: Return) -> dict:
    return {
        "return_id": return_doc.id,
        "branch_id": return_doc.branch_id,
        "return_number": return_doc.return_number,
        "status": return_doc.status,
        "refund_total_cents": return_doc.refund_total_cents,
    }


def _build_lines(items: list[dict], price_lookup) -> list[ReturnLine]:
    return [
        ReturnLine(
            product_id=item["product_id"],
            quantity=item["quantity"],
            price_cents=item.get("price_cents", price_lookup(item["product_id"])),
            reason=item.get("reason", "Other"),
        )
        for item in items
    ]


# =============================================================================
# RETURN CREATION
# =============================================================================

def create_order_return(
    *,
    order_id: int,
    branch_id: int,
    items: list[dict],
    actor: User,
    reason: str | None = None,
    notes: str | None = None,
    return_window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
) -> Return:
    """
    Return goods of a delivered order; stock is debited immediately.

    Raises ValidationFailure for a wrong order state, an expired window or
    quantities beyond what is still returnable, InsufficientStock when the
    branch no longer holds the goods.
    """
    if not items:
        raise ValidationFailure("Return must contain at least one item")

    with unit_of_work(__name__) as uow:
        ensure_branch_access(actor, branch_id)

        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise NotFound("Order not found", {"order_id": order_id})
        if order.branch_id != branch_id:
            raise ValidationFailure(
                "Order does not belong to this branch",
                {"order_id": order_id, "branch_id": branch_id},
            )
        if order.status != ORDER_STATUS_DELIVERED:
            raise ValidationFailure(
                "Only delivered orders can be returned",
                {"order_id": order_id, "status": order.status},
            )
        if older_than(order.created_at, return_window_days):
            raise ValidationFailure(
                f"Return window of {return_window_days} days has expired",
                {"order_id": order_id},
            )

        requested = _aggregate(items)
        held = _pending_order_quantities(order.id)
        problems = []
        for product_id, quantity in sorted(requested.items()):
            line = order.line_for_product(product_id)
            if line is None:
                problems.append({"product_id": product_id, "error": "not on order"})
                continue
            available = line.returnable_quantity - held.get(product_id, 0)
            if quantity > available:
                problems.append({
                    "product_id": product_id,
                    "error": "exceeds returnable quantity",
                    "requested": quantity,
                    "returnable": max(available, 0),
                })
        if problems:
            raise ValidationFailure("Invalid return items", {"items": problems})

        records = lock_and_check_availability_inner(branch_id, requested)

        return_doc = Return(
            branch_id=branch_id,
            return_number=next_document_number(document_type=DOC_TYPE_RETURN),
            flow=RETURN_FLOW_ORDER,
            order_id=order.id,
            status=RETURN_STATUS_PENDING,
            reason=reason,
            notes=notes,
            created_by_user_id=actor.id,
            lines=_build_lines(items, lambda pid: order.line_for_product(pid).price_cents),
        )
        _add_status_change(return_doc, RETURN_STATUS_PENDING, actor.id, "Return created")
        db.session.add(return_doc)
        db.session.flush()

        for line in return_doc.lines:
            adjust_quantity(
                uow,
                records[line.product_id],
                -line.quantity,
                action="return_pending",
                actor_user_id=actor.id,
                reference=f"Return {return_doc.return_number}",
                notes=line.reason,
                reference_type="return",
                reference_id=return_doc.id,
            )

        uow.emit(events.return_created, **_return_event_payload(return_doc))

    logger.info("Created order return %s for order %s", return_doc.return_number, order_id)
    return return_doc


def create_restock_return(
    *,
    branch_id: int,
    items: list[dict],
    actor: User,
    sale_ids: list[int] | None = None,
    reason: str | None = None,
    notes: str | None = None,
) -> Return:
    """Branch return request; stock is untouched until review."""
    if not items:
        raise ValidationFailure("Return must contain at least one item")
    sale_ids = sale_ids or []

    with unit_of_work(__name__) as uow:
        get_branch(branch_id)
        ensure_branch_access(actor, branch_id)

        product_ids = {item["product_id"] for item in items}
        products = {
            p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
        }
        missing = sorted(product_ids - set(products))
        if missing:
            raise NotFound("Product not found", {"product_ids": missing})
        for product_id in sorted(product_ids):
            get_stock_record(product_id, branch_id)

        sales = []
        if sale_ids:
            sales = db.session.query(Sale).filter(Sale.id.in_(sale_ids)).all()
            found = {s.id for s in sales}
            missing_sales = sorted(set(sale_ids) - found)
            if missing_sales:
                raise NotFound("Sale not found", {"sale_ids": missing_sales})
            foreign = sorted(s.id for s in sales if s.branch_id != branch_id)
            if foreign:
                raise ValidationFailure(
                    "Sales do not belong to this branch",
                    {"sale_ids": foreign, "branch_id": branch_id},
                )

        return_doc = Return(
            branch_id=branch_id,
            return_number=next_document_number(document_type=DOC_TYPE_RETURN),
            flow=RETURN_FLOW_RESTOCK,
            status=RETURN_STATUS_PENDING,
            reason=reason,
            notes=notes,
            created_by_user_id=actor.id,
            lines=_build_lines(items, lambda pid: products[pid].price_cents or 0),
            sale_references=[
                ReturnSaleReference(sale_id=sale.id, sale_number=sale.sale_number)
                for sale in sorted(sales, key=lambda s: sale_ids.index(s.id))
            ],
        )
        _add_status_change(return_doc, RETURN_STATUS_PENDING, actor.id, "Return created")
        db.session.add(return_doc)
        db.session.flush()

        uow.emit(events.return_created, **_return_event_payload(return_doc))

    logger.info("Created restock return %s", return_doc.return_number)
    return return_doc


# =============================================================================
# REVIEW
# =============================================================================

def _match_review_items(return_doc: Return, items: list[dict]) -> list[tuple[ReturnLine, dict]]:
    """
    Pair every return line with exactly one review item (same product and
    quantity). Any unmatched item or line fails the whole review.
    """
    unmatched_lines = list(return_doc.lines)
    pairs: list[tuple[ReturnLine, dict]] = []
    unmatched_items = []

    for item in items:
        match = next(
            (
                line for line in unmatched_lines
                if line.product_id == item["product_id"] and line.quantity == item["quantity"]
            ),
            None,
        )
        if match is None:
            unmatched_items.append({"product_id": item["product_id"], "quantity": item["quantity"]})
            continue
        unmatched_lines.remove(match)
        pairs.append((match, item))

    if unmatched_items or unmatched_lines:
        raise ValidationFailure(
            "Review items must match the return lines exactly",
            {
                "unmatched_items": unmatched_items,
                "missing_lines": [
                    {"product_id": line.product_id, "quantity": line.quantity}
                    for line in unmatched_lines
                ],
            },
        )
    return pairs


def _check_decision(decision: str, pairs: list[tuple[ReturnLine, dict]]) -> None:
    statuses = [item["status"] for _, item in pairs]
    if decision == RETURN_STATUS_REJECTED and any(s != ITEM_STATUS_REJECTED for s in statuses):
        raise ValidationFailure("A rejected return must reject every item")
    if decision == RETURN_STATUS_APPROVED and ITEM_STATUS_APPROVED not in statuses:
        raise ValidationFailure("An approved return must approve at least one item")


def _settle_order_flow_inner(
    uow: UnitOfWork, return_doc: Return, pairs: list[tuple[ReturnLine, dict]], actor_user_id: int
) -> int:
    order = lock_for_update(db.session.query(Order).filter_by(id=return_doc.order_id)).first()
    if not order:
        raise NotFound("Order not found", {"order_id": return_doc.order_id})

    approved = [line for line, item in pairs if item["status"] == ITEM_STATUS_APPROVED]
    rejected = [line for line, item in pairs if item["status"] == ITEM_STATUS_REJECTED]

    # validate every approved line before touching anything
    settlements = []
    problems = []
    for line in approved:
        order_line = order.line_for_product(line.product_id)
        if order_line is None:
            problems.append({"product_id": line.product_id, "error": "not on order"})
            continue
        if order_line.returned_quantity + line.quantity > order_line.quantity:
            problems.append({
                "product_id": line.product_id,
                "error": "exceeds ordered quantity",
                "requested": line.quantity,
                "returnable": order_line.returnable_quantity,
            })
            continue
        settlements.append((line, order_line))
    if problems:
        raise ValidationFailure("Return lines do not match the order", {"items": problems})

    refund = 0
    for line, order_line in settlements:
        refund += order_line.price_cents * line.quantity
        order_line.returned_quantity += line.quantity

    # stock already left at creation; record the approval itself
    for line, order_line in settlements:
        record_history(
            product_id=line.product_id,
            branch_id=return_doc.branch_id,
            action="return_approved",
            quantity=0,
            actor_user_id=actor_user_id,
            reference=f"Return {return_doc.return_number}",
            notes=f"Approved {line.quantity}, refund {order_line.price_cents * line.quantity}",
            reference_type="return",
            reference_id=return_doc.id,
        )

    if settlements:
        order.total_amount_cents = max(0, order.total_amount_cents - refund)
        order.append_note(f"Return {return_doc.return_number} confirmed, refund {refund}")

    for line in rejected:
        record = get_stock_record(line.product_id, return_doc.branch_id, lock=True)
        adjust_quantity(
            uow,
            record,
            line.quantity,
            action="return_rejected",
            actor_user_id=actor_user_id,
            reference=f"Return {return_doc.return_number}",
            reference_type="return",
            reference_id=return_doc.id,
        )
    return refund


def _settle_restock_flow_inner(
    uow: UnitOfWork, return_doc: Return, pairs: list[tuple[ReturnLine, dict]], actor_user_id: int
) -> int:
    for line, item in pairs:
        if item["status"] != ITEM_STATUS_APPROVED:
            continue
        record = get_stock_record(line.product_id, return_doc.branch_id, lock=True)
        adjust_quantity(
            uow,
            record,
            line.quantity,
            action="return_approved",
            actor_user_id=actor_user_id,
            reference=f"Return {return_doc.return_number}",
            reference_type="return",
            reference_id=return_doc.id,
        )
    return 0


def review_return(
    *,
    return_id: int,
    actor: User,
    decision: str,
    items: list[dict],
    review_notes: str | None = None,
) -> Return:
    """
    Move a pending return to approved or rejected, exactly once.

    Raises Conflict if already reviewed, Unauthorized for another branch's
    return, ValidationFailure if the payload does not match the lines.
    """
    if decision not in (RETURN_STATUS_APPROVED, RETURN_STATUS_REJECTED):
        raise ValidationFailure("status must be approved or rejected", {"status": decision})

    with unit_of_work(__name__) as uow:
        return_doc = _lock_return(return_id)
        ensure_branch_access(actor, return_doc.branch_id)
        if not return_doc.is_pending:
            raise Conflict(
                "Return has already been reviewed",
                {"return_id": return_id, "status": return_doc.status},
            )

        pairs = _match_review_items(return_doc, items)
        _check_decision(decision, pairs)

        if return_doc.flow == RETURN_FLOW_ORDER:
            refund = _settle_order_flow_inner(uow, return_doc, pairs, actor.id)
        else:
            refund = _settle_restock_flow_inner(uow, return_doc, pairs, actor.id)

        for line, item in pairs:
            line.status = item["status"]
            line.review_notes = item.get("review_notes")

        return_doc.status = decision
        return_doc.refund_total_cents = refund
        return_doc.reviewed_by_user_id = actor.id
        return_doc.reviewed_at = utcnow()
        return_doc.review_notes = review_notes
        _add_status_change(return_doc, decision, actor.id, review_notes)
        db.session.flush()

        uow.emit(events.return_status_updated, **_return_event_payload(return_doc))

    logger.info("Return %s reviewed: %s", return_doc.return_number, decision)
    return return_doc


# =============================================================================
# QUERIES
# =============================================================================

def list_returnable_orders(
    *,
    product_id: int,
    branch_id: int,
    actor: User,
    return_window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
) -> list[dict]:
    """
    Delivered orders of the branch that still have some of the product to return.

    remaining_quantity is what create_order_return would accept right now:
    ordered minus already returned minus held by pending returns. Orders
    whose remaining quantity is 0 are left out; orders past the return
    window are listed with return_window_open False.
    """
    ensure_branch_access(actor, branch_id)
    get_branch(branch_id)

    orders = (
        db.session.query(Order)
        .join(OrderLine, OrderLine.order_id == Order.id)
        .filter(
            Order.branch_id == branch_id,
            Order.status == ORDER_STATUS_DELIVERED,
            OrderLine.product_id == product_id,
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
        .distinct()
        .all()
    )

    result = []
    for order in orders:
        line = order.line_for_product(product_id)
        held = _pending_order_quantities(order.id).get(product_id, 0)
        remaining = line.returnable_quantity - held
        if remaining <= 0:
            continue
        result.append({
            "order_id": order.id,
            "order_number": order.order_number,
            "product_id": product_id,
            "ordered_quantity": line.quantity,
            "returned_quantity": line.returned_quantity or 0,
            "pending_quantity": held,
            "remaining_quantity": remaining,
            "price_cents": line.price_cents,
            "return_window_open": not older_than(order.created_at, return_window_days),
        })
    return result


def get_return(return_id: int) -> Return:
    return_doc = db.session.query(Return).filter_by(id=return_id).first()
    if not return_doc:
        raise NotFound("Return not found", {"return_id": return_id})
    return return_doc


def list_returns(
    *,
    branch_id: int | None = None,
    branch_ids: list[int] | None = None,
    status: str | None = None,
    flow: str | None = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[Return], int]:
    query = db.session.query(Return)
    if branch_id is not None:
        query = query.filter(Return.branch_id == branch_id)
    elif branch_ids is not None:
        query = query.filter(Return.branch_id.in_(branch_ids))
    if status:
        query = query.filter(Return.status == status)
    if flow:
        query = query.filter(Return.flow == flow)

    total = query.count()
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1

    items = (
        query.order_by(Return.created_at.desc(), Return.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total
