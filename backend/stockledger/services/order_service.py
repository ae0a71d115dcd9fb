# Overview: Service-layer operations for factory order delivery; encapsulates business logic and database work.

from __future__ import annotations

import logging

from .. import events
from ..errors import Conflict, NotFound, Unauthorized, ValidationFailure
from ..extensions import db
from ..models import Order, User
from ..models.branches import ROLE_PRODUCTION
from ..models.orders import ORDER_STATUS_DELIVERED, ORDER_STATUS_IN_TRANSIT
from ..time_utils import utcnow
from .branch_access_service import ensure_branch_access
from .concurrency import lock_for_update
from .ledger_service import has_history
from .stock_service import adjust_quantity, ensure_stock_record_inner
from .unit_of_work import unit_of_work


logger = logging.getLogger(__name__)


def confirm_delivery(*, order_id: int, actor: User) -> Order:
    """
    Receive an in-transit order at its branch.

    Credits every order line to the branch stock (action "delivery"),
    creating the stock record with zero limits on first delivery. A second
    confirmation is a Conflict: the delivery history of the order is the
    idempotency guard, not only the order status.
    """
    with unit_of_work(__name__) as uow:
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise NotFound("Order not found", {"order_id": order_id})

        if actor is not None and actor.role == ROLE_PRODUCTION:
            raise Unauthorized("Only the receiving branch or an admin can confirm delivery")
        ensure_branch_access(actor, order.branch_id)

        if has_history(action="delivery", reference_type="order", reference_id=order.id):
            raise Conflict("Delivery already confirmed", {"order_id": order_id})
        if order.status != ORDER_STATUS_IN_TRANSIT:
            if order.status == ORDER_STATUS_DELIVERED:
                raise Conflict("Delivery already confirmed", {"order_id": order_id})
            raise ValidationFailure(
                "Only in-transit orders can be delivered",
                {"order_id": order_id, "status": order.status},
            )

        order.status = ORDER_STATUS_DELIVERED
        order.delivered_at = utcnow()
        order.delivered_by_user_id = actor.id
        db.session.flush()

        for line in order.lines:
            record = ensure_stock_record_inner(
                uow, product_id=line.product_id, branch_id=order.branch_id, actor_user_id=actor.id
            )
            adjust_quantity(
                uow,
                record,
                line.quantity,
                action="delivery",
                actor_user_id=actor.id,
                reference=f"Order {order.order_number}",
                reference_type="order",
                reference_id=order.id,
            )

        uow.emit(events.order_delivered, order_id=order.id, branch_id=order.branch_id)

    logger.info("Order %s delivered to branch %s", order.order_number, order.branch_id)
    return order


def get_order(order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise NotFound("Order not found", {"order_id": order_id})
    return order


def list_orders(
    *,
    branch_id: int | None = None,
    branch_ids: list[int] | None = None,
    status: str | None = None,
    page: int = 1,
    per_page: int = 10,
) -> tuple[list[Order], int]:
    query = db.session.query(Order)
    if branch_id is not None:
        query = query.filter(Order.branch_id == branch_id)
    elif branch_ids is not None:
        query = query.filter(Order.branch_id.in_(branch_ids))
    if status:
        query = query.filter(Order.status == status)

    total = query.count()
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1

    items = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total
