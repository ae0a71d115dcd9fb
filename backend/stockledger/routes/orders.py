# Overview: Flask API routes for factory order delivery; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError, ValidationFailure
from ..models.orders import ORDER_STATUSES
from ..services import order_service
from ..services.branch_access_service import ensure_branch_access
from ..decorators import require_actor, require_role
from .common import branch_filter, error_response, page_envelope, pagination_args


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
@require_actor
def list_orders_route():
    try:
        page, per_page = pagination_args()
        status = request.args.get("status") or None
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationFailure(f"status must be one of {', '.join(ORDER_STATUSES)}")
        items, total = order_service.list_orders(
            status=status, page=page, per_page=per_page, **branch_filter()
        )
        return jsonify(page_envelope(items, total, page, per_page)), 200
    except LedgerError as e:
        return error_response(e)


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        ensure_branch_access(g.current_user, order.branch_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)


@orders_bp.post("/<int:order_id>/confirm-delivery")
@require_actor
@require_role("admin", "branch")
def confirm_delivery_route(order_id: int):
    """
    Receive an in-transit order; credits the branch stock.

    Returns:
        200: order delivered
        400: order not in transit
        403: another branch's order
        409: delivery already confirmed
    """
    try:
        order = order_service.confirm_delivery(order_id=order_id, actor=g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm delivery")
        return jsonify({"error": "Internal server error"}), 500
