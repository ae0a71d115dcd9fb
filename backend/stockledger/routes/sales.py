# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/stockledger/routes/sales.py
"""Sales API routes. Stock effects live in sales_service; routes only validate and translate."""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError, ValidationFailure
from ..models import Sale
from ..services import sales_service
from ..services.branch_access_service import ensure_branch_access
from ..validation import ModelValidationPolicy, validate_payload, validate_sale_items
from ..decorators import require_actor
from .common import branch_filter, error_response, page_envelope, pagination_args


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

SALE_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "branch_id",
        "items",
        "status",
        "payment_method",
        "total_amount_cents",
        "customer_name",
        "customer_phone",
        "notes",
    },
    required_on_create={"branch_id", "items"},
)

SALE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "items",
        "status",
        "payment_method",
        "total_amount_cents",
        "customer_name",
        "customer_phone",
        "notes",
    },
)


def _validated_patch(payload, policy: ModelValidationPolicy, *, partial: bool) -> dict:
    patch = validate_payload(
        model=Sale,
        payload=payload,
        policy=policy,
        partial=partial,
        nested_fields={"items"},
    )
    if "items" in patch:
        patch["items"] = validate_sale_items(patch["items"])
    if "status" in patch:
        if patch["status"] is None:
            raise ValidationFailure("status cannot be null")
        patch["status"] = sales_service.normalize_sale_status(patch["status"])
    if patch.get("total_amount_cents") is not None and patch["total_amount_cents"] < 0:
        raise ValidationFailure("total_amount_cents must be >= 0")
    return patch


@sales_bp.post("")
@require_actor
def create_sale_route():
    """
    Create a sale. Status defaults to "completed", which debits stock.

    Request body:
    {
        "branch_id": 1,
        "items": [{"product_id": 1, "quantity": 4, "unit_price_cents": 500}],
        "status": "completed" | "pending" | "cancelled",   (optional)
        "payment_method": "cash" | "card" | "credit",       (optional)
        "total_amount_cents": 2000,                         (optional, default sum of lines)
        "customer_name": "...", "customer_phone": "...", "notes": "..."
    }

    Returns:
        201: sale created
        400: invalid input
        404: product or stock record not found
        409: insufficient stock (details list every short product)
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = _validated_patch(payload, SALE_CREATE_POLICY, partial=False)
        sale = sales_service.create_sale(
            branch_id=patch["branch_id"],
            items=patch["items"],
            actor=g.current_user,
            status=patch.get("status"),
            payment_method=patch.get("payment_method") or "cash",
            total_amount_cents=patch.get("total_amount_cents"),
            customer_name=patch.get("customer_name"),
            customer_phone=patch.get("customer_phone"),
            notes=patch.get("notes"),
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
@require_actor
def list_sales_route():
    try:
        page, per_page = pagination_args()
        status = request.args.get("status") or None
        items, total = sales_service.list_sales(
            status=status, page=page, per_page=per_page, **branch_filter()
        )
        return jsonify(page_envelope(items, total, page, per_page)), 200
    except LedgerError as e:
        return error_response(e)


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        ensure_branch_access(g.current_user, sale.branch_id)
        return jsonify({"sale": sale.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)


@sales_bp.patch("/<int:sale_id>")
@require_actor
def update_sale_route(sale_id: int):
    """
    Update status, items or details of a sale.

    Entering or leaving "completed" moves stock; replacing the items of a
    completed sale credits the old lines and debits the new ones.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = _validated_patch(payload, SALE_UPDATE_POLICY, partial=True)
        if not patch:
            raise ValidationFailure("Nothing to update")
        sale = sales_service.update_sale(sale_id=sale_id, actor=g.current_user, patch=patch)
        return jsonify({"sale": sale.to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.delete("/<int:sale_id>")
@require_actor
def delete_sale_route(sale_id: int):
    """Delete a sale; a completed sale's stock is credited back first."""
    try:
        deleted = sales_service.delete_sale(sale_id=sale_id, actor=g.current_user)
        return jsonify({"deleted": deleted}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete sale")
        return jsonify({"error": "Internal server error"}), 500
