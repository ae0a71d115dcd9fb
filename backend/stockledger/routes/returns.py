# Overview: Flask API routes for returns operations; parses input and returns JSON responses.

# backend/stockledger/routes/returns.py
"""
Return Workflow API Routes

DESIGN:
- POST /order    return against a delivered order (stock debited at creation)
- POST /restock  branch return request (stock credited on approval)
- POST /<id>/review  approve or reject, exactly once

Every write is attributed to g.current_user; branch actors are limited to
their own branch by the services.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError, ValidationFailure
from ..models import Return
from ..models.documents import RETURN_FLOWS, RETURN_STATUSES
from ..services import return_service
from ..services.branch_access_service import ensure_branch_access
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    validate_return_items,
    validate_review_payload,
    validate_sale_ids,
    normalize_return_reason,
)
from ..decorators import require_actor
from .common import branch_filter, error_response, page_envelope, pagination_args


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")

ORDER_RETURN_POLICY = ModelValidationPolicy(
    writable_fields={"order_id", "branch_id", "items", "reason", "notes"},
    required_on_create={"order_id", "branch_id", "items"},
)

RESTOCK_RETURN_POLICY = ModelValidationPolicy(
    writable_fields={"branch_id", "sale_ids", "items", "reason", "notes"},
    required_on_create={"branch_id", "items"},
)


# =============================================================================
# RETURN CREATION
# =============================================================================

@returns_bp.post("/order")
@require_actor
def create_order_return_route():
    """
    Return goods of a delivered order.

    Request body:
    {
        "order_id": 12,
        "branch_id": 1,
        "items": [{"product_id": 1, "quantity": 2, "reason": "Damaged"}],
        "reason": "Damaged",   (optional)
        "notes": "..."         (optional)
    }

    Returns:
        201: return created (status pending_approval), stock already debited
        400: order not delivered, window expired, quantity too large
        404: order or stock record not found
        409: insufficient stock
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=Return,
            payload=payload,
            policy=ORDER_RETURN_POLICY,
            partial=False,
            nested_fields={"items"},
        )
        items = validate_return_items(patch["items"])

        return_doc = return_service.create_order_return(
            order_id=patch["order_id"],
            branch_id=patch["branch_id"],
            items=items,
            actor=g.current_user,
            reason=normalize_return_reason(patch["reason"]) if patch.get("reason") else None,
            notes=patch.get("notes"),
            return_window_days=current_app.config.get("RETURN_WINDOW_DAYS", 3),
        )
        return jsonify({"return": return_doc.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/restock")
@require_actor
def create_restock_return_route():
    """
    Branch return request, optionally citing sales of the branch.

    Request body:
    {
        "branch_id": 1,
        "sale_ids": [4, 5],   (optional)
        "items": [{"product_id": 1, "quantity": 2, "reason": "Excess Quantity"}],
        "reason": "...", "notes": "..."
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        sale_ids = None
        if isinstance(payload, dict) and "sale_ids" in payload:
            payload = dict(payload)
            sale_ids = validate_sale_ids(payload.pop("sale_ids"))

        patch = validate_payload(
            model=Return,
            payload=payload,
            policy=RESTOCK_RETURN_POLICY,
            partial=False,
            nested_fields={"items"},
        )
        items = validate_return_items(patch["items"])

        return_doc = return_service.create_restock_return(
            branch_id=patch["branch_id"],
            items=items,
            actor=g.current_user,
            sale_ids=sale_ids,
            reason=normalize_return_reason(patch["reason"]) if patch.get("reason") else None,
            notes=patch.get("notes"),
        )
        return jsonify({"return": return_doc.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create restock return")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REVIEW
# =============================================================================

@returns_bp.post("/<int:return_id>/review")
@require_actor
def review_return_route(return_id: int):
    """
    Approve or reject a pending return.

    Request body:
    {
        "status": "approved" | "rejected",
        "items": [{"product_id": 1, "quantity": 2, "status": "approved", "review_notes": "..."}],
        "review_notes": "..."
    }

    Returns:
        200: reviewed return
        400: items do not match the return lines, inconsistent decision
        403: return belongs to another branch
        409: return already reviewed
    """
    try:
        review = validate_review_payload(request.get_json(silent=True))
        return_doc = return_service.review_return(
            return_id=return_id,
            actor=g.current_user,
            decision=review["status"],
            items=review["items"],
            review_notes=review["review_notes"],
        )
        return jsonify({"return": return_doc.to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to review return")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@returns_bp.get("")
@require_actor
def list_returns_route():
    try:
        page, per_page = pagination_args()
        status = request.args.get("status") or None
        flow = request.args.get("flow") or None
        if status is not None and status not in RETURN_STATUSES:
            raise ValidationFailure(f"status must be one of {', '.join(RETURN_STATUSES)}")
        if flow is not None and flow not in RETURN_FLOWS:
            raise ValidationFailure(f"flow must be one of {', '.join(RETURN_FLOWS)}")

        items, total = return_service.list_returns(
            status=status, flow=flow, page=page, per_page=per_page, **branch_filter()
        )
        return jsonify(page_envelope(items, total, page, per_page)), 200
    except LedgerError as e:
        return error_response(e)


@returns_bp.get("/<int:return_id>")
@require_actor
def get_return_route(return_id: int):
    try:
        return_doc = return_service.get_return(return_id)
        ensure_branch_access(g.current_user, return_doc.branch_id)
        return jsonify({"return": return_doc.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
