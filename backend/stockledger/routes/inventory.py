# backend/stockledger/routes/inventory.py
"""
Branch stock routes.

Every route resolves the actor with @require_actor; branch scope is
re-checked inside the services.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- history start/end filters are inclusive.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError, ValidationFailure
from ..models import StockRecord
from ..time_utils import parse_iso_datetime
from ..validation import (
    ModelValidationPolicy,
    coerce_int,
    validate_payload,
    validate_bulk_stock_items,
    enforce_rules_stock_adjust,
    enforce_rules_stock_limits,
)
from ..decorators import require_actor, require_role
from ..services import ledger_service, return_service, stock_service
from ..services.branch_access_service import ensure_branch_access
from .common import branch_filter, error_response, page_envelope, pagination_args


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

STOCK_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "branch_id", "min_stock_level", "max_stock_level"},
    required_on_create={"product_id", "branch_id"},
)

STOCK_ADJUST_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "branch_id", "quantity", "reference", "notes"},
    required_on_create={"product_id", "branch_id", "quantity"},
)

STOCK_LIMITS_POLICY = ModelValidationPolicy(
    writable_fields={"min_stock_level", "max_stock_level"},
    required_on_create={"min_stock_level", "max_stock_level"},
)


def _pop_int(payload: dict, key: str, default=None):
    if key not in payload:
        return default
    value = payload.pop(key)
    if value is None:
        raise ValidationFailure(f"{key} cannot be null")
    return coerce_int(key, value)


def _pop_text(payload: dict, key: str):
    value = payload.pop(key, None)
    if value is None:
        return None
    return str(value).strip() or None


@inventory_bp.get("")
@require_actor
def list_stock_route():
    """List stock records; ?low_stock=true keeps records at or below their minimum."""
    try:
        page, per_page = pagination_args()
        low_stock_only = request.args.get("low_stock", "").lower() in ("1", "true", "yes")
        items, total = stock_service.list_stock(
            low_stock_only=low_stock_only,
            page=page,
            per_page=per_page,
            **branch_filter(),
        )
        return jsonify(page_envelope(items, total, page, per_page)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("")
@require_actor
def create_stock_record_route():
    """
    Create the stock record of one product at one branch.

    Request body:
    {
        "product_id": 1,
        "branch_id": 2,
        "initial_stock": 10,     (optional, default 0)
        "min_stock_level": 2,    (optional, default 0)
        "max_stock_level": 50    (optional, default 0)
    }

    Returns:
        201: created record
        400: invalid input
        409: record already exists
    """
    raw = request.get_json(silent=True) or {}

    try:
        if not isinstance(raw, dict):
            raise ValidationFailure("Invalid JSON payload")
        payload = dict(raw)
        initial_stock = _pop_int(payload, "initial_stock", 0)
        if initial_stock < 0:
            raise ValidationFailure("initial_stock must be >= 0")
        patch = validate_payload(
            model=StockRecord,
            payload=payload,
            policy=STOCK_CREATE_POLICY,
            partial=False,
        )
        enforce_rules_stock_limits(patch)

        record = stock_service.create_stock_record(
            product_id=patch["product_id"],
            branch_id=patch["branch_id"],
            actor=g.current_user,
            initial_stock=initial_stock,
            min_stock_level=patch.get("min_stock_level", 0),
            max_stock_level=patch.get("max_stock_level", 0),
        )
        return jsonify({"stock": record.to_dict()}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create stock record")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/bulk")
@require_actor
@require_role("admin", "production")
def bulk_create_stock_route():
    """
    Create many records for one branch; any duplicate aborts the whole batch.

    Request body: {"branch_id": 2, "items": [{"product_id": 1, "initial_stock": 5, ...}, ...]}
    """
    payload = request.get_json(silent=True) or {}

    try:
        if not isinstance(payload, dict) or "branch_id" not in payload:
            raise ValidationFailure("Missing required fields: branch_id")
        unknown = sorted(set(payload) - {"branch_id", "items"})
        if unknown:
            raise ValidationFailure(f"Field not allowed: {', '.join(unknown)}")
        branch_id = coerce_int("branch_id", payload["branch_id"])
        items = validate_bulk_stock_items(payload.get("items"))

        records = stock_service.bulk_create_stock(branch_id=branch_id, items=items, actor=g.current_user)
        return jsonify({"items": [r.to_dict() for r in records]}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk create stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
@require_actor
def adjust_stock_route():
    """
    Manual stock change. Positive quantity restocks, negative adjusts down.

    Request body: {"product_id": 1, "branch_id": 2, "quantity": -3, "reference": "...", "notes": "..."}
    """
    raw = request.get_json(silent=True) or {}

    try:
        if not isinstance(raw, dict):
            raise ValidationFailure("Invalid JSON payload")
        payload = dict(raw)
        missing = sorted(f for f in STOCK_ADJUST_POLICY.required_on_create if f not in payload)
        if missing:
            raise ValidationFailure(f"Missing required fields: {', '.join(missing)}")
        unknown = sorted(set(payload) - STOCK_ADJUST_POLICY.writable_fields)
        if unknown:
            raise ValidationFailure(f"Field not allowed: {', '.join(unknown)}")

        patch = {
            "product_id": _pop_int(payload, "product_id"),
            "branch_id": _pop_int(payload, "branch_id"),
            "quantity": _pop_int(payload, "quantity"),
            "reference": _pop_text(payload, "reference"),
            "notes": _pop_text(payload, "notes"),
        }
        enforce_rules_stock_adjust(patch)

        record = stock_service.adjust_stock(
            product_id=patch["product_id"],
            branch_id=patch["branch_id"],
            delta=patch["quantity"],
            actor=g.current_user,
            reference=patch["reference"],
            notes=patch["notes"],
        )
        return jsonify({"stock": record.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/branches/<int:branch_id>/products/<int:product_id>")
@require_actor
def get_stock_route(branch_id: int, product_id: int):
    try:
        ensure_branch_access(g.current_user, branch_id)
        record = stock_service.get_stock_record(product_id, branch_id)
        include_movements = request.args.get("movements", "").lower() in ("1", "true", "yes")
        return jsonify({"stock": record.to_dict(include_movements=include_movements)}), 200
    except LedgerError as e:
        return error_response(e)


@inventory_bp.get("/branches/<int:branch_id>/products/<int:product_id>/returnable-orders")
@require_actor
def returnable_orders_route(branch_id: int, product_id: int):
    """Delivered orders that still accept a return of this product at the branch."""
    try:
        orders = return_service.list_returnable_orders(
            product_id=product_id,
            branch_id=branch_id,
            actor=g.current_user,
            return_window_days=current_app.config.get("RETURN_WINDOW_DAYS", 3),
        )
        return jsonify({"orders": orders}), 200
    except LedgerError as e:
        return error_response(e)


@inventory_bp.put("/branches/<int:branch_id>/products/<int:product_id>/limits")
@require_actor
def set_stock_limits_route(branch_id: int, product_id: int):
    """
    Replace min/max stock levels.

    Request body: {"min_stock_level": 2, "max_stock_level": 50}
    Returns 400 when max < min; prior limits stay unchanged.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=StockRecord,
            payload=payload,
            policy=STOCK_LIMITS_POLICY,
            partial=False,
        )
        enforce_rules_stock_limits(patch)

        record = stock_service.set_stock_limits(
            product_id=product_id,
            branch_id=branch_id,
            min_stock_level=patch["min_stock_level"],
            max_stock_level=patch["max_stock_level"],
            actor=g.current_user,
        )
        return jsonify({"stock": record.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set stock limits")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/history")
@require_actor
def list_history_route():
    """
    Inventory history, newest first.

    Query params: branch_id, product_id, action, start, end (ISO-8601), page, per_page
    """
    try:
        page, per_page = pagination_args()
        try:
            start = parse_iso_datetime(request.args.get("start"))
            end = parse_iso_datetime(request.args.get("end"))
        except ValueError:
            raise ValidationFailure("start and end must be ISO-8601 datetimes")

        items, total = ledger_service.list_history(
            product_id=request.args.get("product_id", type=int),
            action=request.args.get("action") or None,
            start=start,
            end=end,
            page=page,
            per_page=per_page,
            **branch_filter(),
        )
        return jsonify(page_envelope(items, total, page, per_page)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list inventory history")
        return jsonify({"error": "Internal server error"}), 500
