from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationFailure
from .models.documents import RETURN_REASONS


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

# Accepted input spellings for each canonical reason (Arabic labels included)
RETURN_REASON_ALIASES = {
    "damaged": "Damaged",
    "تالف": "Damaged",
    "wrong item": "Wrong Item",
    "wrong_item": "Wrong Item",
    "منتج خاطئ": "Wrong Item",
    "excess quantity": "Excess Quantity",
    "excess_quantity": "Excess Quantity",
    "كمية زائدة": "Excess Quantity",
    "other": "Other",
    "أخرى": "Other",
}

REVIEW_DECISIONS = ("approved", "rejected")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    """Strict integer parsing: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationFailure(f"{key} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationFailure(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationFailure(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationFailure(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationFailure(f"{key} must be an integer, not a decimal")
    raise ValidationFailure(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
    nested_fields: set[str] | None = None,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    nested_fields are writable keys that are not columns (e.g. "items");
    they are copied through untouched for a dedicated validator.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationFailure("Invalid JSON payload")

    nested = nested_fields or set()
    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationFailure(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationFailure(f"Field not allowed: {k}")
        if k not in cols and k not in nested:
            raise ValidationFailure(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in nested:
            patch[k] = raw
            continue

        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationFailure(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationFailure(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationFailure(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _require_list(value: Any, key: str, *, allow_empty: bool = False) -> list:
    if not isinstance(value, list):
        raise ValidationFailure(f"{key} must be a list")
    if not value and not allow_empty:
        raise ValidationFailure(f"{key} must not be empty")
    return value


def _item_dict(item: Any, index: int, allowed: set[str], required: set[str]) -> dict:
    if not isinstance(item, dict):
        raise ValidationFailure(f"items[{index}] must be an object")
    unknown = sorted(set(item) - allowed)
    if unknown:
        raise ValidationFailure(f"items[{index}]: field not allowed: {', '.join(unknown)}")
    missing = sorted(f for f in required if f not in item)
    if missing:
        raise ValidationFailure(f"items[{index}]: missing required fields: {', '.join(missing)}")
    return item


def _positive(key: str, value: Any) -> int:
    n = coerce_int(key, value)
    if n < 1:
        raise ValidationFailure(f"{key} must be >= 1")
    return n


def _non_negative(key: str, value: Any) -> int:
    n = coerce_int(key, value)
    if n < 0:
        raise ValidationFailure(f"{key} must be >= 0")
    return n


def _price(key: str, value: Any) -> int:
    n = _non_negative(key, value)
    if n > MAX_PRICE_CENTS:
        raise ValidationFailure(f"{key} cannot exceed {MAX_PRICE_CENTS}")
    return n


def _optional_text(item: dict, key: str) -> str | None:
    value = item.get(key)
    if value is None:
        return None
    return str(value).strip() or None


def enforce_rules_stock_limits(patch: dict) -> None:
    min_level = patch.get("min_stock_level")
    max_level = patch.get("max_stock_level")
    for key, value in (("min_stock_level", min_level), ("max_stock_level", max_level)):
        if value is not None and value < 0:
            raise ValidationFailure(f"{key} must be >= 0")
    if min_level is not None and max_level is not None and max_level < min_level:
        raise ValidationFailure(
            "max_stock_level must be >= min_stock_level",
            {"min_stock_level": min_level, "max_stock_level": max_level},
        )


def enforce_rules_stock_adjust(patch: dict) -> None:
    if patch.get("quantity") in (None, 0):
        raise ValidationFailure("quantity must be non-zero")


def validate_bulk_stock_items(items: Any) -> list[dict]:
    allowed = {"product_id", "initial_stock", "min_stock_level", "max_stock_level"}
    cleaned = []
    for index, raw in enumerate(_require_list(items, "items")):
        item = _item_dict(raw, index, allowed, {"product_id"})
        row = {
            "product_id": coerce_int("product_id", item["product_id"]),
            "initial_stock": _non_negative("initial_stock", item.get("initial_stock", 0)),
            "min_stock_level": _non_negative("min_stock_level", item.get("min_stock_level", 0)),
            "max_stock_level": _non_negative("max_stock_level", item.get("max_stock_level", 0)),
        }
        enforce_rules_stock_limits(row)
        cleaned.append(row)
    return cleaned


def validate_sale_items(items: Any) -> list[dict]:
    """Canonical sale line: {product_id, quantity >= 1, unit_price_cents >= 0}."""
    allowed = {"product_id", "quantity", "unit_price_cents"}
    cleaned = []
    for index, raw in enumerate(_require_list(items, "items")):
        item = _item_dict(raw, index, allowed, allowed)
        cleaned.append({
            "product_id": coerce_int("product_id", item["product_id"]),
            "quantity": _positive("quantity", item["quantity"]),
            "unit_price_cents": _price("unit_price_cents", item["unit_price_cents"]),
        })
    return cleaned


def normalize_return_reason(value: Any) -> str:
    if value is None:
        return "Other"
    text = str(value).strip()
    if text in RETURN_REASONS:
        return text
    canonical = RETURN_REASON_ALIASES.get(text.lower()) or RETURN_REASON_ALIASES.get(text)
    if canonical is None:
        raise ValidationFailure(
            f"reason must be one of {', '.join(RETURN_REASONS)}",
            {"reason": value},
        )
    return canonical


def validate_return_items(items: Any) -> list[dict]:
    """
    Canonical return line: {product_id, quantity >= 1, reason, price_cents?}.

    reason accepts the canonical English values or an alias; price_cents
    is optional (the service falls back to the order or product price).
    """
    allowed = {"product_id", "quantity", "reason", "price_cents"}
    cleaned = []
    for index, raw in enumerate(_require_list(items, "items")):
        item = _item_dict(raw, index, allowed, {"product_id", "quantity"})
        row = {
            "product_id": coerce_int("product_id", item["product_id"]),
            "quantity": _positive("quantity", item["quantity"]),
            "reason": normalize_return_reason(item.get("reason")),
        }
        if item.get("price_cents") is not None:
            row["price_cents"] = _price("price_cents", item["price_cents"])
        cleaned.append(row)
    return cleaned


def validate_sale_ids(value: Any) -> list[int]:
    if value is None:
        return []
    ids = [coerce_int("sale_ids", v) for v in _require_list(value, "sale_ids", allow_empty=True)]
    if len(set(ids)) != len(ids):
        raise ValidationFailure("sale_ids must not contain duplicates")
    return ids


def validate_review_payload(payload: Any) -> dict:
    """
    Review request: {status: approved|rejected, items: [{product_id, quantity,
    status: approved|rejected, review_notes?}], review_notes?}.

    Only shape is checked here; matching the lines against the return is the
    service's job.
    """
    if not isinstance(payload, dict):
        raise ValidationFailure("Invalid JSON payload")
    unknown = sorted(set(payload) - {"status", "items", "review_notes"})
    if unknown:
        raise ValidationFailure(f"Field not allowed: {', '.join(unknown)}")

    decision = str(payload.get("status") or "").strip().lower()
    if decision not in REVIEW_DECISIONS:
        raise ValidationFailure(f"status must be one of {', '.join(REVIEW_DECISIONS)}")

    allowed = {"product_id", "quantity", "status", "review_notes"}
    items = []
    for index, raw in enumerate(_require_list(payload.get("items"), "items")):
        item = _item_dict(raw, index, allowed, {"product_id", "quantity", "status"})
        status = str(item["status"]).strip().lower()
        if status not in REVIEW_DECISIONS:
            raise ValidationFailure(f"items[{index}].status must be one of {', '.join(REVIEW_DECISIONS)}")
        items.append({
            "product_id": coerce_int("product_id", item["product_id"]),
            "quantity": _positive("quantity", item["quantity"]),
            "status": status,
            "review_notes": _optional_text(item, "review_notes"),
        })

    return {
        "status": decision,
        "items": items,
        "review_notes": _optional_text(payload, "review_notes"),
    }
