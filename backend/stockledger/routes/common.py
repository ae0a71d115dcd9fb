# Overview: Shared helpers for API routes (pagination, branch scoping, error envelopes).

from flask import current_app, g, jsonify, request

from ..errors import LedgerError, Unauthorized
from ..services.branch_access_service import accessible_branch_ids


def error_response(e: LedgerError):
    return jsonify(e.to_dict()), e.status_code


def pagination_args() -> tuple[int, int]:
    default_size = current_app.config.get("DEFAULT_PAGE_SIZE", 10)
    max_size = current_app.config.get("MAX_PAGE_SIZE", 100)

    page = request.args.get("page", default=1, type=int) or 1
    per_page = request.args.get("per_page", default=default_size, type=int) or default_size
    return max(1, page), max(1, min(per_page, max_size))


def branch_filter() -> dict:
    """
    Translate ?branch_id= into service filter kwargs under the actor's scope.

    Branch actors only ever see their own branch; asking for another one is
    Unauthorized. Other roles may filter freely or see everything.
    """
    requested = request.args.get("branch_id", type=int)
    scope = accessible_branch_ids(g.current_user)

    if scope is None:
        return {"branch_id": requested} if requested is not None else {}
    if requested is not None and requested not in scope:
        raise Unauthorized("Actor may not read this branch", {"branch_id": requested})
    return {"branch_ids": scope} if requested is None else {"branch_id": requested}


def page_envelope(items, total: int, page: int, per_page: int) -> dict:
    return {
        "items": [item.to_dict() for item in items],
        "page": page,
        "per_page": per_page,
        "total": total,
    }
