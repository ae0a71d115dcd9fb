# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .errors import Unauthorized
from .models.branches import ROLES
from .services.branch_access_service import get_actor


ACTOR_HEADER = "X-User-Id"


def _has_actor() -> bool:
    return hasattr(g, 'current_user') and g.current_user is not None


def require_actor(f):
    """
    Resolve the acting user from the trusted upstream header.

    Credentials are checked upstream (gateway / session layer); this only
    loads the User so services can attribute writes and re-check branch scope.
    Sets g.current_user.

    Returns 401 if the header is missing or malformed, 403 if the user is
    unknown or inactive.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(ACTOR_HEADER, "").strip()
        if not raw:
            return jsonify({"error": "Actor header required", "code": "unauthenticated"}), 401
        if not raw.isdigit():
            return jsonify({"error": f"{ACTOR_HEADER} must be a user id", "code": "unauthenticated"}), 401

        try:
            g.current_user = get_actor(int(raw))
        except Unauthorized as e:
            return jsonify(e.to_dict()), e.status_code

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Restrict a route to the given roles. Use after @require_actor."""
    unknown = set(roles) - set(ROLES)
    if unknown:
        raise ValueError(f"Unknown roles: {', '.join(sorted(unknown))}")

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _has_actor():
                return jsonify({"error": "Actor header required", "code": "unauthenticated"}), 401

            if g.current_user.role not in roles:
                return jsonify({
                    "error": "Role not allowed",
                    "code": "unauthorized",
                    "details": {"required_roles": list(roles)},
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
