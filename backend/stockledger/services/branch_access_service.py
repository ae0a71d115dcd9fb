from __future__ import annotations

from ..errors import NotFound, Unauthorized
from ..extensions import db
from ..models import Branch, User


def get_branch(branch_id: int) -> Branch:
    branch = db.session.query(Branch).filter_by(id=branch_id).first()
    if not branch:
        raise NotFound("Branch not found", {"branch_id": branch_id})
    return branch


def get_actor(user_id: int) -> User:
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user or not user.is_active:
        raise Unauthorized("Unknown or inactive user", {"user_id": user_id})
    return user


def accessible_branch_ids(actor: User) -> list[int] | None:
    """Branch scope of the actor; None means every branch."""
    if actor.is_branch_scoped:
        return [actor.branch_id] if actor.branch_id is not None else []
    return None


def ensure_branch_access(actor: User | None, branch_id: int) -> None:
    """
    Re-check the actor's branch scope before touching branch-owned rows.

    Routes resolve the actor, but every mutating service calls this again
    so CLI and direct callers get the same guarantee.
    """
    if actor is None or not actor.is_active:
        raise Unauthorized("An active actor is required")
    if not actor.can_access_branch(branch_id):
        raise Unauthorized(
            "Actor may not act on this branch",
            {"user_id": actor.id, "branch_id": branch_id},
        )
