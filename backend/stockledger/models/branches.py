from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ROLE_ADMIN = "admin"
ROLE_PRODUCTION = "production"
ROLE_BRANCH = "branch"
ROLES = (ROLE_ADMIN, ROLE_PRODUCTION, ROLE_BRANCH)


class Branch(db.Model):
    """
    A selling location that owns its own stock.

    OWNERSHIP: stock records, sales, returns and orders are scoped to a branch
    via branch_id. No record of one branch may be mutated on behalf of another.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_branches_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Branch id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class User(db.Model):
    """
    Actor attributed on every ledger write.

    Authentication happens upstream; this row only carries the role and the
    branch scope the services re-check before touching branch-owned records.
    - admin / production: may act on any branch
    - branch: may act only on branch_id
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("username", name="uq_users_username"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False)
    role = db.Column(db.String(16), nullable=False, default=ROLE_BRANCH)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    branch = db.relationship("Branch", backref=db.backref("users", lazy=True))

    @property
    def is_branch_scoped(self) -> bool:
        return self.role == ROLE_BRANCH

    def can_access_branch(self, branch_id: int) -> bool:
        if not self.is_branch_scoped:
            return True
        return self.branch_id is not None and self.branch_id == branch_id

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "branch_id": self.branch_id,
            "is_active": self.is_active,
        }
