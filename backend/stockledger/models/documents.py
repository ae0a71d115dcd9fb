from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


RETURN_FLOW_ORDER = "order"
RETURN_FLOW_RESTOCK = "restock"
RETURN_FLOWS = (RETURN_FLOW_ORDER, RETURN_FLOW_RESTOCK)

RETURN_STATUS_PENDING = "pending_approval"
RETURN_STATUS_APPROVED = "approved"
RETURN_STATUS_REJECTED = "rejected"
RETURN_STATUSES = (RETURN_STATUS_PENDING, RETURN_STATUS_APPROVED, RETURN_STATUS_REJECTED)

ITEM_STATUS_PENDING = "pending"
ITEM_STATUS_APPROVED = "approved"
ITEM_STATUS_REJECTED = "rejected"
ITEM_STATUSES = (ITEM_STATUS_PENDING, ITEM_STATUS_APPROVED, ITEM_STATUS_REJECTED)

RETURN_REASONS = ("Damaged", "Wrong Item", "Excess Quantity", "Other")


class Return(db.Model):
    """
    Return request of a branch.

    FLOWS:
    - "order":   against a delivered factory order. Stock leaves the branch
                 when the return is created; review settles the refund and
                 credits rejected lines back.
    - "restock": branch-initiated, optionally citing sales. No stock effect
                 until review; approved lines are credited.

    LIFECYCLE: pending_approval -> approved | rejected, exactly once.
    Terminal states are permanent; returns are never deleted.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("return_number", name="uq_returns_return_number"),
        db.Index("ix_returns_branch_status_created", "branch_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    # e.g. "RET-20260419-1"
    return_number = db.Column(db.String(64), nullable=False)
    flow = db.Column(db.String(16), nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    status = db.Column(db.String(24), nullable=False, default=RETURN_STATUS_PENDING, index=True)
    reason = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Refund in cents, settled at review (order flow only)
    refund_total_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    reviewed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    branch = db.relationship("Branch", backref=db.backref("returns", lazy=True))
    order = db.relationship("Order", backref=db.backref("returns", lazy=True))
    lines = db.relationship(
        "ReturnLine",
        back_populates="return_doc",
        order_by="ReturnLine.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    sale_references = db.relationship(
        "ReturnSaleReference",
        back_populates="return_doc",
        order_by="ReturnSaleReference.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    status_history = db.relationship(
        "ReturnStatusChange",
        back_populates="return_doc",
        order_by="ReturnStatusChange.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_pending(self) -> bool:
        return self.status == RETURN_STATUS_PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "return_number": self.return_number,
            "flow": self.flow,
            "order_id": self.order_id,
            "sale_ids": [ref.sale_id for ref in self.sale_references if ref.sale_id is not None],
            "sale_references": [ref.to_dict() for ref in self.sale_references],
            "status": self.status,
            "reason": self.reason,
            "notes": self.notes,
            "refund_total_cents": self.refund_total_cents,
            "items": [line.to_dict() for line in self.lines],
            "status_history": [change.to_dict() for change in self.status_history],
            "created_by_user_id": self.created_by_user_id,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "review_notes": self.review_notes,
            "reviewed_at": to_utc_z(self.reviewed_at) if self.reviewed_at else None,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class ReturnLine(db.Model):
    """One returned product; status is decided per line at review."""
    __tablename__ = "return_lines"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_return_lines_quantity_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.String(32), nullable=False, default="Other")
    status = db.Column(db.String(16), nullable=False, default=ITEM_STATUS_PENDING)
    review_notes = db.Column(db.Text, nullable=True)

    return_doc = db.relationship("Return", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "reason": self.reason,
            "status": self.status,
            "review_notes": self.review_notes,
        }


class ReturnSaleReference(db.Model):
    """
    Sale cited by a return.

    sale_number is copied when the return is created; deleting the sale
    clears sale_id and leaves the number as the citation.
    """
    __tablename__ = "return_sale_references"
    __table_args__ = (
        db.UniqueConstraint("return_id", "sale_id", name="uq_return_sale_refs_return_sale"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="SET NULL"), nullable=True, index=True)
    sale_number = db.Column(db.String(64), nullable=False)

    return_doc = db.relationship("Return", back_populates="sale_references")
    sale = db.relationship("Sale")

    def to_dict(self) -> dict:
        return {"sale_id": self.sale_id, "sale_number": self.sale_number}


class ReturnStatusChange(db.Model):
    """Append-only status history of a return."""
    __tablename__ = "return_status_changes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    status = db.Column(db.String(24), nullable=False)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_doc = db.relationship("Return", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "changed_by_user_id": self.changed_by_user_id,
            "notes": self.notes,
            "changed_at": to_utc_z(self.changed_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-day document counters.

    WHY: "count today's sales + 1" races under concurrent writers; a single
    counter row per (document_type, period) is incremented in place instead.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period", name="uq_doc_sequences_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    # YYYYMMDD
    period = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "period": self.period,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
