from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"
MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT)

HISTORY_ACTIONS = (
    "delivery",
    "return_pending",
    "return_rejected",
    "return_approved",
    "sale",
    "sale_cancelled",
    "sale_deleted",
    "restock",
    "adjustment",
    "settings_adjustment",
)

STOCK_STATUS_LOW = "low"
STOCK_STATUS_FULL = "full"
STOCK_STATUS_NORMAL = "normal"


class Product(db.Model):
    """
    Product master data shared by every branch.

    Prices are stored in cents (integer); display formatting is the client's job.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_products_code"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockRecord(db.Model):
    """
    Current quantity of one product held at one branch.

    INVARIANTS:
    - exactly one row per (product_id, branch_id)
    - current_stock >= 0 and damaged_stock >= 0 (also CHECK constraints)
    - max_stock_level >= min_stock_level

    current_stock is only ever changed through stock_service.adjust_quantity,
    which writes a StockMovement and an InventoryHistory row in the same unit.
    version_id makes concurrent writers that skipped the row lock fail loudly.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "branch_id", name="uq_stock_records_product_branch"),
        db.CheckConstraint("current_stock >= 0", name="ck_stock_records_current_nonneg"),
        db.CheckConstraint("damaged_stock >= 0", name="ck_stock_records_damaged_nonneg"),
        db.CheckConstraint("min_stock_level >= 0", name="ck_stock_records_min_nonneg"),
        db.CheckConstraint("max_stock_level >= min_stock_level", name="ck_stock_records_max_gte_min"),
        db.Index("ix_stock_records_branch_product", "branch_id", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    damaged_stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=0)
    max_stock_level = db.Column(db.Integer, nullable=False, default=0)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    branch = db.relationship("Branch", backref=db.backref("stock_records", lazy=True))
    movements = db.relationship(
        "StockMovement",
        back_populates="stock_record",
        order_by="StockMovement.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def stock_status(self) -> str:
        # max 0 is only reachable with min 0 and means "no maximum"
        if self.current_stock <= self.min_stock_level:
            return STOCK_STATUS_LOW
        if self.max_stock_level > 0 and self.current_stock >= self.max_stock_level:
            return STOCK_STATUS_FULL
        return STOCK_STATUS_NORMAL

    def __repr__(self) -> str:
        return (
            f"<StockRecord id={self.id} product_id={self.product_id} "
            f"branch_id={self.branch_id} current={self.current_stock}>"
        )

    def to_dict(self, include_movements: bool = False) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "current_stock": self.current_stock,
            "damaged_stock": self.damaged_stock,
            "min_stock_level": self.min_stock_level,
            "max_stock_level": self.max_stock_level,
            "stock_status": self.stock_status,
            "created_by_user_id": self.created_by_user_id,
            "updated_by_user_id": self.updated_by_user_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_movements:
            data["movements"] = [m.to_dict() for m in self.movements]
        return data


class StockMovement(db.Model):
    """Embedded movement log of a StockRecord. quantity is always positive; type carries the sign."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_pos"),
        db.CheckConstraint("type IN ('in', 'out')", name="ck_stock_movements_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_record_id = db.Column(db.Integer, db.ForeignKey("stock_records.id"), nullable=False, index=True)
    type = db.Column(db.String(8), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    reference = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    stock_record = db.relationship("StockRecord", back_populates="movements")

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.type == MOVEMENT_IN else -self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_record_id": self.stock_record_id,
            "type": self.type,
            "quantity": self.quantity,
            "reference": self.reference,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryHistoryImmutableError(RuntimeError):
    pass


class InventoryHistory(db.Model):
    """
    Append-only audit trail of every quantity-changing event.

    Independent of StockRecord: rows survive even if the record's movement log
    is inspected or re-derived. Rows are never updated or deleted; the mapper
    listeners below refuse both at flush time.

    quantity is the signed delta applied to current_stock (0 for
    settings_adjustment). reference_type/reference_id point at the
    originating document ("sale", "return", "order").
    """
    __tablename__ = "inventory_history"
    __table_args__ = (
        db.Index("ix_inventory_history_product_branch_created", "product_id", "branch_id", "created_at"),
        db.Index("ix_inventory_history_reference", "reference_type", "reference_id", "action"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    reference = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    reference_type = db.Column(db.String(16), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "action": self.action,
            "quantity": self.quantity,
            "reference": self.reference,
            "notes": self.notes,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryHistory, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise InventoryHistoryImmutableError("inventory_history rows cannot be updated")


@event.listens_for(InventoryHistory, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise InventoryHistoryImmutableError("inventory_history rows cannot be deleted")
