"""
Inventory & Manufacturing Data Models
=====================================
- One catalogue table for every stockable item type
- Bill-of-materials lines (recipes, packaging BOMs, bundle contents)
- Immutable stock movement journal
- Production / packaging / bundle-assembly orders
- Stocktaking sessions
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text, Boolean,
    Numeric, Enum as SQLEnum, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship, validates
from .db import Base


# =============================================================================
# ENUMS
# =============================================================================

class ItemType(str, Enum):
    RAW_MATERIAL = "raw_material"
    PACKAGING_MATERIAL = "packaging_material"
    SEMI_FINISHED = "semi_finished"
    FINISHED_PRODUCT = "finished_product"
    BUNDLE = "bundle"


# Code prefixes used when an item is created without an explicit code
ITEM_CODE_PREFIXES = {
    ItemType.RAW_MATERIAL: "RM-",
    ItemType.PACKAGING_MATERIAL: "PM-",
    ItemType.SEMI_FINISHED: "SF-",
    ItemType.FINISHED_PRODUCT: "FP-",
    ItemType.BUNDLE: "BND-",
}


class MovementType(str, Enum):
    IN = "in"
    OUT = "out"


class OrderType(str, Enum):
    PRODUCTION = "production"
    PACKAGING = "packaging"
    ASSEMBLY = "assembly"


class OrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StocktakingType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class StocktakingStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# =============================================================================
# CATALOGUE
# =============================================================================

class InventoryItem(Base):
    """
    Anything that is counted in stock.

    Type specific columns:
    - semi_finished: recipe_batch_size (recipe lines are quantities per batch)
    - finished_product: semi_finished_id + semi_finished_quantity per unit,
      packaging lines are quantities per unit
    - bundle: bundle_price, component lines are quantities per bundle
    """
    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True, index=True)
    item_type = Column(SQLEnum(ItemType), nullable=False)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    unit = Column(String(20), nullable=False, default="pcs")

    quantity = Column(Numeric(15, 3), nullable=False, default=Decimal("0"))
    min_stock = Column(Numeric(15, 3), nullable=False, default=Decimal("0"))
    unit_cost = Column(Numeric(15, 4), nullable=False, default=Decimal("0"))
    sales_price = Column(Numeric(15, 2), nullable=True)

    recipe_batch_size = Column(Numeric(15, 3), nullable=True)

    semi_finished_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=True)
    semi_finished_quantity = Column(Numeric(15, 3), nullable=True)

    bundle_price = Column(Numeric(15, 2), nullable=True)

    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    semi_finished = relationship("InventoryItem", remote_side=[id])
    bom_lines = relationship(
        "BOMLine",
        foreign_keys="BOMLine.parent_id",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="BOMLine.id",
    )
    movements = relationship("StockMovement", back_populates="item", order_by="StockMovement.id")

    __table_args__ = (
        CheckConstraint('unit_cost >= 0', name='ck_item_unit_cost_positive'),
        Index('ix_item_type_name', 'item_type', 'name'),
    )

    @validates('unit_cost', 'min_stock')
    def validate_not_negative(self, key, value):
        if value is not None and Decimal(str(value)) < 0:
            raise ValueError(f"{key} cannot be negative")
        return value

    @property
    def is_low_stock(self) -> bool:
        return Decimal(self.quantity or 0) <= Decimal(self.min_stock or 0)


class BOMLine(Base):
    """
    One component of a parent item.

    Semi-finished parents list raw materials per recipe batch, finished
    products list packaging materials per unit and bundles list any
    non-bundle item per bundle.
    """
    __tablename__ = "bom_lines"

    id = Column(Integer, primary_key=True, index=True)
    parent_id = Column(Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False)
    component_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)

    parent = relationship("InventoryItem", foreign_keys=[parent_id], back_populates="bom_lines")
    component = relationship("InventoryItem", foreign_keys=[component_id])

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_bom_quantity_positive'),
        UniqueConstraint('parent_id', 'component_id', name='uq_bom_parent_component'),
    )


# =============================================================================
# STOCK JOURNAL
# =============================================================================

class StockMovement(Base):
    """
    Immutable journal of every on-hand quantity change.

    Item quantities are only changed by the posting engine, which writes one
    movement per change with before/after snapshots of quantity and cost.
    Reversal adds opposite movements; nothing is ever edited or deleted.
    """
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    movement_type = Column(SQLEnum(MovementType), nullable=False)

    # Positive for inward, negative for outward
    quantity_change = Column(Numeric(15, 3), nullable=False)
    quantity_before = Column(Numeric(15, 3), nullable=False)
    quantity_after = Column(Numeric(15, 3), nullable=False)

    unit_cost = Column(Numeric(15, 4), nullable=True)
    cost_before = Column(Numeric(15, 4), nullable=False)
    cost_after = Column(Numeric(15, 4), nullable=False)
    cost_rule = Column(String(20), nullable=True)

    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    reference_number = Column(String(50), nullable=True)
    reason = Column(String(255), nullable=True)

    is_reversed = Column(Boolean, default=False)
    reversal_of_id = Column(Integer, ForeignKey("stock_movements.id"), nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    movement_date = Column(DateTime, nullable=False, default=datetime.utcnow)

    item = relationship("InventoryItem", back_populates="movements")

    __table_args__ = (
        Index('ix_movement_item_date', 'item_id', 'movement_date'),
        Index('ix_movement_reference', 'reference_type', 'reference_id'),
    )


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """Production, packaging or bundle-assembly order"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_type = Column(SQLEnum(OrderType), nullable=False)
    code = Column(String(50), unique=True, nullable=False, index=True)
    order_date = Column(Date, nullable=False, default=lambda: datetime.utcnow().date())
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    total_cost = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    notes = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "OrderItem", back_populates="order",
        cascade="all, delete-orphan", order_by="OrderItem.id"
    )

    __table_args__ = (
        Index('ix_order_type_status', 'order_type', 'status'),
    )


class OrderItem(Base):
    """Output line of an order: which product and how many"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    unit_cost = Column(Numeric(15, 4), nullable=True)
    total_cost = Column(Numeric(15, 2), nullable=True)

    order = relationship("Order", back_populates="items")
    item = relationship("InventoryItem")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_item_quantity_positive'),
    )


# =============================================================================
# STOCKTAKING
# =============================================================================

class StocktakingSession(Base):
    __tablename__ = "stocktaking_sessions"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False)
    session_type = Column(SQLEnum(StocktakingType), nullable=False, default=StocktakingType.FULL)
    status = Column(SQLEnum(StocktakingStatus), nullable=False, default=StocktakingStatus.DRAFT)
    # Comma separated ItemType values counted by a partial session
    item_types = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    lines = relationship(
        "StocktakingLine", back_populates="session",
        cascade="all, delete-orphan", order_by="StocktakingLine.id"
    )


class StocktakingLine(Base):
    __tablename__ = "stocktaking_lines"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("stocktaking_sessions.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    system_quantity = Column(Numeric(15, 3), nullable=False)
    counted_quantity = Column(Numeric(15, 3), nullable=False, default=Decimal("0"))
    unit_cost = Column(Numeric(15, 4), nullable=False, default=Decimal("0"))
    notes = Column(String(255), nullable=True)
    counted_at = Column(DateTime, nullable=True)

    session = relationship("StocktakingSession", back_populates="lines")
    item = relationship("InventoryItem")

    __table_args__ = (
        UniqueConstraint('session_id', 'item_id', name='uq_stocktaking_session_item'),
    )

    @property
    def difference(self) -> Decimal:
        return Decimal(self.counted_quantity or 0) - Decimal(self.system_quantity or 0)
