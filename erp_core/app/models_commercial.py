"""
Commercial Document Models
==========================
Sales / purchase invoices and sales / purchase returns.

Lifecycle for all of them: draft -> posted -> void.
Drafts have no stock or ledger effect and may be edited or deleted.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text,
    Numeric, Enum as SQLEnum, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from .db import Base


class InvoiceType(str, Enum):
    SALES = "sales"
    PURCHASE = "purchase"


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"
    VOID = "void"


# =============================================================================
# INVOICES
# =============================================================================

class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_type = Column(SQLEnum(InvoiceType), nullable=False)
    invoice_number = Column(String(50), unique=True, nullable=False, index=True)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=False)
    treasury_id = Column(Integer, ForeignKey("treasuries.id"), nullable=True)
    transaction_date = Column(Date, nullable=False, default=lambda: datetime.utcnow().date())
    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.DRAFT)

    # Amounts (total = sum(lines) - discount + tax + shipping)
    subtotal = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    discount_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    tax_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    shipping_cost = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    total_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    paid_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))

    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    posted_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    party = relationship("Party")
    treasury = relationship("Treasury")
    items = relationship(
        "InvoiceItem", back_populates="invoice",
        cascade="all, delete-orphan", order_by="InvoiceItem.id"
    )

    __table_args__ = (
        CheckConstraint('paid_amount >= 0', name='ck_invoice_paid_positive'),
        Index('ix_invoice_type_status', 'invoice_type', 'status'),
        Index('ix_invoice_party_date', 'party_id', 'transaction_date'),
    )

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.total_amount or 0) - Decimal(self.paid_amount or 0)


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    unit_price = Column(Numeric(15, 4), nullable=False, default=Decimal("0"))
    total_price = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    # Cost of goods sold, captured when a sales invoice is posted
    unit_cost_at_sale = Column(Numeric(15, 4), nullable=True)

    invoice = relationship("Invoice", back_populates="items")
    item = relationship("InventoryItem")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_invoice_item_quantity_positive'),
    )


# =============================================================================
# RETURNS
# =============================================================================

class ReturnDocument(Base):
    __tablename__ = "returns"

    id = Column(Integer, primary_key=True, index=True)
    return_type = Column(SQLEnum(InvoiceType), nullable=False)
    return_number = Column(String(50), unique=True, nullable=False, index=True)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=False)
    original_invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True)
    return_date = Column(Date, nullable=False, default=lambda: datetime.utcnow().date())
    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.DRAFT)
    total_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))

    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    posted_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    party = relationship("Party")
    original_invoice = relationship("Invoice")
    items = relationship(
        "ReturnItem", back_populates="return_document",
        cascade="all, delete-orphan", order_by="ReturnItem.id"
    )

    __table_args__ = (
        Index('ix_return_type_status', 'return_type', 'status'),
    )


class ReturnItem(Base):
    __tablename__ = "return_items"

    id = Column(Integer, primary_key=True, index=True)
    return_id = Column(Integer, ForeignKey("returns.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    unit_price = Column(Numeric(15, 4), nullable=False, default=Decimal("0"))
    total_price = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    # Cost of goods coming back on a sales return, captured when it is posted
    unit_cost_at_return = Column(Numeric(15, 4), nullable=True)

    return_document = relationship("ReturnDocument", back_populates="items")
    item = relationship("InventoryItem")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_return_item_quantity_positive'),
    )
