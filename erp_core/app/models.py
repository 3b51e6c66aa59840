"""
Core Data Models
================
Identity, counterparties and money:
- Users and roles
- Parties (customers / suppliers) with an append-only ledger
- Treasuries (cash / bank) with an append-only transaction log
- Audit log and document number sequences
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text, Boolean,
    Numeric, Enum as SQLEnum, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from .db import Base


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    ACCOUNTANT = "accountant"
    INVENTORY_OFFICER = "inventory_officer"
    PRODUCTION_OFFICER = "production_officer"
    VIEWER = "viewer"


class PartyType(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class TreasuryType(str, Enum):
    CASH = "cash"
    BANK = "bank"


class TransactionType(str, Enum):
    """Direction of a treasury movement"""
    INCOME = "income"
    EXPENSE = "expense"


# =============================================================================
# USERS
# =============================================================================

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False, default=UserRole.VIEWER.value)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# PARTIES
# =============================================================================

class Party(Base):
    """
    Customer or supplier.

    `balance` is a running signed total: positive means the party owes us,
    negative means we owe the party. It only changes together with a
    PartyLedgerEntry row, so it always equals the sum of the ledger.
    """
    __tablename__ = "parties"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    party_type = Column(SQLEnum(PartyType), nullable=False)
    phone = Column(String(50), nullable=True)
    email = Column(String(120), nullable=True)
    address = Column(Text, nullable=True)
    tax_number = Column(String(50), nullable=True)
    commercial_record = Column(String(50), nullable=True)
    balance = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    credit_limit = Column(Numeric(15, 2), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    ledger_entries = relationship(
        "PartyLedgerEntry", back_populates="party", order_by="PartyLedgerEntry.id"
    )

    __table_args__ = (
        Index('ix_party_type_name', 'party_type', 'name'),
    )


class PartyLedgerEntry(Base):
    """
    Append-only debit/credit record against a party.

    amount = debit - credit and is the exact change applied to Party.balance.
    Reversals never delete rows: they add an opposite entry pointing back
    through `reversal_of_id` and flag the original as reversed.
    """
    __tablename__ = "party_ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=False)
    entry_date = Column(Date, nullable=False, default=lambda: datetime.utcnow().date())

    debit = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    credit = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    amount = Column(Numeric(15, 2), nullable=False)
    balance_after = Column(Numeric(15, 2), nullable=False)

    description = Column(String(255), nullable=True)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    reference_number = Column(String(50), nullable=True)

    is_reversed = Column(Boolean, default=False)
    reversal_of_id = Column(Integer, ForeignKey("party_ledger_entries.id"), nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    party = relationship("Party", back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint('debit >= 0 AND credit >= 0', name='ck_ledger_sides_positive'),
        Index('ix_ledger_party_date', 'party_id', 'entry_date'),
        Index('ix_ledger_reference', 'reference_type', 'reference_id'),
    )


# =============================================================================
# TREASURIES
# =============================================================================

class Treasury(Base):
    """Cash box or bank account"""
    __tablename__ = "treasuries"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False, unique=True)
    treasury_type = Column(SQLEnum(TreasuryType), nullable=False, default=TreasuryType.CASH)
    currency = Column(String(10), nullable=False, default="EGP")
    account_number = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    balance = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = relationship(
        "FinancialTransaction", back_populates="treasury", order_by="FinancialTransaction.id"
    )


class FinancialTransaction(Base):
    """
    Immutable record of every treasury balance change.

    amount is always positive; transaction_type gives the direction.
    """
    __tablename__ = "financial_transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_number = Column(String(50), unique=True, nullable=False)
    treasury_id = Column(Integer, ForeignKey("treasuries.id"), nullable=False)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=True)

    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    category = Column(String(50), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    balance_after = Column(Numeric(15, 2), nullable=False)
    description = Column(String(255), nullable=True)
    transaction_date = Column(Date, nullable=False, default=lambda: datetime.utcnow().date())

    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    reference_number = Column(String(50), nullable=True)

    is_reversed = Column(Boolean, default=False)
    reversal_of_id = Column(Integer, ForeignKey("financial_transactions.id"), nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    treasury = relationship("Treasury", back_populates="transactions")
    party = relationship("Party")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        Index('ix_fin_txn_treasury_date', 'treasury_id', 'transaction_date'),
        Index('ix_fin_txn_reference', 'reference_type', 'reference_id'),
    )

    @property
    def signed_amount(self) -> Decimal:
        if self.transaction_type == TransactionType.INCOME:
            return Decimal(self.amount)
        return -Decimal(self.amount)


# =============================================================================
# SYSTEM
# =============================================================================

class AuditLog(Base):
    """
    General audit log for sensitive changes.
    Written in the same transaction as the change it describes.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)

    # JSON stored as text for SQLite compatibility
    details = Column(Text, nullable=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_audit_entity', 'entity_type', 'entity_id'),
        Index('ix_audit_user_date', 'user_id', 'created_at'),
    )


class NumberSequence(Base):
    """Per-document-type counters for codes like PO-0001"""
    __tablename__ = "number_sequences"

    id = Column(Integer, primary_key=True, index=True)
    sequence_name = Column(String(50), unique=True, nullable=False)
    prefix = Column(String(20), default="")
    current_number = Column(Integer, default=0)
    padding = Column(Integer, default=4)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
