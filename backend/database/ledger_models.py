"""
Landlord Core - Multi-Owner Ledger Database Models

Tables:
- property_ownership: Fractional ownership of a property per user
- ledger_transactions: Income/expense events on a property
- transaction_splits: Per-owner share of a ledger transaction
- settlements: Payments between co-owners (append-only)

Properties, users and leases live in the wider landlord application; only
their ids are stored here.
"""

from enum import Enum as PyEnum
from typing import Dict, Any

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Numeric,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from database.connection import Base
from database.bank_models import generate_uuid, utc_now, _iso


class LedgerTransactionType(str, PyEnum):
    INCOME = "income"
    EXPENSE = "expense"


# Allowed categories per ledger transaction type
INCOME_CATEGORIES = ("Rent", "Security Deposit", "Late Fee", "Lease Fee")
EXPENSE_CATEGORIES = (
    "Maintenance", "Repair", "Utilities", "Insurance", "Property Tax",
    "Management Fee", "Legal Fee", "Transport", "Other",
)


def _money(value) -> float:
    return float(value) if value is not None else None


class PropertyOwnershipDB(Base):
    """
    Fractional ownership of a property by a user.

    For each property the non-empty set of records sums to 100% (+/- 0.01).
    """
    __tablename__ = "property_ownership"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    property_id = Column(String(36), nullable=False, index=True)
    percentage = Column(Numeric(5, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'property_id', name='uq_property_ownership_user_property'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "property_id": self.property_id,
            "percentage": _money(self.percentage),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class LedgerTransactionDB(Base):
    """
    Income or expense event on a property.

    amount is a positive magnitude; type carries the direction.
    """
    __tablename__ = "ledger_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    property_id = Column(String(36), nullable=False, index=True)
    lease_id = Column(String(36), nullable=True)

    type = Column(String(10), nullable=False)
    category = Column(String(100), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=True)

    paid_by_user_id = Column(String(36), nullable=True)
    bank_transaction_id = Column(String(36), nullable=True, unique=True)
    is_imported = Column(Boolean, nullable=False, default=False)
    imported_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    splits = relationship(
        "TransactionSplitDB",
        back_populates="transaction",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index('ix_ledger_transactions_property_date', 'property_id', 'transaction_date'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "property_id": self.property_id,
            "lease_id": self.lease_id,
            "type": self.type,
            "category": self.category,
            "amount": _money(self.amount),
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "description": self.description,
            "paid_by_user_id": self.paid_by_user_id,
            "bank_transaction_id": self.bank_transaction_id,
            "is_imported": self.is_imported,
            "imported_at": _iso(self.imported_at),
            "splits": [s.to_dict() for s in (self.splits or [])],
        }


class TransactionSplitDB(Base):
    """Per-owner share of a ledger transaction"""
    __tablename__ = "transaction_splits"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_id = Column(String(36), ForeignKey("ledger_transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    percentage = Column(Numeric(5, 2), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)

    transaction = relationship("LedgerTransactionDB", back_populates="splits")

    __table_args__ = (
        UniqueConstraint('transaction_id', 'user_id', name='uq_transaction_splits_transaction_user'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "percentage": _money(self.percentage),
            "amount": _money(self.amount),
        }


class SettlementDB(Base):
    """Payment from one co-owner to another. Never updated or deleted."""
    __tablename__ = "settlements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    from_user_id = Column(String(36), nullable=False, index=True)
    to_user_id = Column(String(36), nullable=False, index=True)
    property_id = Column(String(36), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    settlement_date = Column(Date, nullable=False)
    notes = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "property_id": self.property_id,
            "amount": _money(self.amount),
            "settlement_date": self.settlement_date.isoformat() if self.settlement_date else None,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }
