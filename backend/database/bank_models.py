"""
Landlord Core - Bank Feed Database Models

Persistence for the Monzo bank connection and everything ingested through it.

Tables:
- bank_accounts: Linked external bank accounts (tokens encrypted at rest)
- bank_transactions: Raw transactions exactly as reported by the bank
- sync_logs: One row per import, incremental sync or webhook event
- matching_rules: Classification rules (global or per account)
- pending_transactions: Bank transactions awaiting manual classification
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Dict, Any

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, Numeric,
    ForeignKey, Index, UniqueConstraint, JSON
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value) -> str:
    return value.isoformat() if value else None


# ==================== ENUMS ====================

class SyncType(str, PyEnum):
    """Kind of sync run"""
    INITIAL = "initial"          # Full-history import after linking
    INCREMENTAL = "incremental"  # Manual or scheduled catch-up
    WEBHOOK = "webhook"          # Single pushed transaction


class SyncStatus(str, PyEnum):
    """Outcome of a sync run"""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class AccountSyncStatus(str, PyEnum):
    """Last known sync state stored on the account"""
    NEVER_SYNCED = "never_synced"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RuleTransactionType(str, PyEnum):
    """Transaction type a matching rule assigns"""
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


# ==================== DATABASE MODELS ====================

class LinkedAccountDB(Base):
    """
    One external bank account connection.

    Upserted by the provider's account id, so re-linking the same account
    rotates its tokens instead of creating a second row.
    """
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(100), nullable=False, unique=True)
    account_name = Column(String(255), nullable=False)
    account_type = Column(String(50), nullable=False, default="current")
    provider = Column(String(50), nullable=False, default="monzo")

    # Encrypted with the token vault, never serialized
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_from_date = Column(DateTime(timezone=True), nullable=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String(20), nullable=False, default=AccountSyncStatus.NEVER_SYNCED.value)

    webhook_id = Column(String(100), nullable=True, unique=True)
    webhook_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    transactions = relationship("BankTransactionDB", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)
    sync_runs = relationship("SyncRunDB", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize without any token material"""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "account_type": self.account_type,
            "provider": self.provider,
            "token_expires_at": _iso(self.token_expires_at),
            "sync_enabled": self.sync_enabled,
            "sync_from_date": _iso(self.sync_from_date),
            "last_sync_at": _iso(self.last_sync_at),
            "last_sync_status": self.last_sync_status,
            "webhook_id": self.webhook_id,
            "webhook_url": self.webhook_url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class BankTransactionDB(Base):
    """
    A transaction exactly as reported by the bank.

    (bank_account_id, external_id) is the idempotency key shared by pull sync
    and webhooks. Rows are never updated apart from the ledger link.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(100), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)  # signed, negative = money out
    currency = Column(String(3), nullable=False, default="GBP")
    description = Column(Text, nullable=False, default="")
    counterparty_name = Column(Text, nullable=True)
    reference = Column(Text, nullable=True)
    merchant = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)

    transaction_date = Column(DateTime(timezone=True), nullable=False, index=True)
    settled_date = Column(DateTime(timezone=True), nullable=True)
    imported_at = Column(DateTime(timezone=True), default=utc_now)

    ledger_transaction_id = Column(String(36), ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True)

    account = relationship("LinkedAccountDB", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('bank_account_id', 'external_id', name='uq_bank_transactions_account_external'),
        Index('ix_bank_transactions_account_date', 'bank_account_id', 'transaction_date'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_account_id": self.bank_account_id,
            "external_id": self.external_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "description": self.description,
            "counterparty_name": self.counterparty_name,
            "reference": self.reference,
            "merchant": self.merchant,
            "category": self.category,
            "transaction_date": _iso(self.transaction_date),
            "settled_date": _iso(self.settled_date),
            "imported_at": _iso(self.imported_at),
            "ledger_transaction_id": self.ledger_transaction_id,
        }


class SyncRunDB(Base):
    """
    One execution of a full import, incremental sync, or webhook event.

    Created before any work starts so progress is observable, and finalized
    exactly once. For webhook runs, webhook_event_id is a second idempotency key.
    """
    __tablename__ = "sync_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=SyncStatus.IN_PROGRESS.value)

    started_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    transactions_fetched = Column(Integer, nullable=False, default=0)
    transactions_skipped = Column(Integer, nullable=False, default=0)
    transactions_matched = Column(Integer, nullable=False, default=0)
    transactions_pending = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    webhook_event_id = Column(String(100), nullable=True, index=True)

    account = relationship("LinkedAccountDB", back_populates="sync_runs")

    __table_args__ = (
        Index('ix_sync_logs_account_status', 'bank_account_id', 'status'),
        Index('ix_sync_logs_type_started', 'sync_type', 'started_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_account_id": self.bank_account_id,
            "sync_type": self.sync_type,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "transactions_fetched": self.transactions_fetched,
            "transactions_skipped": self.transactions_skipped,
            "transactions_matched": self.transactions_matched,
            "transactions_pending": self.transactions_pending,
            "error_message": self.error_message,
            "webhook_event_id": self.webhook_event_id,
        }


class MatchingRuleDB(Base):
    """
    Classification rule.

    conditions holds a JSON condition group:
    {"operator": "AND", "rules": [{"field": "description", "matchType": "contains", "value": "rent"}]}
    """
    __tablename__ = "matching_rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)

    property_id = Column(String(36), nullable=True)
    type = Column(String(10), nullable=True)
    category = Column(String(100), nullable=True)
    conditions = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_matching_rules_scope_priority', 'bank_account_id', 'priority'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_account_id": self.bank_account_id,
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "property_id": self.property_id,
            "type": self.type,
            "category": self.category,
            "conditions": self.conditions,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PendingTransactionDB(Base):
    """
    A bank transaction the rules could not fully classify.

    Holds whatever fields were inferred; removed once approved into the ledger.
    """
    __tablename__ = "pending_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_transaction_id = Column(String(36), ForeignKey("bank_transactions.id", ondelete="CASCADE"), nullable=False, unique=True)
    property_id = Column(String(36), nullable=True, index=True)
    type = Column(String(10), nullable=True)
    category = Column(String(100), nullable=True)
    review_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    bank_transaction = relationship("BankTransactionDB", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_transaction_id": self.bank_transaction_id,
            "property_id": self.property_id,
            "type": self.type,
            "category": self.category,
            "review_notes": self.review_notes,
            "created_at": _iso(self.created_at),
            "bank_transaction": self.bank_transaction.to_dict() if self.bank_transaction else None,
        }
