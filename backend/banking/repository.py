"""
Bank Feed Storage Layer

Repositories over the bank feed tables. These are the only place bank feed
queries are issued; services receive a BankStore and never touch the session.

The idempotent transaction insert uses PostgreSQL
INSERT ... ON CONFLICT DO NOTHING RETURNING, so a duplicate (account,
external id) is reported as InsertOutcome.DUPLICATE rather than raised.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple, AsyncIterator
import logging

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import AsyncSessionLocal
from database.bank_models import (
    LinkedAccountDB, BankTransactionDB, SyncRunDB, MatchingRuleDB,
    PendingTransactionDB, SyncType, SyncStatus, generate_uuid, utc_now
)
from services.ledger_repository import LedgerRepository

logger = logging.getLogger(__name__)


# ==================== INSERT OUTCOME ====================

class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


@dataclass
class InsertResult:
    """Result of insert_or_detect_conflict; transaction is None for duplicates"""
    outcome: InsertOutcome
    transaction: Optional[BankTransactionDB] = None

    @property
    def inserted(self) -> bool:
        return self.outcome == InsertOutcome.INSERTED


# ==================== ACCOUNTS ====================

class BankAccountRepository:
    """Repository for linked bank accounts"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str) -> Optional[LinkedAccountDB]:
        result = await self.session.execute(
            select(LinkedAccountDB).where(LinkedAccountDB.id == account_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_account_id: str) -> Optional[LinkedAccountDB]:
        result = await self.session.execute(
            select(LinkedAccountDB).where(LinkedAccountDB.account_id == external_account_id)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> List[LinkedAccountDB]:
        result = await self.session.execute(
            select(LinkedAccountDB).order_by(LinkedAccountDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def upsert(self, external_account_id: str, values: Dict[str, Any]) -> Tuple[LinkedAccountDB, bool]:
        """Create or update the account keyed by external id. Returns (account, created)."""
        account = await self.get_by_external_id(external_account_id)
        created = account is None

        if created:
            account = LinkedAccountDB(id=generate_uuid(), account_id=external_account_id, **values)
            self.session.add(account)
        else:
            for key, value in values.items():
                setattr(account, key, value)
            account.updated_at = utc_now()

        await self.session.commit()
        await self.session.refresh(account)
        return account, created

    async def update(self, account_id: str, updates: Dict[str, Any]) -> Optional[LinkedAccountDB]:
        if not updates:
            return await self.get(account_id)

        updates = {**updates, "updated_at": utc_now()}
        await self.session.execute(
            update(LinkedAccountDB)
            .where(LinkedAccountDB.id == account_id)
            .values(**updates)
        )
        await self.session.commit()
        return await self.get(account_id)

    async def update_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> Optional[LinkedAccountDB]:
        """Persist an already-encrypted token pair"""
        return await self.update(account_id, {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_expires_at": token_expires_at,
        })

    async def delete(self, account_id: str) -> bool:
        result = await self.session.execute(
            delete(LinkedAccountDB).where(LinkedAccountDB.id == account_id)
        )
        await self.session.commit()
        return result.rowcount > 0


# ==================== SYNC RUNS ====================

class SyncRunRepository:
    """Repository for sync runs (sync_logs)"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        bank_account_id: str,
        sync_type: SyncType,
        webhook_event_id: Optional[str] = None,
    ) -> SyncRunDB:
        run = SyncRunDB(
            id=generate_uuid(),
            bank_account_id=bank_account_id,
            sync_type=sync_type.value,
            status=SyncStatus.IN_PROGRESS.value,
            started_at=utc_now(),
            webhook_event_id=webhook_event_id,
        )
        self.session.add(run)
        await self.session.commit()
        await self.session.refresh(run)
        return run

    async def get(self, run_id: str) -> Optional[SyncRunDB]:
        result = await self.session.execute(
            select(SyncRunDB).where(SyncRunDB.id == run_id)
        )
        return result.scalar_one_or_none()

    async def get_in_progress(self, bank_account_id: str) -> Optional[SyncRunDB]:
        result = await self.session.execute(
            select(SyncRunDB)
            .where(and_(
                SyncRunDB.bank_account_id == bank_account_id,
                SyncRunDB.status == SyncStatus.IN_PROGRESS.value,
            ))
            .order_by(SyncRunDB.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_processed_webhook_event(self, webhook_event_id: str) -> Optional[SyncRunDB]:
        """
        A non-failed run for the event id, if the event was already handled.

        Failed runs do not count: the webhook answered 500 and Monzo redelivers
        the event, so the retry must be processed rather than dropped.
        """
        result = await self.session.execute(
            select(SyncRunDB)
            .where(and_(
                SyncRunDB.webhook_event_id == webhook_event_id,
                SyncRunDB.status != SyncStatus.FAILED.value,
            ))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_counts(self, run_id: str, **counts: int) -> None:
        if not counts:
            return
        await self.session.execute(
            update(SyncRunDB).where(SyncRunDB.id == run_id).values(**counts)
        )
        await self.session.commit()

    async def finalize(
        self,
        run_id: str,
        status: SyncStatus,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
        **counts: int,
    ) -> Optional[SyncRunDB]:
        """
        Move an in_progress run to its terminal status.

        Only in_progress runs are updated, so a run is finalized exactly once.
        Returns None if the run was already final.
        """
        result = await self.session.execute(
            update(SyncRunDB)
            .where(and_(
                SyncRunDB.id == run_id,
                SyncRunDB.status == SyncStatus.IN_PROGRESS.value,
            ))
            .values(
                status=status.value,
                completed_at=utc_now(),
                error_message=error_message,
                error_details=error_details,
                **counts,
            )
        )
        await self.session.commit()
        if result.rowcount == 0:
            logger.warning(f"Sync run {run_id} was already finalized")
            return None
        return await self.get(run_id)

    # ---------- webhook reporting ----------

    async def list_recent_webhook_runs(self, limit: int = 20) -> List[SyncRunDB]:
        result = await self.session.execute(
            select(SyncRunDB)
            .where(SyncRunDB.sync_type == SyncType.WEBHOOK.value)
            .order_by(SyncRunDB.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def latest_webhook_run_for_account(self, bank_account_id: str) -> Optional[SyncRunDB]:
        result = await self.session.execute(
            select(SyncRunDB)
            .where(and_(
                SyncRunDB.bank_account_id == bank_account_id,
                SyncRunDB.sync_type == SyncType.WEBHOOK.value,
            ))
            .order_by(SyncRunDB.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_failed_webhook_runs(self, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(SyncRunDB.id))
            .where(and_(
                SyncRunDB.sync_type == SyncType.WEBHOOK.value,
                SyncRunDB.status == SyncStatus.FAILED.value,
                SyncRunDB.started_at >= since,
            ))
        )
        return result.scalar_one()


# ==================== BANK TRANSACTIONS ====================

class BankTransactionRepository:
    """Repository for raw bank transactions"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_or_detect_conflict(self, bank_account_id: str, record: Dict[str, Any]) -> InsertResult:
        """
        Insert a transaction unless (bank_account_id, external_id) already exists.

        Args:
            record: Column values (see MonzoTransaction.to_record)
        """
        stmt = (
            pg_insert(BankTransactionDB)
            .values(
                id=generate_uuid(),
                bank_account_id=bank_account_id,
                imported_at=utc_now(),
                **record,
            )
            .on_conflict_do_nothing(constraint="uq_bank_transactions_account_external")
            .returning(BankTransactionDB.id)
        )
        result = await self.session.execute(stmt)
        inserted_id = result.scalar_one_or_none()
        await self.session.commit()

        if inserted_id is None:
            return InsertResult(outcome=InsertOutcome.DUPLICATE)
        return InsertResult(outcome=InsertOutcome.INSERTED, transaction=await self.get(inserted_id))

    async def get(self, transaction_id: str) -> Optional[BankTransactionDB]:
        result = await self.session.execute(
            select(BankTransactionDB).where(BankTransactionDB.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def link_ledger_transaction(self, transaction_id: str, ledger_transaction_id: str) -> None:
        await self.session.execute(
            update(BankTransactionDB)
            .where(BankTransactionDB.id == transaction_id)
            .values(ledger_transaction_id=ledger_transaction_id)
        )
        await self.session.commit()


# ==================== MATCHING RULES ====================

class MatchingRuleRepository:
    """Repository for matching rules"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, rule_id: str) -> Optional[MatchingRuleDB]:
        result = await self.session.execute(
            select(MatchingRuleDB).where(MatchingRuleDB.id == rule_id)
        )
        return result.scalar_one_or_none()

    async def list_for_account(self, bank_account_id: str) -> List[MatchingRuleDB]:
        """Rules scoped to the account only, by priority"""
        result = await self.session.execute(
            select(MatchingRuleDB)
            .where(MatchingRuleDB.bank_account_id == bank_account_id)
            .order_by(MatchingRuleDB.priority.asc(), MatchingRuleDB.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_global(self) -> List[MatchingRuleDB]:
        result = await self.session.execute(
            select(MatchingRuleDB)
            .where(MatchingRuleDB.bank_account_id.is_(None))
            .order_by(MatchingRuleDB.priority.asc(), MatchingRuleDB.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_applicable(self, bank_account_id: str) -> List[MatchingRuleDB]:
        """Rules that apply to the account: account-scoped first, then global"""
        return await self.list_for_account(bank_account_id) + await self.list_global()

    async def list_all(self) -> List[MatchingRuleDB]:
        result = await self.session.execute(
            select(MatchingRuleDB).order_by(MatchingRuleDB.priority.asc())
        )
        return list(result.scalars().all())

    async def count_with_name_prefix(self, prefix: str) -> int:
        result = await self.session.execute(
            select(func.count(MatchingRuleDB.id))
            .where(and_(
                MatchingRuleDB.bank_account_id.is_(None),
                MatchingRuleDB.name.startswith(prefix),
            ))
        )
        return result.scalar_one()

    async def get_many(self, rule_ids: List[str]) -> List[MatchingRuleDB]:
        if not rule_ids:
            return []
        result = await self.session.execute(
            select(MatchingRuleDB).where(MatchingRuleDB.id.in_(rule_ids))
        )
        return list(result.scalars().all())

    async def max_priority(self, bank_account_id: str) -> Optional[int]:
        result = await self.session.execute(
            select(func.max(MatchingRuleDB.priority))
            .where(MatchingRuleDB.bank_account_id == bank_account_id)
        )
        return result.scalar_one_or_none()

    async def set_priorities(self, ordered_rule_ids: List[str]) -> None:
        """Priority = position in the list, in one commit"""
        for index, rule_id in enumerate(ordered_rule_ids):
            await self.session.execute(
                update(MatchingRuleDB)
                .where(MatchingRuleDB.id == rule_id)
                .values(priority=index, updated_at=utc_now())
            )
        await self.session.commit()

    async def create(self, values: Dict[str, Any]) -> MatchingRuleDB:
        rule = MatchingRuleDB(id=generate_uuid(), **values)
        self.session.add(rule)
        await self.session.commit()
        await self.session.refresh(rule)
        return rule

    async def update(self, rule_id: str, updates: Dict[str, Any]) -> Optional[MatchingRuleDB]:
        if updates:
            await self.session.execute(
                update(MatchingRuleDB)
                .where(MatchingRuleDB.id == rule_id)
                .values(**updates, updated_at=utc_now())
            )
            await self.session.commit()
        return await self.get(rule_id)

    async def delete(self, rule_id: str) -> bool:
        result = await self.session.execute(
            delete(MatchingRuleDB).where(MatchingRuleDB.id == rule_id)
        )
        await self.session.commit()
        return result.rowcount > 0


# ==================== PENDING TRANSACTIONS ====================

class PendingTransactionRepository:
    """Repository for the pending review queue"""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _scoped(query, bank_account_id: Optional[str]):
        if bank_account_id:
            query = query.join(
                BankTransactionDB, PendingTransactionDB.bank_transaction_id == BankTransactionDB.id
            ).where(BankTransactionDB.bank_account_id == bank_account_id)
        return query

    async def create(
        self,
        bank_transaction_id: str,
        property_id: Optional[str] = None,
        type: Optional[str] = None,
        category: Optional[str] = None,
    ) -> PendingTransactionDB:
        pending = PendingTransactionDB(
            id=generate_uuid(),
            bank_transaction_id=bank_transaction_id,
            property_id=property_id,
            type=type,
            category=category,
        )
        self.session.add(pending)
        await self.session.commit()
        return await self.get(pending.id)

    async def get(self, pending_id: str) -> Optional[PendingTransactionDB]:
        result = await self.session.execute(
            select(PendingTransactionDB).where(PendingTransactionDB.id == pending_id)
        )
        return result.unique().scalar_one_or_none()

    async def list(
        self,
        bank_account_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PendingTransactionDB]:
        query = self._scoped(select(PendingTransactionDB), bank_account_id)
        query = query.order_by(PendingTransactionDB.created_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.unique().scalars().all())

    async def count(self, bank_account_id: Optional[str] = None) -> int:
        query = self._scoped(select(func.count(PendingTransactionDB.id)), bank_account_id)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def update(self, pending_id: str, updates: Dict[str, Any]) -> Optional[PendingTransactionDB]:
        if updates:
            await self.session.execute(
                update(PendingTransactionDB)
                .where(PendingTransactionDB.id == pending_id)
                .values(**updates, updated_at=utc_now())
            )
            await self.session.commit()
        self.session.expire_all()
        return await self.get(pending_id)

    async def delete(self, pending_id: str) -> bool:
        result = await self.session.execute(
            delete(PendingTransactionDB).where(PendingTransactionDB.id == pending_id)
        )
        await self.session.commit()
        return result.rowcount > 0


# ==================== STORE ====================

class BankStore:
    """All repositories bound to one session"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.accounts = BankAccountRepository(session)
        self.sync_runs = SyncRunRepository(session)
        self.transactions = BankTransactionRepository(session)
        self.rules = MatchingRuleRepository(session)
        self.pending = PendingTransactionRepository(session)
        self.ledger = LedgerRepository(session)


@asynccontextmanager
async def bank_store_scope() -> AsyncIterator[BankStore]:
    """BankStore on a fresh session, for work outliving the request (background imports)"""
    async with AsyncSessionLocal() as session:
        yield BankStore(session)
