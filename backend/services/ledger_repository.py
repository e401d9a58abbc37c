"""
Multi-Owner Ledger Storage Layer

Repository over property_ownership, ledger_transactions, transaction_splits
and settlements. Multi-row writes (ownership replacement, a transaction with
its splits) are committed together or not at all.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Dict, Any, Sequence, Tuple
import logging

from sqlalchemy import select, delete, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database.bank_models import generate_uuid, utc_now
from database.ledger_models import (
    PropertyOwnershipDB, LedgerTransactionDB, TransactionSplitDB, SettlementDB
)

logger = logging.getLogger(__name__)


class LedgerRepository:
    """Repository for ownership, ledger transactions, splits and settlements"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== OWNERSHIP ====================

    async def list_owners(self, property_id: str) -> List[PropertyOwnershipDB]:
        result = await self.session.execute(
            select(PropertyOwnershipDB)
            .where(PropertyOwnershipDB.property_id == property_id)
            .order_by(PropertyOwnershipDB.percentage.desc(), PropertyOwnershipDB.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_owner(self, property_id: str, user_id: str) -> Optional[PropertyOwnershipDB]:
        result = await self.session.execute(
            select(PropertyOwnershipDB).where(and_(
                PropertyOwnershipDB.property_id == property_id,
                PropertyOwnershipDB.user_id == user_id,
            ))
        )
        return result.scalar_one_or_none()

    async def list_properties_for_user(self, user_id: str) -> List[str]:
        result = await self.session.execute(
            select(PropertyOwnershipDB.property_id)
            .where(PropertyOwnershipDB.user_id == user_id)
            .order_by(PropertyOwnershipDB.created_at.asc())
        )
        return list(result.scalars().all())

    async def upsert_owner(self, property_id: str, user_id: str, percentage: Decimal) -> PropertyOwnershipDB:
        owner = await self.get_owner(property_id, user_id)
        if owner is None:
            owner = PropertyOwnershipDB(
                id=generate_uuid(),
                property_id=property_id,
                user_id=user_id,
                percentage=percentage,
            )
            self.session.add(owner)
        else:
            owner.percentage = percentage
            owner.updated_at = utc_now()

        await self.session.commit()
        await self.session.refresh(owner)
        return owner

    async def replace_owners(self, property_id: str, shares: Sequence[Tuple[str, Decimal]]) -> List[PropertyOwnershipDB]:
        """Swap the whole ownership set for (user_id, percentage) pairs in one commit"""
        try:
            await self.session.execute(
                delete(PropertyOwnershipDB).where(PropertyOwnershipDB.property_id == property_id)
            )
            for user_id, percentage in shares:
                self.session.add(PropertyOwnershipDB(
                    id=generate_uuid(),
                    property_id=property_id,
                    user_id=user_id,
                    percentage=percentage,
                ))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return await self.list_owners(property_id)

    async def delete_owner(self, property_id: str, user_id: str) -> bool:
        result = await self.session.execute(
            delete(PropertyOwnershipDB).where(and_(
                PropertyOwnershipDB.property_id == property_id,
                PropertyOwnershipDB.user_id == user_id,
            ))
        )
        await self.session.commit()
        return result.rowcount > 0

    async def count_user_splits(self, property_id: str, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count(TransactionSplitDB.id))
            .join(LedgerTransactionDB, TransactionSplitDB.transaction_id == LedgerTransactionDB.id)
            .where(and_(
                LedgerTransactionDB.property_id == property_id,
                TransactionSplitDB.user_id == user_id,
            ))
        )
        return result.scalar_one()

    async def count_user_settlements(self, property_id: str, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count(SettlementDB.id)).where(and_(
                SettlementDB.property_id == property_id,
                or_(SettlementDB.from_user_id == user_id, SettlementDB.to_user_id == user_id),
            ))
        )
        return result.scalar_one()

    # ==================== LEDGER TRANSACTIONS ====================

    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransactionDB]:
        result = await self.session.execute(
            select(LedgerTransactionDB).where(LedgerTransactionDB.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def list_transactions(self, property_id: str) -> List[LedgerTransactionDB]:
        result = await self.session.execute(
            select(LedgerTransactionDB)
            .where(LedgerTransactionDB.property_id == property_id)
            .order_by(LedgerTransactionDB.transaction_date.desc(), LedgerTransactionDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_paid_transactions(self, property_id: str) -> List[LedgerTransactionDB]:
        """Transactions with a payer, splits loaded"""
        result = await self.session.execute(
            select(LedgerTransactionDB).where(and_(
                LedgerTransactionDB.property_id == property_id,
                LedgerTransactionDB.paid_by_user_id.is_not(None),
            ))
        )
        return list(result.scalars().all())

    async def create_transaction(
        self,
        values: Dict[str, Any],
        splits: Sequence[Dict[str, Any]],
    ) -> LedgerTransactionDB:
        """Insert a transaction with its splits in one commit"""
        transaction = LedgerTransactionDB(id=generate_uuid(), **values)
        transaction.splits = [
            TransactionSplitDB(id=generate_uuid(), **split) for split in splits
        ]
        self.session.add(transaction)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return transaction

    async def update_transaction(
        self,
        transaction_id: str,
        values: Dict[str, Any],
        splits: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Optional[LedgerTransactionDB]:
        """Update fields and, when given, replace the splits, in one commit"""
        transaction = await self.get_transaction(transaction_id)
        if transaction is None:
            return None

        for key, value in values.items():
            setattr(transaction, key, value)
        transaction.updated_at = utc_now()
        try:
            if splits is not None:
                # Old splits must be gone before re-inserting the same (transaction, user) pairs
                transaction.splits.clear()
                await self.session.flush()
                transaction.splits.extend(
                    TransactionSplitDB(id=generate_uuid(), **split) for split in splits
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return transaction

    # ==================== SETTLEMENTS ====================

    async def create_settlement(
        self,
        from_user_id: str,
        to_user_id: str,
        property_id: str,
        amount: Decimal,
        settlement_date: date,
        notes: Optional[str] = None,
    ) -> SettlementDB:
        settlement = SettlementDB(
            id=generate_uuid(),
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            property_id=property_id,
            amount=amount,
            settlement_date=settlement_date,
            notes=notes,
        )
        self.session.add(settlement)
        await self.session.commit()
        await self.session.refresh(settlement)
        return settlement

    async def list_settlements(self, property_id: str) -> List[SettlementDB]:
        result = await self.session.execute(
            select(SettlementDB)
            .where(SettlementDB.property_id == property_id)
            .order_by(SettlementDB.settlement_date.desc(), SettlementDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_settlements_between(self, property_id: str, user_a: str, user_b: str) -> List[SettlementDB]:
        """Settlements in either direction between two users"""
        result = await self.session.execute(
            select(SettlementDB).where(and_(
                SettlementDB.property_id == property_id,
                or_(
                    and_(SettlementDB.from_user_id == user_a, SettlementDB.to_user_id == user_b),
                    and_(SettlementDB.from_user_id == user_b, SettlementDB.to_user_id == user_a),
                ),
            ))
        )
        return list(result.scalars().all())
