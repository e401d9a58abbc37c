"""
Ledger Transaction Service

Records income/expense transactions on a property together with the
per-owner splits.

Split rules (any violation rejects the whole write):
- Split users are current owners, one split per user
- Percentages total 100 +/- 0.01
- Each amount is within 0.01 of amount * percentage / 100
- Amounts total exactly the transaction amount
- A payer, when given, is a current owner

Without explicit splits, a property with owners gets splits generated from
ownership; leftover pennies go to the largest shares first.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from database.ledger_models import (
    LedgerTransactionDB, LedgerTransactionType, INCOME_CATEGORIES, EXPENSE_CATEGORIES
)
from database.bank_models import utc_now
from services.ledger_repository import LedgerRepository
from services.ledger_errors import (
    SplitValidationError, NotAnOwnerError, TransactionValidationError,
    LedgerTransactionNotFoundError
)

logger = logging.getLogger(__name__)

PENNY = Decimal("0.01")
SPLIT_TOLERANCE = Decimal("0.01")
HUNDRED = Decimal("100")

CATEGORIES_BY_TYPE = {
    LedgerTransactionType.INCOME.value: INCOME_CATEGORIES,
    LedgerTransactionType.EXPENSE.value: EXPENSE_CATEGORIES,
}


def to_money(value, field_name: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise TransactionValidationError(f"Invalid {field_name}: {value!r}")
    if not amount.is_finite():
        raise TransactionValidationError(f"Invalid {field_name}: {value!r}")
    return amount.quantize(PENNY, rounding=ROUND_HALF_UP)


def is_valid_category(transaction_type: str, category: str) -> bool:
    return category in CATEGORIES_BY_TYPE.get(transaction_type, ())


@dataclass
class SplitInput:
    user_id: str
    percentage: Decimal
    amount: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SplitInput":
        amount = data.get("amount")
        return cls(
            user_id=data["user_id"],
            percentage=Decimal(str(data["percentage"])),
            amount=Decimal(str(amount)) if amount is not None else None,
        )

    def to_record(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "percentage": self.percentage, "amount": self.amount}


def allocate_amounts(amount: Decimal, percentages: Sequence[Decimal]) -> List[Decimal]:
    """
    Split `amount` by percentages so the parts total exactly `amount`.

    Each part is rounded to the penny; the leftover pennies are handed out
    one at a time to the largest percentages first.
    """
    parts = [(amount * p / HUNDRED).quantize(PENNY, rounding=ROUND_HALF_UP) for p in percentages]
    remainder = amount - sum(parts, Decimal("0"))
    if not parts or remainder == 0:
        return parts

    step = PENNY if remainder > 0 else -PENNY
    order = sorted(range(len(parts)), key=lambda i: percentages[i], reverse=True)
    i = 0
    while remainder != 0:
        parts[order[i % len(order)]] += step
        remainder -= step
        i += 1
    return parts


def splits_from_ownership(amount: Decimal, owners) -> List[SplitInput]:
    """Splits mirroring the ownership percentages"""
    percentages = [Decimal(str(o.percentage)) for o in owners]
    amounts = allocate_amounts(amount, percentages)
    return [
        SplitInput(user_id=o.user_id, percentage=p, amount=a)
        for o, p, a in zip(owners, percentages, amounts)
    ]


def validate_splits(amount: Decimal, splits: Sequence[SplitInput], owner_ids, property_id: str) -> List[SplitInput]:
    """
    Check splits against the rules above; missing amounts are derived when
    every split omits them.

    Raises:
        NotAnOwnerError, SplitValidationError
    """
    if not splits:
        raise SplitValidationError("At least one split is required")

    seen = set()
    for split in splits:
        if split.user_id not in owner_ids:
            raise NotAnOwnerError(split.user_id, property_id)
        if split.user_id in seen:
            raise SplitValidationError(f"Duplicate split for user {split.user_id}")
        seen.add(split.user_id)
        if split.percentage <= 0 or split.percentage > HUNDRED:
            raise SplitValidationError("Split percentage must be between 0.01 and 100")

    total_percentage = sum((s.percentage for s in splits), Decimal("0"))
    if abs(total_percentage - HUNDRED) > SPLIT_TOLERANCE:
        raise SplitValidationError(f"Split percentages must total 100%. Current total: {total_percentage:.2f}%")

    missing = [s for s in splits if s.amount is None]
    if missing and len(missing) != len(splits):
        raise SplitValidationError("Provide amounts for all splits or for none")
    if missing:
        amounts = allocate_amounts(amount, [s.percentage for s in splits])
        splits = [SplitInput(s.user_id, s.percentage, a) for s, a in zip(splits, amounts)]

    for split in splits:
        split.amount = split.amount.quantize(PENNY, rounding=ROUND_HALF_UP)
        expected = (amount * split.percentage / HUNDRED).quantize(PENNY, rounding=ROUND_HALF_UP)
        if abs(split.amount - expected) > SPLIT_TOLERANCE:
            raise SplitValidationError(
                f"Split amount for user {split.user_id} must be {expected} "
                f"({split.percentage}% of {amount}), got {split.amount}"
            )

    total_amount = sum((s.amount for s in splits), Decimal("0"))
    if total_amount != amount:
        raise SplitValidationError(f"Split amounts must total {amount}. Current total: {total_amount}")

    return list(splits)


class LedgerService:
    """Ledger transactions with ownership-validated splits"""

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    async def _resolve_splits(
        self,
        property_id: str,
        amount: Decimal,
        paid_by_user_id: Optional[str],
        splits: Optional[Sequence[SplitInput]],
    ) -> List[SplitInput]:
        owners = await self.ledger.list_owners(property_id)
        owner_ids = {o.user_id for o in owners}

        if paid_by_user_id and paid_by_user_id not in owner_ids:
            raise NotAnOwnerError(paid_by_user_id, property_id)

        if splits is None:
            return splits_from_ownership(amount, owners) if owners else []
        return validate_splits(amount, splits, owner_ids, property_id)

    @staticmethod
    def _validate_classification(transaction_type: str, category: str) -> None:
        if transaction_type not in CATEGORIES_BY_TYPE:
            raise TransactionValidationError(f"Invalid transaction type: {transaction_type!r}")
        if not is_valid_category(transaction_type, category):
            raise TransactionValidationError(
                f"Category {category!r} is not valid for {transaction_type} transactions"
            )

    async def record_transaction(
        self,
        property_id: str,
        type: str,
        category: str,
        amount,
        transaction_date: date,
        description: Optional[str] = None,
        lease_id: Optional[str] = None,
        paid_by_user_id: Optional[str] = None,
        splits: Optional[Sequence[SplitInput]] = None,
        bank_transaction_id: Optional[str] = None,
        is_imported: bool = False,
    ) -> LedgerTransactionDB:
        """
        Record a transaction and its splits in one write.

        Raises:
            TransactionValidationError: Bad type, category or amount
            NotAnOwnerError: Split user or payer is not an owner
            SplitValidationError: Splits do not add up
        """
        self._validate_classification(type, category)
        amount = to_money(amount)
        if amount <= 0:
            raise TransactionValidationError("Amount must be positive")

        resolved = await self._resolve_splits(property_id, amount, paid_by_user_id, splits)

        transaction = await self.ledger.create_transaction(
            {
                "property_id": property_id,
                "lease_id": lease_id,
                "type": type,
                "category": category,
                "amount": amount,
                "transaction_date": transaction_date,
                "description": description,
                "paid_by_user_id": paid_by_user_id,
                "bank_transaction_id": bank_transaction_id,
                "is_imported": is_imported,
                "imported_at": utc_now() if is_imported else None,
            },
            [s.to_record() for s in resolved],
        )
        logger.info(
            f"Ledger transaction recorded for property {property_id}",
            extra={'transaction_id': transaction.id, 'splits': len(resolved), 'is_imported': is_imported}
        )
        return transaction

    async def update_transaction(
        self,
        transaction_id: str,
        updates: Dict[str, Any],
        splits: Optional[Sequence[SplitInput]] = None,
    ) -> LedgerTransactionDB:
        """
        Update a transaction; given splits replace the existing ones.

        Changing the amount without new splits regenerates them from
        ownership so they keep adding up.
        """
        existing = await self.ledger.get_transaction(transaction_id)
        if existing is None:
            raise LedgerTransactionNotFoundError("Transaction not found")

        updates = dict(updates)
        transaction_type = updates.get("type", existing.type)
        category = updates.get("category", existing.category)
        self._validate_classification(transaction_type, category)

        amount = Decimal(str(existing.amount))
        if "amount" in updates:
            amount = to_money(updates["amount"])
            if amount <= 0:
                raise TransactionValidationError("Amount must be positive")
            updates["amount"] = amount

        paid_by_user_id = updates.get("paid_by_user_id", existing.paid_by_user_id)
        amount_changed = amount != Decimal(str(existing.amount))

        new_splits = None
        if splits is not None or amount_changed or "paid_by_user_id" in updates:
            resolved = await self._resolve_splits(existing.property_id, amount, paid_by_user_id, splits)
            if splits is not None or amount_changed:
                new_splits = [s.to_record() for s in resolved]

        transaction = await self.ledger.update_transaction(transaction_id, updates, new_splits)
        logger.info(f"Ledger transaction {transaction_id} updated")
        return transaction

    async def get_transaction(self, transaction_id: str) -> LedgerTransactionDB:
        transaction = await self.ledger.get_transaction(transaction_id)
        if transaction is None:
            raise LedgerTransactionNotFoundError("Transaction not found")
        return transaction

    async def list_transactions(self, property_id: str) -> List[LedgerTransactionDB]:
        return await self.ledger.list_transactions(property_id)
