"""
Co-Owner Balances and Settlements

Balances are derived on demand from ledger splits and settlements; nothing
is stored.

calculate_pairwise_balance(property, A, B) is positive when B owes A:
- A paid a transaction B has a split in: + B's split
- B paid a transaction A has a split in: - A's split
- Settlement B -> A: - amount
- Settlement A -> B: + amount
so balance(A, B) == -balance(B, A).
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from database.ledger_models import SettlementDB
from services.ledger_repository import LedgerRepository
from services.ledger_errors import (
    NotAnOwnerError, SelfSettlementError, SettlementValidationError
)
from services.ledger_service import to_money

logger = logging.getLogger(__name__)

# Balances at or below this magnitude count as settled
ZERO_BALANCE_THRESHOLD = Decimal("0.01")
DEFAULT_OVERPAYMENT_TOLERANCE = Decimal("0.01")
MAX_NOTES_LENGTH = 500


@dataclass
class PairwiseBalance:
    user_a: str
    user_b: str
    amount: Decimal  # positive = user_b owes user_a

    def to_dict(self) -> Dict[str, Any]:
        return {"user_a": self.user_a, "user_b": self.user_b, "amount": float(self.amount)}


@dataclass
class SettlementResult:
    settlement: SettlementDB
    overpayment_warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settlement": self.settlement.to_dict(),
            "overpayment_warning": self.overpayment_warning,
        }


class BalanceService:
    """Pairwise balances and settlement recording"""

    def __init__(self, ledger: LedgerRepository, overpayment_tolerance: Decimal = DEFAULT_OVERPAYMENT_TOLERANCE):
        self.ledger = ledger
        self.overpayment_tolerance = Decimal(str(overpayment_tolerance))

    async def calculate_pairwise_balance(self, property_id: str, user_a: str, user_b: str) -> Decimal:
        balance = Decimal("0")

        for transaction in await self.ledger.list_paid_transactions(property_id):
            splits = {s.user_id: Decimal(str(s.amount)) for s in transaction.splits or []}
            if transaction.paid_by_user_id == user_a and user_b in splits:
                balance += splits[user_b]
            elif transaction.paid_by_user_id == user_b and user_a in splits:
                balance -= splits[user_a]

        for settlement in await self.ledger.list_settlements_between(property_id, user_a, user_b):
            amount = Decimal(str(settlement.amount))
            if settlement.from_user_id == user_b:
                balance -= amount
            else:
                balance += amount

        return balance.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    async def get_property_balances(self, property_id: str) -> List[PairwiseBalance]:
        """One entry per unordered owner pair that is not settled"""
        owner_ids = [o.user_id for o in await self.ledger.list_owners(property_id)]
        balances = []

        for i, user_a in enumerate(owner_ids):
            for user_b in owner_ids[i + 1:]:
                amount = await self.calculate_pairwise_balance(property_id, user_a, user_b)
                if abs(amount) > ZERO_BALANCE_THRESHOLD:
                    balances.append(PairwiseBalance(user_a=user_a, user_b=user_b, amount=amount))

        return balances

    async def get_user_balances(self, user_id: str) -> List[Dict[str, Any]]:
        """Unsettled balances involving the user, grouped by property"""
        result = []
        for property_id in await self.ledger.list_properties_for_user(user_id):
            balances = [
                b for b in await self.get_property_balances(property_id)
                if user_id in (b.user_a, b.user_b)
            ]
            if balances:
                result.append({"property_id": property_id, "balances": balances})
        return result

    async def record_settlement(
        self,
        from_user_id: str,
        to_user_id: str,
        property_id: str,
        amount,
        settlement_date: date,
        notes: Optional[str] = None,
    ) -> SettlementResult:
        """
        Record a payment from one owner to another.

        Paying more than is owed is allowed; the result then carries an
        overpayment warning.

        Raises:
            SelfSettlementError, NotAnOwnerError, SettlementValidationError
        """
        if from_user_id == to_user_id:
            raise SelfSettlementError()

        try:
            amount = to_money(amount)
        except ValueError as e:
            raise SettlementValidationError(str(e))
        if amount <= 0:
            raise SettlementValidationError("Amount must be positive")
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise SettlementValidationError("Notes must be 500 characters or less")

        owner_ids = {o.user_id for o in await self.ledger.list_owners(property_id)}
        for user_id in (from_user_id, to_user_id):
            if user_id not in owner_ids:
                raise NotAnOwnerError(user_id, property_id)

        # Positive when from_user owes to_user
        owed = await self.calculate_pairwise_balance(property_id, to_user_id, from_user_id)
        warning = None
        if amount > owed + self.overpayment_tolerance:
            warning = f"Settling £{amount:.2f} but only £{owed:.2f} is owed"

        settlement = await self.ledger.create_settlement(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            property_id=property_id,
            amount=amount,
            settlement_date=settlement_date,
            notes=notes,
        )
        logger.info(
            f"Settlement recorded for property {property_id}",
            extra={'settlement_id': settlement.id, 'overpayment': warning is not None}
        )
        return SettlementResult(settlement=settlement, overpayment_warning=warning)

    async def list_settlements(self, property_id: str) -> List[SettlementDB]:
        return await self.ledger.list_settlements(property_id)
