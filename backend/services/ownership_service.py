"""
Property Ownership Service

Maintains fractional ownership of properties.

Rules:
- Each percentage is in [0.01, 100]
- One record per (user, property)
- A non-empty ownership set totals 100% (+/- 0.01); checked against the
  prospective set before writing, so a rejected change leaves state unchanged
- Removing an owner is blocked while splits or settlements on the property
  reference them; the remaining set is not re-validated
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, List, Sequence, Tuple, Union

from database.ledger_models import PropertyOwnershipDB
from services.ledger_repository import LedgerRepository
from services.ledger_errors import (
    OwnershipValidationError, OwnershipSumError, DuplicateOwnershipError,
    HasDependentRecordsError, OwnershipNotFoundError
)

logger = logging.getLogger(__name__)

FULL_OWNERSHIP = Decimal("100")
OWNERSHIP_TOLERANCE = Decimal("0.01")
MIN_PERCENTAGE = Decimal("0.01")
PERCENT_PLACES = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_percentage(value: Number) -> Decimal:
    """Parse and range-check an ownership percentage"""
    try:
        percentage = Decimal(str(value))
    except InvalidOperation:
        raise OwnershipValidationError(f"Invalid ownership percentage: {value!r}")
    if not percentage.is_finite():
        raise OwnershipValidationError(f"Invalid ownership percentage: {value!r}")

    if percentage < MIN_PERCENTAGE or percentage > FULL_OWNERSHIP:
        raise OwnershipValidationError("Ownership percentage must be between 0.01 and 100")
    return percentage.quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)


def check_ownership_sum(percentages: Iterable[Decimal]) -> Decimal:
    """
    Raise OwnershipSumError unless a non-empty set totals 100 +/- 0.01.

    Returns the total.
    """
    percentages = list(percentages)
    total = sum(percentages, Decimal("0"))
    if percentages and abs(total - FULL_OWNERSHIP) > OWNERSHIP_TOLERANCE:
        raise OwnershipSumError(total)
    return total


class OwnershipService:
    """Ownership operations over a LedgerRepository"""

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    async def list_owners(self, property_id: str) -> List[PropertyOwnershipDB]:
        return await self.ledger.list_owners(property_id)

    async def set_ownership(
        self,
        property_id: str,
        user_id: str,
        percentage: Number,
        allow_update: bool = False,
    ) -> PropertyOwnershipDB:
        """
        Create (or, with allow_update, change) one owner's percentage.

        Raises:
            OwnershipValidationError: Percentage out of range
            DuplicateOwnershipError: Record exists and allow_update is False
            OwnershipSumError: Resulting set would not total 100%
        """
        percentage = to_percentage(percentage)
        owners = await self.ledger.list_owners(property_id)

        existing = next((o for o in owners if o.user_id == user_id), None)
        if existing is not None and not allow_update:
            raise DuplicateOwnershipError(property_id, user_id)

        prospective = [Decimal(str(o.percentage)) for o in owners if o.user_id != user_id]
        prospective.append(percentage)
        check_ownership_sum(prospective)

        owner = await self.ledger.upsert_owner(property_id, user_id, percentage)
        logger.info(
            f"Ownership set for property {property_id}",
            extra={'property_id': property_id, 'user_id': user_id, 'percentage': str(percentage)}
        )
        return owner

    async def add_owner(self, property_id: str, user_id: str, percentage: Number) -> PropertyOwnershipDB:
        return await self.set_ownership(property_id, user_id, percentage, allow_update=False)

    async def update_ownership(self, property_id: str, user_id: str, percentage: Number) -> PropertyOwnershipDB:
        if await self.ledger.get_owner(property_id, user_id) is None:
            raise OwnershipNotFoundError("Ownership not found")
        return await self.set_ownership(property_id, user_id, percentage, allow_update=True)

    async def set_ownership_shares(
        self,
        property_id: str,
        shares: Sequence[Tuple[str, Number]],
    ) -> List[PropertyOwnershipDB]:
        """
        Replace the property's whole ownership set atomically.

        Owners dropped from the set are subject to the same dependent-record
        check as remove_ownership.
        """
        parsed: List[Tuple[str, Decimal]] = []
        seen = set()
        for user_id, percentage in shares:
            if user_id in seen:
                raise DuplicateOwnershipError(property_id, user_id)
            seen.add(user_id)
            parsed.append((user_id, to_percentage(percentage)))

        check_ownership_sum(p for _, p in parsed)

        current = await self.ledger.list_owners(property_id)
        for owner in current:
            if owner.user_id not in seen:
                await self._ensure_removable(property_id, owner.user_id)

        owners = await self.ledger.replace_owners(property_id, parsed)
        logger.info(f"Ownership set replaced for property {property_id} ({len(parsed)} owners)")
        return owners

    async def remove_ownership(self, property_id: str, user_id: str) -> None:
        """
        Raises:
            OwnershipNotFoundError: No such owner
            HasDependentRecordsError: Splits or settlements reference the owner
        """
        if await self.ledger.get_owner(property_id, user_id) is None:
            raise OwnershipNotFoundError("Ownership not found")

        await self._ensure_removable(property_id, user_id)
        await self.ledger.delete_owner(property_id, user_id)
        logger.info(f"Owner {user_id} removed from property {property_id}")

    async def _ensure_removable(self, property_id: str, user_id: str) -> None:
        if await self.ledger.count_user_splits(property_id, user_id):
            raise HasDependentRecordsError("Cannot remove owner with existing transaction splits")
        if await self.ledger.count_user_settlements(property_id, user_id):
            raise HasDependentRecordsError("Cannot remove owner with existing settlements")
