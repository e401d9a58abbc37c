"""
Property Ledger Router

Multi-owner ledger: ownership, transactions with splits, balances and
settlements. Properties themselves live elsewhere; only their ids are used.

Endpoints:
- GET /api/properties/{id}/owners - Ownership set
- POST /api/properties/{id}/owners - Add an owner
- PUT /api/properties/{id}/owners - Replace the whole ownership set
- PUT /api/properties/{id}/owners/{user_id} - Change one owner's percentage
- DELETE /api/properties/{id}/owners/{user_id} - Remove an owner
- GET /api/properties/{id}/transactions - Ledger transactions
- POST /api/properties/{id}/transactions - Record a transaction
- GET /api/ledger-transactions/{id} - Get a transaction
- PUT /api/ledger-transactions/{id} - Update a transaction
- GET /api/properties/{id}/balances - Unsettled owner pairs
- GET /api/properties/{id}/balances/{user_a}/{user_b} - One pairwise balance
- GET /api/users/{id}/balances - Balances involving a user
- GET /api/properties/{id}/settlements - Settlements
- POST /api/properties/{id}/settlements - Record a settlement
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import get_settings
from database.ledger_models import LedgerTransactionType
from routers.dependencies import get_ledger
from services.balances import BalanceService
from services.ledger_errors import (
    LedgerValidationError, DuplicateOwnershipError, HasDependentRecordsError
)
from services.ledger_repository import LedgerRepository
from services.ledger_service import LedgerService, SplitInput
from services.ownership_service import OwnershipService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Property Ledger"])


# ==================== PYDANTIC MODELS ====================

class OwnerRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    percentage: Decimal = Field(..., gt=0, le=100)


class OwnerUpdateRequest(BaseModel):
    percentage: Decimal = Field(..., gt=0, le=100)


class OwnershipSetRequest(BaseModel):
    owners: List[OwnerRequest]


class SplitRequest(BaseModel):
    user_id: str
    percentage: Decimal
    amount: Optional[Decimal] = None


class TransactionCreateRequest(BaseModel):
    type: LedgerTransactionType
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    transaction_date: date
    description: Optional[str] = Field(None, max_length=1000)
    lease_id: Optional[str] = None
    paid_by_user_id: Optional[str] = None
    splits: Optional[List[SplitRequest]] = None


class TransactionUpdateRequest(BaseModel):
    type: Optional[LedgerTransactionType] = None
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(None, gt=0)
    transaction_date: Optional[date] = None
    description: Optional[str] = Field(None, max_length=1000)
    lease_id: Optional[str] = None
    paid_by_user_id: Optional[str] = None
    splits: Optional[List[SplitRequest]] = None


class SettlementRequest(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: Decimal
    settlement_date: date
    notes: Optional[str] = None


# ==================== HELPERS ====================

def _http_error(error: Exception) -> HTTPException:
    """Map ledger exceptions onto HTTP status codes"""
    if isinstance(error, LookupError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (DuplicateOwnershipError, HasDependentRecordsError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _splits(requests: Optional[List[SplitRequest]]) -> Optional[List[SplitInput]]:
    if requests is None:
        return None
    return [SplitInput(user_id=s.user_id, percentage=s.percentage, amount=s.amount) for s in requests]


def _balance_service(ledger: LedgerRepository) -> BalanceService:
    return BalanceService(ledger, overpayment_tolerance=get_settings().SETTLEMENT_OVERPAYMENT_TOLERANCE)


# ==================== OWNERSHIP ====================

@router.get("/properties/{property_id}/owners")
async def list_owners(property_id: str, ledger: LedgerRepository = Depends(get_ledger)):
    owners = await OwnershipService(ledger).list_owners(property_id)
    return {"owners": [o.to_dict() for o in owners]}


@router.post("/properties/{property_id}/owners", status_code=201)
async def add_owner(
    property_id: str,
    request: OwnerRequest,
    ledger: LedgerRepository = Depends(get_ledger),
):
    """Add an owner; the resulting set must total 100%"""
    try:
        owner = await OwnershipService(ledger).add_owner(property_id, request.user_id, request.percentage)
    except (LedgerValidationError, LookupError) as e:
        raise _http_error(e)
    return owner.to_dict()


@router.put("/properties/{property_id}/owners")
async def replace_owners(
    property_id: str,
    request: OwnershipSetRequest,
    ledger: LedgerRepository = Depends(get_ledger),
):
    """Replace the ownership set in one step"""
    try:
        owners = await OwnershipService(ledger).set_ownership_shares(
            property_id, [(o.user_id, o.percentage) for o in request.owners]
        )
    except (LedgerValidationError, LookupError) as e:
        raise _http_error(e)
    return {"owners": [o.to_dict() for o in owners]}


@router.put("/properties/{property_id}/owners/{user_id}")
async def update_owner(
    property_id: str,
    user_id: str,
    request: OwnerUpdateRequest,
    ledger: LedgerRepository = Depends(get_ledger),
):
    try:
        owner = await OwnershipService(ledger).update_ownership(property_id, user_id, request.percentage)
    except (LedgerValidationError, LookupError) as e:
        raise _http_error(e)
    return owner.to_dict()


@router.delete("/properties/{property_id}/owners/{user_id}")
async def remove_owner(
    property_id: str,
    user_id: str,
    ledger: LedgerRepository = Depends(get_ledger),
):
    try:
        await OwnershipService(ledger).remove_ownership(property_id, user_id)
    except (LedgerValidationError, LookupError) as e:
        raise _http_error(e)
    return {"success": True}


# ==================== TRANSACTIONS ====================

@router.get("/properties/{property_id}/transactions")
async def list_transactions(property_id: str, ledger: LedgerRepository = Depends(get_ledger)):
    transactions = await LedgerService(ledger).list_transactions(property_id)
    return {"transactions": [t.to_dict() for t in transactions]}


@router.post("/properties/{property_id}/transactions", status_code=201)
async def create_transaction(
    property_id: str,
    request: TransactionCreateRequest,
    ledger: LedgerRepository = Depends(get_ledger),
):
    """Record a transaction; without splits they follow the ownership percentages"""
    try:
        transaction = await LedgerService(ledger).record_transaction(
            property_id=property_id,
            type=request.type.value,
            category=request.category,
            amount=request.amount,
            transaction_date=request.transaction_date,
            description=request.description,
            lease_id=request.lease_id,
            paid_by_user_id=request.paid_by_user_id,
            splits=_splits(request.splits),
        )
    except LedgerValidationError as e:
        raise _http_error(e)
    return transaction.to_dict()


@router.get("/ledger-transactions/{transaction_id}")
async def get_transaction(transaction_id: str, ledger: LedgerRepository = Depends(get_ledger)):
    try:
        transaction = await LedgerService(ledger).get_transaction(transaction_id)
    except LookupError as e:
        raise _http_error(e)
    return transaction.to_dict()


@router.put("/ledger-transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    request: TransactionUpdateRequest,
    ledger: LedgerRepository = Depends(get_ledger),
):
    updates = request.model_dump(exclude_unset=True, exclude={"splits"})
    if updates.get("type") is not None:
        updates["type"] = updates["type"].value

    try:
        transaction = await LedgerService(ledger).update_transaction(
            transaction_id, updates, splits=_splits(request.splits)
        )
    except (LedgerValidationError, LookupError) as e:
        raise _http_error(e)
    return transaction.to_dict()


# ==================== BALANCES ====================

@router.get("/properties/{property_id}/balances")
async def property_balances(property_id: str, ledger: LedgerRepository = Depends(get_ledger)):
    balances = await _balance_service(ledger).get_property_balances(property_id)
    return {"property_id": property_id, "balances": [b.to_dict() for b in balances]}


@router.get("/properties/{property_id}/balances/{user_a}/{user_b}")
async def pairwise_balance(
    property_id: str,
    user_a: str,
    user_b: str,
    ledger: LedgerRepository = Depends(get_ledger),
):
    """Positive amount: user_b owes user_a"""
    amount = await _balance_service(ledger).calculate_pairwise_balance(property_id, user_a, user_b)
    return {"property_id": property_id, "user_a": user_a, "user_b": user_b, "amount": float(amount)}


@router.get("/users/{user_id}/balances")
async def user_balances(user_id: str, ledger: LedgerRepository = Depends(get_ledger)):
    groups = await _balance_service(ledger).get_user_balances(user_id)
    return {
        "user_id": user_id,
        "properties": [
            {"property_id": g["property_id"], "balances": [b.to_dict() for b in g["balances"]]}
            for g in groups
        ],
    }


# ==================== SETTLEMENTS ====================

@router.get("/properties/{property_id}/settlements")
async def list_settlements(property_id: str, ledger: LedgerRepository = Depends(get_ledger)):
    settlements = await _balance_service(ledger).list_settlements(property_id)
    return {"settlements": [s.to_dict() for s in settlements]}


@router.post("/properties/{property_id}/settlements", status_code=201)
async def record_settlement(
    property_id: str,
    request: SettlementRequest,
    ledger: LedgerRepository = Depends(get_ledger),
):
    """Record a payment between owners; overpaying is allowed with a warning"""
    try:
        result = await _balance_service(ledger).record_settlement(
            from_user_id=request.from_user_id,
            to_user_id=request.to_user_id,
            property_id=property_id,
            amount=request.amount,
            settlement_date=request.settlement_date,
            notes=request.notes,
        )
    except LedgerValidationError as e:
        raise _http_error(e)
    return result.to_dict()
