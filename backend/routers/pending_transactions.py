"""
Pending Transactions Router

Review queue for bank transactions the matching rules could not fully
classify.

Endpoints:
- GET /api/bank/pending-transactions - List (optionally by account)
- GET /api/bank/pending-transactions/count - Count
- POST /api/bank/pending-transactions/reprocess - Re-run the rules
- PATCH /api/bank/pending-transactions/{id} - Edit the inferred fields
- POST /api/bank/pending-transactions/{id}/approve - Record in the ledger
- DELETE /api/bank/pending-transactions/{id} - Reject (drop from the queue)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from banking.repository import BankStore
from database.bank_models import RuleTransactionType
from database.ledger_models import LedgerTransactionType
from reconciliation.services import (
    ReviewService, PendingTransactionNotFoundError, IncompleteClassificationError
)
from routers.dependencies import get_store
from services.ledger_errors import LedgerValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank/pending-transactions", tags=["Pending Transactions"])


# ==================== PYDANTIC MODELS ====================

class PendingUpdateRequest(BaseModel):
    property_id: Optional[str] = None
    type: Optional[RuleTransactionType] = None
    category: Optional[str] = Field(None, max_length=100)
    review_notes: Optional[str] = Field(None, max_length=2000)


class PendingApproveRequest(BaseModel):
    """Overrides for the inferred fields; omitted ones keep the pending values"""
    property_id: Optional[str] = None
    type: Optional[LedgerTransactionType] = None
    category: Optional[str] = None
    lease_id: Optional[str] = None
    paid_by_user_id: Optional[str] = None


class ReprocessRequest(BaseModel):
    bank_account_id: Optional[str] = None


# ==================== COLLECTION (MUST BE FIRST) ====================

@router.get("/count")
async def count_pending(
    bank_account_id: Optional[str] = None,
    store: BankStore = Depends(get_store),
):
    return {"count": await ReviewService(store).count_pending(bank_account_id)}


@router.get("")
async def list_pending(
    bank_account_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: BankStore = Depends(get_store),
):
    """Pending transactions, newest first"""
    service = ReviewService(store)
    items = await service.list_pending(bank_account_id, limit=limit, offset=offset)
    return {
        "items": [p.to_dict() for p in items],
        "total": await service.count_pending(bank_account_id),
        "limit": limit,
        "offset": offset,
    }


@router.post("/reprocess")
async def reprocess_pending(
    request: ReprocessRequest,
    store: BankStore = Depends(get_store),
):
    """Re-evaluate pending transactions against the current rules"""
    result = await ReviewService(store).reprocess_pending(request.bank_account_id)
    return result.to_dict()


# ==================== SINGLE ITEM ====================

@router.patch("/{pending_id}")
async def update_pending(
    pending_id: str,
    request: PendingUpdateRequest,
    store: BankStore = Depends(get_store),
):
    updates = request.model_dump(exclude_unset=True)
    if updates.get("type") is not None:
        updates["type"] = updates["type"].value
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")

    try:
        pending = await ReviewService(store).update_pending(pending_id, updates)
    except PendingTransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return pending.to_dict()


@router.post("/{pending_id}/approve")
async def approve_pending(
    pending_id: str,
    request: PendingApproveRequest,
    store: BankStore = Depends(get_store),
):
    """Record the transaction in the ledger and remove it from the queue"""
    overrides = request.model_dump(exclude_none=True)
    if "type" in overrides:
        overrides["type"] = overrides["type"].value

    try:
        transaction = await ReviewService(store).approve_pending(pending_id, **overrides)
    except PendingTransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (IncompleteClassificationError, LedgerValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"transaction": transaction.to_dict()}


@router.delete("/{pending_id}")
async def reject_pending(pending_id: str, store: BankStore = Depends(get_store)):
    """Drop the transaction from the queue without recording it"""
    try:
        await ReviewService(store).reject_pending(pending_id)
    except PendingTransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True}
