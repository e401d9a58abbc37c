"""
Matching Rules Router

Endpoints:
- GET /api/bank/rules/parse-errors - Rules whose conditions do not parse
- POST /api/bank/rules/seed-defaults - Create the global default rules (idempotent)
- POST /api/bank/rules/reorder - Set account rule priorities from list order
- GET /api/bank/accounts/{id}/rules - Account rules followed by global rules
- POST /api/bank/accounts/{id}/rules - Create an account rule
- GET /api/bank/rules/{id} - Get a rule
- PUT /api/bank/rules/{id} - Update an account rule
- DELETE /api/bank/rules/{id} - Delete an account rule
- POST /api/bank/rules/{id}/test - Evaluate one rule against a sample transaction

Global rules are read-only here. Creating, updating or deleting a rule
re-runs the pending queue for the rule's account.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from banking.repository import BankStore
from database.bank_models import RuleTransactionType
from reconciliation.matching_rules import (
    ConditionParseError, parse_conditions, parse_rule, seed_default_rules
)
from reconciliation.services import ReviewService
from routers.dependencies import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank", tags=["Matching Rules"])


# ==================== PYDANTIC MODELS ====================

class RuleCreateRequest(BaseModel):
    """New account rule; conditions may be a JSON object or its string form"""
    name: str = Field(..., min_length=1, max_length=255)
    priority: Optional[int] = Field(None, ge=0)
    enabled: bool = True
    property_id: Optional[str] = None
    type: Optional[RuleTransactionType] = None
    category: Optional[str] = Field(None, max_length=100)
    conditions: Union[Dict[str, Any], str]


class RuleUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    priority: Optional[int] = Field(None, ge=0)
    enabled: Optional[bool] = None
    property_id: Optional[str] = None
    type: Optional[RuleTransactionType] = None
    category: Optional[str] = Field(None, max_length=100)
    conditions: Optional[Union[Dict[str, Any], str]] = None


class RuleReorderRequest(BaseModel):
    rule_ids: List[str] = Field(..., min_length=1)


class RuleTestRequest(BaseModel):
    """Sample transaction to evaluate"""
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    counterparty_name: Optional[str] = None
    reference: Optional[str] = None
    merchant: Optional[str] = None


# ==================== HELPERS ====================

def _rule_response(row) -> Dict[str, Any]:
    return {**row.to_dict(), "parse_error": parse_rule(row).parse_error}


def _normalise_conditions(conditions: Union[Dict[str, Any], str]) -> str:
    """Validate and return the stored JSON text"""
    try:
        parse_conditions(conditions)
    except ConditionParseError as e:
        raise HTTPException(status_code=400, detail=f"Invalid conditions: {e}")
    return conditions if isinstance(conditions, str) else json.dumps(conditions)


async def _get_editable_rule(store: BankStore, rule_id: str):
    rule = await store.rules.get(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Matching rule not found")
    if rule.bank_account_id is None:
        raise HTTPException(status_code=403, detail="Global rules cannot be modified")
    return rule


async def _reprocess(store: BankStore, bank_account_id: Optional[str]) -> Dict[str, int]:
    result = await ReviewService(store).reprocess_pending(bank_account_id)
    return result.to_dict()


# ==================== COLLECTION ENDPOINTS (MUST BE FIRST) ====================

@router.get("/rules/parse-errors")
async def list_rule_parse_errors(store: BankStore = Depends(get_store)):
    """Rules that can never match because their conditions are malformed"""
    errors = await ReviewService(store).list_rule_parse_errors()
    return {"rules": errors, "count": len(errors)}


@router.post("/rules/seed-defaults")
async def seed_defaults(store: BankStore = Depends(get_store)):
    """Create the global default rules unless they already exist"""
    created = await seed_default_rules(store.rules)
    reprocessing = await _reprocess(store, None) if created else None
    return {"created": created, "reprocessing": reprocessing}


@router.post("/rules/reorder")
async def reorder_rules(request: RuleReorderRequest, store: BankStore = Depends(get_store)):
    """Priority of each rule becomes its position in rule_ids"""
    if len(set(request.rule_ids)) != len(request.rule_ids):
        raise HTTPException(status_code=400, detail="Duplicate rule ids")

    rules = await store.rules.get_many(request.rule_ids)
    if len(rules) != len(request.rule_ids):
        raise HTTPException(status_code=404, detail="One or more rules not found")
    if any(rule.bank_account_id is None for rule in rules):
        raise HTTPException(status_code=403, detail="Cannot reorder global rules")

    await store.rules.set_priorities(request.rule_ids)
    for account_id in sorted({rule.bank_account_id for rule in rules}):
        await _reprocess(store, account_id)
    return {"success": True, "message": "Rules reordered successfully"}


# ==================== ACCOUNT RULES ====================

@router.get("/accounts/{account_id}/rules")
async def list_account_rules(account_id: str, store: BankStore = Depends(get_store)):
    """Account rules by priority, then the global rules"""
    if not await store.accounts.get(account_id):
        raise HTTPException(status_code=404, detail="Bank account not found")
    account_rules = await store.rules.list_for_account(account_id)
    global_rules = await store.rules.list_global()
    return {
        "account_rules": [_rule_response(r) for r in account_rules],
        "global_rules": [_rule_response(r) for r in global_rules],
    }


@router.post("/accounts/{account_id}/rules", status_code=201)
async def create_account_rule(
    account_id: str,
    request: RuleCreateRequest,
    store: BankStore = Depends(get_store),
):
    """Create an account rule; without a priority it goes after the existing ones"""
    if not await store.accounts.get(account_id):
        raise HTTPException(status_code=404, detail="Bank account not found")

    priority = request.priority
    if priority is None:
        current_max = await store.rules.max_priority(account_id)
        priority = 0 if current_max is None else current_max + 1

    rule = await store.rules.create({
        "bank_account_id": account_id,
        "name": request.name,
        "priority": priority,
        "enabled": request.enabled,
        "property_id": request.property_id,
        "type": request.type.value if request.type else None,
        "category": request.category,
        "conditions": _normalise_conditions(request.conditions),
    })
    logger.info(f"Matching rule {rule.id} created for bank account {account_id}")

    return {"rule": _rule_response(rule), "reprocessing": await _reprocess(store, account_id)}


# ==================== SINGLE RULE ====================

@router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, store: BankStore = Depends(get_store)):
    rule = await store.rules.get(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Matching rule not found")
    return _rule_response(rule)


@router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    request: RuleUpdateRequest,
    store: BankStore = Depends(get_store),
):
    """Update an account rule"""
    rule = await _get_editable_rule(store, rule_id)

    updates = request.model_dump(exclude_unset=True)
    if "conditions" in updates:
        if updates["conditions"] is None:
            raise HTTPException(status_code=400, detail="Conditions cannot be empty")
        updates["conditions"] = _normalise_conditions(updates["conditions"])
    if updates.get("type") is not None:
        updates["type"] = updates["type"].value
    if "name" in updates and updates["name"] is None:
        raise HTTPException(status_code=400, detail="Name cannot be empty")
    if updates.get("priority", 0) is None or updates.get("enabled", True) is None:
        raise HTTPException(status_code=400, detail="Priority and enabled cannot be null")

    rule = await store.rules.update(rule_id, updates)
    return {"rule": _rule_response(rule), "reprocessing": await _reprocess(store, rule.bank_account_id)}


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, store: BankStore = Depends(get_store)):
    """Delete an account rule"""
    rule = await _get_editable_rule(store, rule_id)
    account_id = rule.bank_account_id
    await store.rules.delete(rule_id)
    logger.info(f"Matching rule {rule_id} deleted")
    return {"success": True, "reprocessing": await _reprocess(store, account_id)}


@router.post("/rules/{rule_id}/test")
async def test_rule(rule_id: str, request: RuleTestRequest, store: BankStore = Depends(get_store)):
    """Evaluate the rule (even if disabled) against a sample transaction"""
    rule = await store.rules.get(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Matching rule not found")
    return ReviewService.test_rule(parse_rule(rule), request.model_dump())
