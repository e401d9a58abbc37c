"""
Bank Transaction Classification & Review Queue

Every newly ingested bank transaction is run through the matching rules:
- Fully matched with a valid type/category combination: recorded straight
  into the ledger (is_imported) and linked to the bank transaction
- Anything else: parked as a pending transaction carrying whatever fields
  the rules inferred, for manual review

Rule changes re-run the pending queue for the affected scope; approvals
turn a pending transaction into a ledger transaction by hand.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from reconciliation.matching_rules import (
    CompiledRule, RuleEvaluationResult, RuleTransaction, compile_rules, evaluate
)
from services.ledger_errors import LedgerValidationError
from services.ledger_service import LedgerService, is_valid_category

logger = logging.getLogger(__name__)


class ClassificationOutcome(str, Enum):
    MATCHED = "matched"    # Auto-imported into the ledger
    PENDING = "pending"    # Waiting for review


@dataclass
class ReprocessingResult:
    processed: int = 0
    approved: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "approved": self.approved, "failed": self.failed}


class PendingTransactionNotFoundError(LookupError):
    pass


class IncompleteClassificationError(ValueError):
    """Approval attempted without property, type and category"""
    pass


def ledger_type(rule_type: Optional[str]) -> Optional[str]:
    """INCOME/EXPENSE (rules) -> income/expense (ledger)"""
    return rule_type.lower() if rule_type else None


def is_importable(result: RuleEvaluationResult) -> bool:
    return result.is_fully_matched and is_valid_category(ledger_type(result.type), result.category)


class ReviewService:
    """Classification on ingest plus the pending review queue, over a BankStore"""

    def __init__(self, store):
        self.store = store
        self.ledger_service = LedgerService(store.ledger)

    # ==================== RULES ====================

    async def load_rules(self, bank_account_id: str) -> List[CompiledRule]:
        """Compiled rules for the account: account-scoped first, then global"""
        rows = await self.store.rules.list_applicable(bank_account_id)
        return compile_rules(rows)

    async def list_rule_parse_errors(self) -> List[Dict[str, Any]]:
        """Rules that will never match because their conditions do not parse"""
        rules = compile_rules(await self.store.rules.list_all())
        return [r.to_dict() for r in rules if r.parse_error]

    # ==================== INGEST ====================

    async def _import_to_ledger(self, bank_transaction, result: RuleEvaluationResult, **overrides):
        transaction_date = bank_transaction.transaction_date
        ledger_transaction = await self.ledger_service.record_transaction(
            property_id=overrides.get("property_id") or result.property_id,
            type=overrides.get("type") or ledger_type(result.type),
            category=overrides.get("category") or result.category,
            amount=abs(bank_transaction.amount),
            transaction_date=transaction_date.date() if hasattr(transaction_date, "date") else transaction_date,
            description=bank_transaction.description,
            lease_id=overrides.get("lease_id"),
            paid_by_user_id=overrides.get("paid_by_user_id"),
            bank_transaction_id=bank_transaction.id,
            is_imported=True,
        )
        await self.store.transactions.link_ledger_transaction(bank_transaction.id, ledger_transaction.id)
        return ledger_transaction

    async def classify(self, bank_transaction, rules: List[CompiledRule]) -> ClassificationOutcome:
        """Auto-import or queue one newly inserted bank transaction"""
        result = evaluate(RuleTransaction.from_bank_transaction(bank_transaction), rules)

        if is_importable(result):
            try:
                await self._import_to_ledger(bank_transaction, result)
                return ClassificationOutcome.MATCHED
            except LedgerValidationError as e:
                logger.warning(
                    f"Auto-import of bank transaction {bank_transaction.id} rejected, queueing for review: {e}"
                )

        await self.store.pending.create(
            bank_transaction_id=bank_transaction.id,
            property_id=result.property_id,
            type=result.type,
            category=result.category,
        )
        return ClassificationOutcome.PENDING

    # ==================== REVIEW QUEUE ====================

    async def list_pending(self, bank_account_id: Optional[str] = None, limit: Optional[int] = None, offset: int = 0):
        return await self.store.pending.list(bank_account_id=bank_account_id, limit=limit, offset=offset)

    async def count_pending(self, bank_account_id: Optional[str] = None) -> int:
        return await self.store.pending.count(bank_account_id=bank_account_id)

    async def _get_pending(self, pending_id: str):
        pending = await self.store.pending.get(pending_id)
        if pending is None:
            raise PendingTransactionNotFoundError("Pending transaction not found")
        return pending

    async def update_pending(self, pending_id: str, updates: Dict[str, Any]):
        await self._get_pending(pending_id)
        return await self.store.pending.update(pending_id, updates)

    async def reject_pending(self, pending_id: str) -> None:
        """Drop from the queue; the bank transaction stays unlinked"""
        await self._get_pending(pending_id)
        await self.store.pending.delete(pending_id)

    async def approve_pending(self, pending_id: str, **overrides):
        """
        Record the pending transaction in the ledger.

        overrides may set property_id, type (income/expense), category,
        lease_id and paid_by_user_id; missing ones fall back to the pending row.

        Raises:
            PendingTransactionNotFoundError
            IncompleteClassificationError: property, type or category still unknown
            LedgerValidationError: the ledger rejected the transaction
        """
        pending = await self._get_pending(pending_id)
        result = RuleEvaluationResult(
            property_id=overrides.get("property_id") or pending.property_id,
            type=(overrides.get("type") or pending.type or "").upper() or None,
            category=overrides.get("category") or pending.category,
        )
        if not result.is_fully_matched:
            raise IncompleteClassificationError("Property, type and category are required to approve")

        ledger_transaction = await self._import_to_ledger(
            pending.bank_transaction,
            result,
            lease_id=overrides.get("lease_id"),
            paid_by_user_id=overrides.get("paid_by_user_id"),
        )
        await self.store.pending.delete(pending.id)
        logger.info(f"Pending transaction {pending_id} approved as ledger transaction {ledger_transaction.id}")
        return ledger_transaction

    async def reprocess_pending(self, bank_account_id: Optional[str] = None) -> ReprocessingResult:
        """
        Re-evaluate pending transactions after a rule change.

        bank_account_id limits the run to one account; None re-runs everything
        (global rule changed). Failures are counted and do not stop the run.
        """
        result = ReprocessingResult()
        rules_by_account: Dict[str, List[CompiledRule]] = {}

        for pending in await self.store.pending.list(bank_account_id=bank_account_id):
            try:
                bank_transaction = pending.bank_transaction
                account_id = bank_transaction.bank_account_id
                if account_id not in rules_by_account:
                    rules_by_account[account_id] = await self.load_rules(account_id)

                evaluation = evaluate(
                    RuleTransaction.from_bank_transaction(bank_transaction),
                    rules_by_account[account_id],
                )
                result.processed += 1

                if is_importable(evaluation):
                    await self._import_to_ledger(bank_transaction, evaluation)
                    await self.store.pending.delete(pending.id)
                    result.approved += 1
                else:
                    await self.store.pending.update(pending.id, {
                        "property_id": evaluation.property_id,
                        "type": evaluation.type,
                        "category": evaluation.category,
                    })
            except Exception as e:
                result.failed += 1
                logger.error(f"Error reprocessing pending transaction {pending.id}: {e}")

        logger.info(
            f"Reprocessed pending transactions (account={bank_account_id or 'all'})",
            extra=result.to_dict()
        )
        return result

    @staticmethod
    def test_rule(rule: CompiledRule, sample: Dict[str, Any]) -> Dict[str, Any]:
        """Evaluate a single rule (even if disabled) against a sample transaction"""
        transaction = RuleTransaction.from_dict(sample)
        matches = rule.parse_error is None and rule.conditions.matches(transaction)
        result = evaluate(transaction, [replace(rule, enabled=True)])
        return {
            "matches": matches,
            "parse_error": rule.parse_error,
            "result": result.to_dict(),
        }
