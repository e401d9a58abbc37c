"""
Reconciliation Engine Module

Classifies ingested bank transactions:
- Priority-ordered matching rules (conditions parsed once per rule)
- Default global rules
- Auto-import of fully matched transactions into the ledger
- Pending review queue for everything else
"""

from reconciliation.matching_rules import (
    CompiledRule,
    RuleEvaluationResult,
    RuleTransaction,
    parse_rule,
    evaluate,
    seed_default_rules,
)
from reconciliation.services.review_service import ReviewService, ClassificationOutcome

__all__ = [
    # Matching Rules
    'CompiledRule',
    'RuleEvaluationResult',
    'RuleTransaction',
    'parse_rule',
    'evaluate',
    'seed_default_rules',
    # Service
    'ReviewService',
    'ClassificationOutcome',
]
