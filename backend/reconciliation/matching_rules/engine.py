"""
Matching Rule Engine

Pure evaluation of priority-ordered rules against a bank transaction to
infer (property_id, type, category).

Algorithm:
1. Enabled rules sorted by ascending priority (stable, so for equal
   priorities the caller's order wins: account-scoped rules before global)
2. Skip rules that could not set any field still unset
3. Skip rules whose conditions failed to parse (reported separately)
4. On match, fill unset fields (first writer wins) and record the rule id
5. Stop once all three fields are set
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from reconciliation.matching_rules.conditions import (
    ConditionGroup, ConditionParseError, RuleTransaction, parse_conditions
)


@dataclass(frozen=True)
class CompiledRule:
    """A matching rule with its conditions parsed once"""
    id: str
    name: str
    priority: int
    enabled: bool
    property_id: Optional[str]
    type: Optional[str]
    category: Optional[str]
    bank_account_id: Optional[str] = None
    conditions: Optional[ConditionGroup] = None
    parse_error: Optional[str] = None

    @property
    def is_evaluable(self) -> bool:
        return self.enabled and self.parse_error is None and self.conditions is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "bank_account_id": self.bank_account_id,
            "property_id": self.property_id,
            "type": self.type,
            "category": self.category,
            "parse_error": self.parse_error,
        }


def parse_rule(row) -> CompiledRule:
    """Compile a MatchingRuleDB row (or any object with the same attributes)"""
    conditions = None
    parse_error = None
    try:
        conditions = parse_conditions(row.conditions)
    except ConditionParseError as e:
        parse_error = str(e)

    return CompiledRule(
        id=row.id,
        name=row.name,
        priority=row.priority,
        enabled=bool(row.enabled),
        property_id=row.property_id,
        type=row.type,
        category=row.category,
        bank_account_id=getattr(row, "bank_account_id", None),
        conditions=conditions,
        parse_error=parse_error,
    )


def compile_rules(rows: Iterable) -> List[CompiledRule]:
    return [parse_rule(row) for row in rows]


@dataclass
class RuleEvaluationResult:
    property_id: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    matched_rule_ids: List[str] = field(default_factory=list)

    @property
    def is_fully_matched(self) -> bool:
        return bool(self.property_id and self.type and self.category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property_id": self.property_id,
            "type": self.type,
            "category": self.category,
            "matched_rule_ids": list(self.matched_rule_ids),
            "is_fully_matched": self.is_fully_matched,
        }


def evaluate(transaction: RuleTransaction, rules: Sequence[CompiledRule]) -> RuleEvaluationResult:
    """Evaluate compiled rules against a transaction. Deterministic and side-effect free."""
    result = RuleEvaluationResult()
    ordered = sorted((r for r in rules if r.enabled), key=lambda r: r.priority)

    for rule in ordered:
        if result.is_fully_matched:
            break

        provides_new_field = (
            (not result.property_id and rule.property_id)
            or (not result.type and rule.type)
            or (not result.category and rule.category)
        )
        if not provides_new_field or not rule.is_evaluable:
            continue

        if not rule.conditions.matches(transaction):
            continue

        if not result.property_id and rule.property_id:
            result.property_id = rule.property_id
        if not result.type and rule.type:
            result.type = rule.type
        if not result.category and rule.category:
            result.category = rule.category
        result.matched_rule_ids.append(rule.id)

    return result
