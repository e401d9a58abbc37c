"""
Matching Rule Conditions

A rule's stored condition JSON is parsed once into typed conditions:

    {"operator": "AND" | "OR",
     "rules": [{"field": "description", "matchType": "contains",
                "value": "rent", "caseSensitive": false}]}

Fields: description, counterpartyName, reference, merchant, amount
String match types: contains, equals, startsWith, endsWith
Numeric match types: greaterThan, lessThan (signed amount, negative = money out)
"""

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class ConditionParseError(ValueError):
    """Stored conditions are not valid JSON or do not follow the schema"""
    pass


class StringOperator(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"


class NumericOperator(str, Enum):
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


STRING_MATCH_TYPES = frozenset(op.value for op in StringOperator)
NUMERIC_MATCH_TYPES = frozenset(op.value for op in NumericOperator)
LOGICAL_OPERATORS = frozenset(op.value for op in LogicalOperator)

# Condition field name -> RuleTransaction attribute
FIELD_ATTRIBUTES = {
    "description": "description",
    "counterpartyName": "counterparty_name",
    "reference": "reference",
    "merchant": "merchant",
    "amount": "amount",
}


# ==================== TRANSACTION VIEW ====================

@dataclass(frozen=True)
class RuleTransaction:
    """The bank transaction fields rules can inspect"""
    description: Optional[str] = None
    counterparty_name: Optional[str] = None
    reference: Optional[str] = None
    merchant: Optional[str] = None
    amount: Optional[Decimal] = None

    @classmethod
    def from_bank_transaction(cls, transaction) -> "RuleTransaction":
        amount = transaction.amount
        return cls(
            description=transaction.description,
            counterparty_name=transaction.counterparty_name,
            reference=transaction.reference,
            merchant=transaction.merchant,
            amount=Decimal(str(amount)) if amount is not None else None,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleTransaction":
        """Accepts condition-style (counterpartyName) or column-style (counterparty_name) keys"""
        def pick(camel: str, snake: str):
            return data.get(camel, data.get(snake))

        amount = data.get("amount")
        return cls(
            description=data.get("description"),
            counterparty_name=pick("counterpartyName", "counterparty_name"),
            reference=data.get("reference"),
            merchant=data.get("merchant"),
            amount=Decimal(str(amount)) if amount is not None else None,
        )

    def value_of(self, field: str):
        return getattr(self, FIELD_ATTRIBUTES[field])


# ==================== CONDITIONS ====================

@dataclass(frozen=True)
class StringCondition:
    field: str
    operator: StringOperator
    value: str
    case_sensitive: bool = False

    def matches(self, transaction: RuleTransaction) -> bool:
        field_value = transaction.value_of(self.field)
        if field_value is None:
            return False

        haystack = str(field_value)
        needle = self.value
        if not self.case_sensitive:
            haystack = haystack.lower()
            needle = needle.lower()

        if self.operator == StringOperator.CONTAINS:
            return needle in haystack
        if self.operator == StringOperator.EQUALS:
            return haystack == needle
        if self.operator == StringOperator.STARTS_WITH:
            return haystack.startswith(needle)
        return haystack.endswith(needle)


@dataclass(frozen=True)
class NumericCondition:
    field: str
    operator: NumericOperator
    value: Decimal

    def matches(self, transaction: RuleTransaction) -> bool:
        field_value = transaction.value_of(self.field)
        if field_value is None:
            return False
        try:
            number = Decimal(str(field_value))
        except InvalidOperation:
            return False

        if self.operator == NumericOperator.GREATER_THAN:
            return number > self.value
        return number < self.value


Condition = Union[StringCondition, NumericCondition]


@dataclass(frozen=True)
class ConditionGroup:
    """Conditions combined with AND (vacuously true) or OR (vacuously false)"""
    operator: LogicalOperator
    conditions: Tuple[Condition, ...] = ()

    def matches(self, transaction: RuleTransaction) -> bool:
        if self.operator == LogicalOperator.AND:
            return all(c.matches(transaction) for c in self.conditions)
        return any(c.matches(transaction) for c in self.conditions)

    def to_dict(self) -> Dict[str, Any]:
        rules = []
        for c in self.conditions:
            item: Dict[str, Any] = {"field": c.field, "matchType": c.operator.value}
            if isinstance(c, StringCondition):
                item["value"] = c.value
                item["caseSensitive"] = c.case_sensitive
            else:
                item["value"] = float(c.value)
            rules.append(item)
        return {"operator": self.operator.value, "rules": rules}


# ==================== PARSING ====================

def _parse_condition(raw: Any, index: int) -> Condition:
    if not isinstance(raw, dict):
        raise ConditionParseError(f"Condition {index} must be an object")

    field = raw.get("field")
    if field not in FIELD_ATTRIBUTES:
        raise ConditionParseError(f"Condition {index} has unknown field: {field!r}")

    match_type = raw.get("matchType")
    value = raw.get("value")
    if value is None or isinstance(value, (bool, dict, list)):
        raise ConditionParseError(f"Condition {index} needs a string or number value")

    if match_type in STRING_MATCH_TYPES:
        case_sensitive = raw.get("caseSensitive", False)
        if not isinstance(case_sensitive, bool):
            raise ConditionParseError(f"Condition {index} caseSensitive must be a boolean")
        return StringCondition(
            field=field,
            operator=StringOperator(match_type),
            value=str(value),
            case_sensitive=case_sensitive,
        )

    if match_type in NUMERIC_MATCH_TYPES:
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            raise ConditionParseError(f"Condition {index} value is not a number: {value!r}")
        if not number.is_finite():
            raise ConditionParseError(f"Condition {index} value is not a number: {value!r}")
        return NumericCondition(field=field, operator=NumericOperator(match_type), value=number)

    raise ConditionParseError(f"Condition {index} has unknown matchType: {match_type!r}")


def parse_conditions(raw: Union[str, Mapping[str, Any]]) -> ConditionGroup:
    """
    Parse stored condition JSON (or an already-decoded dict).

    A missing operator defaults to AND; a missing rules list is empty.

    Raises:
        ConditionParseError: Invalid JSON or schema
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise ConditionParseError(f"Conditions are not valid JSON: {e}")
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise ConditionParseError("Conditions must be a JSON object")

    operator = data.get("operator") or LogicalOperator.AND.value
    if operator not in LOGICAL_OPERATORS:
        raise ConditionParseError(f"Unknown operator: {operator!r}")

    rules = data.get("rules")
    if rules is None:
        rules = []
    if not isinstance(rules, list):
        raise ConditionParseError("Conditions 'rules' must be a list")

    return ConditionGroup(
        operator=LogicalOperator(operator),
        conditions=tuple(_parse_condition(r, i) for i, r in enumerate(rules)),
    )
