"""
Matching Rules Module
"""

from .conditions import (
    ConditionParseError,
    StringOperator,
    NumericOperator,
    LogicalOperator,
    StringCondition,
    NumericCondition,
    ConditionGroup,
    RuleTransaction,
    parse_conditions,
)
from .engine import CompiledRule, RuleEvaluationResult, parse_rule, compile_rules, evaluate
from .default_rules import DEFAULT_RULES, DEFAULT_RULE_PREFIX, seed_default_rules

__all__ = [
    "ConditionParseError",
    "StringOperator",
    "NumericOperator",
    "LogicalOperator",
    "StringCondition",
    "NumericCondition",
    "ConditionGroup",
    "RuleTransaction",
    "parse_conditions",
    "CompiledRule",
    "RuleEvaluationResult",
    "parse_rule",
    "compile_rules",
    "evaluate",
    "DEFAULT_RULES",
    "DEFAULT_RULE_PREFIX",
    "seed_default_rules",
]
