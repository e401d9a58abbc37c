"""
Default Matching Rules

Global fallback rules seeded on request. Seeding is idempotent: nothing is
created once the full set of "Default:" rules exists.
"""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_RULE_PREFIX = "Default:"


def _contains(value: str) -> str:
    return json.dumps({
        "operator": "AND",
        "rules": [
            {"field": "description", "matchType": "contains", "value": value, "caseSensitive": False},
        ],
    })


DEFAULT_RULES: List[Dict[str, Any]] = [
    {"name": "Default: Rent", "priority": 100, "type": "INCOME", "category": "Rent",
     "conditions": _contains("rent")},
    {"name": "Default: Security Deposit", "priority": 101, "type": "INCOME", "category": "Security Deposit",
     "conditions": _contains("deposit")},
    {"name": "Default: Maintenance", "priority": 102, "type": "EXPENSE", "category": "Maintenance",
     "conditions": _contains("maintenance")},
    {"name": "Default: Repair", "priority": 103, "type": "EXPENSE", "category": "Repair",
     "conditions": _contains("repair")},
    # Catch-all for money out
    {"name": "Default: Negative Amount", "priority": 1000, "type": "EXPENSE", "category": "Other",
     "conditions": json.dumps({
         "operator": "AND",
         "rules": [{"field": "amount", "matchType": "lessThan", "value": 0}],
     })},
]


async def seed_default_rules(rules_repo) -> int:
    """
    Create the default global rules unless they already exist.

    Returns:
        Number of rules created (0 when already seeded)
    """
    existing = await rules_repo.count_with_name_prefix(DEFAULT_RULE_PREFIX)
    if existing >= len(DEFAULT_RULES):
        return 0

    for rule in DEFAULT_RULES:
        await rules_repo.create({
            **rule,
            "bank_account_id": None,
            "property_id": None,
            "enabled": True,
        })

    logger.info(f"Seeded {len(DEFAULT_RULES)} default matching rules")
    return len(DEFAULT_RULES)
