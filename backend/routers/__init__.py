from .bank_oauth import router as bank_oauth_router
from .bank_accounts import router as bank_accounts_router
# Webhook status route is declared before the secret route
from .bank_webhooks import router as bank_webhooks_router
from .matching_rules import router as matching_rules_router
from .pending_transactions import router as pending_transactions_router
from .property_ledger import router as property_ledger_router

__all__ = [
    'bank_oauth_router',
    'bank_accounts_router',
    'bank_webhooks_router',
    'matching_rules_router',
    'pending_transactions_router',
    'property_ledger_router',
]
