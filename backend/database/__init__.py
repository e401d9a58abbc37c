from .connection import get_db, engine, AsyncSessionLocal, init_db, Base

# Bank feed models
from .bank_models import (
    LinkedAccountDB, BankTransactionDB, SyncRunDB, MatchingRuleDB, PendingTransactionDB,
    SyncType, SyncStatus, AccountSyncStatus, RuleTransactionType
)

# Multi-owner ledger models
from .ledger_models import (
    PropertyOwnershipDB, LedgerTransactionDB, TransactionSplitDB, SettlementDB,
    LedgerTransactionType, INCOME_CATEGORIES, EXPENSE_CATEGORIES
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    # Bank feed models
    'LinkedAccountDB', 'BankTransactionDB', 'SyncRunDB', 'MatchingRuleDB', 'PendingTransactionDB',
    'SyncType', 'SyncStatus', 'AccountSyncStatus', 'RuleTransactionType',
    # Ledger models
    'PropertyOwnershipDB', 'LedgerTransactionDB', 'TransactionSplitDB', 'SettlementDB',
    'LedgerTransactionType', 'INCOME_CATEGORIES', 'EXPENSE_CATEGORIES',
]
