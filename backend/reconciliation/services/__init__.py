"""
Reconciliation Services
"""

from .review_service import (
    ReviewService,
    ClassificationOutcome,
    ReprocessingResult,
    PendingTransactionNotFoundError,
    IncompleteClassificationError,
)

__all__ = [
    'ReviewService',
    'ClassificationOutcome',
    'ReprocessingResult',
    'PendingTransactionNotFoundError',
    'IncompleteClassificationError',
]
