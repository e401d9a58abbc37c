"""
Ownership & Ledger Validation Errors

Raised before any write; a rejected operation leaves ownership, transactions,
splits and settlements unchanged.
"""

from decimal import Decimal


class LedgerValidationError(ValueError):
    """Base class for rejected ledger writes"""
    pass


class OwnershipValidationError(LedgerValidationError):
    """Percentage outside (0, 100] or otherwise malformed ownership input"""
    pass


class OwnershipSumError(LedgerValidationError):
    """A non-empty ownership set would not total 100%"""

    def __init__(self, total: Decimal):
        self.total = total
        super().__init__(f"Total ownership must equal 100%. Current total: {total:.2f}%")


class DuplicateOwnershipError(LedgerValidationError):
    """The user already owns part of the property"""

    def __init__(self, property_id: str, user_id: str):
        self.property_id = property_id
        self.user_id = user_id
        super().__init__("User already owns this property")


class HasDependentRecordsError(LedgerValidationError):
    """Splits or settlements still reference the owner on this property"""
    pass


class OwnershipNotFoundError(LookupError):
    """No ownership record for (property, user)"""
    pass


class LedgerTransactionNotFoundError(LookupError):
    pass


class SplitValidationError(LedgerValidationError):
    """Splits do not add up to 100% or to the transaction amount"""
    pass


class NotAnOwnerError(LedgerValidationError):
    """A split, payer or settlement party is not a current owner of the property"""

    def __init__(self, user_id: str, property_id: str):
        self.user_id = user_id
        self.property_id = property_id
        super().__init__(f"User {user_id} is not a property owner")


class SelfSettlementError(LedgerValidationError):
    def __init__(self):
        super().__init__("Cannot record a settlement from a user to themselves")


class SettlementValidationError(LedgerValidationError):
    """Non-positive amount or notes longer than 500 characters"""
    pass


class TransactionValidationError(LedgerValidationError):
    """Invalid type, category or amount on a ledger transaction"""
    pass
