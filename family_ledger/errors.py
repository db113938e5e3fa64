"""
Ledger error taxonomy.

Every failure the ledger surfaces to callers derives from LedgerError.
Validation errors also derive from ValueError and lookups from LookupError,
so callers that only know the builtin hierarchy still catch them.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""


class AccountNotFound(LedgerError, LookupError):
    """Referenced account does not exist"""
    
    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class InvalidAmount(LedgerError, ValueError):
    """Amount failed parsing, is zero, or is out of bounds"""


class InvalidDescription(LedgerError, ValueError):
    """Description is not text or exceeds the configured length"""


class Conflict(LedgerError):
    """Concurrent updates kept winning; safe to retry the whole operation"""
    
    def __init__(self, message: str, attempts: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts


class StoreUnavailable(LedgerError):
    """Durable store failed (connection, timeout, locking)"""
