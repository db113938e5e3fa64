"""
Family Ledger

A small household banking ledger: one balance per account, an append-only
log of signed transactions, and cursor pagination over that log. All amounts
are integer minor units (cents).
"""

__version__ = "1.0.0"
