"""
Pydantic schemas for the caller boundary (requests and responses)
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from .amounts import CURRENCY_MARKER, TransactionKind, format_amount, parse_amount, signed_amount
from .models import AccountView, Transaction


class TransactionRequest(BaseModel):
    """Deposit or withdrawal as entered by a person"""
    amount: str = Field(..., description="Magnitude as entered, e.g. '12,50'")
    kind: TransactionKind = TransactionKind.DEPOSIT
    description: str = ""
    
    @field_validator("amount")
    @classmethod
    def amount_must_parse(cls, value: str, info: ValidationInfo) -> str:
        # Callers with a non-default marker pass it as validation context
        context = info.context or {}
        parse_amount(value, context.get("currency_marker", CURRENCY_MARKER))
        return value
    
    def to_minor_units(self, marker: str = CURRENCY_MARKER) -> int:
        """Signed amount in minor units; withdrawals are negative"""
        return signed_amount(parse_amount(self.amount, marker), self.kind)


class TransactionModel(BaseModel):
    timestamp: datetime
    sequence: Optional[int] = None
    amount: int = Field(..., description="Signed amount in minor units")
    display_amount: str
    description: str
    subject_id: str
    
    @classmethod
    def from_transaction(cls, transaction: Transaction, marker: str = "€",
                         width: int = 8) -> 'TransactionModel':
        return cls(
            timestamp=transaction.timestamp,
            sequence=transaction.sequence,
            amount=transaction.amount,
            display_amount=format_amount(transaction.amount, marker, width),
            description=transaction.description,
            subject_id=transaction.subject_id
        )


class AccountViewModel(BaseModel):
    account_id: str
    balance: int
    display_balance: str
    transactions: List[TransactionModel]
    is_last_page: bool
    is_first_page: bool
    page_index: Optional[int] = None
    
    @classmethod
    def from_view(cls, view: AccountView, marker: str = "€", width: int = 8) -> 'AccountViewModel':
        return cls(
            account_id=view.account_id,
            balance=view.balance,
            display_balance=format_amount(view.balance, marker, width),
            transactions=[
                TransactionModel.from_transaction(tx, marker, width) for tx in view.transactions
            ],
            is_last_page=view.page.is_last_page,
            is_first_page=view.page.is_first_page,
            page_index=view.page.page_index
        )
