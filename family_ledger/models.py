"""
Ledger Records Module

Typed records exchanged between the store, the ledger engine and callers.
Rows coming out of a store are turned into these records immediately so that
nothing past the store boundary deals with loosely shaped dicts.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime (naive values are taken as UTC)"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_micros(value: datetime) -> int:
    """Exact integer microseconds since the epoch, used as the stored sort key"""
    delta = ensure_utc(value) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_epoch_micros(value: int) -> datetime:
    seconds, micros = divmod(int(value), 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros)


@dataclass(frozen=True)
class Account:
    """Account row: identifier and current balance in minor units"""
    account_id: str
    balance: int = 0

    def __post_init__(self):
        if not isinstance(self.account_id, str) or not self.account_id:
            raise ValueError("account_id must be a non-empty string")
        if isinstance(self.balance, bool) or not isinstance(self.balance, int):
            raise ValueError("balance must be an integer number of minor units")

    def to_dict(self) -> Dict[str, Any]:
        return {"account_id": self.account_id, "balance": self.balance}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(account_id=str(data["account_id"]), balance=int(data["balance"]))


@dataclass(frozen=True)
class Transaction:
    """
    Immutable ledger entry

    Ordered by (timestamp, sequence). The sequence is assigned per account
    inside the append critical section and breaks timestamp ties.
    """
    account_id: str
    subject_id: str
    timestamp: datetime
    amount: int
    description: str
    sequence: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.account_id, str) or not self.account_id:
            raise ValueError("account_id must be a non-empty string")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError("amount must be an integer number of minor units")
        if self.amount == 0:
            raise ValueError("amount must not be zero")
        if not isinstance(self.timestamp, datetime):
            raise ValueError("timestamp must be a datetime")
        object.__setattr__(self, 'timestamp', ensure_utc(self.timestamp))
        object.__setattr__(self, 'subject_id', str(self.subject_id))
        object.__setattr__(self, 'description', str(self.description))

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return (self.timestamp, self.sequence or 0)

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    def with_sequence(self, sequence: int) -> 'Transaction':
        return replace(self, sequence=sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "subject_id": self.subject_id,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "amount": self.amount,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        elif isinstance(timestamp, int):
            timestamp = from_epoch_micros(timestamp)
        sequence = data.get("sequence")
        return cls(
            account_id=str(data["account_id"]),
            subject_id=str(data["subject_id"]),
            timestamp=timestamp,
            amount=int(data["amount"]),
            description=data["description"],
            sequence=int(sequence) if sequence is not None else None,
        )


class Direction(Enum):
    """Navigation direction relative to the currently displayed page"""
    NONE = "none"            # Newest page, resets pagination
    FORWARD = "forward"      # Towards older transactions
    BACKWARD = "backward"    # Towards newer transactions


@dataclass(frozen=True)
class PageCursor:
    """
    Caller-held pagination position

    Returned by every fetch and replayed verbatim. boundary_sequence may be
    None, in which case the boundary compares on timestamp alone.
    """
    direction: Direction = Direction.NONE
    boundary_timestamp: Optional[datetime] = None
    boundary_sequence: Optional[int] = None
    page_index: Optional[int] = None

    def __post_init__(self):
        if self.direction is not Direction.NONE and self.boundary_timestamp is None:
            raise ValueError(f"{self.direction.value} cursor requires a boundary timestamp")
        if self.boundary_timestamp is not None:
            object.__setattr__(self, 'boundary_timestamp', ensure_utc(self.boundary_timestamp))

    @classmethod
    def first(cls) -> 'PageCursor':
        return cls(Direction.NONE, page_index=0)

    @property
    def boundary(self) -> Optional[Tuple[datetime, Optional[int]]]:
        if self.boundary_timestamp is None:
            return None
        return (self.boundary_timestamp, self.boundary_sequence)


@dataclass(frozen=True)
class Page:
    """A bounded slice of the transaction log, newest first"""
    account_id: str
    transactions: List[Transaction] = field(default_factory=list)
    is_last_page: bool = False
    is_first_page: bool = True
    page_index: Optional[int] = None

    def __len__(self) -> int:
        return len(self.transactions)

    @property
    def is_empty(self) -> bool:
        return not self.transactions

    @property
    def first_timestamp(self) -> Optional[datetime]:
        return self.transactions[0].timestamp if self.transactions else None

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self.transactions[-1].timestamp if self.transactions else None

    def _neighbour_index(self, step: int) -> Optional[int]:
        if self.page_index is None:
            return None
        return max(self.page_index + step, 0)

    def next_cursor(self) -> Optional[PageCursor]:
        """Cursor for older transactions, None when this is the last page"""
        if self.is_last_page or not self.transactions:
            return None
        oldest = self.transactions[-1]
        return PageCursor(Direction.FORWARD, oldest.timestamp, oldest.sequence,
                          self._neighbour_index(1))

    def previous_cursor(self) -> Optional[PageCursor]:
        """Cursor for newer transactions, None when this is the first page"""
        if self.is_first_page or not self.transactions:
            return None
        newest = self.transactions[0]
        return PageCursor(Direction.BACKWARD, newest.timestamp, newest.sequence,
                          self._neighbour_index(-1))


@dataclass(frozen=True)
class AccountView:
    """Balance plus one page of history, as shown on the account screen"""
    account_id: str
    balance: int
    page: Page

    @property
    def transactions(self) -> List[Transaction]:
        return self.page.transactions

    @property
    def is_last_page(self) -> bool:
        return self.page.is_last_page


@dataclass(frozen=True)
class Reconciliation:
    """Result of comparing the stored balance with the sum of the log"""
    account_id: str
    balance: int
    computed_balance: int
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.balance == self.computed_balance

    @property
    def difference(self) -> int:
        return self.balance - self.computed_balance
