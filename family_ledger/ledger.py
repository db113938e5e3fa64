"""
Ledger Engine Module

Owns the (balance, transaction log) pair of every account. Appends are
applied atomically inside one store transaction, with the account row locked
where the store supports it and a bounded compare-and-set retry on top.
Reads page through the log with immutable, caller-held cursors.

The engine keeps no per-account or per-session state: everything durable
lives in the store and every operation acquires and releases its own session.
"""

from datetime import datetime, timezone
from typing import Callable, Iterator, Optional
from contextlib import contextmanager

from .amounts import validate_amount
from .config import LedgerConfig, get_config
from .errors import AccountNotFound, Conflict, InvalidDescription, StoreUnavailable
from .logging_config import get_logger, log_action
from .models import (
    Account, Transaction, Direction, Page, PageCursor, Reconciliation, ensure_utc
)
from .storage import LedgerStore, StoreSession


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEngine:
    """
    Serializes mutations of an account's balance and transaction log and
    serves consistent paginated reads of that log
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.config = config or get_config()
        self.page_size = self.config.page_size
        self._clock = clock or utc_now
        self.logger = get_logger("family_ledger.ledger")

        if self.page_size < 1:
            raise ValueError("page_size must be at least 1")

    @contextmanager
    def _session(self, action: str, account_id: str) -> Iterator[StoreSession]:
        """Per-operation store session; infrastructure failures are logged once here"""
        try:
            with self.store.session() as session:
                yield session
        except StoreUnavailable:
            log_action(
                self.logger, "error", f"Store unavailable during {action}",
                account_id=account_id, action=action, exc_info=True
            )
            raise

    def _require_account(self, session: StoreSession, account_id: str,
                         for_update: bool = False) -> Account:
        if for_update:
            account = session.load_account_for_update(account_id)
        else:
            account = session.load_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def open_account(self, account_id: str) -> Account:
        """
        Provision a new, empty account (normally done out-of-band)

        Raises:
            ValueError: If the account already exists
        """
        account = Account(account_id=account_id)
        with self._session("open_account", account_id) as session:
            with session.atomic():
                session.create_account(account)

        log_action(self.logger, "info", "Account opened",
                   account_id=account_id, action="open_account")
        return account

    def get_balance(self, account_id: str) -> int:
        """
        Current balance in minor units

        Raises:
            AccountNotFound: If the account does not exist
        """
        with self._session("get_balance", account_id) as session:
            return self._require_account(session, account_id).balance

    def fetch_page(self, account_id: str, cursor: Optional[PageCursor] = None) -> Page:
        """
        Fetch one page of transactions, newest first

        Args:
            account_id: Account to read
            cursor: Position returned by a previous page; None for the newest page

        Returns:
            Page with the transactions and the boundaries for the next fetch

        Raises:
            AccountNotFound: If the account does not exist
        """
        cursor = cursor or PageCursor.first()
        direction = cursor.direction
        if direction is Direction.BACKWARD and cursor.page_index == 0:
            # Going back to the first page always shows the newest state
            direction = Direction.NONE

        with self._session("fetch_page", account_id) as session:
            self._require_account(session, account_id)

            if direction is Direction.NONE:
                return self._newest_page(session, account_id)
            if direction is Direction.FORWARD:
                return self._older_page(session, account_id, cursor)
            return self._newer_page(session, account_id, cursor)

    def _newest_page(self, session: StoreSession, account_id: str) -> Page:
        rows = session.range_transactions(account_id, limit=self.page_size + 1)
        return Page(
            account_id=account_id,
            transactions=rows[:self.page_size],
            is_last_page=len(rows) <= self.page_size,
            is_first_page=True,
            page_index=0
        )

    def _older_page(self, session: StoreSession, account_id: str, cursor: PageCursor) -> Page:
        rows = session.range_transactions(
            account_id, older_than=cursor.boundary, limit=self.page_size + 1
        )
        return Page(
            account_id=account_id,
            transactions=rows[:self.page_size],
            is_last_page=len(rows) <= self.page_size,
            is_first_page=False,
            page_index=cursor.page_index
        )

    def _newer_page(self, session: StoreSession, account_id: str, cursor: PageCursor) -> Page:
        # Nearest rows to the boundary first, then back into display order
        rows = session.range_transactions(
            account_id, newer_than=cursor.boundary,
            limit=self.page_size + 1, descending=False
        )
        if not rows:
            # Nothing newer than the boundary; the boundary row is never included
            return Page(
                account_id=account_id,
                transactions=[],
                is_last_page=False,
                is_first_page=True,
                page_index=0
            )

        transactions = rows[:self.page_size]
        transactions.reverse()
        is_first_page = len(rows) <= self.page_size
        return Page(
            account_id=account_id,
            transactions=transactions,
            is_last_page=False,
            is_first_page=is_first_page,
            page_index=0 if is_first_page else cursor.page_index
        )

    def fetch_page_at(self, account_id: str, page_index: int) -> Page:
        """
        Fetch a page by its index, newest page being 0

        Offset based, so appends that happen between two calls shift the
        pages. Prefer fetch_page with cursors for stable navigation.
        """
        page_index = max(int(page_index), 0)
        with self._session("fetch_page_at", account_id) as session:
            self._require_account(session, account_id)
            rows = session.range_transactions(
                account_id, limit=self.page_size + 1, offset=page_index * self.page_size
            )
        return Page(
            account_id=account_id,
            transactions=rows[:self.page_size],
            is_last_page=len(rows) <= self.page_size,
            is_first_page=page_index == 0,
            page_index=page_index
        )

    def _validate_description(self, description: str) -> str:
        if not isinstance(description, str):
            raise InvalidDescription("Description must be a string")
        if len(description) > self.config.max_description_length:
            raise InvalidDescription(
                f"Description exceeds {self.config.max_description_length} characters"
            )
        return description

    def append_transaction(
        self,
        account_id: str,
        subject_id: str,
        amount: int,
        description: str
    ) -> Transaction:
        """
        Atomically add amount to the balance and record the transaction

        Balances may go negative; overdraft rules belong to the caller.

        Args:
            account_id: Account to post to (already authorized by the caller)
            subject_id: Actor creating the transaction, kept for audit
            amount: Signed non-zero amount in minor units
            description: Free text

        Returns:
            The stored transaction

        Raises:
            InvalidAmount: If amount is zero, not an integer or out of bounds
            InvalidDescription: If description is not text or too long
            AccountNotFound: If the account does not exist
            Conflict: If concurrent updates won every retry
            StoreUnavailable: If the store failed; nothing was committed
        """
        validate_amount(amount, self.config.max_transaction_amount)
        self._validate_description(description)

        attempts = max(self.config.max_append_retries, 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._session("append_transaction", account_id) as session:
                    with session.atomic():
                        transaction = self._apply(session, account_id, subject_id, amount, description)
            except Conflict as e:
                log_action(
                    self.logger, "debug", f"Append attempt {attempt} lost a race: {e}",
                    account_id=account_id, subject_id=subject_id, action="append_transaction"
                )
                continue
            except AccountNotFound:
                log_action(
                    self.logger, "warning", "Append to unknown account",
                    account_id=account_id, subject_id=subject_id, action="append_transaction"
                )
                raise

            log_action(
                self.logger, "info", "Transaction appended",
                account_id=account_id, subject_id=subject_id, action="append_transaction",
                extra={"amount": amount, "sequence": transaction.sequence, "attempt": attempt}
            )
            return transaction

        log_action(
            self.logger, "warning", f"Append gave up after {attempts} attempts",
            account_id=account_id, subject_id=subject_id, action="append_transaction"
        )
        raise Conflict(f"Account {account_id} is being updated concurrently", attempts=attempts)

    def _apply(
        self,
        session: StoreSession,
        account_id: str,
        subject_id: str,
        amount: int,
        description: str
    ) -> Transaction:
        """Critical section; must run inside session.atomic()"""
        account = self._require_account(session, account_id, for_update=True)

        # Timestamps never go backwards within an account, sequences always advance
        timestamp = ensure_utc(self._clock())
        sequence = 1
        latest = session.latest_transaction(account_id)
        if latest is not None:
            timestamp = max(timestamp, latest.timestamp)
            sequence = (latest.sequence or 0) + 1

        if not session.update_balance(account_id, account.balance, account.balance + amount):
            raise Conflict(f"Balance of account {account_id} changed concurrently")

        return session.insert_transaction(Transaction(
            account_id=account_id,
            subject_id=subject_id,
            timestamp=timestamp,
            amount=amount,
            description=description,
            sequence=sequence
        ))

    def reconcile(self, account_id: str) -> Reconciliation:
        """
        Compare the stored balance with the sum of the transaction log

        Runs with the account locked so the two reads see the same state.
        """
        with self._session("reconcile", account_id) as session:
            with session.atomic():
                account = self._require_account(session, account_id, for_update=True)
                computed = session.sum_transactions(account_id)
                count = session.count_transactions(account_id)

        result = Reconciliation(
            account_id=account_id,
            balance=account.balance,
            computed_balance=computed,
            transaction_count=count
        )
        if not result.is_consistent:
            log_action(
                self.logger, "error", "Balance does not match transaction log",
                account_id=account_id, action="reconcile",
                extra={"balance": result.balance, "computed": computed}
            )
        return result
