"""
Storage Backend Module

Provides the durable store contract used by the ledger engine and its
implementations: in-memory (testing), SQLite (single host persistence) and
PostgreSQL (production). All amounts are stored as integer minor units.

A store hands out one session per operation. Sessions support point reads,
ordered range reads with a strict boundary predicate and a row limit, and an
atomic multi-statement transaction with commit/rollback.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterator, Tuple, Union
from datetime import datetime
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import threading

from .errors import Conflict, StoreUnavailable
from .models import Account, Transaction, to_epoch_micros, from_epoch_micros
from .logging_config import get_logger


logger = get_logger("family_ledger.storage")

Boundary = Tuple[datetime, Optional[int]]


class StoreSession(ABC):
    """One unit of access to the store; acquired and released per operation"""

    def __init__(self):
        self._in_transaction = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @abstractmethod
    def load_account(self, account_id: str) -> Optional[Account]:
        """Point read of an account"""
        pass

    def load_account_for_update(self, account_id: str) -> Optional[Account]:
        """Point read that locks the account row until the transaction ends"""
        return self.load_account(account_id)

    @abstractmethod
    def create_account(self, account: Account) -> Account:
        """Insert a new account row"""
        pass

    @abstractmethod
    def update_balance(self, account_id: str, expected: int, new: int) -> bool:
        """Set balance to new only if it still equals expected"""
        pass

    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Append a transaction row"""
        pass

    @abstractmethod
    def range_transactions(
        self,
        account_id: str,
        older_than: Optional[Boundary] = None,
        newer_than: Optional[Boundary] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = True
    ) -> List[Transaction]:
        """
        Ordered range read over an account's transactions

        Args:
            account_id: Owning account
            older_than: Only rows strictly before this (timestamp, sequence)
            newer_than: Only rows strictly after this (timestamp, sequence)
            limit: Maximum number of rows
            offset: Rows to skip after ordering
            descending: Newest first when True

        Returns:
            Transactions ordered by (timestamp, sequence)
        """
        pass

    @abstractmethod
    def count_transactions(self, account_id: str) -> int:
        """Count an account's transactions"""
        pass

    @abstractmethod
    def sum_transactions(self, account_id: str) -> int:
        """Sum of all transaction amounts of an account"""
        pass

    def latest_transaction(self, account_id: str) -> Optional[Transaction]:
        """Newest transaction of an account"""
        rows = self.range_transactions(account_id, limit=1)
        return rows[0] if rows else None

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        self._in_transaction = False

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
            self.commit()
        except BaseException:
            self.rollback()
            raise


class LedgerStore(ABC):
    """Abstract interface for storage backends"""

    def initialize(self) -> None:
        """Create schema if needed (default no-op)"""
        pass

    @abstractmethod
    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """Acquire a session, released on every exit path"""
        pass

    def close(self) -> None:
        """Release store resources (default no-op)"""
        pass


def _beyond(key: Tuple[datetime, int], boundary: Boundary, older: bool) -> bool:
    """Strict boundary comparison, timestamp-only when the boundary has no sequence"""
    timestamp, sequence = boundary
    if sequence is None:
        return key[0] < timestamp if older else key[0] > timestamp
    return key < (timestamp, sequence) if older else key > (timestamp, sequence)


class InMemorySession(StoreSession):
    """Session over InMemoryStore; write transactions hold the store lock"""

    def __init__(self, store: 'InMemoryStore'):
        super().__init__()
        self._store = store
        self._saved_accounts: Optional[Dict[str, Account]] = None
        self._saved_lengths: Optional[Dict[str, int]] = None

    def load_account(self, account_id: str) -> Optional[Account]:
        with self._store._lock:
            return self._store._accounts.get(account_id)

    def create_account(self, account: Account) -> Account:
        with self._store._lock:
            if account.account_id in self._store._accounts:
                raise ValueError(f"Account {account.account_id} already exists")
            self._store._accounts[account.account_id] = account
            self._store._transactions.setdefault(account.account_id, [])
            return account

    def update_balance(self, account_id: str, expected: int, new: int) -> bool:
        with self._store._lock:
            current = self._store._accounts.get(account_id)
            if current is None or current.balance != expected:
                return False
            self._store._accounts[account_id] = Account(account_id, new)
            return True

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._store._lock:
            if transaction.account_id not in self._store._accounts:
                raise StoreUnavailable(f"Foreign key violation: account {transaction.account_id}")
            rows = self._store._transactions.setdefault(transaction.account_id, [])
            if transaction.sequence is not None and any(
                row.sequence == transaction.sequence for row in rows
            ):
                raise Conflict(f"Sequence {transaction.sequence} already used for {transaction.account_id}")
            rows.append(transaction)
            return transaction

    def range_transactions(
        self,
        account_id: str,
        older_than: Optional[Boundary] = None,
        newer_than: Optional[Boundary] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = True
    ) -> List[Transaction]:
        with self._store._lock:
            rows = list(self._store._transactions.get(account_id, []))

        if older_than is not None:
            rows = [row for row in rows if _beyond(row.sort_key, older_than, older=True)]
        if newer_than is not None:
            rows = [row for row in rows if _beyond(row.sort_key, newer_than, older=False)]
        rows.sort(key=lambda row: row.sort_key, reverse=descending)

        end = None if limit is None else offset + limit
        return rows[offset:end]

    def count_transactions(self, account_id: str) -> int:
        with self._store._lock:
            return len(self._store._transactions.get(account_id, []))

    def sum_transactions(self, account_id: str) -> int:
        with self._store._lock:
            return sum(row.amount for row in self._store._transactions.get(account_id, []))

    def begin_transaction(self) -> None:
        if self._in_transaction:
            return
        self._store._lock.acquire()
        self._saved_accounts = dict(self._store._accounts)
        self._saved_lengths = {
            account_id: len(rows) for account_id, rows in self._store._transactions.items()
        }
        self._in_transaction = True

    def commit(self) -> None:
        if not self._in_transaction:
            return
        self._saved_accounts = None
        self._saved_lengths = None
        self._in_transaction = False
        self._store._lock.release()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            self._store._accounts = self._saved_accounts
            restored = {}
            for account_id, rows in self._store._transactions.items():
                if account_id in self._saved_lengths:
                    restored[account_id] = rows[:self._saved_lengths[account_id]]
            self._store._transactions = restored
        finally:
            self._saved_accounts = None
            self._saved_lengths = None
            self._in_transaction = False
            self._store._lock.release()


class InMemoryStore(LedgerStore):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, List[Transaction]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def session(self) -> Iterator[InMemorySession]:
        session = InMemorySession(self)
        try:
            yield session
        finally:
            if session.in_transaction:
                session.rollback()

    def get_all_data(self) -> Dict[str, Any]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return {
                "account": [account.to_dict() for account in self._accounts.values()],
                "ledger_transaction": [
                    row.to_dict() for rows in self._transactions.values() for row in rows
                ],
            }


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        account_id TEXT PRIMARY KEY,
        balance BIGINT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_transaction (
        id {serial_pk},
        account_id TEXT NOT NULL REFERENCES account(account_id),
        subject_id TEXT NOT NULL,
        tstamp {timestamp_type} NOT NULL,
        sequence BIGINT NOT NULL,
        amount BIGINT NOT NULL,
        description TEXT NOT NULL,
        UNIQUE (account_id, sequence)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_ledger_transaction_account_tstamp
    ON ledger_transaction (account_id, tstamp DESC, sequence DESC)
    """,
)

_TRANSACTION_COLUMNS = "account_id, subject_id, tstamp, sequence, amount, description"


class SQLSession(StoreSession):
    """
    Shared SQL for the relational backends

    Subclasses provide the placeholder style, timestamp conversion and the
    driver calls, translating driver errors into ledger errors.
    """

    placeholder = "?"
    unbounded_limit = "-1"
    begin_sql = "BEGIN"

    @abstractmethod
    def _query(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        pass

    @abstractmethod
    def _execute(self, sql: str, params: Tuple = ()) -> int:
        pass

    def _timestamp_param(self, value: datetime) -> Any:
        return value

    def _timestamp_value(self, value: Any) -> datetime:
        return value

    def _sql(self, sql: str) -> str:
        return sql.replace("?", self.placeholder)

    def _row_to_transaction(self, row: Tuple) -> Transaction:
        account_id, subject_id, tstamp, sequence, amount, description = row
        return Transaction(
            account_id=account_id,
            subject_id=subject_id,
            timestamp=self._timestamp_value(tstamp),
            sequence=int(sequence),
            amount=int(amount),
            description=description,
        )

    def load_account(self, account_id: str) -> Optional[Account]:
        rows = self._query(self._sql(
            "SELECT account_id, balance FROM account WHERE account_id = ?"
        ), (account_id,))
        if not rows:
            return None
        return Account(account_id=rows[0][0], balance=int(rows[0][1]))

    def create_account(self, account: Account) -> Account:
        if self.load_account(account.account_id) is not None:
            raise ValueError(f"Account {account.account_id} already exists")
        try:
            self._execute(self._sql(
                "INSERT INTO account (account_id, balance) VALUES (?, ?)"
            ), (account.account_id, account.balance))
        except Conflict as e:
            # Lost a race with a concurrent insert of the same primary key
            raise ValueError(f"Account {account.account_id} already exists") from e
        return account

    def update_balance(self, account_id: str, expected: int, new: int) -> bool:
        updated = self._execute(self._sql(
            "UPDATE account SET balance = ? WHERE account_id = ? AND balance = ?"
        ), (new, account_id, expected))
        return updated == 1

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        self._execute(self._sql(
            f"INSERT INTO ledger_transaction ({_TRANSACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)"
        ), (
            transaction.account_id,
            transaction.subject_id,
            self._timestamp_param(transaction.timestamp),
            transaction.sequence,
            transaction.amount,
            transaction.description,
        ))
        return transaction

    def _boundary_clause(self, boundary: Boundary, operator: str) -> Tuple[str, Tuple]:
        timestamp, sequence = boundary
        stamp = self._timestamp_param(timestamp)
        if sequence is None:
            return f" AND tstamp {operator} ?", (stamp,)
        return (
            f" AND (tstamp {operator} ? OR (tstamp = ? AND sequence {operator} ?))",
            (stamp, stamp, sequence),
        )

    def range_transactions(
        self,
        account_id: str,
        older_than: Optional[Boundary] = None,
        newer_than: Optional[Boundary] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = True
    ) -> List[Transaction]:
        sql = f"SELECT {_TRANSACTION_COLUMNS} FROM ledger_transaction WHERE account_id = ?"
        params: Tuple = (account_id,)
        if older_than is not None:
            clause, extra = self._boundary_clause(older_than, "<")
            sql += clause
            params += extra
        if newer_than is not None:
            clause, extra = self._boundary_clause(newer_than, ">")
            sql += clause
            params += extra

        order = "DESC" if descending else "ASC"
        sql += f" ORDER BY tstamp {order}, sequence {order}"
        if limit is None:
            sql += f" LIMIT {self.unbounded_limit}"
        else:
            sql += " LIMIT ?"
            params += (limit,)
        sql += " OFFSET ?"
        params += (offset,)

        return [self._row_to_transaction(row) for row in self._query(self._sql(sql), params)]

    def count_transactions(self, account_id: str) -> int:
        rows = self._query(self._sql(
            "SELECT COUNT(*) FROM ledger_transaction WHERE account_id = ?"
        ), (account_id,))
        return int(rows[0][0])

    def sum_transactions(self, account_id: str) -> int:
        rows = self._query(self._sql(
            "SELECT COALESCE(SUM(amount), 0) FROM ledger_transaction WHERE account_id = ?"
        ), (account_id,))
        return int(rows[0][0])

    def begin_transaction(self) -> None:
        if not self._in_transaction:
            self._execute(self.begin_sql)
            self._in_transaction = True

    def commit(self) -> None:
        if self._in_transaction:
            # A failed COMMIT leaves the transaction open for rollback()
            self._execute("COMMIT")
            self._in_transaction = False

    def rollback(self) -> None:
        if self._in_transaction:
            self._in_transaction = False
            self._execute("ROLLBACK")


class SQLiteSession(SQLSession):
    """Session on one SQLite connection; writers take the database write lock up front"""

    begin_sql = "BEGIN IMMEDIATE"

    def __init__(self, connection: sqlite3.Connection):
        super().__init__()
        self._connection = connection

    def _timestamp_param(self, value: datetime) -> int:
        return to_epoch_micros(value)

    def _timestamp_value(self, value: Any) -> datetime:
        return from_epoch_micros(value)

    def _translate(self, error: sqlite3.Error) -> Exception:
        if isinstance(error, sqlite3.IntegrityError):
            return Conflict(f"Write conflict: {error}")
        return StoreUnavailable(f"SQLite failure: {error}")

    def _query(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        try:
            return [tuple(row) for row in self._connection.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise self._translate(e) from e

    def _execute(self, sql: str, params: Tuple = ()) -> int:
        try:
            return self._connection.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise self._translate(e) from e


class SQLiteStore(LedgerStore):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self._shared: Optional[sqlite3.Connection] = None

        # An in-memory database only exists on its own connection, so it is shared
        if self.db_path == ":memory:":
            self._shared = self._connect()

    def _connect(self) -> sqlite3.Connection:
        try:
            # isolation_level=None: transactions are issued explicitly by the session
            connection = sqlite3.connect(
                self.db_path, timeout=self.timeout,
                isolation_level=None, check_same_thread=False
            )
            connection.execute("PRAGMA foreign_keys = ON")
            return connection
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open SQLite database {self.db_path}: {e}") from e

    def initialize(self) -> None:
        """Create tables and indexes"""
        with self.session() as session:
            if self._shared is None:
                session._query("PRAGMA journal_mode = WAL")
                session._execute("PRAGMA synchronous = NORMAL")
            for statement in SCHEMA_STATEMENTS:
                session._execute(statement.format(
                    serial_pk="INTEGER PRIMARY KEY AUTOINCREMENT",
                    timestamp_type="INTEGER"
                ))
        logger.debug("SQLite schema ready at %s", self.db_path)

    @contextmanager
    def session(self) -> Iterator[SQLiteSession]:
        if self._shared is not None:
            with self._lock:
                session = SQLiteSession(self._shared)
                try:
                    yield session
                finally:
                    if session.in_transaction:
                        session.rollback()
            return

        connection = self._connect()
        session = SQLiteSession(connection)
        try:
            yield session
        finally:
            try:
                if session.in_transaction:
                    session.rollback()
            finally:
                connection.close()

    def close(self) -> None:
        """Close the shared connection of an in-memory database"""
        with self._lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None


class PostgreSQLSession(SQLSession):
    """Session on one pooled PostgreSQL connection"""

    placeholder = "%s"
    unbounded_limit = "ALL"

    def __init__(self, connection, psycopg2_module):
        super().__init__()
        self._connection = connection
        self.psycopg2 = psycopg2_module

    def load_account_for_update(self, account_id: str) -> Optional[Account]:
        rows = self._query(
            "SELECT account_id, balance FROM account WHERE account_id = %s FOR UPDATE",
            (account_id,)
        )
        if not rows:
            return None
        return Account(account_id=rows[0][0], balance=int(rows[0][1]))

    def _translate(self, error: Exception) -> Exception:
        errors = self.psycopg2.errors
        if isinstance(error, (errors.SerializationFailure, errors.DeadlockDetected,
                              self.psycopg2.IntegrityError)):
            return Conflict(f"Write conflict: {error}")
        return StoreUnavailable(f"PostgreSQL failure: {error}")

    def _query(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql, params)
                return [tuple(row) for row in cursor.fetchall()]
        except self.psycopg2.Error as e:
            raise self._translate(e) from e

    def _execute(self, sql: str, params: Tuple = ()) -> int:
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.rowcount
        except self.psycopg2.Error as e:
            raise self._translate(e) from e


class PostgreSQLStore(LedgerStore):
    """PostgreSQL storage backend with row-locked balance updates"""

    def __init__(self, connection_string: str, pool_size: int = 5, statement_timeout_ms: int = 0):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.pool
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.statement_timeout_ms = statement_timeout_ms
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(1, pool_size, connection_string)
        except psycopg2.Error as e:
            raise StoreUnavailable(f"Cannot connect to PostgreSQL: {e}") from e

    def initialize(self) -> None:
        """Create tables and indexes"""
        with self.session() as session:
            for statement in SCHEMA_STATEMENTS:
                session._execute(statement.format(
                    serial_pk="BIGSERIAL PRIMARY KEY",
                    timestamp_type="TIMESTAMPTZ"
                ))

    @contextmanager
    def session(self) -> Iterator[PostgreSQLSession]:
        try:
            connection = self._pool.getconn()
            # Transactions are issued explicitly by the session
            connection.autocommit = True
            if self.statement_timeout_ms:
                with connection.cursor() as cursor:
                    cursor.execute("SET statement_timeout = %s", (self.statement_timeout_ms,))
        except self.psycopg2.Error as e:
            raise StoreUnavailable(f"Cannot acquire PostgreSQL connection: {e}") from e

        session = PostgreSQLSession(connection, self.psycopg2)
        try:
            yield session
        finally:
            broken = False
            try:
                if session.in_transaction:
                    session.rollback()
            except StoreUnavailable:
                broken = True
            finally:
                self._pool.putconn(connection, close=broken or bool(connection.closed))

    def close(self) -> None:
        """Close all pooled connections"""
        self._pool.closeall()


def create_store(database_url: str, pool_size: int = 5, timeout: float = 30.0,
                 statement_timeout_ms: int = 0) -> LedgerStore:
    """
    Create a store from a database URL

    Supported forms: memory://, sqlite://, sqlite:///:memory:,
    sqlite:///relative/or/absolute/path.db, postgresql://...
    """
    if database_url.startswith("memory:"):
        return InMemoryStore()
    if database_url.startswith("sqlite:"):
        path = database_url[len("sqlite:"):]
        if path.startswith("///"):
            path = path[3:]
        elif path.startswith("//"):
            path = path[2:]
        return SQLiteStore(path or ":memory:", timeout=timeout)
    if database_url.startswith(("postgresql:", "postgres:")):
        return PostgreSQLStore(database_url, pool_size=pool_size,
                               statement_timeout_ms=statement_timeout_ms)
    raise ValueError(f"Unsupported database URL: {database_url}")


def create_store_from_config(config) -> LedgerStore:
    """Create and initialize the store described by a LedgerConfig"""
    store = create_store(
        config.database_url,
        pool_size=config.database_pool_size,
        timeout=config.database_timeout,
        statement_timeout_ms=config.statement_timeout_ms
    )
    store.initialize()
    return store
