"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single-node persistence) and PostgreSQL (production).
Records are JSON documents keyed by id; all monetary values are stored as
Decimal strings.

Mutations that must be all-or-nothing run inside ``atomic()``. Nested
``atomic()`` blocks join the outermost transaction. ``lock_record`` takes a
row lock that is held until the outermost block ends.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageTimeout, ConcurrencyConflict, DuplicateIdentifier
from .logging_config import get_logger


logger = get_logger("branch_ledger.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: float = 10.0):
        self.lock_timeout = lock_timeout
        # Held by the thread that owns the current transaction; every
        # statement outside a transaction takes it briefly.
        self._lock = threading.RLock()
        self._depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateIdentifier if the id exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def last_record(self, table: str) -> Optional[Dict[str, Any]]:
        """Most recently inserted record, or None for an empty table"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal all of the filter values"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def lock_record(self, table: str, record_id: str) -> None:
        """Take a row lock held until the enclosing transaction ends"""
        if not self.in_transaction:
            raise RuntimeError("lock_record must be called inside atomic()")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # Transaction plumbing shared by all backends

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise StorageTimeout(
                f"Timed out after {self.lock_timeout}s waiting for storage lock"
            )

    @contextmanager
    def _guard(self):
        self._acquire()
        try:
            yield
        finally:
            self._lock.release()

    def begin_transaction(self) -> None:
        """Start (or join) a database transaction"""
        self._acquire()
        # in_transaction is already true while _begin runs
        self._depth += 1
        try:
            if self._depth == 1:
                self._begin()
        except Exception:
            self._depth -= 1
            self._lock.release()
            raise

    def commit(self) -> None:
        """Commit the current transaction once the outermost block ends"""
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._commit()
                except Exception:
                    self._rollback()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Roll back the current transaction once the outermost block ends"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._rollback()
        finally:
            self._lock.release()

    def _begin(self) -> None:
        pass

    def _commit(self) -> None:
        pass

    def _rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: float = 10.0):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip mirrors what a real backend returns
        return json.loads(json.dumps(data, default=str))

    def _begin(self) -> None:
        self._snapshot = copy.deepcopy(self._data)

    def _commit(self) -> None:
        self._snapshot = None

    def _rollback(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
        self._snapshot = None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard():
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard():
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateIdentifier(
                    f"Duplicate id {record_id} in {table}", table=table, record_id=record_id
                )
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def last_record(self, table: str) -> Optional[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            records = self._data[table]
            if records:
                return self._copy(next(reversed(records.values())))
            return None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._guard():
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._guard():
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        timeout: float = 10.0,
        lock_timeout: float = 10.0
    ):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
        )
        self._connection.row_factory = sqlite3.Row
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _errors(self):
        try:
            yield
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise StorageTimeout(f"SQLite busy: {e}") from e
            raise

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def _begin(self) -> None:
        with self._errors():
            self._connection.execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        with self._errors():
            self._connection.execute("COMMIT")

    def _rollback(self) -> None:
        self._connection.execute("ROLLBACK")
        # Tables created inside the transaction are gone again
        self._tables.clear()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard(), self._errors():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard(), self._errors():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateIdentifier(
                    f"Duplicate id {record_id} in {table}", table=table, record_id=record_id
                ) from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard(), self._errors():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            )
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard(), self._errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def last_record(self, table: str) -> Optional[Dict[str, Any]]:
        with self._guard(), self._errors():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY seq DESC LIMIT 1"
            )
            row = cursor.fetchone()
            return json.loads(row["data"]) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._guard(), self._errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._guard(), self._errors():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking"""

    def __init__(self, connection_string: str, statement_timeout: float = 10.0,
                 lock_timeout: float = 10.0):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__(lock_timeout)
        self.connection_string = connection_string
        self.statement_timeout_ms = int(statement_timeout * 1000)
        self._connection = None
        self._tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor,
                options=f"-c statement_timeout={self.statement_timeout_ms}"
            )
            self._connection.autocommit = False

    @contextmanager
    def _cursor(self, write: bool = False):
        errors = self.psycopg2.errors
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self.in_transaction:
                self._connection.commit()
        except errors.QueryCanceled as e:
            self._abort_statement()
            raise StorageTimeout(f"PostgreSQL statement timed out: {e}") from e
        except (errors.LockNotAvailable, errors.SerializationFailure,
                errors.DeadlockDetected) as e:
            self._abort_statement()
            raise ConcurrencyConflict(f"PostgreSQL lock conflict: {e}") from e
        except Exception:
            self._abort_statement()
            raise
        finally:
            cursor.close()

    def _abort_statement(self) -> None:
        # Inside atomic() the rollback happens when the block unwinds
        if not self.in_transaction:
            self._connection.rollback()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    seq BIGSERIAL,
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
        self._tables.add(table)

    def _begin(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        try:
            with self._cursor() as cursor:
                cursor.execute("SET LOCAL statement_timeout = %s", (self.statement_timeout_ms,))
        except Exception:
            self._connection.rollback()
            raise

    def _commit(self) -> None:
        self._connection.commit()

    def _rollback(self) -> None:
        self._connection.rollback()
        self._tables.clear()

    def lock_record(self, table: str, record_id: str) -> None:
        super().lock_record(table, record_id)
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(
                    f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (record_id,)
                )

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data)
                    VALUES (%s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = NOW()
                """, (record_id, json.dumps(data, default=str)))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard():
            self._ensure_table(table)
            try:
                with self._cursor() as cursor:
                    cursor.execute(
                        f"INSERT INTO {table} (id, data) VALUES (%s, %s)",
                        (record_id, json.dumps(data, default=str))
                    )
            except self.psycopg2.errors.UniqueViolation as e:
                raise DuplicateIdentifier(
                    f"Duplicate id {record_id} in {table}", table=table, record_id=record_id
                ) from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY seq")
                return [dict(row['data']) for row in cursor.fetchall()]

    def last_record(self, table: str) -> Optional[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY seq DESC LIMIT 1")
                row = cursor.fetchone()
                return dict(row["data"]) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        if not filters:
            return self.load_all(table)
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(
                    f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY seq",
                    (json.dumps(filters, default=str),)
                )
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._guard():
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    logger.warning("Error closing PostgreSQL connection", exc_info=True)
                self._connection = None


def create_storage(database_url: str, statement_timeout: float = 10.0,
                   lock_timeout: float = 10.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    ``memory://`` selects InMemoryStorage, ``sqlite:///path`` SQLiteStorage
    and ``postgresql://...`` PostgreSQLStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):] or ":memory:"
        return SQLiteStorage(path, timeout=statement_timeout, lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, statement_timeout=statement_timeout,
                                 lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
