"""
Storage Backend Module

Provides abstract document storage interface and implementations for
in-memory (testing) and SQLite (persistence). Records are JSON documents
keyed by id; all monetary values are stored as fixed-point strings.

Besides plain save/load, backends expose a single-record atomic update
(read, check and write as one step against the store) so that callers never
hold their own lock across a read-check-write.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import copy
import json
import re
import sqlite3
import threading
import time

from .errors import StoreUnavailable, TransientStoreError
from .logging_config import get_logger


Document = Dict[str, Any]
Mutator = Callable[[Document], Optional[Document]]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

logger = get_logger("game_economy.storage")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _matches(record: Document, filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def insert_if_absent(self, table: str, record_id: str, data: Document) -> bool:
        """Insert a record only if its id is unused. Returns True if inserted."""
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, mutator: Mutator) -> Optional[Document]:
        """
        Atomically read, transform and write a single record

        The mutator receives a private copy of the current document and
        returns the new document, or None to leave the record untouched.
        Exceptions raised by the mutator abort the update with nothing
        written.

        Returns:
            The stored document after the update, or None if the record
            does not exist
        """
        pass

    @abstractmethod
    def find(
        self,
        table: str,
        filters: Dict[str, Any],
        any_of: Optional[List[Dict[str, Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Document]:
        """
        Find records matching all of ``filters`` and, if given, at least
        one of the filter sets in ``any_of``
        """
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

    def ensure_index(self, table: str, fields: List[str]) -> None:
        """Create a secondary index on document fields (default no-op)"""
        pass

    @abstractmethod
    def atomic(self):
        """
        Context manager for all-or-nothing groups of writes

        Every write made inside the block commits together, or none does
        if the block raises. Blocks may nest; an inner block joins the
        outer one.
        """
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def _table(self, table: str) -> Dict[str, Document]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    @staticmethod
    def _copy(data: Document) -> Document:
        # Round-trip through JSON so stored documents look exactly like
        # what a persistent backend would return
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def insert_if_absent(self, table: str, record_id: str, data: Document) -> bool:
        with self._lock:
            records = self._table(table)
            if record_id in records:
                return False
            records[record_id] = self._copy(data)
            return True

    def update(self, table: str, record_id: str, mutator: Mutator) -> Optional[Document]:
        with self._lock:
            records = self._table(table)
            current = records.get(record_id)
            if current is None:
                return None
            updated = mutator(copy.deepcopy(current))
            if updated is None:
                return copy.deepcopy(current)
            records[record_id] = self._copy(updated)
            return copy.deepcopy(records[record_id])

    def find(
        self,
        table: str,
        filters: Dict[str, Any],
        any_of: Optional[List[Dict[str, Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Document]:
        with self._lock:
            results = []
            for record in self._table(table).values():
                if not _matches(record, filters):
                    continue
                if any_of and not any(_matches(record, alt) for alt in any_of):
                    continue
                results.append(copy.deepcopy(record))

        if order_by:
            results.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if offset:
            results = results[offset:]
        if limit is not None:
            results = results[:limit]
        return results

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    @contextmanager
    def atomic(self):
        """
        Hold the store lock for the whole block and restore a snapshot of
        every table if the block raises
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy(self._data)
            self._depth = 1
            try:
                yield
            except BaseException:
                self._data = snapshot
                raise
            finally:
                self._depth = 0

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Single shared connection guarded by a re-entrant lock. Writes run in
    ``BEGIN IMMEDIATE`` transactions; ``atomic()`` holds the connection for
    the whole block so that a multi-record group commits or rolls back as
    one unit.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", retry_attempts: int = 3,
                 busy_timeout_seconds: float = 5.0):
        self.db_path = str(db_path)
        self.retry_attempts = max(1, retry_attempts)
        # Autocommit mode; transactions are opened explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
            timeout=busy_timeout_seconds
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    # -- internals -------------------------------------------------------

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        _check_identifier(table)
        if table in self._known_tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._known_tables.add(table)

    def _run(self, operation: Callable[[], Any], write: bool = False) -> Any:
        """
        Run an operation under the connection lock

        Busy/locked errors are retried a bounded number of times and then
        surface as TransientStoreError; any other sqlite error is reported
        as StoreUnavailable.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._lock:
                    if self._connection is None:
                        raise StoreUnavailable("Storage connection is closed")
                    if not write or self._in_transaction:
                        return operation()
                    self._connection.execute("BEGIN IMMEDIATE")
                    try:
                        result = operation()
                    except BaseException:
                        self._connection.execute("ROLLBACK")
                        raise
                    self._connection.execute("COMMIT")
                    return result
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                busy = "locked" in message or "busy" in message
                if busy and attempt < self.retry_attempts and not self._in_transaction:
                    logger.warning(f"SQLite busy, retrying ({attempt}/{self.retry_attempts})")
                    time.sleep(0.01 * attempt)
                    continue
                if busy:
                    raise TransientStoreError(f"Store busy after {attempt} attempts") from e
                logger.error(f"SQLite operation failed: {e}")
                raise StoreUnavailable("Storage backend unavailable") from e
            except sqlite3.Error as e:
                logger.error(f"SQLite operation failed: {e}")
                raise StoreUnavailable("Storage backend unavailable") from e

    def _write_row(self, table: str, record_id: str, data: Document) -> None:
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (record_id, data_json, now, now))

    # -- interface -------------------------------------------------------

    def save(self, table: str, record_id: str, data: Document) -> None:
        def operation():
            self._ensure_table(table)
            self._write_row(table, record_id, data)
        self._run(operation, write=True)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        def operation():
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None
        return self._run(operation)

    def load_all(self, table: str) -> List[Document]:
        def operation():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]
        return self._run(operation)

    def exists(self, table: str, record_id: str) -> bool:
        def operation():
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None
        return self._run(operation)

    def insert_if_absent(self, table: str, record_id: str, data: Document) -> bool:
        def operation():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            return cursor.rowcount > 0
        return self._run(operation, write=True)

    def update(self, table: str, record_id: str, mutator: Mutator) -> Optional[Document]:
        def operation():
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return None
            current = json.loads(row['data'])
            updated = mutator(json.loads(row['data']))
            if updated is None:
                return current
            self._write_row(table, record_id, updated)
            return json.loads(json.dumps(updated, default=str))
        return self._run(operation, write=True)

    def find(
        self,
        table: str,
        filters: Dict[str, Any],
        any_of: Optional[List[Dict[str, Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Document]:
        """Find records using json_extract conditions so indexes apply"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append(f"json_extract(data, '$.{_check_identifier(key)}') = ?")
            params.append(value)
        if any_of:
            alternatives = []
            for alt in any_of:
                parts = []
                for key, value in alt.items():
                    parts.append(f"json_extract(data, '$.{_check_identifier(key)}') = ?")
                    params.append(value)
                alternatives.append("(" + " AND ".join(parts) + ")")
            conditions.append("(" + " OR ".join(alternatives) + ")")

        sql = f"SELECT data FROM {_check_identifier(table)}"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        if order_by:
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY json_extract(data, '$.{_check_identifier(order_by)}') {direction}"
        else:
            sql += " ORDER BY created_at, rowid"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)

        def operation():
            self._ensure_table(table)
            cursor = self._connection.execute(sql, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]
        return self._run(operation)

    def count(self, table: str) -> int:
        def operation():
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']
        return self._run(operation)

    def clear_table(self, table: str) -> None:
        def operation():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
        self._run(operation, write=True)

    def ensure_index(self, table: str, fields: List[str]) -> None:
        columns = ", ".join(
            f"json_extract(data, '$.{_check_identifier(field)}')" for field in fields
        )
        name = f"idx_{_check_identifier(table)}_" + "_".join(fields)

        def operation():
            self._ensure_table(table)
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {table}({columns})")
        self._run(operation)

    @contextmanager
    def atomic(self):
        """Run a group of writes in one transaction"""
        with self._lock:
            if self._in_transaction:
                # Nested block joins the outer transaction
                yield
                return
            self._run(lambda: self._connection.execute("BEGIN IMMEDIATE"))
            self._in_transaction = True
            try:
                yield
            except BaseException:
                self._in_transaction = False
                self._connection.execute("ROLLBACK")
                raise
            self._in_transaction = False
            try:
                self._run(lambda: self._connection.execute("COMMIT"))
            except BaseException:
                if self._connection is not None and self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
                raise

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, retry_attempts: int = 3,
                   busy_timeout_seconds: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported: ``memory://`` and ``sqlite:///<path>`` (``sqlite://`` alone
    means an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", retry_attempts=retry_attempts,
                             busy_timeout_seconds=busy_timeout_seconds)
    raise ValueError(f"Unsupported database URL: {database_url}")
