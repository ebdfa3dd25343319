"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values stored as Decimal
strings.

Both backends support nested atomic units (the outermost unit commits, inner
units behave as savepoints) and per-row locks so a balance
read-check-write on one account never races another writer of the same row.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager, ExitStack


def to_storable(value: Any) -> Any:
    """Convert Decimal, datetime and Enum values into JSON-friendly types"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: to_storable(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an optional ISO timestamp"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._row_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._row_locks_guard = threading.Lock()
        self._hooks = threading.local()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
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

    def find_between(
        self,
        table: str,
        filters: Dict[str, Any],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        field: str = 'created_at'
    ) -> List[Dict[str, Any]]:
        """Find records matching filters whose timestamp field lies in [start, end]"""
        results = []
        for record in self.find(table, filters):
            stamp = parse_datetime(record.get(field))
            if stamp is None:
                continue
            if start and stamp < start:
                continue
            if end and stamp > end:
                continue
            results.append(record)
        return results

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()

    def _hook_stack(self) -> List[List[Callable[[], None]]]:
        stack = getattr(self._hooks, 'stack', None)
        if stack is None:
            stack = []
            self._hooks.stack = stack
        return stack

    def _hooks_begin(self) -> None:
        self._hook_stack().append([])

    def _hooks_end(self, committed: bool) -> None:
        """Close one unit's callback level; run them once the outermost unit commits"""
        stack = self._hook_stack()
        if not stack:
            return
        callbacks = stack.pop()
        if not committed:
            return
        if stack:
            stack[-1].extend(callbacks)
            return
        self._run_or_defer(callbacks)

    def _run_or_defer(self, callbacks: List[Callable[[], None]]) -> None:
        # Callbacks wait until the thread has released every row lock it holds
        if getattr(self._hooks, 'held', 0):
            self._deferred().extend(callbacks)
            return
        for callback in callbacks:
            callback()

    def _deferred(self) -> List[Callable[[], None]]:
        deferred = getattr(self._hooks, 'deferred', None)
        if deferred is None:
            deferred = []
            self._hooks.deferred = deferred
        return deferred

    def in_transaction(self) -> bool:
        """True while the current thread has an atomic unit open"""
        return bool(self._hook_stack())

    def on_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback after the current thread's outermost atomic unit commits
        and its row locks are released.

        Outside a transaction it runs as soon as no row lock is held, and it
        is dropped if the unit that registered it rolls back.
        """
        stack = self._hook_stack()
        if stack:
            stack[-1].append(callback)
        else:
            self._run_or_defer([callback])

    def _get_row_lock(self, table: str, record_id: str) -> threading.RLock:
        key = (table, record_id)
        with self._row_locks_guard:
            lock = self._row_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._row_locks[key] = lock
            return lock

    @contextmanager
    def row_lock(self, table: str, *record_ids: str):
        """
        Hold exclusive locks on one or more rows for a read-modify-write.

        Several rows are always locked in sorted order so two operations
        touching the same pair of rows cannot deadlock. Commit callbacks
        registered meanwhile run after the outermost row lock is released.
        """
        self._hooks.held = getattr(self._hooks, 'held', 0) + 1
        try:
            with ExitStack() as stack:
                for record_id in sorted(set(record_ids)):
                    stack.enter_context(self._get_row_lock(table, record_id))
                yield
        finally:
            self._hooks.held -= 1
            if not self._hooks.held:
                callbacks = self._deferred()
                self._hooks.deferred = []
                for callback in callbacks:
                    callback()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    _DELETED = None

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _pending(self) -> Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]]:
        """Write buffer of the current thread's open transaction, if any"""
        if getattr(self._local, 'savepoints', None):
            return self._local.pending
        return None

    def _rows(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's uncommitted writes"""
        self._ensure_table(table)
        rows = dict(self._data[table])
        pending = self._pending()
        if pending and table in pending:
            for record_id, record in pending[table].items():
                if record is self._DELETED:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = record
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            pending = self._pending()
            if pending is not None:
                pending.setdefault(table, {})[record_id] = self._copy(data)
            else:
                self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._rows(table).get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [self._copy(record) for record in self._rows(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            existed = record_id in self._rows(table)
            pending = self._pending()
            if pending is not None:
                pending.setdefault(table, {})[record_id] = self._DELETED
            else:
                self._data[table].pop(record_id, None)
            return existed

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._rows(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            results = []
            for record in self._rows(table).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._rows(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Open a transaction, or a savepoint if one is already open on this thread"""
        savepoints = getattr(self._local, 'savepoints', None)
        if not savepoints:
            self._local.pending = {}
            self._local.savepoints = []
        snapshot = {table: dict(rows) for table, rows in self._local.pending.items()}
        self._local.savepoints.append(snapshot)
        self._hooks_begin()

    def commit(self) -> None:
        """Commit the innermost open unit; the outermost one publishes all writes"""
        savepoints = getattr(self._local, 'savepoints', None)
        if not savepoints:
            return
        savepoints.pop()
        if not savepoints:
            with self._lock:
                for table, rows in self._local.pending.items():
                    self._ensure_table(table)
                    for record_id, record in rows.items():
                        if record is self._DELETED:
                            self._data[table].pop(record_id, None)
                        else:
                            self._data[table][record_id] = record
            self._local.pending = {}
        self._hooks_end(committed=True)

    def rollback(self) -> None:
        """Discard writes made since the innermost open unit began"""
        savepoints = getattr(self._local, 'savepoints', None)
        if not savepoints:
            return
        self._local.pending = savepoints.pop()
        if not savepoints:
            self._local.pending = {}
        self._hooks_end(committed=False)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly by begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            created_at = data.get('created_at') or now

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, created_at, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """
        Start a transaction (or a savepoint when nested).

        The connection lock stays held until the matching commit or rollback
        so other threads cannot interleave statements into this transaction.
        """
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._connection.execute("BEGIN IMMEDIATE")
            else:
                self._connection.execute(f"SAVEPOINT sp_{self._depth}")
            self._depth += 1
        except Exception:
            self._lock.release()
            raise
        self._hooks_begin()

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()
        self._hooks_end(committed=True)

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
                # Tables created inside the rolled back transaction are gone
                self._tables.clear()
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()
        self._hooks_end(committed=False)

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite:///:memory:`` for a throwaway database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    raise ValueError(f"Unsupported database URL: {database_url}")
