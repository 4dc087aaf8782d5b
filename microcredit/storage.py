"""
Storage Backend Module

Provides the document-store interface the ledgers persist through, with
in-memory (testing) and SQLite (persistence) implementations. All monetary
values are stored as Decimal strings.

Every document carries a ``_version`` counter bumped on each write. Balance
mutations go through :meth:`StorageInterface.run_transaction`, an optimistic
read-modify-write that re-validates the versions it read before applying
its buffered writes, and retries the callback on conflict.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager, nullcontext

from .errors import ConcurrencyError, NotFoundError, RemoteIOError
from .logging_config import get_logger, log_action


VERSION_FIELD = "_version"

T = TypeVar("T")

logger = get_logger("microcredit.storage")


def _copy(data: Any) -> Any:
    """Deep copy through JSON so callers never share mutable state"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Document store the ledgers persist through"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (create or replace) a document, bumping its version"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """The document, or None when absent"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every document in ``table``"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a document; False if there was nothing to remove"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find documents whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        """Open a backend transaction; backends without one ignore it"""
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    def _transaction_lock(self):
        """Lock held for the whole of an atomic block"""
        return nullcontext()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Apply every write in the block, or none of them"""
        with self._transaction_lock():
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise

    def version_of(self, table: str, record_id: str) -> int:
        """Current version of a document, 0 when absent"""
        data = self.load(table, record_id)
        if data is None:
            return 0
        return int(data.get(VERSION_FIELD, 0))

    def array_union(self, table: str, record_id: str, field: str, values: List[Any]) -> None:
        """
        Append values to an array field, skipping values already present.

        The read and the write happen inside one atomic block so concurrent
        appenders never drop each other's entries.
        """
        with self.atomic():
            data = self.load(table, record_id)
            if data is None:
                raise NotFoundError(f"{table}/{record_id} not found")
            current = list(data.get(field) or [])
            for value in _copy(values):
                if value not in current:
                    current.append(value)
            data[field] = current
            self.save(table, record_id, data)

    def run_transaction(self, fn: Callable[['StorageTransaction'], T],
                        max_attempts: int = 5) -> T:
        """
        Run ``fn`` inside an optimistic transaction, retrying on conflict.

        ``fn`` receives a :class:`StorageTransaction`; its writes are buffered
        and only applied if none of the documents it read changed meanwhile.
        Exceptions raised by ``fn`` abort the attempt without writing.

        Raises:
            ConcurrencyError: if every attempt conflicted
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, max_attempts + 1):
            txn = StorageTransaction(self)
            result = fn(txn)
            try:
                txn.commit()
                return result
            except ConcurrencyError as e:
                if attempt == max_attempts:
                    log_action(logger, "error", f"Transaction abandoned after {attempt} attempts",
                               action="transaction_exhausted", extra={"conflicts": str(e)})
                    raise
                log_action(logger, "warning", f"Transaction conflict, retrying (attempt {attempt})",
                           action="transaction_retry", extra={"conflicts": str(e)})
        raise AssertionError("unreachable")


class StorageTransaction:
    """
    Buffered read-modify-write over a storage backend.

    Reads record the version they observed; writes are staged until
    :meth:`commit`, which applies them only if every observed version is
    still current.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._reads: Dict[Tuple[str, str], int] = {}
        self._writes: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._committed = False

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        key = (table, record_id)
        if key in self._writes:
            staged = self._writes[key]
            return _copy(staged) if staged is not None else None
        data = self.storage.load(table, record_id)
        if key not in self._reads:
            self._reads[key] = int(data.get(VERSION_FIELD, 0)) if data else 0
        return data

    def set(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._writes[(table, record_id)] = _copy(data)

    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> None:
        current = self.get(table, record_id)
        if current is None:
            raise NotFoundError(f"{table}/{record_id} not found")
        current.update(_copy(fields))
        self._writes[(table, record_id)] = current

    def delete(self, table: str, record_id: str) -> None:
        self._writes[(table, record_id)] = None

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Transaction already committed")
        with self.storage.atomic():
            conflicts = []
            for (table, record_id), seen in self._reads.items():
                if self.storage.version_of(table, record_id) != seen:
                    conflicts.append(f"{table}/{record_id}")
            if conflicts:
                raise ConcurrencyError(f"Concurrent modification of {', '.join(conflicts)}")

            for (table, record_id), data in self._writes.items():
                if data is None:
                    self.storage.delete(table, record_id)
                else:
                    self.storage.save(table, record_id, data)
        self._committed = True


class InMemoryStorage(StorageInterface):
    """Dict-backed store used by the tests and ``memory://`` URLs"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._depth = 0

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _transaction_lock(self):
        return self._lock

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Store a private copy and bump its version"""
        with self._lock:
            self._ensure_table(table)
            record = _copy(data)
            previous = self._data[table].get(record_id)
            record[VERSION_FIELD] = int(previous.get(VERSION_FIELD, 0)) + 1 if previous else 1
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values() if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Snapshot the data on the outermost begin"""
        with self._lock:
            if self._depth == 0:
                self._snapshot = _copy(self._data)
            self._depth += 1

    def commit(self) -> None:
        """Close one nesting level; the outermost one makes the writes final"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken by the outermost begin"""
        with self._lock:
            if self._depth == 0:
                return
            if self._snapshot is not None:
                self._data = self._snapshot
            self._snapshot = None
            self._depth = 0

    def close(self) -> None:
        """Nothing to release"""
        pass


class SQLiteStorage(StorageInterface):
    """
    One JSON document per row, keyed by id, in a table per collection.
    A single connection is shared behind an RLock.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        try:
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        except sqlite3.Error as e:
            raise RemoteIOError(f"Cannot open database {self.db_path}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        # WAL lets readers proceed while a writer holds BEGIN IMMEDIATE
        if self.db_path != ":memory:":
            with self._guard():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Serialize access and surface driver failures as RemoteIOError"""
        with self._lock:
            if self._connection is None:
                raise RemoteIOError("Storage connection is closed")
            try:
                yield
            except sqlite3.Error as e:
                raise RemoteIOError(f"SQLite operation failed: {e}") from e

    def _transaction_lock(self):
        return self._lock

    def _ensure_table(self, table: str) -> None:
        """Create the collection table on first use"""
        if table in self._tables:
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
        self._tables.add(table)

    def _load_row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        cursor = self._connection.execute(f"""
            SELECT data FROM {table} WHERE id = ?
        """, (record_id,))
        row = cursor.fetchone()
        if row:
            return json.loads(row['data'])
        return None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard():
            self._ensure_table(table)

            previous = self._load_row(table, record_id)
            record = _copy(data)
            record[VERSION_FIELD] = int(previous.get(VERSION_FIELD, 0)) + 1 if previous else 1

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(record, default=str)

            # created_at survives replacement
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            return self._load_row(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            records = (json.loads(row['data']) for row in cursor.fetchall())
            return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._guard():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a write transaction on the outermost begin"""
        with self._guard():
            if self._depth == 0:
                self._connection.execute("BEGIN IMMEDIATE")
            self._depth += 1

    def commit(self) -> None:
        """Close one nesting level; the outermost one makes the writes final"""
        with self._guard():
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")

    def rollback(self) -> None:
        """Abandon the whole outermost transaction"""
        with self._guard():
            if self._depth == 0:
                return
            self._depth = 0
            self._connection.execute("ROLLBACK")
            # Tables created inside the rolled-back transaction are gone
            self._tables.clear()

    def close(self) -> None:
        """Release the connection; later calls raise RemoteIOError"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported: ``memory://``, ``sqlite://`` (in-memory SQLite) and
    ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
