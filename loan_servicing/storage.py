"""
Storage Backend Module

The storage port used by the loan servicing core and two adapters: in-memory
(testing) and SQLite (single-node persistence). Records are JSON documents
keyed by table and id; monetary values are stored as Decimal strings.

Loan aggregates are written with ``save_many``, which commits several records
at once and rejects the whole write when a guarded record's ``version`` has
moved since it was read.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple, Set
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrencyConflictError


# (table, record_id, data)
RecordWrite = Tuple[str, str, Dict[str, Any]]
# (table, record_id) -> version the stored record must still carry; 0 means absent
VersionGuards = Dict[Tuple[str, str], int]

_TABLE_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def stored_version(record: Optional[Dict[str, Any]]) -> int:
    """Version carried by a stored record, 0 when it does not exist"""
    if record is None:
        return 0
    return int(record.get('version', 0))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def _encode(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=str)


class StorageInterface(ABC):
    """Document store the core persists loans, installments and payments in"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace one record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """One record, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
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

    @abstractmethod
    def save_many(
        self,
        writes: List[RecordWrite],
        expected_versions: Optional[VersionGuards] = None
    ) -> None:
        """
        Atomically save several records.

        Args:
            writes: Records to save
            expected_versions: Optimistic guards checked before anything is written

        Raises:
            ConcurrencyConflictError: If a guarded record's version has changed
        """
        pass

    def _check_versions(self, expected_versions: Optional[VersionGuards]) -> None:
        for (table, record_id), expected in (expected_versions or {}).items():
            actual = stored_version(self.load(table, record_id))
            if actual != expected:
                raise ConcurrencyConflictError(
                    f"{table}/{record_id} is at version {actual}, expected {expected}"
                )


class InMemoryStorage(StorageInterface):
    """Dictionary-backed storage for tests; records are held as JSON text so callers never share state"""

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, str]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _encode(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._table(table).get(record_id)
        return json.loads(raw) if raw is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self._table(table).values())
        return [json.loads(raw) for raw in rows]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def save_many(
        self,
        writes: List[RecordWrite],
        expected_versions: Optional[VersionGuards] = None
    ) -> None:
        """Check every guard, then write everything under one lock"""
        # Encode first so a bad payload fails before anything is stored
        encoded = [(table, record_id, _encode(data)) for table, record_id, data in writes]
        with self._lock:
            self._check_versions(expected_versions)
            for table, record_id, raw in encoded:
                self._table(table)[record_id] = raw

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage for single-node deployments

    Each table holds the JSON document plus its ``version`` in a column, so
    version guards and field filters run in SQL.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit; multi-record writes open their own transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: Set[str] = set()

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table}")
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                version = excluded.version,
                updated_at = excluded.updated_at
        """, (record_id, _encode(data), stored_version(data), now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._write(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, id"
            ).fetchall()
        return [json.loads(row['data']) for row in rows]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Scalar filters run in SQL through json_extract; the decoded rows are checked again in Python"""
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            if not _TABLE_NAME.match(key):
                raise ValueError(f"Invalid filter field: {key}")
            if isinstance(value, (str, int, float)) or value is None:
                clauses.append(f"json_extract(data, '$.{key}') IS ?")
                params.append(value)
            else:
                clauses.append(f"json_type(data, '$.{key}') IS NOT NULL")

        with self._lock:
            self._ensure_table(table)
            where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            rows = self._connection.execute(
                f"SELECT data FROM {table}{where} ORDER BY created_at, id", params
            ).fetchall()
        records = (json.loads(row['data']) for row in rows)
        return [record for record in records if _matches(record, filters)]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
        return row is not None

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def _check_versions(self, expected_versions: Optional[VersionGuards]) -> None:
        for (table, record_id), expected in (expected_versions or {}).items():
            row = self._connection.execute(
                f"SELECT version FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            actual = row['version'] if row else 0
            if actual != expected:
                raise ConcurrencyConflictError(
                    f"{table}/{record_id} is at version {actual}, expected {expected}"
                )

    @contextmanager
    def atomic(self):
        """Run the block in one IMMEDIATE transaction, rolled back on any error"""
        with self._lock:
            if self._in_transaction:
                yield
                return
            self._connection.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
            except Exception:
                self._connection.execute("ROLLBACK")
                # Tables created inside the block are gone too
                self._tables.clear()
                raise
            else:
                self._connection.execute("COMMIT")
            finally:
                self._in_transaction = False

    def save_many(
        self,
        writes: List[RecordWrite],
        expected_versions: Optional[VersionGuards] = None
    ) -> None:
        """Check guards and write inside a single SQLite transaction"""
        with self._lock:
            tables = {table for table, _, _ in writes} | {table for table, _ in (expected_versions or {})}
            for table in tables:
                self._ensure_table(table)
            with self.atomic():
                self._check_versions(expected_versions)
                for table, record_id, data in writes:
                    self._write(table, record_id, data)

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path.db`` gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
