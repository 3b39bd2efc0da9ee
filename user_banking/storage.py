"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Every mutation sequence runs inside an atomic unit of
work that commits entirely or not at all. All monetary values stored as
Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Raised when the storage backend fails"""


class UniqueConstraintError(StorageError):
    """Raised when a write violates a unique constraint"""

    def __init__(self, table: str, field: Optional[str] = None):
        self.table = table
        self.field = field
        target = f"{table}.{field}" if field else table
        super().__init__(f"unique constraint violated on {target}")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Insert or update a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: int) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value, ordered by id"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def next_id(self, table: str) -> int:
        """Allocate the next record id for a table"""
        pass

    @abstractmethod
    def add_unique_constraint(self, table: str, field: str) -> None:
        """Reject writes that duplicate ``field`` across records of ``table``"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit current unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard every write of the current unit of work"""
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
        self.commit()


class _UnitOfWork:
    """
    Nesting bookkeeping shared by the backends.

    The unit lock is held from the outermost begin until its commit or
    rollback, so concurrent units against the same store run one at a time.
    A failure inside a nested unit marks the whole unit rollback-only.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.depth = 0
        self.rollback_only = False

    def enter(self) -> bool:
        """Returns True when this call opened the outermost unit"""
        self.lock.acquire()
        self.depth += 1
        if self.depth == 1:
            self.rollback_only = False
            return True
        return False

    def leave(self) -> None:
        self.depth -= 1
        self.lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._unique: Dict[str, Set[str]] = {}
        self._unit = _UnitOfWork()
        self._lock = self._unit.lock
        self._snapshot: Optional[Dict[str, Dict[int, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_unique(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        for field in self._unique.get(table, ()):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and other.get(field) == value:
                    raise UniqueConstraintError(table, field)

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            record = json.loads(json.dumps(data, default=str))
            self._check_unique(table, record_id, record)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(self._data[table][key]))
                    for key in sorted(self._data[table])]

    def delete(self, table: str, record_id: int) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for key in sorted(self._data[table]):
                record = self._data[table][key]
                match = True
                for field, value in filters.items():
                    if field not in record or record[field] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def next_id(self, table: str) -> int:
        """Allocate the next id; sequences are not rolled back"""
        with self._lock:
            self._sequences[table] = self._sequences.get(table, 0) + 1
            return self._sequences[table]

    def add_unique_constraint(self, table: str, field: str) -> None:
        """Register a unique field, refusing it if existing rows already collide"""
        with self._lock:
            self._ensure_table(table)
            seen = set()
            for record in self._data[table].values():
                value = record.get(field)
                if value is None:
                    continue
                if value in seen:
                    raise UniqueConstraintError(table, field)
                seen.add(value)
            self._unique.setdefault(table, set()).add(field)

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Start a unit of work, snapshotting all tables for rollback"""
        if self._unit.enter():
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        """Commit current unit of work"""
        try:
            if self._unit.depth == 1:
                if self._unit.rollback_only:
                    self._restore_snapshot()
                    raise StorageError("unit of work was marked rollback-only")
                self._snapshot = None
        finally:
            self._unit.leave()

    def rollback(self) -> None:
        """Restore the snapshot taken when the unit began"""
        try:
            if self._unit.depth == 1:
                self._restore_snapshot()
            else:
                self._unit.rollback_only = True
        finally:
            self._unit.leave()

    def _restore_snapshot(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue explicit BEGIN IMMEDIATE/COMMIT
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._unit = _UnitOfWork()
        self._lock = self._unit.lock
        self._tables: Set[str] = set()
        self._unique: Dict[str, Set[str]] = {}

        with self._lock:
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("PRAGMA busy_timeout = 5000")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._tables.add(table)

    def _execute(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError as e:
            message = str(e)
            if "UNIQUE constraint failed" in message:
                field = next((f for f in self._unique.get(table, ())
                              if f"ux_{table}_{f}" in message), None)
                raise UniqueConstraintError(table, field) from e
            raise StorageError(message) from e
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert on id only, so unique index violations still raise
            self._execute(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(table, f"""
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
            cursor = self._execute(table, f"""
                SELECT data FROM {table} ORDER BY id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: int) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(table, f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(table, f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON field extraction"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for field, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{field}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._execute(table, f"""
                SELECT data FROM {table} {where_clause} ORDER BY id
            """, tuple(params))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(table, f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def next_id(self, table: str) -> int:
        """Allocate the next id from the sequences table"""
        with self._lock:
            self._execute("_sequences", """
                INSERT INTO _sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (table,))
            cursor = self._execute("_sequences", """
                SELECT value FROM _sequences WHERE name = ?
            """, (table,))
            return cursor.fetchone()['value']

    def add_unique_constraint(self, table: str, field: str) -> None:
        """Create a unique expression index over a JSON field"""
        with self._lock:
            self._ensure_table(table)
            self._execute(table, f"""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            self._unique.setdefault(table, set()).add(field)

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(table, f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock up front"""
        if self._unit.enter():
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                self._unit.leave()
                raise StorageError(str(e)) from e

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            if self._unit.depth == 1:
                if self._unit.rollback_only:
                    self._connection.execute("ROLLBACK")
                    self._tables.clear()
                    raise StorageError("unit of work was marked rollback-only")
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error as e:
                    self._connection.execute("ROLLBACK")
                    self._tables.clear()
                    raise StorageError(str(e)) from e
        finally:
            self._unit.leave()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            if self._unit.depth == 1:
                if self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
                # Tables created inside the unit are gone again
                self._tables.clear()
            else:
                self._unit.rollback_only = True
        finally:
            self._unit.leave()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str, database_path: str = ":memory:") -> StorageInterface:
    """Build a storage backend by name"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
