"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL (persistence). Records are JSON documents keyed by id.

Backends support two primitives the provisioning core depends on:
conditional (compare-and-set) updates and unique indexes on document fields.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path


_FIELD_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class StorageError(Exception):
    """Storage-layer failure (I/O, constraint, connection)"""
    pass


class UniqueConstraintViolation(StorageError):
    """A write would duplicate a value in a unique-indexed field"""

    def __init__(self, table: str, field: str, value: Any = None):
        super().__init__(f"Unique constraint violated on {table}.{field}")
        self.table = table
        self.field = field
        self.value = value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _check_field_name(field: str) -> str:
    if not _FIELD_NAME.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return field


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage (insert or replace)"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record only if no record with this id exists. Returns True if inserted."""
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
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """
        Apply changes to a record only if every field in expected still holds
        its expected value. All changes land in one write or none do.

        Returns:
            True if the record was updated, False if it is missing or a
            precondition no longer holds

        Raises:
            UniqueConstraintViolation: if the changes collide with a unique index
        """
        pass

    @abstractmethod
    def ensure_unique_index(self, table: str, field: str) -> None:
        """Enforce uniqueness of a document field across a table (nulls exempt)"""
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


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique_fields: Dict[str, List[str]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for field in self._unique_fields.get(table, []):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and other.get(field) == value:
                    raise UniqueConstraintViolation(table, field, value)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._check_unique(table, record_id, data)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record unless the id is taken"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            self.save(table, record_id, data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """Compare-and-set under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return False

            for key, value in expected.items():
                if record.get(key) != value:
                    return False

            updated = dict(record)
            updated.update(json.loads(json.dumps(changes, default=str)))
            self._check_unique(table, record_id, updated)
            self._data[table][record_id] = updated
            return True

    def ensure_unique_index(self, table: str, field: str) -> None:
        """Register a unique field; fails if existing records already collide"""
        _check_field_name(field)
        with self._lock:
            self._ensure_table(table)
            fields = self._unique_fields.setdefault(table, [])
            if field in fields:
                return

            seen = set()
            for record in self._data[table].values():
                value = record.get(field)
                if value is None:
                    continue
                if value in seen:
                    raise UniqueConstraintViolation(table, field, value)
                seen.add(value)
            fields.append(field)

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level='DEFERRED'
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._unique_indexes: Dict[str, Dict[str, str]] = {}

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        _check_field_name(table)
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
            self._connection.commit()

    def _translate_integrity_error(self, table: str, error: sqlite3.IntegrityError) -> StorageError:
        message = str(error)
        for index_name, field in self._unique_indexes.get(table, {}).items():
            if index_name in message:
                return UniqueConstraintViolation(table, field)
        if "UNIQUE" in message and self._unique_indexes.get(table):
            # Expression indexes report the index name on newer SQLite only
            field = next(iter(self._unique_indexes[table].values()))
            return UniqueConstraintViolation(table, field)
        return StorageError(f"Integrity error on {table}: {message}")

    def _write(self, table: str, sql: str, params: tuple) -> sqlite3.Cursor:
        """Execute a write and commit, rolling back on failure"""
        try:
            cursor = self._connection.execute(sql, params)
            self._connection.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            self._connection.rollback()
            raise self._translate_integrity_error(table, e) from e
        except sqlite3.Error as e:
            self._connection.rollback()
            raise StorageError(f"SQLite write to {table} failed: {e}") from e

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert on id only; unique document indexes still raise
            self._write(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record unless the id is taken"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            cursor = self._write(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
            """, (record_id, json.dumps(data, default=str), now, now))
            return cursor.rowcount == 1

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
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    @staticmethod
    def _match_clause(criteria: Dict[str, Any]) -> tuple:
        """Build a WHERE fragment comparing JSON fields (null-safe)"""
        conditions = []
        params: List[Any] = []
        for key, value in criteria.items():
            conditions.append("json_extract(data, ?) IS json_extract(?, '$')")
            params.extend([f"$.{_check_field_name(key)}", json.dumps(value, default=str)])
        return " AND ".join(conditions), params

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            where_clause, params = self._match_clause(filters)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE {where_clause}
                ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """Single UPDATE guarded by the expected field values"""
        if not changes:
            raise ValueError("conditional_update requires at least one change")

        with self._lock:
            self._ensure_table(table)

            set_args = []
            set_params: List[Any] = []
            for key, value in changes.items():
                set_args.append("?, json(?)")
                set_params.extend([f"$.{_check_field_name(key)}", json.dumps(value, default=str)])

            where_clause, where_params = self._match_clause(expected)
            sql = f"""
                UPDATE {table}
                SET data = json_set(data, {', '.join(set_args)}),
                    updated_at = ?
                WHERE id = ?
            """
            if where_clause:
                sql += f" AND {where_clause}"

            now = datetime.now(timezone.utc).isoformat()
            cursor = self._write(table, sql, (*set_params, now, record_id, *where_params))
            return cursor.rowcount == 1

    def ensure_unique_index(self, table: str, field: str) -> None:
        """Create a unique expression index on a JSON field"""
        _check_field_name(field)
        with self._lock:
            self._ensure_table(table)
            index_name = f"ux_{table}_{field}"
            self._write(table, f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {index_name}
                ON {table}(json_extract(data, '$.{field}'))
            """, ())
            self._unique_indexes.setdefault(table, {})[index_name] = field

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
            self._write(table, f"DELETE FROM {table}", ())

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend using JSONB documents"""

    def __init__(self, connection_string: str, timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.timeout = timeout
        self._connection = None
        self._lock = threading.RLock()
        self._unique_indexes: Dict[str, Dict[str, str]] = {}
        self._connect()

    def _connect(self) -> None:
        """Establish database connection with bounded connect and statement timeouts"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    pass

            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor,
                connect_timeout=max(1, int(self.timeout)),
                options=f"-c statement_timeout={int(self.timeout * 1000)}"
            )
            self._connection.autocommit = False

    def _execute(self, table: str, sql: str, params: tuple = (), fetch: str = "none", write: bool = False):
        """Run one statement in its own transaction and translate driver errors"""
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            if fetch == "one":
                result = cursor.fetchone()
            elif fetch == "all":
                result = cursor.fetchall()
            else:
                result = cursor.rowcount
            self._connection.commit()
            return result
        except self.psycopg2.errors.UniqueViolation as e:
            self._connection.rollback()
            constraint = getattr(e.diag, 'constraint_name', None) or ""
            fields = self._unique_indexes.get(table, {})
            field = fields.get(constraint) or next(iter(fields.values()), "id")
            raise UniqueConstraintViolation(table, field) from e
        except self.psycopg2.Error as e:
            self._connection.rollback()
            raise StorageError(f"PostgreSQL {'write to' if write else 'read from'} {table} failed: {e}") from e
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        _check_field_name(table)
        with self._lock:
            self._execute(table, f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """, write=True)
            self._execute(table, f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """, write=True)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            self._execute(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now), write=True)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record unless the id is taken"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            rowcount = self._execute(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
            """, (record_id, json.dumps(data, default=str), now, now), write=True)
            return rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(table, f"""
                SELECT data FROM {table} WHERE id = %s
            """, (record_id,), fetch="one")
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            rows = self._execute(table, f"""
                SELECT data FROM {table} ORDER BY created_at
            """, fetch="all")
            return [dict(row['data']) for row in rows]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(table, f"""
                SELECT 1 FROM {table} WHERE id = %s LIMIT 1
            """, (record_id,), fetch="one")
            return row is not None

    @staticmethod
    def _match_clause(criteria: Dict[str, Any]) -> tuple:
        """JSONB equality per field; a missing key compares as JSON null"""
        conditions = []
        params: List[Any] = []
        for key, value in criteria.items():
            conditions.append("COALESCE(data -> %s, 'null'::jsonb) = %s::jsonb")
            params.extend([_check_field_name(key), json.dumps(value, default=str)])
        return " AND ".join(conditions), params

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            where_clause, params = self._match_clause(filters)
            rows = self._execute(table, f"""
                SELECT data FROM {table}
                WHERE {where_clause}
                ORDER BY created_at
            """, tuple(params), fetch="all")
            return [dict(row['data']) for row in rows]

    def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """Single UPDATE merging changes into the document when expectations hold"""
        if not changes:
            raise ValueError("conditional_update requires at least one change")

        with self._lock:
            self._ensure_table(table)
            sql = f"""
                UPDATE {table}
                SET data = data || %s::jsonb, updated_at = %s
                WHERE id = %s
            """
            params: List[Any] = [
                json.dumps(changes, default=str), datetime.now(timezone.utc), record_id
            ]
            where_clause, where_params = self._match_clause(expected)
            if where_clause:
                sql += f" AND {where_clause}"
                params.extend(where_params)

            rowcount = self._execute(table, sql, tuple(params), write=True)
            return rowcount == 1

    def ensure_unique_index(self, table: str, field: str) -> None:
        """Create a unique expression index on a JSONB field"""
        _check_field_name(field)
        with self._lock:
            self._ensure_table(table)
            index_name = f"ux_{table}_{field}"
            self._execute(table, f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {index_name}
                ON {table} ((data ->> '{field}'))
            """, write=True)
            self._unique_indexes.setdefault(table, {})[index_name] = field

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(table, f"""
                SELECT COUNT(*) as count FROM {table}
            """, fetch="one")
            return row['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(table, f"DELETE FROM {table}", write=True)

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    pass
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:``, ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
