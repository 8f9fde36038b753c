"""
Storage Backend Module

Persistence boundary for loans, installments, payments, late-fee history and
audit events. Records are JSON documents keyed by id within a table; all
monetary values inside them are Decimal strings. Two backends are provided:
an in-memory one for tests and SQLite for persistence.

Rows come back in insertion order. Payment replay and the audit hash chain
both depend on that.

Loan rows carry an integer version; save_versioned refuses a write whose
expected version no longer matches the stored row.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import threading

from .exceptions import ConcurrentModificationError, RecordExistsError


LOANS_TABLE = "loans"
INSTALLMENTS_TABLE = "installments"
PAYMENTS_TABLE = "payments"
FEE_HISTORY_TABLE = "late_fee_history"
AUDIT_TABLE = "audit_events"


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(record, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Document store shared by the servicer, the history store and the audit trail"""

    _lock: threading.RLock
    _atomic_depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, or replace it in place keeping its position"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record of a table, oldest first"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value, oldest first"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """
        Save a record that must not already exist

        Raises:
            RecordExistsError: If record_id is already stored in table
        """
        with self._lock:
            if self.exists(table, record_id):
                raise RecordExistsError(f"Record {record_id} already exists in {table}")
            self.save(table, record_id, data)

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any], expected_version: int) -> int:
        """
        Save a record only if its stored version equals expected_version

        A missing record is treated as version 0. The written record carries
        expected_version + 1, which is returned.

        Raises:
            ConcurrentModificationError: If the stored version has moved on
        """
        with self._lock:
            stored = self.load(table, record_id)
            stored_version = stored.get('version', 0) if stored else 0
            if stored_version != expected_version:
                raise ConcurrentModificationError(
                    f"{table}/{record_id} is at version {stored_version}, expected {expected_version}"
                )
            new_version = expected_version + 1
            self.save(table, record_id, dict(data, version=new_version))
            return new_version

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Run a block as one transaction, rolled back if it raises

        A block opened inside another joins the outer transaction.
        """
        with self._lock:
            if self._atomic_depth:
                self._atomic_depth += 1
                try:
                    yield
                finally:
                    self._atomic_depth -= 1
                return

            self._atomic_depth = 1
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise
            finally:
                self._atomic_depth = 0


class InMemoryStorage(StorageInterface):
    """
    In-memory backend for tests

    Records are copied on the way in and out. A transaction keeps a JSON
    snapshot of all tables to restore on rollback.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[str] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(r) for r in self._table(table).values() if _matches(r, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = json.dumps(self._tables)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._tables = json.loads(self._snapshot)
                self._snapshot = None


class SQLiteStorage(StorageInterface):
    """
    SQLite backend

    One table per record type: an autoincrement seq for insertion order, the
    record id, the owning loan id (indexed, since installments, payments and
    history are always read per loan) and the JSON document.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Transaction boundaries come from begin_transaction/commit/rollback
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    loan_id TEXT,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_loan_id ON {table} (loan_id)")
            self._autocommit()
            self._known_tables.add(table)

    def _query(self, table: str, where: str = "", params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT data FROM {table} {where}", params).fetchall()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            loan_id = data.get('loan_id') if table != LOANS_TABLE else record_id

            # On conflict seq and created_at stay, so the row keeps its position
            self._connection.execute(f"""
                INSERT INTO {table} (id, loan_id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    loan_id = excluded.loan_id,
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, loan_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(table, "WHERE id = ?", (record_id,))
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return [json.loads(row['data']) for row in self._query(table, "ORDER BY seq")]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Loan id filters run in SQL; the rest are matched on the decoded documents"""
        if table != LOANS_TABLE and 'loan_id' in filters:
            rows = self._query(table, "WHERE loan_id = ? ORDER BY seq", (filters['loan_id'],))
            records = [json.loads(row['data']) for row in rows]
        else:
            records = self.load_all(table)
        return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def begin_transaction(self) -> None:
        with self._lock:
            # sqlite3 issues BEGIN itself before the next write
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # A table created inside the transaction may be gone
                self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supports sqlite:///path, sqlite:///:memory: and memory://
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
