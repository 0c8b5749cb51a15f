"""Persistent item storage.

Every backend implements the same small contract: an insert-or-reset keyed by
``(configuration, identifier)``, predicate-guarded and unguarded updates that
report how many rows they changed, and ordered selects and counts. The queue
relies on ``conditional_update`` being atomic with respect to every other
write on the same key.
"""

import json
import os
import sqlite3
import sys
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from loguru import logger

from .exceptions import CorruptRecord, StoreUnavailable
from .models import COLUMNS, Config, ItemKey, ItemState
from .predicates import MATCH_ALL, Predicate, key_equals

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

Row = Dict[str, Any]

UPDATABLE_COLUMNS = ("timestamp", "state", "message", "data", "hash")


def _check_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(UPDATABLE_COLUMNS)
    if unknown:
        raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
    return {name: value.value if isinstance(value, ItemState) else value for name, value in fields.items()}


class Store(ABC):
    """Contract between the queue and its persistence backend."""

    @abstractmethod
    def upsert_reset(self, key: ItemKey, data: str, timestamp: int) -> int:
        """Insert ``key`` as PENDING, or reset the existing row to PENDING."""

    @abstractmethod
    def conditional_update(self, key: ItemKey, predicate: Predicate, fields: Dict[str, Any]) -> int:
        """Apply ``fields`` to ``key`` only if the row also matches ``predicate``."""

    @abstractmethod
    def unconditional_update(self, key: ItemKey, fields: Dict[str, Any]) -> int:
        """Apply ``fields`` to ``key``."""

    @abstractmethod
    def select_where(
        self,
        predicate: Predicate = MATCH_ALL,
        order_by: str = "timestamp",
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Return matching rows in ascending ``order_by`` order."""

    @abstractmethod
    def count_where(self, predicate: Predicate = MATCH_ALL) -> int:
        """Count matching rows."""


class SqliteStore(Store):
    """SQLite-backed store. Safe across threads and processes sharing one file."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS queue_item (
            configuration TEXT NOT NULL,
            identifier TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            state INTEGER NOT NULL,
            message TEXT NOT NULL DEFAULT '',
            data TEXT NOT NULL DEFAULT '{}',
            hash TEXT NOT NULL DEFAULT '',
            UNIQUE (configuration, identifier)
        );
        CREATE INDEX IF NOT EXISTS queue_item_state ON queue_item (state, timestamp);
        CREATE INDEX IF NOT EXISTS queue_item_hash ON queue_item (hash);
    """

    def __init__(self, path: str, timeout: float = 30.0):
        self.path = str(path)
        self.timeout = timeout
        with self._connection() as conn:
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connection(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a short-lived connection.

        Writes run inside ``BEGIN IMMEDIATE`` so the write lock is taken up
        front (waiting up to ``timeout``) instead of being upgraded mid-statement.
        """
        try:
            with closing(sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)) as conn:
                conn.row_factory = sqlite3.Row
                if not write:
                    yield conn
                    return
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()
        except (sqlite3.OperationalError, sqlite3.InterfaceError) as exc:
            raise StoreUnavailable(f"SQLite store {self.path} failed: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            raise CorruptRecord(f"SQLite store {self.path} is unreadable: {exc}") from exc

    def upsert_reset(self, key: ItemKey, data: str, timestamp: int) -> int:
        sql = """
            INSERT INTO queue_item (configuration, identifier, timestamp, state, message, data, hash)
            VALUES (?, ?, ?, ?, '', ?, '')
            ON CONFLICT (configuration, identifier) DO UPDATE SET
                timestamp = excluded.timestamp,
                state = excluded.state,
                message = '',
                data = excluded.data,
                hash = ''
        """
        with self._connection(write=True) as conn:
            cursor = conn.execute(
                sql, (key.configuration, key.identifier, timestamp, ItemState.PENDING.value, data)
            )
            return cursor.rowcount

    def _update(self, predicate: Predicate, fields: Dict[str, Any]) -> int:
        fields = _check_fields(fields)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        where, params = predicate.to_sql()
        sql = f"UPDATE queue_item SET {assignments} WHERE {where}"
        with self._connection(write=True) as conn:
            cursor = conn.execute(sql, list(fields.values()) + params)
            return cursor.rowcount

    def conditional_update(self, key: ItemKey, predicate: Predicate, fields: Dict[str, Any]) -> int:
        return self._update(key_equals(*key) & predicate, fields)

    def unconditional_update(self, key: ItemKey, fields: Dict[str, Any]) -> int:
        return self._update(key_equals(*key), fields)

    def select_where(
        self,
        predicate: Predicate = MATCH_ALL,
        order_by: str = "timestamp",
        limit: Optional[int] = None,
    ) -> List[Row]:
        if order_by not in COLUMNS:
            raise ValueError(f"Unknown column: {order_by}")
        where, params = predicate.to_sql()
        sql = f"SELECT {', '.join(COLUMNS)} FROM queue_item WHERE {where} ORDER BY {order_by} ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._connection() as conn:
            return [dict(row) for row in conn.execute(sql, params)]

    def count_where(self, predicate: Predicate = MATCH_ALL) -> int:
        where, params = predicate.to_sql()
        with self._connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM queue_item WHERE {where}", params).fetchone()[0]


class JsonFileStore(Store):
    """File-based store for items with locking.

    All rows live in one JSON document. Every operation holds an exclusive OS
    lock on a sidecar lock file for its whole read-modify-write cycle, which
    linearizes writers across threads and processes.
    """

    def __init__(self, data_dir: str = ".crawlqueue"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.items_file = self.data_dir / "items.json"
        self.lock_file = self.data_dir / "items.lock"

        with self._locked():
            if not self.items_file.exists():
                self._write_json([])

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store-wide exclusive lock."""
        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot open lock file {self.lock_file}: {exc}") from exc
        try:
            try:
                if sys.platform == "win32":
                    # Windows locking
                    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                else:
                    # Unix locking
                    fcntl.flock(fd, fcntl.LOCK_EX)
            except OSError as exc:
                raise StoreUnavailable(f"Cannot lock {self.lock_file}: {exc}") from exc
            try:
                yield
            finally:
                if sys.platform == "win32":
                    os.lseek(fd, 0, os.SEEK_SET)
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _write_json(self, rows: List[Row]) -> None:
        """Write rows to the JSON file with atomic replace."""
        temp_file = self.items_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(rows, f, indent=2)
            temp_file.replace(self.items_file)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot write {self.items_file}: {exc}") from exc

    def _read_json(self) -> List[Row]:
        """Read all rows."""
        try:
            with open(self.items_file, "r") as f:
                rows = json.load(f)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as exc:
            raise CorruptRecord(f"{self.items_file} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise StoreUnavailable(f"Cannot read {self.items_file}: {exc}") from exc
        if not isinstance(rows, list):
            raise CorruptRecord(f"{self.items_file} does not hold a list of rows")
        return rows

    def upsert_reset(self, key: ItemKey, data: str, timestamp: int) -> int:
        reset = {
            "timestamp": timestamp,
            "state": ItemState.PENDING.value,
            "message": "",
            "data": data,
            "hash": "",
        }
        with self._locked():
            rows = self._read_json()
            match = key_equals(*key)
            for row in rows:
                if match.matches(row):
                    row.update(reset)
                    break
            else:
                rows.append({"configuration": key.configuration, "identifier": key.identifier, **reset})
            self._write_json(rows)
        return 1

    def _update(self, predicate: Predicate, fields: Dict[str, Any]) -> int:
        fields = _check_fields(fields)
        with self._locked():
            rows = self._read_json()
            changed = 0
            for row in rows:
                if predicate.matches(row):
                    row.update(fields)
                    changed += 1
            if changed:
                self._write_json(rows)
        return changed

    def conditional_update(self, key: ItemKey, predicate: Predicate, fields: Dict[str, Any]) -> int:
        return self._update(key_equals(*key) & predicate, fields)

    def unconditional_update(self, key: ItemKey, fields: Dict[str, Any]) -> int:
        return self._update(key_equals(*key), fields)

    def select_where(
        self,
        predicate: Predicate = MATCH_ALL,
        order_by: str = "timestamp",
        limit: Optional[int] = None,
    ) -> List[Row]:
        if order_by not in COLUMNS:
            raise ValueError(f"Unknown column: {order_by}")
        with self._locked():
            rows = self._read_json()
        # sorted() is stable, so ties keep insertion order
        result = sorted((row for row in rows if predicate.matches(row)), key=lambda row: row[order_by])
        if limit is not None:
            result = result[: int(limit)]
        return result

    def count_where(self, predicate: Predicate = MATCH_ALL) -> int:
        with self._locked():
            rows = self._read_json()
        return sum(1 for row in rows if predicate.matches(row))


def create_store(config: Config) -> Store:
    """Build the store selected by ``config.backend``."""
    if config.backend == "json":
        store: Store = JsonFileStore(config.data_dir)
    else:
        Path(config.data_dir).mkdir(parents=True, exist_ok=True)
        store = SqliteStore(str(Path(config.data_dir) / "queue.db"), timeout=config.sqlite_timeout)
    logger.debug("Using {} store in {}", config.backend, config.data_dir)
    return store
