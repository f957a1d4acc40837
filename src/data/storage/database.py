"""SQLite-backed transactional key-value store.

This module provides the KeyValueStore class, an ordered string-key to
bytes-value store with explicit transactions, used by the portfolio store
to persist user allocations.

File databases use one connection per thread in WAL mode, so readers never
block. SQLite holds a single writer lock per database, so write transactions
are serialized even when they touch different keys; the busy timeout makes a
writer wait for the lock instead of failing. An empty path opens a
private in-memory database shared by all threads through a single connection
guarded by a lock.
"""

import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from src.utils.exceptions import StorageError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class Transaction:
    """Key-value operations bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection, writable: bool):
        self._conn = conn
        self.writable = writable

    def get(self, key: str) -> Optional[bytes]:
        """Return the value for key, or None if absent."""
        row = self._execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else bytes(row[0])

    def exists(self, key: str) -> bool:
        row = self._execute("SELECT 1 FROM kv WHERE key = ?", (key,)).fetchone()
        return row is not None

    def set(self, key: str, value: bytes) -> None:
        self._require_writable()
        self._execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, sqlite3.Binary(value)),
        )

    def delete(self, key: str) -> None:
        """Delete key. Deleting an absent key is not an error."""
        self._require_writable()
        self._execute("DELETE FROM kv WHERE key = ?", (key,))

    def scan_prefix(self, prefix: str) -> List[Tuple[str, bytes]]:
        """Return every (key, value) pair whose key starts with prefix."""
        rows = self._execute(
            "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
        return [(key, bytes(value)) for key, value in rows]

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix and return the count."""
        self._require_writable()
        cursor = self._execute(
            "DELETE FROM kv WHERE substr(key, 1, ?) = ?", (len(prefix), prefix)
        )
        return cursor.rowcount

    def _require_writable(self) -> None:
        if not self.writable:
            raise StorageError("Cannot modify keys in a read-only transaction")

    def _execute(self, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"Key-value operation failed: {e}") from e


class KeyValueStore:
    """Manages the SQLite key-value table.

    Attributes:
        db_path: Path to the SQLite database file, or "" for in-memory.

    Example:
        >>> kv = KeyValueStore("data/portfolios.db")
        >>> with kv.transaction(write=True) as txn:
        ...     txn.set("42_finished", b"")
    """

    def __init__(self, db_path: Optional[str] = None, timeout: float = 5.0):
        """Initialize key-value store.

        Args:
            db_path: Path to the SQLite database file. None, "" or ":memory:"
                keep the data in memory for the lifetime of this object.
            timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = db_path or ""
        self.timeout = timeout
        self.in_memory = self.db_path in ("", ":memory:")
        self._local = threading.local()
        self._memory_lock = threading.RLock()
        self._shared_connection: Optional[sqlite3.Connection] = None

        if self.in_memory:
            self._shared_connection = self._connect(":memory:")
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.create_tables()

    def _connect(self, target: str) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                target,
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open key-value store at {target}: {e}") from e
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get the shared in-memory connection or a thread-local one."""
        if self._shared_connection is not None:
            return self._shared_connection
        if not hasattr(self._local, "connection"):
            self._local.connection = self._connect(self.db_path)
        return self._local.connection

    def create_tables(self) -> None:
        """Create the kv table if it doesn't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        try:
            schema = schema_path.read_text(encoding="utf-8")
            conn = self._get_connection()
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(schema)
            logger.info("Key-value store initialized at %s", self.db_path or ":memory:")
        except (OSError, sqlite3.Error) as e:
            logger.error("Failed to create tables: %s", e)
            raise StorageError(f"Key-value store initialization failed: {e}") from e

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[Transaction]:
        """Open a transaction that commits on success and rolls back on error.

        Write transactions take SQLite's reserved lock up front
        (BEGIN IMMEDIATE), so conflicting writers are serialized instead of
        failing on upgrade.

        Args:
            write: Whether the transaction may modify keys

        Yields:
            Transaction bound to the open transaction

        Raises:
            StorageError: If the transaction cannot begin or commit
        """
        conn = self._get_connection()
        guard = self._memory_lock if self.in_memory else nullcontext()
        with guard:
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to begin transaction: {e}") from e

            try:
                yield Transaction(conn, writable=write)
            except BaseException:
                self._rollback(conn)
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                logger.error("Failed to commit transaction: %s", e)
                raise StorageError(f"Failed to commit transaction: {e}") from e

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error("Rollback failed: %s", e)

    def close(self) -> None:
        """Close the calling thread's connection, or the in-memory database.

        Connections of other threads are released when those threads exit.
        """
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection
