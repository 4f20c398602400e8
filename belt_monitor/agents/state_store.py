"""
State Store — the key-value backend behind the cursor store and dedup ledger.

Backends:
  - MemoryStateStore: volatile, lost on restart.
  - SqliteStateStore: durable, a single ``kv`` table at the configured path.

Both support get/set/exists/expire plus the two atomic primitives the dedup
protocol needs: set-if-absent (with TTL) and set-if-greater.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from belt_monitor.errors import StateStoreUnavailable

log = logging.getLogger(__name__)

Clock = Callable[[], float]

# Minimum spacing between sweeps of expired keys on write
PURGE_INTERVAL_SECONDS = 60.0


class StateStore:
    """Interface shared by all backends. Values are strings; TTLs are seconds."""

    durable = False

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def expire(self, key: str, ttl: float) -> bool:
        """Give an existing key a new TTL. Returns False if the key is missing."""
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str, ttl: float | None = None) -> bool:
        """Set *key* only if it is missing or expired. Returns True if it was written."""
        raise NotImplementedError

    def set_if_greater(self, key: str, value: int) -> bool:
        """Store integer *value* only if it exceeds the current one. Returns True if written."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStateStore(StateStore):
    def __init__(self, clock: Clock = time.time, purge_interval: float = PURGE_INTERVAL_SECONDS) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()
        self.purge_interval = purge_interval
        self._last_purge = clock()

    def count(self) -> int:
        """Number of stored keys, expired or not."""
        with self._lock:
            return len(self._data)

    def _maybe_purge(self) -> None:
        now = self._clock()
        if now - self._last_purge < self.purge_interval:
            return
        self._last_purge = now
        expired = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
        for key in expired:
            del self._data[key]
        if expired:
            log.debug("Purged %d expired key(s) from memory", len(expired))

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _deadline(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        with self._lock:
            self._maybe_purge()
            self._data[key] = (value, self._deadline(ttl))

    def expire(self, key: str, ttl: float) -> bool:
        with self._lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    def set_if_absent(self, key: str, value: str, ttl: float | None = None) -> bool:
        with self._lock:
            self._maybe_purge()
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    def set_if_greater(self, key: str, value: int) -> bool:
        with self._lock:
            current = self._live(key)
            if current is not None and int(current) >= value:
                return False
            self._data[key] = (str(value), None)
            return True


_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS kv_expires_at ON kv (expires_at)"

_PURGE = "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?"


class SqliteStateStore(StateStore):
    """
    Durable backend. Expired rows are invisible to reads; they are purged when
    the store is opened and swept on write at most once per *purge_interval*.
    """

    durable = True

    def __init__(
        self,
        path: Path,
        clock: Clock = time.time,
        purge_interval: float = PURGE_INTERVAL_SECONDS,
    ) -> None:
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self.purge_interval = purge_interval
        self._last_purge = clock()
        try:
            if str(path) != ":memory:":
                path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._conn.execute(_SCHEMA)
            self._conn.execute(_INDEX)
            purged = self._conn.execute(_PURGE, (self._clock(),)).rowcount
        except (sqlite3.Error, OSError) as exc:
            raise StateStoreUnavailable(f"Cannot open state store at {path}: {exc}") from exc
        if purged:
            log.debug("Purged %d expired key(s) from %s", purged, path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialise a read-modify-write against other writers (threads and processes)."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise StateStoreUnavailable(f"State store error: {exc}") from exc

    def _maybe_purge(self, conn: sqlite3.Connection) -> None:
        now = self._clock()
        if now - self._last_purge < self.purge_interval:
            return
        self._last_purge = now
        purged = conn.execute(_PURGE, (now,)).rowcount
        if purged:
            log.debug("Purged %d expired key(s) from %s", purged, self.path)

    def count(self) -> int:
        """Number of stored rows, expired or not."""
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM kv").fetchone()[0]

    def _read(self, conn: sqlite3.Connection, key: str) -> str | None:
        row = conn.execute(
            "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock()),
        ).fetchone()
        return None if row is None else row[0]

    def _write(self, conn: sqlite3.Connection, key: str, value: str, ttl: float | None) -> None:
        expires_at = None if ttl is None else self._clock() + ttl
        conn.execute(
            "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
            (key, value, expires_at),
        )

    def get(self, key: str) -> str | None:
        with self._lock:
            try:
                return self._read(self._conn, key)
            except sqlite3.Error as exc:
                raise StateStoreUnavailable(f"State store error: {exc}") from exc

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        with self._transaction() as conn:
            self._maybe_purge(conn)
            self._write(conn, key, value, ttl)

    def expire(self, key: str, ttl: float) -> bool:
        with self._transaction() as conn:
            value = self._read(conn, key)
            if value is None:
                return False
            self._write(conn, key, value, ttl)
            return True

    def set_if_absent(self, key: str, value: str, ttl: float | None = None) -> bool:
        with self._transaction() as conn:
            self._maybe_purge(conn)
            if self._read(conn, key) is not None:
                return False
            self._write(conn, key, value, ttl)
            return True

    def set_if_greater(self, key: str, value: int) -> bool:
        with self._transaction() as conn:
            current = self._read(conn, key)
            if current is not None and int(current) >= value:
                return False
            self._write(conn, key, str(value), None)
            return True

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        log.info("Closed state store at %s", self.path)


def _sqlite_path(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "", 1)
    return url


def open_state_store(url: str, *, required: bool = False) -> StateStore:
    """
    Open the backend named by *url* (``sqlite:///path``, ``memory://`` or empty).

    If the durable store cannot be opened, fall back to memory with a warning,
    or raise StateStoreUnavailable when *required* is set.
    """
    if not url or url.startswith("memory://"):
        if required:
            raise StateStoreUnavailable("A durable state store is required but none is configured")
        log.warning("No durable state store configured — cursor and dedup state are volatile.")
        return MemoryStateStore()

    try:
        if not url.startswith("sqlite:"):
            raise StateStoreUnavailable(f"Unsupported state store URL: {url}")
        store = SqliteStateStore(Path(_sqlite_path(url)))
    except StateStoreUnavailable as exc:
        if required:
            raise
        log.warning("%s — falling back to volatile in-memory state.", exc)
        return MemoryStateStore()

    log.info("Using durable state store at %s", store.path)
    return store
