"""
Content-addressed result storage.

One :class:`ContentStore` interface with two backings: a bounded in-process
LRU with TTL (ephemeral tier) and a SQLite table of processed files with an
``expires_at`` column (durable tier). :class:`LayeredContentStore` chains
them in an explicit fallback order and never lets a tier failure reach the
caller.

Usage:
    store = LayeredContentStore([
        (InMemoryContentStore(max_entries=256), 3600),
        (SQLiteContentStore(db_path="./data/processed_files.db"), 24 * 3600),
    ])
    store.set("result:abc:gpt-4:6000", payload)
    payload = store.get("result:abc:gpt-4:6000")
"""
import copy
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from docmeter.core.exceptions import StoreError

logger = logging.getLogger(__name__)


class ContentStore(ABC):
    """Key-value store of JSON-serializable payloads with per-entry TTL."""

    name = "store"

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the live payload for ``key`` or None."""

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        """Insert or replace ``key``; it expires after ``ttl_seconds``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""


class InMemoryContentStore(ContentStore):
    """
    Bounded LRU cache with per-entry expiry.

    Payloads are copied on the way in and out so callers cannot mutate
    cached state.
    """

    name = "memory"

    def __init__(self, max_entries: int = 256, clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Dict[str, Any]]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return copy.deepcopy(value)

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, copy.deepcopy(value))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted %s from memory cache", evicted)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteContentStore(ContentStore):
    """
    SQLite-backed store of processed files.

    Payloads are stored as JSON with WAL mode for concurrent readers. Rows
    are upserted by cache key and carry the content hash and an
    ``expires_at`` timestamp (epoch seconds).
    """

    name = "sqlite"

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        self._init_db()
        logger.info("SQLiteContentStore initialized at %s", db_path)

    def _init_db(self):
        """Create schema with optimized settings for result storage."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS processed_files (
                    cache_key TEXT PRIMARY KEY,
                    file_hash TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_processed_files_hash
                ON processed_files(file_hash)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_processed_files_expiry
                ON processed_files(expires_at)
            """)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections; sqlite errors become StoreError."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"SQLite operation failed: {e}") from e
        finally:
            conn.close()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload FROM processed_files WHERE cache_key = ? AND expires_at > ?",
                (key, self._clock()),
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["payload"])
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt payload for {key}: {e}") from e

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Payload for {key} is not JSON serializable: {e}") from e

        now = self._clock()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO processed_files (cache_key, file_hash, payload, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    file_hash = excluded.file_hash,
                    payload = excluded.payload,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (key, self._hash_from_key(key), payload, now, now + ttl_seconds),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM processed_files WHERE cache_key = ?", (key,))
            conn.commit()

    def purge_expired(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM processed_files WHERE expires_at <= ?", (self._clock(),)
            )
            conn.commit()
            removed = cursor.rowcount
        if removed:
            logger.info("Purged %d expired processed files", removed)
        return removed

    def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM processed_files").fetchone()[0]

    @staticmethod
    def _hash_from_key(key: str) -> str:
        # Keys look like "<kind>:<hash>[:...]"
        parts = key.split(":")
        return parts[1] if len(parts) > 1 else key


class LayeredContentStore(ContentStore):
    """
    Ordered chain of ``(store, ttl_seconds)`` tiers, fastest first.

    Reads fall through the tiers and back-fill faster tiers on a hit.
    Writes go to every tier. A failing tier is logged and skipped.
    """

    name = "layered"

    def __init__(self, tiers: Sequence[Tuple[ContentStore, int]]):
        if not tiers:
            raise ValueError("LayeredContentStore needs at least one tier")
        self.tiers: List[Tuple[ContentStore, int]] = list(tiers)
        self._hits = {store.name: 0 for store, _ in self.tiers}
        self._misses = 0
        self._failures = 0

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        for position, (store, _) in enumerate(self.tiers):
            try:
                value = store.get(key)
            except Exception as e:
                self._failures += 1
                logger.warning("%s tier unavailable for get(%s): %s", store.name, key, e)
                continue
            if value is None:
                continue

            self._hits[store.name] += 1
            logger.debug("%s tier hit for %s", store.name, key)
            for faster, ttl in self.tiers[:position]:
                self._safe_set(faster, key, value, ttl)
            return value

        self._misses += 1
        return None

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        """Write through every tier, each with its own TTL unless one is given."""
        for store, ttl in self.tiers:
            self._safe_set(store, key, value, ttl_seconds or ttl)

    def delete(self, key: str) -> None:
        for store, _ in self.tiers:
            try:
                store.delete(key)
            except Exception as e:
                self._failures += 1
                logger.warning("%s tier unavailable for delete(%s): %s", store.name, key, e)

    def purge_expired(self) -> int:
        removed = 0
        for store, _ in self.tiers:
            try:
                removed += store.purge_expired()
            except Exception as e:
                self._failures += 1
                logger.warning("%s tier unavailable for purge: %s", store.name, e)
        return removed

    def stats(self) -> Dict[str, Any]:
        return {
            "tiers": [store.name for store, _ in self.tiers],
            "hits": dict(self._hits),
            "misses": self._misses,
            "failures": self._failures,
        }

    def _safe_set(self, store: ContentStore, key: str, value: Dict[str, Any], ttl: int) -> None:
        try:
            store.set(key, value, ttl)
        except Exception as e:
            self._failures += 1
            logger.warning("%s tier unavailable for set(%s): %s", store.name, key, e)
