# npm_inspector/cache.py
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path

from platformdirs import user_data_path

logger = logging.getLogger(__name__)

APP_NAME = "NpmInspector"
APP_AUTHOR = "NpmInspector"

DEFAULT_TTL = 3600  # 1 hour, in seconds
GITHUB_STATS_TTL = 900  # 15 minutes


def default_db_path() -> Path:
    """Cross-platform location of the persistent cache, falling back to the working directory."""
    try:
        data_dir = user_data_path(appname=APP_NAME, appauthor=APP_AUTHOR, ensure_exists=True)
        return data_dir / "cache.sqlite"
    except OSError as e:
        logger.warning(f"Could not create user data directory ({e}); using local 'npm_inspector_cache.sqlite'")
        return Path("./npm_inspector_cache.sqlite").resolve()


class MemoryCache:
    """
    In-process TTL cache. Values are stored as given; callers store plain
    JSON-compatible data so a hit never aliases a live object.
    """

    def __init__(self, default_ttl: float = DEFAULT_TTL, clock=time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries = {}  # key -> (stored_at, ttl, value)
        self._lock = threading.Lock()

    def _is_expired(self, entry) -> bool:
        stored_at, ttl, _ = entry
        return self._clock() - stored_at >= ttl

    def get(self, key: str):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_expired(entry):
                del self._entries[key]
                logger.debug(f"Cache entry expired for key: {key}")
                return None
        logger.debug(f"Cache hit for key: {key}")
        return entry[2]

    def set(self, key: str, value, ttl: float | None = None):
        with self._lock:
            self._entries[key] = (self._clock(), ttl if ttl is not None else self.default_ttl, value)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            expired = sum(1 for entry in self._entries.values() if self._is_expired(entry))
            total = len(self._entries)
        return {"total": total, "expired": expired, "valid": total - expired}


class SqliteCache:
    """TTL cache persisted to SQLite; values are stored as JSON text."""

    def __init__(self, db_path: Path | str | None = None, default_ttl: float = DEFAULT_TTL, clock=time.time):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self.default_ttl = default_ttl
        self._clock = clock
        self._connection = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            logger.debug(f"Opening cache database: {self.db_path}")
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    cache_key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    stored_at REAL NOT NULL,
                    ttl REAL NOT NULL
                )
            """)
            self._connection.commit()
        return self._connection

    def get(self, key: str):
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT value_json, stored_at, ttl FROM cache_entries WHERE cache_key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            value_json, stored_at, ttl = row
            if self._clock() - stored_at >= ttl:
                conn.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
                conn.commit()
                logger.debug(f"Cache entry expired for key: {key}")
                return None
        try:
            return json.loads(value_json)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable cache entry for key: {key}")
            return None

    def set(self, key: str, value, ttl: float | None = None):
        value_json = json.dumps(value)
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "INSERT OR REPLACE INTO cache_entries (cache_key, value_json, stored_at, ttl) VALUES (?, ?, ?, ?)",
                (key, value_json, self._clock(), ttl if ttl is not None else self.default_ttl),
            )
            conn.commit()

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self):
        with self._lock:
            conn = self._get_connection()
            conn.execute("DELETE FROM cache_entries")
            conn.commit()

    def size(self) -> int:
        with self._lock:
            return self._get_connection().execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            total, expired = self._get_connection().execute(
                "SELECT COUNT(*), COALESCE(SUM(CASE WHEN ? - stored_at >= ttl THEN 1 ELSE 0 END), 0) FROM cache_entries",
                (now,),
            ).fetchone()
        return {"total": total, "expired": expired, "valid": total - expired}

    def close(self):
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def build_cache(kind: str | None):
    """Returns a cache for the configured backend name ('memory', 'sqlite' or 'none')."""
    kind = (kind or "memory").lower()
    if kind == "none":
        return None
    if kind == "sqlite":
        return SqliteCache()
    if kind != "memory":
        logger.warning(f"Unknown cache backend '{kind}', using in-memory cache.")
    return MemoryCache()
