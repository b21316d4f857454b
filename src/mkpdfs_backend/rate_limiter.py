import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Tuple

from .errors import PersistenceError
from .models import RateLimitDecision
from .utils import ensure_parent_directory

logger = logging.getLogger(__name__)

# (count, window_start) in unix seconds
Window = Tuple[int, float]


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[Window]: ...
    def put(self, key: str, window: Window) -> None: ...
    def delete_older_than(self, cutoff: float) -> int: ...


class InMemoryRateLimitStore:
    def __init__(self) -> None:
        self._windows: Dict[str, Window] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Window]:
        with self._lock:
            return self._windows.get(key)

    def put(self, key: str, window: Window) -> None:
        with self._lock:
            self._windows[key] = window

    def delete_older_than(self, cutoff: float) -> int:
        with self._lock:
            expired = [k for k, (_, start) in self._windows.items() if start < cutoff]
            for k in expired:
                del self._windows[k]
            return len(expired)


class SqliteRateLimitStore:
    """Rate-limit windows shared by every process pointing at the same database file."""

    def __init__(self, db_path: str | Path = "data/rate_limits.db"):
        self.db_path = Path(db_path)
        ensure_parent_directory(self.db_path)
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rate_limits (
                    key TEXT PRIMARY KEY,
                    count INTEGER NOT NULL,
                    window_start REAL NOT NULL
                )
            """)

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, key: str) -> Optional[Window]:
        try:
            with self._get_conn() as conn:
                row = conn.execute("SELECT count, window_start FROM rate_limits WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read rate limit for {key}: {exc}") from exc
        return (row[0], row[1]) if row else None

    def put(self, key: str, window: Window) -> None:
        try:
            with self._get_conn() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO rate_limits (key, count, window_start) VALUES (?, ?, ?)",
                    (key, window[0], window[1]),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not record rate limit for {key}: {exc}") from exc

    def delete_older_than(self, cutoff: float) -> int:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM rate_limits WHERE window_start < ?", (cutoff,))
            return cursor.rowcount


class RateLimiter:
    """
    Fixed-size window counter per key, with a separate check and commit.

    ``check`` only reads, so a caller can ask before doing expensive work and
    ``record`` once that work succeeded. Two callers checking the same key at
    the same moment can both be allowed before either records; the limit is
    approximate under concurrency.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        max_events: int = 3,
        window_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or InMemoryRateLimitStore()
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock

    def _active_window(self, key: str, now: float) -> Optional[Window]:
        window = self.store.get(key)
        if window is None or window[1] < now - self.window_seconds:
            return None
        return window

    def check(self, key: str) -> RateLimitDecision:
        window = self._active_window(key, self._clock())
        if window is None:
            return RateLimitDecision(allowed=True, remaining=self.max_events - 1)

        count = window[0]
        if count >= self.max_events:
            return RateLimitDecision(allowed=False, remaining=0)
        return RateLimitDecision(allowed=True, remaining=self.max_events - count - 1)

    def record(self, key: str) -> None:
        now = self._clock()
        window = self._active_window(key, now)
        if window is None:
            self.store.put(key, (1, now))
        else:
            self.store.put(key, (window[0] + 1, window[1]))

    def cleanup(self) -> int:
        """Drop expired windows to keep the store small."""
        removed = self.store.delete_older_than(self._clock() - self.window_seconds)
        if removed:
            logger.debug(f"Removed {removed} expired rate limit windows")
        return removed
