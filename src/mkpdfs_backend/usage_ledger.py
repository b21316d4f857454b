import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from .errors import PersistenceError
from .models import UsageCounter
from .utils import deserialize_datetime, ensure_parent_directory, serialize_datetime, utcnow, year_month

logger = logging.getLogger(__name__)


class UsageStore(Protocol):
    def increment(self, user_id: str, page_count: int, size_bytes: int, at: Optional[datetime] = None) -> None: ...
    def get_usage(self, user_id: str, year_month: str) -> UsageCounter: ...


class UsageLedger:
    """
    Per-user, per-month generation counters in a local SQLite database.

    Counters only ever grow. They are not written in the same transaction as
    the job record, so a crash between the two leaves usage slightly behind.
    """

    def __init__(self, db_path: str | Path = "data/usage.db"):
        self.db_path = Path(db_path)
        self._init_db()

    @contextmanager
    def _get_conn(self):
        """Open a connection that commits on success and is always closed."""
        ensure_parent_directory(self.db_path)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS usage (
                    user_id TEXT NOT NULL,
                    year_month TEXT NOT NULL,
                    pdf_count INTEGER NOT NULL DEFAULT 0,
                    total_size_bytes INTEGER NOT NULL DEFAULT 0,
                    last_activity TEXT,
                    PRIMARY KEY (user_id, year_month)
                )
            """)

    def increment(self, user_id: str, page_count: int, size_bytes: int, at: Optional[datetime] = None) -> None:
        """
        Add a finished generation to the user's counter for the month of ``at``.

        Raises:
            PersistenceError: If the counter could not be updated
        """
        moment = at or utcnow()
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    INSERT INTO usage (user_id, year_month, pdf_count, total_size_bytes, last_activity)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, year_month) DO UPDATE SET
                        pdf_count = pdf_count + excluded.pdf_count,
                        total_size_bytes = total_size_bytes + excluded.total_size_bytes,
                        last_activity = excluded.last_activity
                """, (user_id, year_month(moment), max(page_count, 0), max(size_bytes, 0), serialize_datetime(moment)))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not update usage for {user_id}: {exc}") from exc

    def get_usage(self, user_id: str, year_month: str) -> UsageCounter:
        """Return the counter for a month, or an all-zero counter if nothing was recorded."""
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    "SELECT * FROM usage WHERE user_id = ? AND year_month = ?",
                    (user_id, year_month),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read usage for {user_id}: {exc}") from exc

        if not row:
            return UsageCounter(user_id=user_id, year_month=year_month)
        return UsageCounter(
            user_id=row["user_id"],
            year_month=row["year_month"],
            pdf_count=row["pdf_count"],
            total_size_bytes=row["total_size_bytes"],
            last_activity=deserialize_datetime(row["last_activity"]),
        )

    def check_quota(self, user_id: str, limit: int, at: Optional[datetime] = None) -> bool:
        """
        Check whether the user may generate more documents this month.

        A negative ``limit`` means the plan is unlimited.
        """
        if limit < 0:
            return True
        usage = self.get_usage(user_id, year_month(at or utcnow()))
        return usage.pdf_count < limit
