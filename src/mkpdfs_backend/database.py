"""
SQLite status store for job records.

Every job record lives in one row keyed by job id. Writes are field-level
UPDATE statements rather than read-modify-write cycles, so two overlapping
deliveries of the same queue message can only race on individual columns,
never resurrect stale copies of the whole record.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import JobNotFoundError, PersistenceError
from .models import ErrorCode, JobRecord, JobStatus, RenderResult, WebhookStatus
from .utils import deserialize_datetime, ensure_parent_directory, serialize_datetime, utcnow

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")

# Terminal records are kept this long after completion
DEFAULT_RETENTION = timedelta(days=7)


class JobStore(Protocol):
    def create_job(self, record: JobRecord) -> None: ...
    def get_job(self, job_id: str) -> Optional[JobRecord]: ...
    def list_jobs(self, user_id: str, limit: int = 50) -> List[JobRecord]: ...
    def mark_processing(self, job_id: str) -> bool: ...
    def mark_completed(self, job_id: str, result: RenderResult, completed_at: datetime, expires_at: datetime) -> None: ...
    def mark_failed(self, job_id: str, error: str, error_code: ErrorCode, completed_at: datetime, expires_at: datetime) -> bool: ...
    def record_webhook_attempt(self, job_id: str, attempt: int, at: datetime) -> None: ...
    def set_webhook_status(self, job_id: str, status: WebhookStatus) -> None: ...


class JobDatabase:
    """
    SQLite database for job persistence.

    Thread-safe: each operation opens its own connection and SQLite
    serializes writers in WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_parent_directory(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection, translating SQLite failures to PersistenceError."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open job database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(f"Job database error: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    template_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    page_count INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    send_email TEXT,
                    webhook_url TEXT,
                    webhook_secret TEXT,
                    webhook_status TEXT,
                    webhook_attempts INTEGER,
                    webhook_last_attempt TEXT,
                    pdf_url TEXT,
                    pdf_key TEXT,
                    size_bytes INTEGER,
                    error TEXT,
                    error_code TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    expires_at TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_user_created
                ON jobs(user_id, created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status)
            """)

    def create_job(self, record: JobRecord) -> None:
        """
        Insert a new job record.

        Raises:
            PersistenceError: If the row could not be written, including a
                duplicate job id
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    job_id, user_id, template_id, data, page_count, status,
                    send_email, webhook_url, webhook_secret,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.job_id,
                record.user_id,
                record.template_id,
                json.dumps(record.data),
                record.page_count,
                record.status.value,
                json.dumps(record.send_email) if record.send_email is not None else None,
                record.webhook_url,
                record.webhook_secret,
                serialize_datetime(record.created_at),
                serialize_datetime(record.updated_at),
            ))

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """
        Retrieve a job by ID.

        Returns:
            JobRecord or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    def list_jobs(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        """List a user's jobs ordered by creation time (newest first)."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()

            return [self._row_to_record(row) for row in rows]

    def mark_processing(self, job_id: str) -> bool:
        """
        Move a job to ``processing``.

        Safe to repeat on redelivery, and a failed job may re-enter
        ``processing`` when the queue retries it. A completed job is left
        alone.

        Returns:
            False if the job is already completed, True otherwise

        Raises:
            JobNotFoundError: If there is no record for ``job_id``
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE job_id = ? AND status != ?",
                (JobStatus.PROCESSING.value, serialize_datetime(utcnow()), job_id, JobStatus.COMPLETED.value),
            )
            if cursor.rowcount > 0:
                return True

            row = conn.execute("SELECT status FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            if not row:
                raise JobNotFoundError(job_id)
            return False

    def mark_completed(
        self,
        job_id: str,
        result: RenderResult,
        completed_at: datetime,
        expires_at: datetime,
    ) -> None:
        """
        Record a successful render in a single statement.

        Error fields from an earlier failed attempt are cleared.
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE jobs SET
                    status = ?, pdf_url = ?, pdf_key = ?, size_bytes = ?,
                    error = NULL, error_code = NULL,
                    completed_at = ?, updated_at = ?, expires_at = ?
                WHERE job_id = ?
            """, (
                JobStatus.COMPLETED.value,
                result.url,
                result.key,
                result.size_bytes,
                serialize_datetime(completed_at),
                serialize_datetime(completed_at),
                serialize_datetime(expires_at),
                job_id,
            ))
            if cursor.rowcount == 0:
                raise JobNotFoundError(job_id)

    def mark_failed(
        self,
        job_id: str,
        error: str,
        error_code: ErrorCode,
        completed_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Record a failed render.

        A job already marked completed by an overlapping delivery keeps its
        result.

        Returns:
            True if the record was updated
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE jobs SET
                    status = ?, error = ?, error_code = ?,
                    completed_at = ?, updated_at = ?, expires_at = ?
                WHERE job_id = ? AND status != ?
            """, (
                JobStatus.FAILED.value,
                error,
                error_code.value,
                serialize_datetime(completed_at),
                serialize_datetime(completed_at),
                serialize_datetime(expires_at),
                job_id,
                JobStatus.COMPLETED.value,
            ))
            return cursor.rowcount > 0

    def record_webhook_attempt(self, job_id: str, attempt: int, at: datetime) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE jobs SET webhook_attempts = ?, webhook_last_attempt = ?, updated_at = ? WHERE job_id = ?",
                (attempt, serialize_datetime(at), serialize_datetime(at), job_id),
            )

    def set_webhook_status(self, job_id: str, status: WebhookStatus) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE jobs SET webhook_status = ?, updated_at = ? WHERE job_id = ?",
                (status.value, serialize_datetime(utcnow()), job_id),
            )

    def delete_expired(self, now: datetime) -> int:
        """
        Delete terminal jobs whose retention horizon has passed.

        Returns:
            Number of deleted records
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE expires_at IS NOT NULL AND expires_at < ?",
                (serialize_datetime(now),),
            )
            if cursor.rowcount:
                logger.info(f"Deleted {cursor.rowcount} expired jobs")
            return cursor.rowcount

    def _row_to_record(self, row: sqlite3.Row) -> JobRecord:
        """Convert a database row to a JobRecord."""
        fields: Dict[str, Any] = {
            "job_id": row["job_id"],
            "user_id": row["user_id"],
            "template_id": row["template_id"],
            "data": json.loads(row["data"]),
            "page_count": row["page_count"],
            "status": row["status"],
            "send_email": json.loads(row["send_email"]) if row["send_email"] else None,
            "webhook_url": row["webhook_url"],
            "webhook_secret": row["webhook_secret"],
            "webhook_status": row["webhook_status"],
            "webhook_attempts": row["webhook_attempts"],
            "webhook_last_attempt": deserialize_datetime(row["webhook_last_attempt"]),
            "pdf_url": row["pdf_url"],
            "pdf_key": row["pdf_key"],
            "size_bytes": row["size_bytes"],
            "error": row["error"],
            "error_code": row["error_code"],
            "created_at": deserialize_datetime(row["created_at"]),
            "updated_at": deserialize_datetime(row["updated_at"]),
            "completed_at": deserialize_datetime(row["completed_at"]),
            "expires_at": deserialize_datetime(row["expires_at"]),
        }
        return JobRecord(**fields)
