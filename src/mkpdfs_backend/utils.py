"""
Shared helpers for time handling, logging setup and best-effort side effects.

This module provides:
- A UTC clock and the ``YYYY-MM`` bucket used by the usage ledger
- ISO-8601 (de)serialization for SQLite text columns
- ``best_effort``: run a side effect whose failure must never fail a job
- Logging configuration for the API and worker processes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def year_month(moment: datetime) -> str:
    """
    Usage bucket key for a timestamp.

    Example:
        >>> year_month(datetime(2026, 3, 9, tzinfo=timezone.utc))
        '2026-03'
    """
    return moment.strftime("%Y-%m")


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def ensure_parent_directory(path: Path) -> Path:
    """
    Create the parent directory of a file path if it doesn't exist.

    Args:
        path: The file path whose parent should exist

    Returns:
        The same path object for chaining
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


@dataclass(frozen=True)
class Outcome:
    """Result of a best-effort call: ``ok`` or the error that was swallowed."""

    ok: bool
    error: Optional[BaseException] = None


def best_effort(description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Outcome:
    """
    Call ``func`` and turn any exception into a logged, failed ``Outcome``.

    Only usage tracking and webhook bookkeeping go through here; callers are
    free to ignore a failed outcome for those operations and no others.

    Args:
        description: Human-readable name of the side effect for the log line
        func: The callable to invoke
        *args: Positional arguments for ``func``
        **kwargs: Keyword arguments for ``func``

    Returns:
        Outcome(ok=True) on success, Outcome(ok=False, error=exc) otherwise
    """
    try:
        func(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.error(f"Failed to {description}: {exc}", exc_info=True)
        return Outcome(ok=False, error=exc)
    return Outcome(ok=True)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
