"""
Exception types shared by the submitter, worker, queue and webhook layers.

The worker distinguishes two things that are easy to conflate:

- the *render failure* (any exception raised while producing the document),
  which is classified into an ``ErrorCode`` and recorded on the job, and
- the *boundary failure signal* (``JobFailedError``), raised only after the
  failure has been recorded so the hosting queue runtime retries the message
  or moves it to the dead-letter queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import ErrorCode

if TYPE_CHECKING:  # pragma: no cover
    from .models import JobOutcome


class MkpdfsError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(MkpdfsError):
    """A generation request is missing required fields or carries bad values."""


class WebhookUrlError(ValidationError):
    """A webhook URL was rejected by the safety validator."""


class PersistenceError(MkpdfsError):
    """A job or usage record could not be read or durably written."""


class JobNotFoundError(PersistenceError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class QueueError(MkpdfsError):
    """The job queue rejected a send, receive or acknowledgement."""


class QuotaExceededError(MkpdfsError):
    def __init__(self, user_id: str, limit: int, used: int) -> None:
        super().__init__(f"Monthly PDF generation limit reached ({limit})")
        self.user_id = user_id
        self.limit = limit
        self.used = used


class RenderError(MkpdfsError):
    """Raised by renderer implementations when a document cannot be produced."""


class RateLimitExceededError(MkpdfsError):
    """Raised by entry points guarded by the rate limiter."""


class JobFailedError(MkpdfsError):
    """
    Signals the queue runtime that a message must not be acknowledged.

    Always raised ``from`` the original render failure, so the traceback the
    runtime logs still points at the real cause.
    """

    def __init__(self, outcome: "JobOutcome") -> None:
        super().__init__(f"Job {outcome.job_id} failed with {outcome.error_code}: {outcome.error}")
        self.outcome = outcome


# Checked in order; the first matching substring wins.
_ERROR_PATTERNS = (
    ("template not found", ErrorCode.TEMPLATE_NOT_FOUND),
    ("timeout", ErrorCode.GENERATION_TIMEOUT),
    ("memory", ErrorCode.MEMORY_EXCEEDED),
    ("nosuchkey", ErrorCode.TEMPLATE_NOT_FOUND),
)


def classify_error(error: BaseException) -> ErrorCode:
    """Map a render failure to a stable error code using its message."""
    message = str(error).lower()
    for needle, code in _ERROR_PATTERNS:
        if needle in message:
            return code
    return ErrorCode.GENERATION_ERROR
