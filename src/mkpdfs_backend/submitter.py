from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from .database import DEFAULT_RETENTION, JobStore
from .errors import PersistenceError, QueueError, QuotaExceededError, ValidationError
from .job_queue import JobQueue
from .models import ErrorCode, GenerationRequest, JobRecord, JobStatus, JobSubmitted, QueueMessage
from .usage_ledger import UsageLedger
from .utils import Clock, best_effort, utcnow, year_month
from .webhooks import validate_webhook_url

logger = logging.getLogger(__name__)


class JobSubmitter:
    """
    Accepts generation requests and hands them to the queue.

    The job record is written before the message is sent. A message that
    references no record can never be produced; the opposite failure, a
    record whose message could not be sent, is marked failed straight away.
    """

    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        usage: Optional[UsageLedger] = None,
        monthly_page_limit: int = -1,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.queue = queue
        self.usage = usage
        self.monthly_page_limit = monthly_page_limit
        self._clock = clock

    def submit(self, user_id: str, request: GenerationRequest) -> JobSubmitted:
        """
        Create a pending job and enqueue it.

        Raises:
            ValidationError: Missing or invalid request fields (including a
                rejected webhook URL)
            QuotaExceededError: The user's monthly limit is used up
            PersistenceError: The job record could not be written; nothing
                was enqueued
            QueueError: The message could not be enqueued
        """
        self._validate(user_id, request)
        self._check_quota(user_id)

        now = self._clock()
        record = JobRecord(
            job_id=uuid4().hex,
            user_id=user_id,
            template_id=request.template_id,
            data=request.data,
            page_count=request.page_count,
            status=JobStatus.PENDING,
            send_email=request.send_email,
            webhook_url=request.webhook_url,
            webhook_secret=request.webhook_secret,
            created_at=now,
            updated_at=now,
        )
        self.store.create_job(record)

        message = QueueMessage(
            job_id=record.job_id,
            user_id=record.user_id,
            template_id=record.template_id,
            data=record.data,
            send_email=record.send_email,
            page_count=record.page_count,
        )
        try:
            self.queue.send(message)
        except QueueError as exc:
            logger.error(f"Failed to enqueue job {record.job_id}: {exc}")
            best_effort(
                f"mark unqueued job {record.job_id} as failed",
                self.store.mark_failed,
                record.job_id,
                "Job could not be queued",
                ErrorCode.GENERATION_ERROR,
                now,
                now + DEFAULT_RETENTION,
            )
            raise

        logger.info(f"Job {record.job_id} submitted for user {user_id} (template {record.template_id})")
        return JobSubmitted(job_id=record.job_id, status=record.status)

    def _validate(self, user_id: str, request: GenerationRequest) -> None:
        if not user_id:
            raise ValidationError("Authenticated user id is required")
        if not request.template_id:
            raise ValidationError("templateId is required")
        if request.data is None:
            raise ValidationError("data is required")
        if request.page_count < 1:
            raise ValidationError("pageCount must be at least 1")
        if request.webhook_url:
            validate_webhook_url(request.webhook_url)
        elif request.webhook_secret:
            raise ValidationError("webhookSecret requires webhookUrl")

    def _check_quota(self, user_id: str) -> None:
        if self.usage is None or self.monthly_page_limit < 0:
            return
        try:
            allowed = self.usage.check_quota(user_id, self.monthly_page_limit, self._clock())
        except PersistenceError as exc:
            # Let the request through when usage data is unavailable
            logger.warning(f"Could not check quota for {user_id}: {exc}")
            return
        if not allowed:
            used = self.usage.get_usage(user_id, year_month(self._clock())).pdf_count
            raise QuotaExceededError(user_id, self.monthly_page_limit, used)
