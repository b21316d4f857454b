"""
Job processing: drives one queued job through its state machine.

States move ``pending -> processing -> completed | failed``. Because the
queue delivers at least once, every step tolerates being repeated:

- ``processing`` may be entered again on redelivery, including from
  ``failed`` when the queue retries a job whose earlier attempt failed.
- A retry that succeeds flips ``failed`` to ``completed``; a job is only
  final once the queue stops redelivering it.
- A redelivered message for an already completed job is acknowledged
  without rendering again. If the earlier run stopped before the completion
  webhook recorded an outcome, the webhook is sent from the stored result.

``JobWorker.process`` records the outcome and returns it. ``JobWorker.handle``
is the queue-facing boundary: it raises ``JobFailedError`` for failed
outcomes so the message is not acknowledged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .database import DEFAULT_RETENTION, JobStore
from .errors import JobFailedError, classify_error
from .models import (
    CompletedData,
    FailedData,
    JobOutcome,
    JobStatus,
    QueueMessage,
    RenderResult,
    WebhookEvent,
)
from .renderer import Renderer
from .usage_ledger import UsageStore
from .utils import Clock, best_effort, utcnow
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class JobWorker:
    """
    Processes queue messages one at a time.

    Attributes:
        store: Status store holding job records
        renderer: Produces and stores the document
        usage: Monthly usage counters (updated best effort)
        dispatcher: Sends ``job.completed`` / ``job.failed`` webhooks
    """

    def __init__(
        self,
        store: JobStore,
        renderer: Renderer,
        usage: UsageStore,
        dispatcher: WebhookDispatcher,
        retention_days: int = DEFAULT_RETENTION.days,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.renderer = renderer
        self.usage = usage
        self.dispatcher = dispatcher
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    def handle(self, message: QueueMessage) -> JobOutcome:
        """
        Process a message for the queue runtime.

        Raises:
            JobFailedError: After the failure has been recorded, chained from
                the original render error
        """
        outcome, error = self._run(message)
        if outcome.failed:
            raise JobFailedError(outcome) from error
        return outcome

    def process(self, message: QueueMessage) -> JobOutcome:
        """Process a message and return what happened. Never raises."""
        outcome, _ = self._run(message)
        return outcome

    def _run(self, message: QueueMessage) -> tuple[JobOutcome, Optional[BaseException]]:
        job_id = message.job_id
        logger.info(f"Processing job {job_id} for user {message.user_id}")

        try:
            if not self.store.mark_processing(job_id):
                logger.warning(f"Job {job_id} is already completed; skipping redelivered message")
                self._resume_notification(job_id)
                return JobOutcome(job_id=job_id, status=JobStatus.COMPLETED, skipped=True), None

            result = self.renderer.render(
                message.template_id,
                message.data,
                job_id=job_id,
                user_id=message.user_id,
                send_email=message.send_email,
            )

            completed_at = self._clock()
            self.store.mark_completed(job_id, result, completed_at, completed_at + self.retention)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Job {job_id} failed: {exc}", exc_info=True)
            return self._handle_failure(message, exc), exc

        self._after_completion(message, result, completed_at)
        logger.info(f"Job {job_id} completed successfully")
        return JobOutcome(job_id=job_id, status=JobStatus.COMPLETED), None

    def _after_completion(self, message: QueueMessage, result: RenderResult, completed_at: datetime) -> None:
        """Usage tracking and the completion webhook; neither can fail the job."""
        job_id = message.job_id
        best_effort(
            f"track usage for job {job_id}",
            self.usage.increment,
            message.user_id,
            message.page_count,
            result.size_bytes,
            completed_at,
        )

        try:
            record = self.store.get_job(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to load job {job_id} for webhook delivery: {exc}")
            return

        if record and record.webhook_url:
            self.dispatcher.deliver(
                job_id,
                record.webhook_url,
                record.webhook_secret,
                WebhookEvent.JOB_COMPLETED,
                CompletedData(
                    job_id=job_id,
                    pdf_url=result.url,
                    page_count=message.page_count,
                    size_bytes=result.size_bytes,
                    created_at=record.created_at,
                    completed_at=completed_at,
                ),
            )

    def _resume_notification(self, job_id: str) -> None:
        """
        Send the completion webhook of a job whose previous run stopped after
        ``mark_completed``. A webhook status of any value means an earlier run
        already finished its delivery attempts.
        """
        try:
            record = self.store.get_job(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to load job {job_id} for webhook delivery: {exc}")
            return

        if not record or not record.webhook_url or record.webhook_status is not None:
            return

        logger.info(f"Job {job_id} completed without a recorded webhook outcome; delivering now")
        completed_at = record.completed_at or record.updated_at
        self.dispatcher.deliver(
            job_id,
            record.webhook_url,
            record.webhook_secret,
            WebhookEvent.JOB_COMPLETED,
            CompletedData(
                job_id=job_id,
                pdf_url=record.pdf_url or "",
                page_count=record.page_count,
                size_bytes=record.size_bytes or 0,
                created_at=record.created_at,
                completed_at=completed_at,
            ),
        )

    def _handle_failure(self, message: QueueMessage, error: BaseException) -> JobOutcome:
        job_id = message.job_id
        error_code = classify_error(error)
        error_message = str(error) or type(error).__name__
        completed_at = self._clock()
        outcome = JobOutcome(job_id=job_id, status=JobStatus.FAILED, error=error_message, error_code=error_code)

        try:
            if not self.store.mark_failed(job_id, error_message, error_code, completed_at, completed_at + self.retention):
                logger.warning(f"Job {job_id} was not marked failed (missing or already completed)")
                return outcome

            record = self.store.get_job(job_id)
            if record and record.webhook_url:
                self.dispatcher.deliver(
                    job_id,
                    record.webhook_url,
                    record.webhook_secret,
                    WebhookEvent.JOB_FAILED,
                    FailedData(
                        job_id=job_id,
                        error=error_message,
                        error_code=error_code,
                        created_at=record.created_at,
                        completed_at=completed_at,
                    ),
                )
        except Exception as exc:  # noqa: BLE001
            # The original error is what the queue needs to see
            logger.error(f"Failed to update job failure status for {job_id}: {exc}")

        return outcome

