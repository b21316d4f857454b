"""
Wiring of stores, queue, dispatcher, submitter and worker from settings.

Components never build their own clients; everything they talk to is passed
in here, so tests can swap any piece for an in-memory fake.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import boto3
import httpx
from omegaconf import DictConfig

from .configuration import get_settings
from .database import JobDatabase
from .errors import QueueError
from .job_queue import InMemoryJobQueue, JobQueue, QueueConsumer, SqsJobQueue, create_queue_pair, handle_sqs_event
from .rate_limiter import RateLimiter, SqliteRateLimitStore
from .renderer import Renderer, StoringRenderer, load_document_function
from .storage import ArtifactStorage
from .submitter import JobSubmitter
from .usage_ledger import UsageLedger
from .utils import Clock, best_effort, configure_logging, utcnow
from .webhooks import WebhookDispatcher
from .worker import JobWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: DictConfig
    store: JobDatabase
    usage: UsageLedger
    queue: JobQueue
    dispatcher: WebhookDispatcher
    submitter: JobSubmitter
    rate_limiter: RateLimiter


def build_queue(settings: DictConfig) -> JobQueue:
    queue_settings = settings.queue
    if queue_settings.backend == "memory":
        return InMemoryJobQueue(
            visibility_timeout=queue_settings.visibility_timeout,
            max_receive_count=queue_settings.max_receive_count,
        )
    if queue_settings.backend == "sqs":
        if not queue_settings.url:
            raise QueueError(
                "SQS queue URL is not configured; set MKPDFS_QUEUE_URL (see mkpdfs-provision-queue) "
                "or MKPDFS_QUEUE_BACKEND=memory for local runs"
            )
        return SqsJobQueue(queue_settings.url, visibility_timeout=queue_settings.visibility_timeout)
    raise ValueError(f"Unknown queue backend {queue_settings.backend!r}")


def build_dispatcher(settings: DictConfig, store: JobDatabase) -> WebhookDispatcher:
    webhook = settings.webhook
    return WebhookDispatcher(
        store,
        client=httpx.Client(),
        max_attempts=webhook.max_attempts,
        retry_delays=list(webhook.retry_delays),
        timeout=webhook.timeout,
        user_agent=webhook.user_agent,
        header_prefix=f"X-{settings.product_name}",
    )


def build_services(settings: Optional[DictConfig] = None, queue: Optional[JobQueue] = None) -> Services:
    settings = settings or get_settings()
    store = JobDatabase(Path(settings.database.jobs_path))
    usage = UsageLedger(settings.database.usage_path)
    queue = queue or build_queue(settings)
    submitter = JobSubmitter(
        store,
        queue,
        usage=usage,
        monthly_page_limit=settings.usage.monthly_page_limit,
    )
    rate_limiter = RateLimiter(
        SqliteRateLimitStore(settings.database.rate_limit_path),
        max_events=settings.rate_limit.max_events,
        window_seconds=settings.rate_limit.window_seconds,
    )
    return Services(
        settings=settings,
        store=store,
        usage=usage,
        queue=queue,
        dispatcher=build_dispatcher(settings, store),
        submitter=submitter,
        rate_limiter=rate_limiter,
    )


def build_renderer(settings: DictConfig) -> Renderer:
    if not settings.renderer.target:
        raise ValueError("No renderer configured; set MKPDFS_RENDERER to 'module:function'")
    storage = ArtifactStorage(settings.storage.bucket, url_expiration=settings.storage.url_expiration)
    return StoringRenderer(
        load_document_function(settings.renderer.target),
        storage,
        key_prefix=settings.storage.key_prefix,
    )


def build_worker(services: Services, renderer: Optional[Renderer] = None) -> JobWorker:
    return JobWorker(
        services.store,
        renderer or build_renderer(services.settings),
        services.usage,
        services.dispatcher,
        retention_days=services.settings.worker.job_retention_days,
    )


class RetentionSweeper:
    """
    Deletes job records past their retention horizon and expired rate-limit
    windows. Runs inside the worker process on a fixed interval.
    """

    def __init__(
        self,
        store: JobDatabase,
        rate_limiter: RateLimiter,
        interval_seconds: float = 3600,
        clock: Clock = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._last_sweep: Optional[float] = None

    def sweep(self) -> None:
        self._last_sweep = self._monotonic()
        best_effort("delete expired jobs", self.store.delete_expired, self._clock())
        best_effort("clean up rate limit windows", self.rate_limiter.cleanup)

    def maybe_sweep(self) -> bool:
        """Sweep if the interval has passed since the last sweep."""
        if self._last_sweep is not None and self._monotonic() - self._last_sweep < self.interval_seconds:
            return False
        self.sweep()
        return True

    def run(self, stop: threading.Event) -> None:
        while True:
            self.sweep()
            if stop.wait(self.interval_seconds):
                return


def build_sweeper(services: Services) -> RetentionSweeper:
    return RetentionSweeper(
        services.store,
        services.rate_limiter,
        interval_seconds=services.settings.worker.cleanup_interval_seconds,
    )


def run_worker(stop_event: Optional[threading.Event] = None) -> None:
    """Console entry point: poll the configured queue until interrupted."""
    settings = get_settings()
    configure_logging(settings.logging.level)
    services = build_services(settings)
    worker = build_worker(services)
    consumer = QueueConsumer(
        services.queue,
        worker.handle,
        batch_size=settings.queue.batch_size,
        wait_seconds=settings.queue.wait_time_seconds,
    )
    stop = stop_event or threading.Event()
    sweeper = threading.Thread(target=build_sweeper(services).run, args=(stop,), name="mkpdfs-sweeper", daemon=True)
    sweeper.start()
    try:
        consumer.run(max_concurrency=settings.worker.max_concurrency, stop_event=stop)
    except KeyboardInterrupt:
        logger.info("Worker interrupted; shutting down")
    finally:
        stop.set()
        sweeper.join(timeout=5)
        services.dispatcher.close()


def provision_queue(settings: Optional[DictConfig] = None, client: Optional[Any] = None) -> Tuple[str, str]:
    """Create the job queue and its dead-letter queue from the ``queue`` settings."""
    settings = settings or get_settings()
    configure_logging(settings.logging.level)
    queue_settings = settings.queue
    queue_url, dlq_url = create_queue_pair(
        client or boto3.client("sqs"),
        queue_settings.name,
        visibility_timeout=queue_settings.visibility_timeout,
        retention_seconds=queue_settings.retention_seconds,
        wait_time_seconds=queue_settings.wait_time_seconds,
        max_receive_count=queue_settings.max_receive_count,
        dead_letter_retention_seconds=queue_settings.dead_letter_retention_seconds,
    )
    return queue_url, dlq_url


def provision_queue_cli() -> None:
    """Console entry point; prints the queue URL in ``.env`` form."""
    queue_url, _ = provision_queue()
    print(f"MKPDFS_QUEUE_URL={queue_url}")


_lambda_worker: Optional[JobWorker] = None
_lambda_sweeper: Optional[RetentionSweeper] = None


def lambda_handler(event: Dict[str, Any], context: Any = None) -> None:
    """
    Serverless entry point for SQS-triggered invocations.

    The worker is built on the first invocation and reused while the runtime
    keeps the process warm. Retention sweeps piggyback on invocations once
    the cleanup interval has passed.
    """
    global _lambda_worker, _lambda_sweeper
    if _lambda_worker is None:
        settings = get_settings()
        configure_logging(settings.logging.level)
        services = build_services(settings)
        _lambda_worker = build_worker(services)
        _lambda_sweeper = build_sweeper(services)
    _lambda_sweeper.maybe_sweep()
    handle_sqs_event(event, _lambda_worker.handle)
