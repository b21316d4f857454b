"""
Job queue adapters and the consumption harness that drives the worker.

The queue is at-least-once: a received message stays hidden for the
visibility timeout and is only removed once the handler succeeds and the
consumer acknowledges it. A handler that raises leaves the message in place;
when the timeout expires it is delivered again, and after
``max_receive_count`` failed receives it is moved to the dead-letter queue
instead. The visibility timeout must therefore exceed the worst-case time
the worker spends on one message (render plus webhook retries).
"""

from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError as PayloadValidationError

from .errors import QueueError
from .models import QueueMessage
from .utils import Clock, utcnow

logger = logging.getLogger(__name__)

MessageHandler = Callable[[QueueMessage], None]


@dataclass(frozen=True)
class ReceivedMessage:
    message: QueueMessage
    receipt: str
    receive_count: int = 1


class JobQueue(Protocol):
    def send(self, message: QueueMessage) -> str: ...
    def receive(self, max_messages: int = 1, wait_seconds: int = 0) -> List[ReceivedMessage]: ...
    def ack(self, received: ReceivedMessage) -> None: ...


class SqsJobQueue:
    """
    Job queue backed by Amazon SQS.

    Dead-lettering is not done here: the queue's ``RedrivePolicy`` (see
    ``create_queue_pair``) moves a message once its receive count passes
    ``maxReceiveCount``.
    """

    def __init__(self, queue_url: str, client: Optional[Any] = None, visibility_timeout: int = 360) -> None:
        if not queue_url:
            raise QueueError("SQS queue URL is not configured")
        self.queue_url = queue_url
        self.visibility_timeout = visibility_timeout
        self._client = client or boto3.client("sqs")

    def send(self, message: QueueMessage) -> str:
        try:
            response = self._client.send_message(QueueUrl=self.queue_url, MessageBody=message.to_json())
        except (ClientError, BotoCoreError) as e:
            raise QueueError(f"Could not enqueue job {message.job_id}: {e}") from e
        return response["MessageId"]

    def receive(self, max_messages: int = 1, wait_seconds: int = 20) -> List[ReceivedMessage]:
        try:
            response = self._client.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max_messages,
                WaitTimeSeconds=wait_seconds,
                VisibilityTimeout=self.visibility_timeout,
                AttributeNames=["ApproximateReceiveCount"],
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueError(f"Could not receive from {self.queue_url}: {e}") from e

        received = []
        for raw in response.get("Messages", []):
            try:
                message = QueueMessage.from_json(raw["Body"])
            except (PayloadValidationError, json.JSONDecodeError) as e:
                # Left unacknowledged so the redrive policy dead-letters it
                logger.error(f"Skipping malformed message {raw.get('MessageId')}: {e}")
                continue
            count = int(raw.get("Attributes", {}).get("ApproximateReceiveCount", "1"))
            received.append(ReceivedMessage(message=message, receipt=raw["ReceiptHandle"], receive_count=count))
        return received

    def ack(self, received: ReceivedMessage) -> None:
        try:
            self._client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=received.receipt)
        except (ClientError, BotoCoreError) as e:
            raise QueueError(f"Could not acknowledge job {received.message.job_id}: {e}") from e


def create_queue_pair(
    client: Any,
    name: str,
    visibility_timeout: int = 360,
    retention_seconds: int = 345600,
    wait_time_seconds: int = 20,
    max_receive_count: int = 3,
    dead_letter_retention_seconds: int = 1209600,
) -> Tuple[str, str]:
    """
    Create (or look up) the job queue and its dead-letter queue.

    ``create_queue`` is idempotent for identical attributes, so this is safe
    to run on every deploy.

    Returns:
        (queue_url, dead_letter_queue_url)
    """
    dlq_url = client.create_queue(
        QueueName=f"{name}-dlq",
        Attributes={"MessageRetentionPeriod": str(dead_letter_retention_seconds)},
    )["QueueUrl"]
    dlq_arn = client.get_queue_attributes(QueueUrl=dlq_url, AttributeNames=["QueueArn"])["Attributes"]["QueueArn"]

    queue_url = client.create_queue(
        QueueName=name,
        Attributes={
            "VisibilityTimeout": str(visibility_timeout),
            "MessageRetentionPeriod": str(retention_seconds),
            "ReceiveMessageWaitTimeSeconds": str(wait_time_seconds),
            "RedrivePolicy": json.dumps({"deadLetterTargetArn": dlq_arn, "maxReceiveCount": str(max_receive_count)}),
        },
    )["QueueUrl"]
    logger.info(f"Job queue ready at {queue_url} (dead letters: {dlq_url})")
    return queue_url, dlq_url


@dataclass
class _Entry:
    message: QueueMessage
    receive_count: int = 0
    visible_at: Optional[datetime] = None


class InMemoryJobQueue:
    """
    Process-local queue with SQS-like visibility and redrive behaviour.

    Used for local development and tests. Not durable.
    """

    def __init__(self, visibility_timeout: int = 360, max_receive_count: int = 3, clock: Clock = utcnow) -> None:
        self.visibility_timeout = timedelta(seconds=visibility_timeout)
        self.max_receive_count = max_receive_count
        self.dead_letters: List[QueueMessage] = []
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock

    def send(self, message: QueueMessage) -> str:
        message_id = uuid4().hex
        with self._lock:
            self._entries[message_id] = _Entry(message=message)
        return message_id

    def receive(self, max_messages: int = 1, wait_seconds: int = 0) -> List[ReceivedMessage]:
        now = self._clock()
        received: List[ReceivedMessage] = []
        with self._lock:
            for message_id, entry in list(self._entries.items()):
                if len(received) >= max_messages:
                    break
                if entry.visible_at is not None and entry.visible_at > now:
                    continue
                if entry.receive_count >= self.max_receive_count:
                    del self._entries[message_id]
                    self.dead_letters.append(entry.message)
                    logger.warning(f"Job {entry.message.job_id} moved to dead-letter queue after {entry.receive_count} receives")
                    continue
                entry.receive_count += 1
                entry.visible_at = now + self.visibility_timeout
                received.append(ReceivedMessage(message=entry.message, receipt=message_id, receive_count=entry.receive_count))
        return received

    def ack(self, received: ReceivedMessage) -> None:
        with self._lock:
            self._entries.pop(received.receipt, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class QueueConsumer:
    """
    Pulls messages one small batch at a time and hands each to the worker.

    Each polling loop processes its batch sequentially. ``run`` starts
    ``max_concurrency`` loops, which bounds how many renders can be in flight
    at once.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: MessageHandler,
        batch_size: int = 1,
        wait_seconds: int = 20,
        error_backoff: float = 5.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.queue = queue
        self.handler = handler
        self.batch_size = batch_size
        self.wait_seconds = wait_seconds
        self.error_backoff = error_backoff

    def poll_once(self) -> int:
        """
        Receive and process at most one batch.

        Returns:
            Number of messages received
        """
        batch = self.queue.receive(self.batch_size, self.wait_seconds)
        for received in batch:
            self._process(received)
        return len(batch)

    def _process(self, received: ReceivedMessage) -> bool:
        job_id = received.message.job_id
        try:
            self.handler(received.message)
        except Exception as exc:  # noqa: BLE001
            # Not acknowledged: the message reappears after the visibility timeout
            logger.error(f"Job {job_id} failed on receive {received.receive_count}; leaving message for redelivery: {exc}")
            return False
        self.queue.ack(received)
        return True

    def run(self, max_concurrency: int = 10, stop_event: Optional[threading.Event] = None) -> None:
        stop = stop_event or threading.Event()
        logger.info(f"Starting {max_concurrency} queue consumers (batch size {self.batch_size})")
        with ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="mkpdfs-worker") as executor:
            futures = [executor.submit(self._loop, stop) for _ in range(max_concurrency)]
            for future in futures:
                future.result()

    def _loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.poll_once()
            except QueueError as exc:
                logger.error(f"Queue polling failed: {exc}")
                stop.wait(self.error_backoff)


def handle_sqs_event(event: Dict[str, Any], handler: MessageHandler) -> None:
    """
    Process an SQS event delivered by a serverless runtime.

    Records are handled in order and the first failure propagates, which
    tells the runtime not to delete the batch.
    """
    for record in event.get("Records", []):
        handler(QueueMessage.from_json(record["body"]))
