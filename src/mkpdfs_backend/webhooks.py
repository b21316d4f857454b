"""
Outbound webhook signing, delivery and URL safety checks.

Receivers verify a delivery by recomputing
``HMAC-SHA256(secret, "{X-Mkpdfs-Timestamp}.{raw body}")`` and comparing it
with the ``X-Mkpdfs-Signature`` header (``sha256=<hex>``). Jobs registered
without a secret are sent with the literal signature ``none``.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging
import time
from typing import Callable, Optional, Sequence, Union
from urllib.parse import urlsplit

import httpx

from .database import JobStore
from .errors import WebhookUrlError
from .models import CompletedData, FailedData, WebhookEvent, WebhookPayload, WebhookStatus
from .utils import Clock, best_effort, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HEADER_PREFIX = "X-Mkpdfs"
DEFAULT_USER_AGENT = "Mkpdfs-Webhook/1.0"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)
DEFAULT_TIMEOUT = 10.0

BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})
METADATA_HOSTS = frozenset({"169.254.169.254"})
PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fd00::/8"),
)


def generate_signature(payload: str, timestamp: int, secret: Optional[str]) -> str:
    if not secret:
        return "none"
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(
    payload: str,
    timestamp: int,
    signature: str,
    secret: str,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Receiver-side check of a delivery signature.

    Args:
        payload: The raw request body
        timestamp: Value of the timestamp header
        signature: Value of the signature header
        secret: The secret registered with the job
        tolerance_seconds: Reject deliveries older than this, if given
        now: Current unix time (defaults to ``time.time()``)
    """
    if tolerance_seconds is not None:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            return False
    expected = generate_signature(payload, timestamp, secret)
    return hmac.compare_digest(expected, signature)


def validate_webhook_url(url: str) -> None:
    """
    Reject webhook URLs that could be used to reach internal services.

    Runs when a URL is registered with a job, not at delivery time. Only the
    literal host is inspected: a public hostname that resolves to a private
    address is not caught.

    Raises:
        WebhookUrlError: With a message describing the rejected property
    """
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
        parsed.port  # noqa: B018 - raises ValueError on a malformed port
    except (ValueError, TypeError, AttributeError) as exc:
        raise WebhookUrlError("Invalid webhook URL format") from exc

    if not parsed.scheme or not hostname:
        raise WebhookUrlError("Invalid webhook URL format")

    if parsed.scheme.lower() != "https":
        raise WebhookUrlError("Webhook URL must use HTTPS")

    hostname = hostname.lower()

    if hostname in BLOCKED_HOSTS:
        raise WebhookUrlError("Webhook URL cannot point to localhost")

    if hostname in METADATA_HOSTS:
        raise WebhookUrlError("Webhook URL cannot point to the cloud metadata endpoint")

    if _is_private_address(hostname):
        raise WebhookUrlError("Webhook URL cannot point to private IP addresses")


def _is_private_address(hostname: str) -> bool:
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        # Not an IP literal; only fd-prefixed IPv6-looking names are caught
        return hostname.startswith("fd") and ":" in hostname
    return any(address in network for network in PRIVATE_NETWORKS if network.version == address.version)


class WebhookDispatcher:
    """
    Delivers one signed notification per call, with bounded retries.

    Delivery is best effort: the outcome is recorded on the job record and
    returned, but a receiver that never answers cannot fail the job.

    Attributes:
        store: Status store receiving attempt counts and the final webhook status
        client: httpx client used for POST requests
    """

    def __init__(
        self,
        store: JobStore,
        client: Optional[httpx.Client] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        header_prefix: str = DEFAULT_HEADER_PREFIX,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if len(retry_delays) < max_attempts - 1:
            raise ValueError("retry_delays must cover every retry")
        self.store = store
        self.client = client or httpx.Client()
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.timeout = timeout
        self.user_agent = user_agent
        self.header_prefix = header_prefix
        self._sleep = sleep
        self._clock = clock

    def deliver(
        self,
        job_id: str,
        webhook_url: str,
        webhook_secret: Optional[str],
        event: WebhookEvent,
        data: Union[CompletedData, FailedData],
    ) -> bool:
        """
        Sign and POST a webhook, retrying on non-2xx responses and network errors.

        Returns:
            True once any attempt gets a 2xx response, False after all
            attempts failed
        """
        sent_at = self._clock()
        payload = WebhookPayload(event=event, timestamp=sent_at, data=data).to_json()
        timestamp = int(sent_at.timestamp())
        headers = {
            "Content-Type": "application/json",
            f"{self.header_prefix}-Signature": generate_signature(payload, timestamp, webhook_secret),
            f"{self.header_prefix}-Timestamp": str(timestamp),
            f"{self.header_prefix}-Event": event.value,
            "User-Agent": self.user_agent,
        }

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self._sleep(self.retry_delays[attempt - 2])

            best_effort(
                f"record webhook attempt {attempt} for job {job_id}",
                self.store.record_webhook_attempt,
                job_id,
                attempt,
                self._clock(),
            )

            try:
                response = self.client.post(webhook_url, content=payload, headers=headers, timeout=self.timeout)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.error(f"Webhook attempt {attempt} failed for job {job_id}: {last_error}")
                continue

            if response.is_success:
                self._set_status(job_id, WebhookStatus.DELIVERED)
                logger.info(f"Webhook delivered successfully for job {job_id}")
                return True

            last_error = f"Webhook returned {response.status_code}: {response.reason_phrase}"
            logger.warning(f"Webhook attempt {attempt} failed for job {job_id}: {last_error}")

        self._set_status(job_id, WebhookStatus.FAILED)
        logger.error(f"Webhook delivery failed after {self.max_attempts} attempts for job {job_id}: {last_error}")
        return False

    def _set_status(self, job_id: str, status: WebhookStatus) -> None:
        best_effort(f"record webhook status for job {job_id}", self.store.set_webhook_status, job_id, status)

    def close(self) -> None:
        self.client.close()
