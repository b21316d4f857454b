"""
Pytest configuration and fixtures for Mkpdfs Backend tests.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="mkpdfs_test_data_")
os.environ["MKPDFS_QUEUE_BACKEND"] = "memory"
os.environ["MKPDFS_JOBS_DB"] = os.path.join(_TEST_DATA_DIR, "jobs.db")
os.environ["MKPDFS_USAGE_DB"] = os.path.join(_TEST_DATA_DIR, "usage.db")
os.environ["MKPDFS_RATE_LIMIT_DB"] = os.path.join(_TEST_DATA_DIR, "rate_limits.db")

from mkpdfs_backend.configuration import make_runtime_config  # noqa: E402
from mkpdfs_backend.database import JobDatabase  # noqa: E402
from mkpdfs_backend.dependencies import Services, build_services  # noqa: E402
from mkpdfs_backend.job_queue import InMemoryJobQueue  # noqa: E402
from mkpdfs_backend.main import create_app  # noqa: E402
from mkpdfs_backend.models import GenerationRequest, QueueMessage, RenderResult  # noqa: E402
from mkpdfs_backend.submitter import JobSubmitter  # noqa: E402
from mkpdfs_backend.usage_ledger import UsageLedger  # noqa: E402
from mkpdfs_backend.webhooks import WebhookDispatcher  # noqa: E402
from mkpdfs_backend.worker import JobWorker  # noqa: E402

START = datetime(2026, 3, 14, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """A clock that only moves when a test says so."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeRenderer:
    """
    Renderer double returning queued results or raising queued errors.

    Each call pops the next entry of ``outcomes``; once empty it keeps
    succeeding with a default result.
    """

    def __init__(self, outcomes: Optional[list] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[dict] = []

    def render(self, template_id, data, *, job_id, user_id, send_email=None) -> RenderResult:
        self.calls.append({"template_id": template_id, "data": data, "job_id": job_id, "user_id": user_id, "send_email": send_email})
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, RenderResult):
            return outcome
        return RenderResult(
            url=f"https://files.example.com/generated/{user_id}/{job_id}.pdf",
            key=f"generated/{user_id}/{job_id}.pdf",
            size_bytes=2048,
        )


class WebhookReceiver:
    """Collects requests sent through an httpx.MockTransport."""

    def __init__(self, statuses: Optional[List[int]] = None, error: Optional[Exception] = None):
        self.statuses = list(statuses or [])
        self.error = error
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sleeps():
    """Records requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps) -> Callable[[float], None]:
    return sleeps.append


@pytest.fixture
def store(tmp_path):
    return JobDatabase(tmp_path / "jobs.db")


@pytest.fixture
def usage(tmp_path):
    return UsageLedger(tmp_path / "usage.db")


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(visibility_timeout=360, max_receive_count=3, clock=clock)


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
def dispatcher(store, receiver, fake_sleep, clock):
    return WebhookDispatcher(store, client=receiver.client(), sleep=fake_sleep, clock=clock)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def submitter(store, queue, usage, clock):
    return JobSubmitter(store, queue, usage=usage, clock=clock)


@pytest.fixture
def worker(store, renderer, usage, dispatcher, clock):
    return JobWorker(store, renderer, usage, dispatcher, clock=clock)


@pytest.fixture
def generation_request():
    return GenerationRequest(
        template_id="invoice-v2",
        data={"customer": "Acme", "lines": [{"sku": "A-1", "qty": 2}]},
        page_count=2,
        webhook_url="https://api.example.com/hook",
        webhook_secret="whsec_test",
    )


@pytest.fixture
def submit_job(submitter, generation_request):
    """Submit a job through the real submitter and return its id."""

    def _submit(user_id: str = "user-1", request: Optional[GenerationRequest] = None) -> str:
        return submitter.submit(user_id, request or generation_request).job_id

    return _submit


@pytest.fixture
def api_services(tmp_path, receiver, fake_sleep) -> Services:
    settings = make_runtime_config({
        "database": {
            "jobs_path": str(tmp_path / "api_jobs.db"),
            "usage_path": str(tmp_path / "api_usage.db"),
            "rate_limit_path": str(tmp_path / "api_rate_limits.db"),
        },
        "queue": {"backend": "memory"},
    })
    services = build_services(settings)
    services.dispatcher = WebhookDispatcher(services.store, client=receiver.client(), sleep=fake_sleep)
    return services


@pytest.fixture
def client(api_services):
    """Create a test client for an app wired to temporary stores."""
    return TestClient(create_app(api_services))


@pytest.fixture
def user_headers():
    return {"X-User-Id": "user-1"}


def queue_message(job_id: str = "job-1", **overrides) -> QueueMessage:
    fields = {
        "job_id": job_id,
        "user_id": "user-1",
        "template_id": "invoice-v2",
        "data": {"customer": "Acme"},
        "page_count": 1,
    }
    fields.update(overrides)
    return QueueMessage(**fields)
