from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Template data is stored and forwarded untouched; only the renderer reads it.
DocumentData = Dict[str, Any]


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class WebhookStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEvent(str, Enum):
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"


class ErrorCode(str, Enum):
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    GENERATION_TIMEOUT = "GENERATION_TIMEOUT"
    MEMORY_EXCEEDED = "MEMORY_EXCEEDED"
    GENERATION_ERROR = "GENERATION_ERROR"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobRecord(CamelModel):
    job_id: str
    user_id: str
    template_id: str
    data: DocumentData
    page_count: int = 1
    status: JobStatus = JobStatus.PENDING
    send_email: Optional[List[str]] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_status: Optional[WebhookStatus] = None
    webhook_attempts: Optional[int] = None
    webhook_last_attempt: Optional[datetime] = None
    pdf_url: Optional[str] = None
    pdf_key: Optional[str] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_public(self) -> Dict[str, Any]:
        """camelCase view for status queries; the webhook secret never leaves the store."""
        return self.model_dump(mode="json", by_alias=True, exclude={"webhook_secret"})


class QueueMessage(CamelModel):
    job_id: str
    user_id: str
    template_id: str
    data: DocumentData
    send_email: Optional[List[str]] = None
    page_count: int = 1

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, body: Union[str, bytes]) -> "QueueMessage":
        return cls.model_validate(json.loads(body))


class GenerationRequest(CamelModel):
    template_id: Optional[str] = None
    data: Optional[DocumentData] = None
    page_count: int = 1
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    send_email: Optional[List[str]] = None


class JobSubmitted(CamelModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING


class RenderResult(CamelModel):
    url: str
    key: str
    size_bytes: int


class UsageCounter(CamelModel):
    user_id: str
    year_month: str
    pdf_count: int = 0
    total_size_bytes: int = 0
    last_activity: Optional[datetime] = None


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int


class CompletedData(CamelModel):
    job_id: str
    status: JobStatus = JobStatus.COMPLETED
    pdf_url: str
    page_count: int
    size_bytes: int
    created_at: datetime
    completed_at: datetime


class FailedData(CamelModel):
    job_id: str
    status: JobStatus = JobStatus.FAILED
    error: str
    error_code: ErrorCode
    created_at: datetime
    completed_at: datetime


class WebhookPayload(BaseModel):
    event: WebhookEvent
    timestamp: datetime
    data: Union[CompletedData, FailedData]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class JobOutcome(BaseModel):
    """What one worker run did to a job; returned, never raised."""

    job_id: str
    status: JobStatus
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    skipped: bool = Field(default=False, description="Job was already completed; nothing was re-rendered.")

    @property
    def failed(self) -> bool:
        return self.status == JobStatus.FAILED
