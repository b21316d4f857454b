from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import Services, build_services
from .errors import PersistenceError, QueueError, QuotaExceededError, RateLimitExceededError, ValidationError
from .models import CompletedData, ErrorCode, FailedData, GenerationRequest, JobRecord, JobStatus, UsageCounter, WebhookEvent
from .utils import configure_logging

REDELIVER_PURPOSE = "webhook-redeliver"


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    configure_logging(services.settings.logging.level)

    app = FastAPI(title="Mkpdfs API", version="0.1.0")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(QuotaExceededError)
    def _quota_error(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "currentUsage": exc.used, "limit": exc.limit},
        )

    @app.exception_handler(RateLimitExceededError)
    def _rate_limit_error(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        return JSONResponse(status_code=429, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    @app.exception_handler(QueueError)
    def _unavailable(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})

    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(x_user_id: str = Header(...)) -> str:
    """The authorizer in front of the API passes the authenticated user id through."""
    return x_user_id


def _owned_job(services: Services, job_id: str, user_id: str) -> JobRecord:
    record = services.store.get_job(job_id)
    if not record or record.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return record


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/jobs", status_code=202)
    def submit_job(
        request: GenerationRequest,
        user_id: str = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        submitted = services.submitter.submit(user_id, request)
        return submitted.model_dump(mode="json", by_alias=True)

    @app.get("/jobs")
    def list_jobs(
        user_id: str = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> List[Dict[str, Any]]:
        return [record.to_public() for record in services.store.list_jobs(user_id)]

    @app.get("/jobs/{job_id}")
    def get_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return _owned_job(services, job_id, user_id).to_public()

    @app.get("/usage/{year_month}")
    def get_usage(
        year_month: str,
        user_id: str = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        usage: UsageCounter = services.usage.get_usage(user_id, year_month)
        return usage.model_dump(mode="json", by_alias=True)

    @app.post("/jobs/{job_id}/webhook/redeliver")
    def redeliver_webhook(
        job_id: str,
        request: Request,
        user_id: str = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        record = _owned_job(services, job_id, user_id)
        if not record.webhook_url:
            raise HTTPException(status_code=409, detail="Job has no webhook configured")
        if not record.is_terminal:
            raise HTTPException(status_code=409, detail="Job has not finished yet")

        client_ip = request.client.host if request.client else "unknown"
        rate_key = f"{client_ip}:{REDELIVER_PURPOSE}"
        decision = services.rate_limiter.check(rate_key)
        if not decision.allowed:
            raise RateLimitExceededError("Rate limit exceeded. Please try again later.")

        delivered = services.dispatcher.deliver(
            record.job_id,
            record.webhook_url,
            record.webhook_secret,
            *_terminal_event(record),
        )
        if delivered:
            services.rate_limiter.record(rate_key)
        return {"delivered": delivered, "remaining": decision.remaining}


def _terminal_event(record: JobRecord):
    completed_at = record.completed_at or record.updated_at
    if record.status == JobStatus.COMPLETED:
        return WebhookEvent.JOB_COMPLETED, CompletedData(
            job_id=record.job_id,
            pdf_url=record.pdf_url or "",
            page_count=record.page_count,
            size_bytes=record.size_bytes or 0,
            created_at=record.created_at,
            completed_at=completed_at,
        )
    return WebhookEvent.JOB_FAILED, FailedData(
        job_id=record.job_id,
        error=record.error or "",
        error_code=record.error_code or ErrorCode.GENERATION_ERROR,
        created_at=record.created_at,
        completed_at=completed_at,
    )


app = create_app()
