"""
FastAPI application factory and HTTP schemas for the notification queue.

The module exposes a `create_app` function that builds the REST API used to
enqueue notifications and administer the queues. Authentication is enforced
through a configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ConfigDict

from .core import NotificationQueue

app = FastAPI(title="Notification Queue")
service: NotificationQueue | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "state_conflict": status.HTTP_409_CONFLICT,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by every response produced by the service."""
    ok: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class EnqueueOptions(BaseModel):
    """Per-job overrides accepted by ``POST /jobs``."""
    model_config = ConfigDict(extra="forbid")
    priority: Optional[int] = Field(default=None, description="Override of the policy priority (0-100)")
    delay_ms: Optional[int] = Field(default=None, description="Requested delay before dispatch")
    respect_quiet_hours: Optional[bool] = None
    max_attempts: Optional[int] = None


class EnqueuePayload(BaseModel):
    kind: str
    payload: Dict[str, Any]
    options: Optional[EnqueueOptions] = None


class EnqueueResponse(CommandStatus):
    skipped: bool = False
    job_id: Optional[str] = None


class BatchPayload(BaseModel):
    recipients: List[Any]
    options: Optional[Dict[str, Any]] = None


class BatchFailure(BaseModel):
    recipient: Any
    reason: str


class BatchResponse(CommandStatus):
    batch_id: str
    job_ids: List[str]
    chunks: int
    total_recipients: int
    queued: int
    failed_to_queue: int
    failures: List[BatchFailure] = Field(default_factory=list)


class BatchStatusResponse(CommandStatus):
    batch: Dict[str, Any]


class DigestPayload(BaseModel):
    user_id: str
    window: Dict[str, Any]
    preferences: Optional[Dict[str, Any]] = None
    options: Optional[EnqueueOptions] = None


class DigestResponse(CommandStatus):
    scheduled: bool
    job_id: Optional[str] = None


class JobResponse(CommandStatus):
    job: Dict[str, Any]


class JobsResponse(CommandStatus):
    jobs: List[Dict[str, Any]]


class CancelResponse(CommandStatus):
    id: str
    state: str


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    sent: int = 0
    failed: int = 0
    delayed: int = 0
    cancelled: int = 0


class StatsResponse(CommandStatus):
    queues: Dict[str, QueueStats]


class PauseResponse(CommandStatus):
    paused: bool


class RunNowPayload(BaseModel):
    queue: Optional[str] = None


class RunNowResponse(CommandStatus):
    processed: Optional[int] = None


class CleanupPayload(BaseModel):
    older_than_seconds: Optional[int] = None


class CleanupResponse(CommandStatus):
    removed: int


def _check(result: Dict[str, Any]) -> Dict[str, Any]:
    """Raise the HTTP error matching a failed command result."""
    if not isinstance(result, dict) or result.get("ok") is not True:
        code = result.get("error_code") if isinstance(result, dict) else None
        raise HTTPException(status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), detail=result)
    return result


def create_app(
    svc: NotificationQueue,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`notify_queue.core.NotificationQueue` that
        implements the business logic for each endpoint.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Notification Queue", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    def _service() -> NotificationQueue:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.post("/jobs", response_model=EnqueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def enqueue(payload: EnqueuePayload):
        """Validate and enqueue one notification job."""
        options = payload.options.model_dump(exclude_none=True) if payload.options else None
        result = await _service().handle_command(
            "enqueue", {"kind": payload.kind, "payload": payload.payload, "options": options}
        )
        return EnqueueResponse.model_validate(_check(result))

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(
        queue: Optional[str] = Query(default=None),
        state: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=100, ge=1, le=1000),
    ):
        """List jobs, newest first, optionally filtered by queue and state."""
        result = await _service().handle_command("listJobs", {"queue": queue, "state": state, "limit": limit})
        return JobsResponse.model_validate(_check(result))

    @api.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        """Return the job view including its transition history."""
        result = await _service().handle_command("getStatus", {"id": job_id})
        return JobResponse.model_validate(_check(result))

    @api.post("/jobs/{job_id}/cancel", response_model=CancelResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_job(job_id: str):
        result = await _service().handle_command("cancel", {"id": job_id})
        return CancelResponse.model_validate(_check(result))

    @api.post("/jobs/{job_id}/retry", response_model=EnqueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def retry_job(job_id: str):
        """Re-deliver a failed job through the retry queue."""
        result = await _service().handle_command("retry", {"id": job_id})
        return EnqueueResponse.model_validate(_check(result))

    @api.post("/batches", response_model=BatchResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def enqueue_batch(payload: BatchPayload):
        """Split a bulk send into chunk jobs; invalid recipients are reported, not fatal."""
        result = await _service().handle_command(
            "enqueueBatch", {"recipients": payload.recipients, "options": payload.options}
        )
        return BatchResponse.model_validate(_check(result))

    @api.get("/batches/{batch_id}", response_model=BatchStatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_batch(batch_id: str):
        result = await _service().handle_command("getBatch", {"id": batch_id})
        return BatchStatusResponse.model_validate(_check(result))

    @api.post("/digests", response_model=DigestResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def schedule_digest(payload: DigestPayload):
        """Schedule a weekly digest unless the user disabled it."""
        data = payload.model_dump(exclude_none=True)
        result = await _service().handle_command("scheduleDigest", data)
        return DigestResponse.model_validate(_check(result))

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats():
        """Per-queue counts: waiting, active, sent, failed, delayed, cancelled."""
        result = await _service().handle_command("getStats", {})
        return StatsResponse.model_validate(_check(result))

    @router.post("/pause", response_model=PauseResponse, response_model_exclude_none=True)
    async def pause():
        """Stop claiming new jobs; in-flight deliveries complete."""
        result = await _service().handle_command("pause", {})
        return PauseResponse.model_validate(_check(result))

    @router.post("/resume", response_model=PauseResponse, response_model_exclude_none=True)
    async def resume():
        result = await _service().handle_command("resume", {})
        return PauseResponse.model_validate(_check(result))

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now(payload: Optional[RunNowPayload] = None):
        data = payload.model_dump(exclude_none=True) if payload else {}
        result = await _service().handle_command("run now", data)
        return RunNowResponse.model_validate(_check(result))

    @router.post("/cleanup", response_model=CleanupResponse, response_model_exclude_none=True)
    async def cleanup(payload: Optional[CleanupPayload] = None):
        """Delete terminal jobs older than the retention window."""
        data = payload.model_dump(exclude_none=True) if payload else {}
        result = await _service().handle_command("cleanup", data)
        return CleanupResponse.model_validate(_check(result))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the queue."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api


def create_service_app(svc: NotificationQueue, api_token: str | None = None) -> FastAPI:
    """Build the app with a lifespan that starts and stops the queue workers."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await svc.start()
        yield
        await svc.stop()

    return create_app(svc, api_token=api_token, lifespan=lifespan)
