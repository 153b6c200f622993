"""
FastAPI application factory and HTTP schemas for the birthday mail queue.

`create_app` builds the REST API used by the scheduler and the UI to enqueue
messages, drive the processor and inspect the queue. Authentication is
enforced through a configurable API token carried in the ``X-API-Token``
header.
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .core import EmailQueueProcessor
from .models import ConfigurationError, ContactSnapshot, MessageStatus, QueuedMessage

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class EnqueuePayload(BaseModel):
    """Message accepted by ``POST /queue``."""
    contact: ContactSnapshot
    subject: str
    body: str
    priority: int = 0
    max_retries: Optional[int] = Field(default=None, ge=1)


class EnqueueResponse(CommandStatus):
    queue_id: Optional[int] = None


class RateWindow(BaseModel):
    used: int
    max: int


class QueueStats(BaseModel):
    """Counts per status, rate-limiter occupancy and attempts of the last day."""
    pending: int
    sent: int
    failed: int
    total: int
    rate_limits: Dict[str, RateWindow]
    last_24h: Dict[str, int] = {}


class StatusResponse(BaseModel):
    running: bool
    state: str
    cycles: int
    config: Dict[str, Any]
    stats: QueueStats


class CycleReport(BaseModel):
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    rate_limited: bool = False
    error: Optional[str] = None


class ProcessNowResponse(CommandStatus):
    report: CycleReport


class ConfigPayload(BaseModel):
    """Partial queue configuration; omitted fields keep their value."""
    model_config = ConfigDict(extra="forbid")

    max_per_minute: Optional[int] = None
    max_per_hour: Optional[int] = None
    processing_interval: Optional[float] = None
    cleanup_interval: Optional[float] = None
    batch_size: Optional[int] = None
    message_delay: Optional[float] = None
    max_retries: Optional[int] = None
    retry_delays: Optional[List[int]] = None
    count_failed_attempts: Optional[bool] = None


class ConfigResponse(CommandStatus):
    config: Dict[str, Any]


class CleanupPayload(BaseModel):
    days_old: float = Field(default=30, ge=0)


class CleanupResponse(CommandStatus):
    removed: int


class MessagesResponse(CommandStatus):
    messages: List[QueuedMessage]


class SendLogEntry(BaseModel):
    id: int
    message_id: Optional[int] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    status: str
    error: Optional[str] = None
    timestamp: float


class SendLogResponse(CommandStatus):
    entries: List[SendLogEntry]


def create_app(
    processor: EmailQueueProcessor,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    processor:
        The :class:`~birthday_mail_queue.core.EmailQueueProcessor` serving
        every endpoint.
    api_token:
        Optional secret used to protect every endpoint.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Birthday Mail Queue", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.processor = processor
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, dependencies=[auth_dependency])
    async def get_status():
        """Return processor state, configuration and queue statistics."""
        return await processor.get_status()

    @api.get("/stats", response_model=QueueStats, dependencies=[auth_dependency])
    async def get_stats():
        return await processor.get_stats()

    @api.get("/messages", response_model=MessagesResponse, dependencies=[auth_dependency])
    async def list_messages(
        status_filter: Optional[MessageStatus] = Query(default=None, alias="status"),
        limit: Optional[int] = None,
    ):
        """Expose queued messages in processing order."""
        messages = await processor.list_messages(status=status_filter, limit=limit)
        return MessagesResponse(ok=True, messages=messages)

    @api.get("/send-log", response_model=SendLogResponse, dependencies=[auth_dependency])
    async def send_log(limit: int = 50):
        """Most recent delivery attempts, newest first."""
        entries = await processor.send_log(limit)
        return SendLogResponse(ok=True, entries=entries)

    @api.post("/queue", response_model=EnqueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def enqueue(payload: EnqueuePayload):
        """Add one message to the queue without waiting for delivery."""
        result = await processor.enqueue(
            payload.contact,
            payload.subject,
            payload.body,
            payload.priority,
            max_retries=payload.max_retries,
        )
        if not result.get("ok"):
            raise HTTPException(status_code=400, detail=result.get("error"))
        return EnqueueResponse.model_validate(result)

    @api.post("/config", response_model=ConfigResponse, dependencies=[auth_dependency])
    async def update_config(payload: ConfigPayload):
        """Merge new rate limits, pacing or retry settings."""
        try:
            config = processor.update_config(payload.model_dump(exclude_none=True))
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return ConfigResponse(ok=True, config=config)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the processor."""
        return Response(content=processor.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/start", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def start():
        await processor.start_processing()
        return BasicOkResponse(ok=True)

    @router.post("/stop", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def stop():
        await processor.stop_processing()
        return BasicOkResponse(ok=True)

    @router.post("/process-now", response_model=ProcessNowResponse, response_model_exclude_none=True)
    async def process_now():
        """Run one processing cycle immediately."""
        report = await processor.process_now()
        return ProcessNowResponse(ok="error" not in report, error=report.get("error"), report=report)

    @router.post("/cleanup", response_model=CleanupResponse, response_model_exclude_none=True)
    async def cleanup(payload: CleanupPayload):
        """Delete sent and failed messages older than ``days_old`` days."""
        removed = await processor.cleanup_old_items(payload.days_old)
        return CleanupResponse(ok=True, removed=removed)

    api.include_router(router)
    return api
