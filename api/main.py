"""
FastAPI Application — admin REST API over the notification queue.

Provides:
- Health check (including whether the dispatcher is running)
- Queue statistics and record listing for the admin dashboard
- Manual enqueue (custom admin notifications) and operator retry
- Dispatcher metrics

Every /api/v1 route requires the ``X-Admin-Token`` header when
``api.admin_token`` is configured.

Run:
    uvicorn api.main:app --port 8000
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel

from config.logging import configure_logging
from config.settings import Settings, get_settings
from database.session import init_db
from database.store_factory import create_store
from job_queue.dispatcher import Dispatcher
from job_queue.errors import InvalidMessageError, InvalidStateError, RecordNotFoundError
from job_queue.retry import RetryPolicy
from job_queue.service import MAX_LIST_LIMIT, NotificationQueue
from models.schemas import NotificationCategory, NotificationStatus
from transport.factory import create_transport

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    recipient: str
    subject: str = ""
    body: str
    category: str = NotificationCategory.CUSTOM_ADMIN.value
    correlation_ref: str = ""
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Dependencies
# ──────────────────────────────────────────────────────────────

def get_queue(request: Request) -> NotificationQueue:
    return request.app.state.queue


def get_dispatcher(request: Request) -> Optional[Dispatcher]:
    return request.app.state.dispatcher


async def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
):
    expected = request.app.state.settings.api.admin_token
    if expected and x_admin_token != expected:
        raise HTTPException(401, "Invalid or missing admin token")


router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_admin)])


# ══════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ══════════════════════════════════════════════════════════════

@router.get("/notifications/stats")
async def notification_stats(queue: NotificationQueue = Depends(get_queue)):
    return (await queue.get_stats()).model_dump()


@router.get("/notifications")
async def list_notifications(
    status: Optional[NotificationStatus] = None,
    category: Optional[str] = None,
    limit: int = Query(50, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(0, ge=0),
    queue: NotificationQueue = Depends(get_queue),
):
    records = await queue.list_records(status=status, category=category, limit=limit, offset=offset)
    return {
        "items": [r.model_dump(mode="json") for r in records],
        "limit": limit,
        "offset": offset,
    }


@router.get("/notifications/{record_id}")
async def get_notification(record_id: str, queue: NotificationQueue = Depends(get_queue)):
    try:
        record = await queue.get(record_id)
    except RecordNotFoundError as e:
        raise HTTPException(404, str(e))
    return record.model_dump(mode="json")


@router.post("/notifications", status_code=202)
async def enqueue_notification(req: EnqueueRequest, queue: NotificationQueue = Depends(get_queue)):
    try:
        record = await queue.enqueue(
            recipient=req.recipient,
            subject=req.subject,
            body=req.body,
            category=req.category,
            correlation_ref=req.correlation_ref,
            metadata=req.metadata,
        )
    except InvalidMessageError as e:
        raise HTTPException(422, str(e))
    return {"status": "enqueued", "id": record.id}


@router.post("/notifications/{record_id}/retry")
async def retry_notification(record_id: str, queue: NotificationQueue = Depends(get_queue)):
    try:
        record = await queue.retry_failed(record_id)
    except RecordNotFoundError as e:
        raise HTTPException(404, str(e))
    except InvalidStateError as e:
        raise HTTPException(409, str(e))
    return {"status": record.status.value, "id": record.id}


# ══════════════════════════════════════════════════════════════
#  DISPATCHER
# ══════════════════════════════════════════════════════════════

@router.get("/dispatcher/metrics")
async def dispatcher_metrics(dispatcher: Optional[Dispatcher] = Depends(get_dispatcher)):
    if dispatcher is None:
        raise HTTPException(404, "No dispatcher in this process")
    return {
        "worker": dispatcher.worker_name,
        "running": dispatcher.is_running,
        **dispatcher.metrics.to_dict(),
    }


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    queue: NotificationQueue = None,
    dispatcher: Dispatcher = None,
    start_dispatcher: Optional[bool] = None,
) -> FastAPI:
    """
    Wire store, transport, queue, and dispatcher from settings.

    Pre-built ``queue`` / ``dispatcher`` objects are used as given (tests,
    embedding). ``start_dispatcher`` overrides ``api.run_dispatcher``.
    """
    settings = settings or get_settings()
    owns_components = queue is None
    transport = None

    if queue is None:
        store = create_store({
            "store_backend": settings.database.store_backend,
            "store_file_dir": settings.database.store_file_dir,
            "url": settings.database.url,
        })
        policy = RetryPolicy.from_config(settings.dispatch)
        queue = NotificationQueue(store, policy=policy)
        if dispatcher is None:
            transport = create_transport(settings.transport)
            dispatcher = Dispatcher.from_settings(settings, store, transport)

    if start_dispatcher is None:
        start_dispatcher = settings.api.run_dispatcher

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level, json=settings.logging.json)

        if owns_components and settings.database.store_backend == "sql" and settings.database.create_tables:
            await init_db(queue.store.engine)
        if transport is not None:
            await transport.initialize()
        if dispatcher is not None and start_dispatcher:
            dispatcher.start()

        logger.info("notification_api_started",
                    app=settings.app_name,
                    store_backend=settings.database.store_backend,
                    transport=settings.transport.backend,
                    dispatcher=bool(dispatcher and start_dispatcher))
        yield

        if dispatcher is not None:
            await dispatcher.stop()
        if owns_components:
            if transport is not None:
                await transport.close()
            await queue.store.close()
        logger.info("notification_api_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Durable notification queue: enqueue, status, and operator retry",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.queue = queue
    app.state.dispatcher = dispatcher

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dispatcher_running": bool(app.state.dispatcher and app.state.dispatcher.is_running),
        }

    app.include_router(router)
    return app


app = create_app()
