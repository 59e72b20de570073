"""
FastAPI application entry point.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from visitqueue import __version__
from visitqueue.api.auth import decode_token
from visitqueue.api.rate_limit import create_rate_limit_middleware
from visitqueue.api.routes import health_router, queue_router, servers_router, stats_router
from visitqueue.api.websocket import get_ws_manager, websocket_handler
from visitqueue.config import Settings, get_settings
from visitqueue.db import InMemoryQueueStore, QueueStore, SqlQueueStore, get_engine, init_db
from visitqueue.engine import AuditLog, NotificationFanOut, QueueController
from visitqueue.exceptions import (
    ConcurrencyConflict,
    EntryNotFound,
    InvalidIdentifier,
    PreconditionFailed,
    QueueServiceError,
    ServerNotFound,
    StoreUnavailable,
)
from visitqueue.observability.logging import (
    bind_caller,
    bind_context,
    clear_context,
    setup_logging,
)
from visitqueue.observability.metrics import get_metrics, setup_metrics
from visitqueue.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from visitqueue.types.api import ErrorResponse

logger = logging.getLogger(__name__)

STORE_RETRY_AFTER_SECONDS = 1


async def build_store(settings: Settings) -> QueueStore:
    """Create the configured queue store."""
    if settings.store_backend == "memory":
        return InMemoryQueueStore(lock_timeout_seconds=settings.store_lock_timeout_seconds)

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)
    return SqlQueueStore(
        session_factory,
        lock_timeout_seconds=settings.store_lock_timeout_seconds,
    )


def build_controller(store: QueueStore) -> QueueController:
    """Wire the controller to the store and the WebSocket publisher."""
    metrics = get_metrics()
    return QueueController(
        store,
        fanout=NotificationFanOut(store, get_ws_manager(), metrics),
        audit=AuditLog(store, metrics),
        metrics=metrics,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the store and controller unless one was injected.
    """
    setup_logging()
    setup_metrics()

    owns_store = getattr(app.state, "controller", None) is None
    if owns_store:
        settings = get_settings()
        setup_tracing()
        store = await build_store(settings)
        app.state.controller = build_controller(store)
        logger.info("Application started", extra={"store_backend": settings.store_backend})

    yield

    if owns_store:
        await app.state.controller.store.close()
        app.state.controller = None
    logger.info("Application shutdown")


def error_status(exc: QueueServiceError) -> int:
    """HTTP status for a queue service error."""
    if isinstance(exc, InvalidIdentifier):
        return 422
    if isinstance(exc, (ServerNotFound, EntryNotFound)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (PreconditionFailed, ConcurrencyConflict)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, StoreUnavailable):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def queue_error_handler(request: Request, exc: QueueServiceError) -> JSONResponse:
    """Render a QueueServiceError as an ErrorResponse."""
    status_code = error_status(exc)
    headers = None
    if isinstance(exc, StoreUnavailable):
        headers = {"Retry-After": str(STORE_RETRY_AFTER_SECONDS)}

    log = logger.warning if status_code >= 500 else logger.info
    log(
        "Request rejected",
        extra={"error": exc.code, "status": status_code, "path": request.url.path},
    )

    body = ErrorResponse(error=exc.code, detail=str(exc), retryable=exc.retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a request id to log records and record API metrics."""
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    clear_context()
    bind_context(request_id=request_id)

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(request.method, endpoint, response.status_code, duration)

    response.headers["X-Request-ID"] = request_id
    clear_context()
    return response


def create_app(controller: QueueController | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        controller: Pre-built controller. When given, startup does not
            create a store and shutdown does not close it.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Visit Queue API",
        description="Per-server visit queues with live positions and wait estimates",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BaseHTTPMiddleware, dispatch=create_rate_limit_middleware())
    app.add_middleware(BaseHTTPMiddleware, dispatch=request_context_middleware)

    app.add_exception_handler(QueueServiceError, queue_error_handler)

    app.include_router(health_router)
    app.include_router(queue_router)
    app.include_router(servers_router)
    app.include_router(stats_router)

    @app.websocket("/ws/queue")
    async def queue_websocket(
        websocket: WebSocket,
        token: str = Query(...),
    ):
        """
        WebSocket endpoint for real-time queue updates.

        Clients authenticate with their bearer token as the `token` query
        parameter, then subscribe to server channels.
        """
        try:
            token_data = decode_token(token)
        except HTTPException:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        bind_caller(token_data.subject, token_data.role.value)

        queue_controller = websocket.app.state.controller
        if queue_controller is None:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        await websocket_handler(websocket, token_data.subject, queue_controller)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "visitqueue.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
