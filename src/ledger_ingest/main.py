"""Ledger Ingest - FastAPI application."""

import asyncio
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledger_ingest import __version__
from ledger_ingest.config import settings
from ledger_ingest.database import init_db
from ledger_ingest.logger import configure_logging, get_logger
from ledger_ingest.routers import imports
from ledger_ingest.services.import_processor import ImportProcessor
from ledger_ingest.services.import_supervisor import run_import_supervisor
from ledger_ingest.services.job_queue import ImportJobQueue
from ledger_ingest.services.storage import StorageService

# Initialize logging early
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start import workers and the stale-import supervisor; stop them on shutdown."""
    await init_db()

    storage = getattr(app.state, "storage", None) or StorageService()
    app.state.storage = storage
    job_queue = ImportJobQueue(ImportProcessor(storage))
    app.state.job_queue = job_queue
    job_queue.start()

    stop_event = asyncio.Event()
    supervisor_task = asyncio.create_task(run_import_supervisor(stop_event))
    logger.info("Application started", version=__version__)
    yield
    stop_event.set()
    supervisor_task.cancel()
    await job_queue.stop()

    with suppress(asyncio.CancelledError):
        await supervisor_task
    logger.info("Application shutting down")


app = FastAPI(
    title="Ledger Ingest API",
    description="Statement import, deduplication, reconciliation and auto-categorization",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def logging_middleware(request: Request, call_next: Any) -> Response:
    """Middleware to inject Request-ID and log request details."""
    request_id = request.headers.get("X-Request-ID", str(uuid4()))

    # structlog contextvars are per task; clear so the request starts clean.
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        logger.info(
            "HTTP Request",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )

        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as exc:
        duration = time.perf_counter() - start_time
        logger.exception(
            "HTTP Request Failed",
            duration_ms=round(duration * 1000, 2),
            error=str(exc),
        )
        raise


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler to ensure JSON response."""
    if settings.debug:
        detail = str(exc)
        trace = traceback.format_exc()
    else:
        detail = "An internal server error occurred. Please try again later."
        trace = None

    return JSONResponse(
        status_code=500,
        content={
            "detail": detail,
            "trace": trace,
            "request_id": structlog.contextvars.get_contextvars().get("request_id"),
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-User-Id", "X-Request-ID"],
)

app.include_router(imports.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": __version__}
