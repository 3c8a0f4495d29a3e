from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from contentpulse.api.routes import router
from contentpulse.dependencies import (
    get_link_repository,
    get_settings,
    get_sync_service,
    get_telemetry,
)
from contentpulse.logging_config import configure_application_logging
from contentpulse.services.scheduler_service import SchedulerService

LOGGER = logging.getLogger("content_pulse.api")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


async def storage_error_handler(request: Request, exc: Exception) -> Response:
    LOGGER.error(
        "storage error method=%s path=%s error_type=%s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage is temporarily unavailable; retry shortly."},
        headers={"Retry-After": "5"},
    )


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    telemetry = get_telemetry()
    scheduler: SchedulerService | None = None

    if settings.scheduler_enabled:
        scheduler = SchedulerService(
            link_repository=get_link_repository(),
            sync_service=get_sync_service(),
            poll_interval_seconds=settings.scheduler_poll_interval_seconds,
            refresh_interval_seconds=settings.scheduler_refresh_interval_seconds,
            telemetry=telemetry,
            lock_path=settings.data_dir / "scheduler.lock",
        )
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Content Pulse API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(sqlite3.Error, storage_error_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
