"""FastAPI application entrypoint for photoset_dispatch."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from photoset.core.config import get_settings
from photoset.core.logger import bind_request_context, clear_request_context, get_logger
from photoset.core.metrics import record_http_request, render_prometheus_metrics
from photoset.core.observability import init_sentry, sentry_scope
from photoset.generation.router import cron_router
from photoset.generation.router import router as generation_router
from photoset.storage.db import check_connection as check_database_connection


settings = get_settings()
logger = get_logger("photoset.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id") or request.headers.get("upstash-message-id") or str(uuid4())
    bind_request_context(request_id=request_id)

    response = None
    status_code = 500

    try:
        with sentry_scope(request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
        image_provider=settings.image_provider,
        chunk_size=settings.generation_chunk_size,
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = check_database_connection()
    status = "ok" if db_ok else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
        },
    }

    return JSONResponse(content=payload, status_code=200 if db_ok else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(generation_router)
app.include_router(cron_router)
