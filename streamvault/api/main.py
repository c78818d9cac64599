"""HTTP surface: playback token routes, admin jobs and health checks."""

from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Dict
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from streamvault.access.identity import bind_current_caller, reset_current_caller
from streamvault.access.router import router as playback_router
from streamvault.admin.router import router as admin_router
from streamvault.auth.middleware import AUTH_CONTEXT_KEY, caller_from_request, resolve_request_auth_context
from streamvault.core.config import get_settings
from streamvault.core.logger import bind_request_context, clear_request_context, get_logger
from streamvault.core.metrics import record_http_request, render_prometheus_metrics
from streamvault.core.observability import init_sentry, sentry_scope
from streamvault.storage.db import load_models
from streamvault.storage.db import test_connection as test_db_connection
from streamvault.storage.redis_client import test_connection as test_redis_connection


PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

settings = get_settings()
logger = get_logger("streamvault.api")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    load_models()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        remote_provider=settings.remote_provider,
        sentry_enabled=init_sentry(),
        metrics_enabled=settings.metrics_enabled,
    )
    yield
    logger.info("application_shutdown", env=settings.env)


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)
    caller_id = None if auth_context is None else auth_context.user_id

    bind_request_context(request_id=request_id, caller_id=caller_id)
    caller_token = bind_current_caller(None if caller_id is None else caller_from_request(request, caller_id))
    started_at = perf_counter()
    status_code = 500
    try:
        with sentry_scope(request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=perf_counter() - started_at,
            )
        reset_current_caller(caller_token)
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


def _dependency_report() -> Dict[str, Dict[str, Any]]:
    report: Dict[str, Dict[str, Any]] = {}
    for name, check in (("database", test_db_connection), ("redis", test_redis_connection)):
        ok, error = check()
        report[name] = {"ok": ok, "error": error}
    return report


@app.get("/health")
def health() -> JSONResponse:
    services = _dependency_report()
    healthy = all(entry["ok"] for entry in services.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "env": settings.env, "services": services},
    )


@app.get("/version")
def version() -> dict[str, str]:
    return {"name": settings.app_name, "version": settings.app_version, "env": settings.env}


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    body = render_prometheus_metrics(app_name=settings.app_name, app_version=settings.app_version, env=settings.env)
    return PlainTextResponse(body, media_type=PROMETHEUS_CONTENT_TYPE)


app.include_router(playback_router)
app.include_router(admin_router)
