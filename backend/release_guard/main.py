import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from release_guard.api.deployments import router as deployments_router
from release_guard.api.health import router as health_router
from release_guard.api.webhooks import router as webhooks_router
from release_guard.core.config import get_settings
from release_guard.services.observability import (
    emit_structured_log,
    ensure_trace_id,
    reset_current_trace_id,
    set_current_trace_id,
)

settings = get_settings()
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

app = FastAPI(title=settings.app_name)
if settings.cors_allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def trace_and_request_log_middleware(request: Request, call_next):
    trace_id = ensure_trace_id(request.headers.get("x-trace-id"))
    token = set_current_trace_id(trace_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Trace-Id"] = trace_id
        return response
    finally:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        path_params = request.scope.get("path_params") or {}
        emit_structured_log(
            component="api",
            event="http_request",
            trace_id=trace_id,
            deployment_id=path_params.get("deployment_id"),
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        reset_current_trace_id(token)


app.include_router(health_router)
app.include_router(deployments_router)
app.include_router(webhooks_router)
