import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fieldops.db import engine
from fieldops.errors import ApiError, error_response
from fieldops.logging_utils import request_id_var, setup_json_logging
from fieldops.routers import activities, admin, attendance, reports, tickets
from fieldops.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from fieldops.settings import get_cors_origins, get_settings, is_geocoding_configured
from fieldops.worker import BackgroundWorker, build_worker

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("fieldops.request")
startup_logger = logging.getLogger("fieldops.startup")

HTTP_ERROR_CODES = {
    401: "INVALID_TOKEN",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    token = request_id_var.set(request_id)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor_role": getattr(request.state, "actor", None),
                "actor_id": getattr(request.state, "actor_id", None),
                "attendance_id": getattr(request.state, "attendance_id", None),
            },
        )
        request_id_var.reset(token)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("api_error", extra={"code": exc.code, "path": request.url.path})
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        details={"errors": [{"loc": list(item.get("loc", ())), "msg": item.get("msg")} for item in exc.errors()]},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", extra={"path": request.url.path, "method": request.method})
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(tickets.router)
app.include_router(attendance.router)
app.include_router(activities.router)
app.include_router(reports.router)
app.include_router(admin.router)


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        startup_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    startup_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def start_background_worker() -> None:
    if not is_geocoding_configured():
        startup_logger.warning("geocoding_not_configured")
    if not settings.worker_enabled:
        return
    worker: BackgroundWorker | None = getattr(app.state, "worker", None)
    if worker is None:
        worker = build_worker()
        app.state.worker = worker
    worker.start()


@app.on_event("shutdown")
async def stop_background_worker() -> None:
    worker: BackgroundWorker | None = getattr(app.state, "worker", None)
    if worker is not None:
        await worker.stop()


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    if schema_guard_result is None:
        schema_guard_result = SchemaGuardResult(
            ok=False,
            checked_at_utc=datetime.now(timezone.utc),
            issues=["SCHEMA_GUARD_NOT_RUN"],
        )
    worker: BackgroundWorker | None = getattr(app.state, "worker", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "geocoding_configured": is_geocoding_configured(),
        "worker_running": bool(worker and worker.running),
    }
