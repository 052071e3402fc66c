from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from review_exchange.errors import ApiError
from review_exchange.queue_backend import InMemoryJobQueue, JobQueue, create_job_queue_from_env
from review_exchange.routes import accounts, admin, assignments, internal, items
from review_exchange.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from review_exchange.runtime_profile import true_stack_required
from review_exchange.schemas import success_envelope
from review_exchange.security import JwtSecurityConfig, auth_from_headers
from review_exchange.store import store

logger = logging.getLogger(__name__)

UNAUTHENTICATED_PATHS = {"/api/v1/health"}
SECURITY_AUDIT_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN"}


def _create_job_queue_for_runtime(
    environ: Mapping[str, str] | None = None,
) -> JobQueue:
    env = os.environ if environ is None else environ
    try:
        return create_job_queue_from_env(env)
    except RuntimeError:
        if true_stack_required(env):
            raise
        logger.warning("job_queue_fallback backend=memory")
        return InMemoryJobQueue()


job_queue = _create_job_queue_for_runtime()


def _requires_account(path: str) -> bool:
    return (
        path.startswith("/api/v1/")
        and path not in UNAUTHENTICATED_PATHS
        and not path.startswith("/api/v1/internal/")
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Review Exchange Engine API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.job_queue = job_queue
    store.job_queue = job_queue
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth = None
        try:
            if _requires_account(request.url.path):
                request.state.auth = auth_from_headers(headers=request.headers, cfg=security_cfg)
            response = await call_next(request)
        except ApiError as exc:
            append_security_audit_log(request=request, action="security_blocked", code=exc.code, detail=exc.message)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_AUDIT_CODES:
            append_security_audit_log(request=request, action="security_blocked", code=exc.code, detail=exc.message)
        if exc.http_status >= 500:
            logger.error("api_error code=%s message=%s", exc.code, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(assignments.router)
    app.include_router(items.router)
    app.include_router(accounts.router)
    app.include_router(admin.router)
    app.include_router(internal.router)
    return app


app = create_app()
