from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from review_exchange.errors import ApiError
from review_exchange.schemas import error_envelope
from review_exchange.security import AuthContext, redact_sensitive, require_admin
from review_exchange.store import store

logger = logging.getLogger(__name__)


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def auth_from_request(request: Request) -> AuthContext:
    auth = getattr(request.state, "auth", None)
    if not isinstance(auth, AuthContext):
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="authentication required",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    return auth


def account_id_from_request(request: Request) -> str:
    return auth_from_request(request).account_id


def admin_id_from_request(request: Request) -> str:
    return require_admin(auth_from_request(request)).account_id


def require_idempotency_key(idempotency_key: str | None) -> str:
    if not idempotency_key:
        raise ApiError(
            code="IDEMPOTENCY_MISSING",
            message="Idempotency-Key header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return idempotency_key


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def append_security_audit_log(*, request: Request, action: str, code: str, detail: str) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    auth = getattr(request.state, "auth", None)
    log = {
        "action": action,
        "error_code": code,
        "detail": detail,
        "account_id": auth.account_id if isinstance(auth, AuthContext) else None,
        "path": request.url.path,
        "trace_id": trace_id_from_request(request),
        "headers": headers_payload,
    }
    try:
        store._run_in_transaction(lambda: store._append_audit_log(log=log))
    except Exception:
        logger.exception("security_audit_append_failed code=%s", code)
