from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from review_exchange.routes._deps import (
    account_id_from_request,
    require_idempotency_key,
    trace_id_from_request,
)
from review_exchange.schemas import ProblemReportRequest, ReviewSubmitRequest, success_envelope
from review_exchange.store import store

router = APIRouter(prefix="/api/v1", tags=["assignments"])


@router.post("/assignments/request")
def request_assignment(
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    account_id = account_id_from_request(request)
    data = store.run_idempotent(
        endpoint="POST:/api/v1/assignments/request",
        account_id=account_id,
        idempotency_key=require_idempotency_key(idempotency_key),
        payload={"account_id": account_id},
        execute=lambda: store.request_assignment(account_id=account_id),
    )
    if data.get("none_available"):
        return success_envelope(data, trace_id_from_request(request), message="no assignment available")
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/assignments")
def list_assignments(request: Request, status: str | None = Query(default=None)):
    items = store.list_assignments_for_reviewer(account_id=account_id_from_request(request), status=status)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/assignments/{assignment_id}")
def get_assignment(assignment_id: str, request: Request):
    data = store.get_assignment(assignment_id=assignment_id, account_id=account_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/assignments/{assignment_id}/installed")
def mark_installed(assignment_id: str, request: Request):
    data = store.mark_installed(assignment_id=assignment_id, account_id=account_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/assignments/{assignment_id}/review")
def submit_review(
    assignment_id: str,
    payload: ReviewSubmitRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    account_id = account_id_from_request(request)
    req_payload = payload.model_dump()
    req_payload["assignment_id"] = assignment_id
    data = store.run_idempotent(
        endpoint=f"POST:/api/v1/assignments/{assignment_id}/review",
        account_id=account_id,
        idempotency_key=require_idempotency_key(idempotency_key),
        payload=req_payload,
        execute=lambda: store.submit_review(
            assignment_id=assignment_id,
            account_id=account_id,
            review_text=payload.review_text,
            rating=payload.rating,
            confirmed=payload.confirmed,
            submitted_date=payload.submitted_date,
        ),
    )
    return success_envelope(data, trace_id_from_request(request), message="review approved")


@router.post("/assignments/{assignment_id}/problems")
def report_problem(assignment_id: str, payload: ProblemReportRequest, request: Request):
    data = store.report_problem(
        assignment_id=assignment_id,
        account_id=account_id_from_request(request),
        issue_type=payload.issue_type,
        description=payload.description,
        cancel=payload.cancel,
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))
