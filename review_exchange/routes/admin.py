from __future__ import annotations

from fastapi import APIRouter, Query, Request

from review_exchange.routes._deps import admin_id_from_request, trace_id_from_request
from review_exchange.schemas import (
    AdminCancelRequest,
    MatchingRunRequest,
    ProblemStatusUpdateRequest,
    success_envelope,
)
from review_exchange.store import store

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])

# ---------------------------------------------------------------------------
# Assignments and queue
# ---------------------------------------------------------------------------


@router.post("/assignments/{assignment_id}/cancel")
def admin_cancel_assignment(
    assignment_id: str,
    request: Request,
    payload: AdminCancelRequest | None = None,
):
    admin_id = admin_id_from_request(request)
    data = store.admin_cancel_assignment(
        assignment_id=assignment_id,
        reason=payload.reason if payload else None,
        admin_account_id=admin_id,
    )
    return success_envelope(data, trace_id_from_request(request), message="assignment cancelled")


@router.post("/items/{item_id}/remove-from-queue")
def admin_remove_from_queue(item_id: str, request: Request):
    admin_id = admin_id_from_request(request)
    data = store.admin_remove_from_queue(item_id=item_id, admin_account_id=admin_id)
    return success_envelope(data, trace_id_from_request(request), message="item removed from queue")


@router.post("/matching/run")
def admin_run_matching(
    request: Request,
    payload: MatchingRunRequest | None = None,
):
    admin_id_from_request(request)
    data = store.run_matching_batch(max_assignments=payload.max_assignments if payload else None)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/queue")
def admin_list_queue(request: Request):
    admin_id_from_request(request)
    items = store.list_queue()
    return success_envelope(
        {"items": items, "total": len(items), "summary": store.queue_summary()},
        trace_id_from_request(request),
    )


@router.get("/stats")
def admin_platform_stats(request: Request):
    admin_id_from_request(request)
    return success_envelope(store.platform_stats(), trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Problem reports
# ---------------------------------------------------------------------------


@router.get("/problem-reports")
def admin_list_problem_reports(request: Request, status: str | None = Query(default=None)):
    admin_id_from_request(request)
    items = store.list_problem_reports(status=status)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/problem-reports/{report_id}/status")
def admin_update_problem_report(report_id: str, payload: ProblemStatusUpdateRequest, request: Request):
    admin_id = admin_id_from_request(request)
    data = store.update_problem_report_status(
        report_id=report_id,
        status=payload.status,
        admin_notes=payload.admin_notes,
        admin_account_id=admin_id,
    )
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Integrity checks
# ---------------------------------------------------------------------------


@router.get("/ledger/verify")
def admin_verify_ledger(request: Request, account_id: str | None = Query(default=None)):
    admin_id_from_request(request)
    return success_envelope(store.verify_ledger(account_id=account_id), trace_id_from_request(request))


@router.get("/audit/verify")
def admin_verify_audit(request: Request):
    admin_id_from_request(request)
    return success_envelope(store.verify_audit_integrity(), trace_id_from_request(request))
