from __future__ import annotations

from fastapi import APIRouter, Header, Request

from review_exchange.routes._deps import trace_id_from_request
from review_exchange.schemas import (
    AccountUpsertRequest,
    MatchingEnqueueRequest,
    WorkerDrainRequest,
    success_envelope,
)
from review_exchange.security import require_internal_token
from review_exchange.store import store
from review_exchange.worker_runtime import WorkerRuntime

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


def _require_internal(request: Request, token: str | None) -> None:
    require_internal_token(provided=token, cfg=request.app.state.security_cfg)


@router.put("/accounts/{account_id}")
def internal_upsert_account(
    account_id: str,
    payload: AccountUpsertRequest,
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    _require_internal(request, x_internal_token)
    data = store.upsert_account(account_id=account_id, **payload.model_dump())
    return success_envelope(data, trace_id_from_request(request))


@router.post("/matching/enqueue")
def internal_enqueue_matching(
    request: Request,
    payload: MatchingEnqueueRequest | None = None,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    _require_internal(request, x_internal_token)
    job_queue = request.app.state.job_queue
    job = job_queue.push(
        kind="matching_batch",
        payload={
            "max_assignments": payload.max_assignments if payload else None,
            "trace_id": trace_id_from_request(request),
        },
    )
    return success_envelope({"job_id": job.job_id, "pending": job_queue.depth()}, trace_id_from_request(request))


@router.post("/reminders/enqueue")
def internal_enqueue_reminders(
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    _require_internal(request, x_internal_token)
    job_queue = request.app.state.job_queue
    # A sweep still waiting in the queue absorbs repeat requests.
    job = job_queue.push(kind="review_reminders", dedupe_key="review_reminders")
    return success_envelope({"job_id": job.job_id, "pending": job_queue.depth()}, trace_id_from_request(request))


@router.post("/reminders/run")
def internal_run_reminders(
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    _require_internal(request, x_internal_token)
    return success_envelope(store.run_review_reminders(), trace_id_from_request(request))


@router.post("/outbox/relay")
def internal_relay_outbox(
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    _require_internal(request, x_internal_token)
    data = store.relay_outbox()
    data["pending"] = len(store.list_outbox_events(status="pending", limit=1000))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/worker/drain")
def internal_drain_worker(
    request: Request,
    payload: WorkerDrainRequest | None = None,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    _require_internal(request, x_internal_token)
    runtime = WorkerRuntime(
        store=store,
        job_queue=request.app.state.job_queue,
        max_messages_per_iteration=payload.max_messages if payload else 50,
    )
    return success_envelope(runtime.run_once(), trace_id_from_request(request))
