from __future__ import annotations

from fastapi import APIRouter, Request

from review_exchange.routes._deps import account_id_from_request, trace_id_from_request
from review_exchange.schemas import success_envelope
from review_exchange.store import store

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


@router.get("/me")
def get_my_account(request: Request):
    account_id = account_id_from_request(request)
    data = store.get_account(account_id=account_id)
    data["submission_allowance"] = store.submission_allowance(account_id=account_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/me/ledger")
def get_my_ledger(request: Request):
    account_id = account_id_from_request(request)
    entries = store.list_ledger_entries(account_id=account_id)
    return success_envelope(
        {"items": entries, "total": len(entries), "balance": store.get_balance(account_id=account_id)},
        trace_id_from_request(request),
    )


@router.get("/me/cycle")
def get_my_cycle(request: Request):
    data = store.cycle_stats(account_id=account_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))
