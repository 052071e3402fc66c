from __future__ import annotations

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from review_exchange.routes._deps import (
    account_id_from_request,
    require_idempotency_key,
    trace_id_from_request,
)
from review_exchange.schemas import ItemCreateRequest, success_envelope
from review_exchange.store import store

router = APIRouter(prefix="/api/v1", tags=["items"])


@router.post("/items")
def create_item(payload: ItemCreateRequest, request: Request):
    data = store.create_item(owner_account_id=account_id_from_request(request), name=payload.name)
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/items")
def list_items(request: Request):
    items = store.list_items_for_owner(account_id=account_id_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/items/{item_id}")
def get_item(item_id: str, request: Request):
    data = store.get_item(item_id=item_id, account_id=account_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/items/{item_id}/queue")
def submit_item_to_queue(
    item_id: str,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    account_id = account_id_from_request(request)
    data = store.run_idempotent(
        endpoint=f"POST:/api/v1/items/{item_id}/queue",
        account_id=account_id,
        idempotency_key=require_idempotency_key(idempotency_key),
        payload={"item_id": item_id},
        execute=lambda: store.submit_item_to_queue(account_id=account_id, item_id=item_id),
    )
    return success_envelope(data, trace_id_from_request(request), message="item queued")
