from __future__ import annotations

import threading

import pytest

from conftest import queue_item, seed_review_history
from review_exchange.errors import ApiError
from review_exchange.store import store


def _queueable_item(client, owner_id: str = "owner_idem") -> str:
    client.put(f"/api/v1/internal/accounts/{owner_id}", json={})
    seed_review_history(store, owner_id)
    store.append_ledger_entry(account_id=owner_id, amount=2, kind="earned", description="Test grant")
    resp = client.post("/api/v1/items", json={"name": "Widget"}, as_account=owner_id)
    return resp.json()["data"]["item_id"]


def test_missing_idempotency_key_returns_400(client):
    item_id = _queueable_item(client)
    resp = client.post(f"/api/v1/items/{item_id}/queue", as_account="owner_idem")
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "IDEMPOTENCY_MISSING"
    assert store.items[item_id]["status"] == "unlisted"


def test_replayed_queue_submission_spends_once(client):
    item_id = _queueable_item(client)
    headers = {"Idempotency-Key": "idem_queue_replay"}

    first = client.post(f"/api/v1/items/{item_id}/queue", headers=headers, as_account="owner_idem")
    second = client.post(f"/api/v1/items/{item_id}/queue", headers=headers, as_account="owner_idem")

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["data"] == second.json()["data"]
    assert store.get_balance(account_id="owner_idem") == 2


def test_same_key_different_review_body_returns_409(client, clock):
    client.put("/api/v1/internal/accounts/owner_a", json={})
    client.put("/api/v1/internal/accounts/rev_1", json={"qualified": True})
    seed_review_history(store, "owner_a")
    item = store.create_item(owner_account_id="owner_a", name="Widget")
    store.submit_item_to_queue(account_id="owner_a", item_id=item["item_id"])
    assignment = store.request_assignment(account_id="rev_1")
    store.mark_installed(assignment_id=assignment["assignment_id"], account_id="rev_1")
    clock.advance(hours=1)
    url = f"/api/v1/assignments/{assignment['assignment_id']}/review"
    headers = {"Idempotency-Key": "idem_review_conflict"}
    body = {"review_text": "Great app, works as described.", "rating": 5, "confirmed": True}

    first = client.post(url, json=body, headers=headers, as_account="rev_1")
    second = client.post(url, json={**body, "rating": 4}, headers=headers, as_account="rev_1")

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"
    assert store.get_balance(account_id="rev_1") == 2


def test_keys_are_scoped_per_account(make_store):
    engine = make_store()
    calls: list[str] = []

    def _execute(tag: str):
        def _run() -> dict:
            calls.append(tag)
            return {"tag": tag}

        return _run

    first = engine.run_idempotent(
        endpoint="POST:/x", account_id="acct_a", idempotency_key="k1", payload={"v": 1}, execute=_execute("a")
    )
    other = engine.run_idempotent(
        endpoint="POST:/x", account_id="acct_b", idempotency_key="k1", payload={"v": 2}, execute=_execute("b")
    )
    replay = engine.run_idempotent(
        endpoint="POST:/x", account_id="acct_a", idempotency_key="k1", payload={"v": 1}, execute=_execute("c")
    )

    assert first == replay == {"tag": "a"}
    assert other == {"tag": "b"}
    assert calls == ["a", "b"]

    with pytest.raises(ApiError) as exc_info:
        engine.run_idempotent(
            endpoint="POST:/x", account_id="acct_a", idempotency_key="k1", payload={"v": 9}, execute=_execute("d")
        )
    assert exc_info.value.code == "IDEMPOTENCY_CONFLICT"


def test_failed_execution_is_not_remembered(make_store):
    engine = make_store()

    def _fail() -> dict:
        raise ApiError(code="X", message="boom", error_class="transient", retryable=True, http_status=503)

    with pytest.raises(ApiError):
        engine.run_idempotent(endpoint="POST:/x", account_id="a", idempotency_key="k", payload={}, execute=_fail)

    result = engine.run_idempotent(
        endpoint="POST:/x", account_id="a", idempotency_key="k", payload={}, execute=lambda: {"ok": True}
    )
    assert result == {"ok": True}


class GatedNotifier:
    """Holds the first notification until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.sent: list[dict] = []

    def notify(self, *, event_type: str, payload: dict) -> None:
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=10)
        self.sent.append({"event_type": event_type, "payload": payload})


def test_slow_notification_does_not_block_other_writers(make_store, clock):
    engine = make_store()
    queue_item(engine, "owner_a", "Widget")
    engine.upsert_account(account_id="rev_1", qualified=True)
    notifier = GatedNotifier()
    engine.notifier = notifier
    results: dict[str, dict] = {}

    def _request() -> None:
        results["assignment"] = engine.run_idempotent(
            endpoint="POST:/api/v1/assignments/request",
            account_id="rev_1",
            idempotency_key="idem_slow_notify",
            payload={"account_id": "rev_1"},
            execute=lambda: engine.request_assignment(account_id="rev_1"),
        )

    requester = threading.Thread(target=_request, daemon=True)
    other = threading.Thread(target=lambda: engine.upsert_account(account_id="acct_other"), daemon=True)
    try:
        requester.start()
        assert notifier.entered.wait(timeout=5)
        other.start()
        other.join(timeout=5)
        assert not other.is_alive()
        assert "acct_other" in engine.accounts
        assert requester.is_alive()
    finally:
        notifier.release.set()
        requester.join(timeout=5)

    assert results["assignment"]["status"] == "assigned"


def test_reentrant_use_of_a_running_key_is_rejected(make_store):
    engine = make_store()
    seen: dict[str, ApiError] = {}

    def _outer() -> dict:
        with pytest.raises(ApiError) as exc_info:
            engine.run_idempotent(
                endpoint="POST:/x", account_id="a", idempotency_key="k", payload={}, execute=lambda: {"inner": True}
            )
        seen["error"] = exc_info.value
        return {"outer": True}

    result = engine.run_idempotent(endpoint="POST:/x", account_id="a", idempotency_key="k", payload={}, execute=_outer)

    assert result == {"outer": True}
    assert seen["error"].code == "IDEMPOTENCY_IN_FLIGHT"
    assert seen["error"].retryable is True
    assert seen["error"].http_status == 409
    replay = engine.run_idempotent(
        endpoint="POST:/x", account_id="a", idempotency_key="k", payload={}, execute=lambda: {"unexpected": True}
    )
    assert replay == {"outer": True}
