from __future__ import annotations

import pytest

from conftest import queue_item
from review_exchange.errors import StateConflictError
from review_exchange.store import store


def _busy_store(make_store):
    engine = make_store()
    queue_item(engine, "owner_a", "Widget")
    engine.upsert_account(account_id="rev_1", qualified=True)
    engine.request_assignment(account_id="rev_1")
    return engine


def test_audit_chain_links_every_entry(make_store):
    engine = _busy_store(make_store)

    logs = engine.list_audit_logs()
    assert [x["action"] for x in logs if x["action"] != "account_created"] == ["item_queued", "assignment_created"]
    assert logs[0]["prev_hash"] == ""
    for prev, cur in zip(logs, logs[1:]):
        assert cur["prev_hash"] == prev["audit_hash"]

    result = engine.verify_audit_integrity()
    assert result["valid"] is True
    assert result["checked_count"] == len(logs)
    assert result["last_hash"] == logs[-1]["audit_hash"]


def test_audit_verification_detects_edited_entry(make_store):
    engine = _busy_store(make_store)
    engine.audit_logs[1]["action"] = "tampered_action"

    result = engine.verify_audit_integrity()

    assert result["valid"] is False
    assert result["reason"] == "audit_hash_mismatch"
    assert result["audit_id"] == engine.audit_logs[1]["audit_id"]


def test_audit_verification_detects_removed_entry(make_store):
    engine = _busy_store(make_store)
    del engine.audit_logs[1]

    result = engine.verify_audit_integrity()

    assert result["valid"] is False
    assert result["reason"] == "prev_hash_mismatch"


def test_rolled_back_operation_leaves_no_audit_entry(make_store):
    engine = make_store()
    engine.upsert_account(account_id="owner_a")
    before = len(engine.audit_logs)

    item = engine.create_item(owner_account_id="owner_a", name="Widget")
    with pytest.raises(StateConflictError):
        engine.submit_item_to_queue(account_id="owner_a", item_id=item["item_id"])

    assert len(engine.audit_logs) == before
    assert engine.verify_audit_integrity()["valid"] is True


def test_admin_audit_verify_endpoint_reports_tamper(client):
    client.put("/api/v1/internal/accounts/acct_a", json={})
    ok = client.get("/api/v1/admin/audit/verify", as_account="admin_1", roles=["admin"])
    assert ok.status_code == 200
    assert ok.json()["data"]["valid"] is True

    store.audit_logs[-1]["tier"] = "priority_forged"
    bad = client.get("/api/v1/admin/audit/verify", as_account="admin_1", roles=["admin"])
    assert bad.json()["data"]["valid"] is False
