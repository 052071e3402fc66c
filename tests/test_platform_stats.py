from __future__ import annotations

from conftest import queue_item
from review_exchange.store import store


def _approve(engine, clock, account_id: str, assignment_id: str, *, wait_hours: int) -> None:
    engine.mark_installed(assignment_id=assignment_id, account_id=account_id)
    clock.advance(hours=wait_hours)
    engine.submit_review(
        assignment_id=assignment_id,
        account_id=account_id,
        review_text="Solid app, did what it promised.",
        rating=5,
        confirmed=True,
    )


def test_platform_stats_on_empty_store(make_store):
    stats = make_store().platform_stats()

    assert stats["total_accounts"] == 0
    assert stats["accounts_by_tier"] == {"standard": 0, "priority": 0}
    assert stats["assignments_total"] == 0
    assert stats["credits_earned"] == 0
    assert stats["avg_review_completion_days"] is None


def test_platform_stats_counts_activity(make_store, clock):
    engine = make_store()
    queue_item(engine, "owner_a", "Widget")
    queue_item(engine, "owner_b", "Gadget", tier="priority")
    engine.upsert_account(account_id="rev_1", qualified=True)
    engine.upsert_account(account_id="rev_2", qualified=True)
    first = engine.request_assignment(account_id="rev_1")
    engine.request_assignment(account_id="rev_2")
    _approve(engine, clock, "rev_1", first["assignment_id"], wait_hours=36)
    queue_item(engine, "owner_c", "Doohickey")

    stats = engine.platform_stats()

    assert stats["total_accounts"] == 5
    assert stats["accounts_by_tier"] == {"standard": 4, "priority": 1}
    assert stats["total_items"] == 3
    assert stats["items_in_queue"] == 1
    assert stats["assignments_total"] == 2
    assert stats["reviews_completed"] == 1
    assert stats["reviews_in_progress"] == 1
    assert stats["credits_earned"] == sum(x["amount"] for x in engine.ledger_entries if x["kind"] == "earned")
    assert stats["active_reviewers_30d"] == 1
    assert stats["reviews_completed_7d"] == 1
    assert stats["avg_review_completion_days"] == 1.5


def test_platform_stats_windows_age_out(make_store, clock):
    engine = make_store()
    queue_item(engine, "owner_a", "Widget")
    engine.upsert_account(account_id="rev_1", qualified=True)
    assignment = engine.request_assignment(account_id="rev_1")
    _approve(engine, clock, "rev_1", assignment["assignment_id"], wait_hours=2)

    clock.advance(days=8)
    week_later = engine.platform_stats()
    assert week_later["reviews_completed_7d"] == 0
    assert week_later["active_reviewers_30d"] == 1

    clock.advance(days=23)
    month_later = engine.platform_stats()
    assert month_later["active_reviewers_30d"] == 0
    assert month_later["reviews_completed"] == 1
    assert month_later["avg_review_completion_days"] == 0.1


def test_admin_stats_route(client):
    queue_item(store, "owner_a", "Widget")

    denied = client.get("/api/v1/admin/stats", as_account="acct_plain")
    assert denied.status_code == 403

    resp = client.get("/api/v1/admin/stats", as_account="admin_1", roles=["admin"])
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["total_accounts"] == 1
    assert data["items_in_queue"] == 1
    assert data["avg_review_completion_days"] is None
