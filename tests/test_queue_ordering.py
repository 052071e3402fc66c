from __future__ import annotations

import pytest

from conftest import add_credits, queue_item, seed_review_history
from review_exchange.errors import NotFoundError, StateConflictError


def _queue_mixed(engine, clock, *, priority: int, standard: int) -> dict[str, list[str]]:
    ids: dict[str, list[str]] = {"priority": [], "standard": []}
    for idx in range(standard):
        item = queue_item(engine, f"owner_std_{idx}", f"Standard {idx}")
        ids["standard"].append(item["item_id"])
        clock.advance(seconds=1)
    for idx in range(priority):
        item = queue_item(engine, f"owner_pri_{idx}", f"Priority {idx}", tier="priority")
        ids["priority"].append(item["item_id"])
        clock.advance(seconds=1)
    return ids


def test_priority_items_precede_standard_items(make_store, clock):
    engine = make_store()
    ids = _queue_mixed(engine, clock, priority=2, standard=3)

    candidates = engine.dequeue_candidates(max_count=10)

    assert [x["item_id"] for x in candidates] == ids["priority"] + ids["standard"]
    assert [x["tier"] for x in candidates] == ["priority"] * 2 + ["standard"] * 3


def test_standard_tier_untouched_while_priority_fills_capacity(make_store, clock):
    engine = make_store()
    ids = _queue_mixed(engine, clock, priority=2, standard=3)

    assert [x["item_id"] for x in engine.dequeue_candidates(max_count=2)] == ids["priority"]
    assert [x["item_id"] for x in engine.dequeue_candidates(max_count=1)] == ids["priority"][:1]
    assert [x["item_id"] for x in engine.dequeue_candidates(max_count=3)] == ids["priority"] + ids["standard"][:1]


def test_items_within_tier_ordered_by_queue_entry(make_store, clock):
    engine = make_store()
    first = queue_item(engine, "owner_a", "First")
    clock.advance(minutes=5)
    second = queue_item(engine, "owner_b", "Second")
    clock.advance(minutes=5)
    third = queue_item(engine, "owner_c", "Third")

    ordered = [x["item_id"] for x in engine.dequeue_candidates(max_count=3)]
    assert ordered == [first["item_id"], second["item_id"], third["item_id"]]


def test_front_of_queue_flag_beats_earlier_arrivals(make_store, clock):
    engine = make_store()
    early = queue_item(engine, "owner_a", "Early")
    clock.advance(minutes=1)
    requeued = queue_item(engine, "owner_b", "Requeued")
    item = dict(engine.items[requeued["item_id"]])
    item["front_of_queue"] = True
    engine.items[requeued["item_id"]] = item

    ordered = [x["item_id"] for x in engine.dequeue_candidates(max_count=2)]
    assert ordered == [requeued["item_id"], early["item_id"]]


def test_item_tier_follows_owner_account(make_store, clock):
    engine = make_store()
    item = queue_item(engine, "owner_a", "Upgraded later")
    assert engine.queue_summary() == {"priority": 0, "standard": 1}

    engine.upsert_account(account_id="owner_a", tier="priority")

    assert engine.queue_summary() == {"priority": 1, "standard": 0}
    assert engine.get_item(item_id=item["item_id"])["tier"] == "priority"


def test_list_queue_reports_positions(make_store, clock):
    engine = make_store()
    ids = _queue_mixed(engine, clock, priority=1, standard=2)

    rows = engine.list_queue()

    assert [(x["position"], x["item_id"]) for x in rows] == [
        (1, ids["priority"][0]),
        (2, ids["standard"][0]),
        (3, ids["standard"][1]),
    ]


def test_submission_requires_completed_first_review(make_store):
    engine = make_store()
    engine.upsert_account(account_id="owner_new")
    item = engine.create_item(owner_account_id="owner_new", name="Fresh")

    with pytest.raises(StateConflictError) as exc_info:
        engine.submit_item_to_queue(account_id="owner_new", item_id=item["item_id"])

    assert exc_info.value.code == "FIRST_REVIEW_REQUIRED"
    assert engine.get_balance(account_id="owner_new") == 1


def test_submission_spends_one_credit_and_records_queue_entry(make_store, clock):
    engine = make_store()
    engine.upsert_account(account_id="owner_a")
    seed_review_history(engine, "owner_a")
    item = engine.create_item(owner_account_id="owner_a", name="Widget")

    queued = engine.submit_item_to_queue(account_id="owner_a", item_id=item["item_id"])

    assert queued["status"] == "queued"
    assert queued["queue_entered_at"] == clock.now.isoformat()
    assert engine.get_balance(account_id="owner_a") == 0
    spent = engine.list_ledger_entries(account_id="owner_a")[-1]
    assert spent["description"] == 'Submitted "Widget" to review queue'
    assert spent["amount"] == -1


def test_queued_item_cannot_be_submitted_twice(make_store):
    engine = make_store()
    queued = queue_item(engine, "owner_a", "Widget")
    add_credits(engine, "owner_a", 1)

    with pytest.raises(StateConflictError) as exc_info:
        engine.submit_item_to_queue(account_id="owner_a", item_id=queued["item_id"])
    assert exc_info.value.code == "ITEM_NOT_QUEUEABLE"


def test_only_owner_can_submit_item(make_store):
    engine = make_store()
    engine.upsert_account(account_id="owner_a")
    engine.upsert_account(account_id="intruder")
    seed_review_history(engine, "intruder")
    item = engine.create_item(owner_account_id="owner_a", name="Widget")

    with pytest.raises(NotFoundError):
        engine.submit_item_to_queue(account_id="intruder", item_id=item["item_id"])


def test_admin_remove_from_queue_refunds_credit(make_store):
    engine = make_store()
    queued = queue_item(engine, "owner_a", "Widget")

    result = engine.admin_remove_from_queue(item_id=queued["item_id"], admin_account_id="admin_1")

    assert result["item"]["status"] == "unlisted"
    assert result["item"]["queue_entered_at"] is None
    assert result["refund"]["amount"] == 1
    assert result["refund"]["description"] == 'Credit refund: Admin removed "Widget" from queue'
    assert engine.get_balance(account_id="owner_a") == 1
    assert engine.queue_summary() == {"priority": 0, "standard": 0}
    assert engine.notifier.sent[-1]["event_type"] == "item_removed_from_queue"

    with pytest.raises(StateConflictError) as exc_info:
        engine.admin_remove_from_queue(item_id=queued["item_id"])
    assert exc_info.value.code == "ITEM_NOT_QUEUED"
