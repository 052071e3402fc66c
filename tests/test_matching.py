from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import queue_item
from review_exchange.errors import NotFoundError, StateConflictError, ValidationError
from review_exchange.selection import ReviewerSelector


def _reviewers(engine, *account_ids: str) -> None:
    for account_id in account_ids:
        engine.upsert_account(account_id=account_id, qualified=True)


def _relate(engine, reviewer_id: str, owner_id: str) -> None:
    def _op() -> None:
        engine._persist_relationship(
            relationship={
                "relationship_id": engine._new_id("rel"),
                "reviewer_account_id": reviewer_id,
                "owner_account_id": owner_id,
                "item_id": None,
                "assignment_id": None,
                "created_at": engine._utcnow_iso(),
            }
        )

    engine._run_in_transaction(_op)


def test_batch_fills_priority_before_standard(make_store, clock):
    engine = make_store()
    standard = []
    for idx in range(3):
        standard.append(queue_item(engine, f"owner_std_{idx}", f"Standard {idx}")["item_id"])
        clock.advance(seconds=1)
    priority = []
    for idx in range(2):
        priority.append(queue_item(engine, f"owner_pri_{idx}", f"Priority {idx}", tier="priority")["item_id"])
        clock.advance(seconds=1)
    _reviewers(engine, "rev_1", "rev_2")

    result = engine.run_matching_batch(max_assignments=2)

    assert result["created"] == 2
    assert result["tier_breakdown"]["priority"] == 2
    assert result["tier_breakdown"]["standard"] == 0
    assert result["tier_breakdown"]["standard_waiting"] == 3
    assert sorted(x["item_id"] for x in result["assignments"]) == sorted(priority)
    assert {x["reviewer_account_id"] for x in result["assignments"]} == {"rev_1", "rev_2"}
    assert all(engine.items[x]["status"] == "queued" for x in standard)


def test_single_reviewer_goes_to_oldest_priority_item(make_store, clock):
    engine = make_store()
    ids = []
    for idx in range(3):
        ids.append(queue_item(engine, f"owner_{idx}", f"App {idx}", tier="priority")["item_id"])
        clock.advance(minutes=10)
    _reviewers(engine, "rev_1")

    result = engine.run_matching_batch(max_assignments=3)

    assert result["created"] == 1
    assert result["assignments"][0]["item_id"] == ids[0]
    assert result["tier_breakdown"]["skipped"] == 2
    assert [engine.items[x]["status"] for x in ids] == ["assigned", "queued", "queued"]


def test_eligibility_excludes_owner_unqualified_busy_and_past_reviewers(make_store, clock):
    engine = make_store()
    target = queue_item(engine, "owner_a", "Target")
    clock.advance(seconds=1)
    queue_item(engine, "owner_b", "Other")
    engine.upsert_account(account_id="owner_a", qualified=True)
    _reviewers(engine, "rev_fresh", "rev_past", "rev_busy")
    engine.upsert_account(account_id="rev_unqualified", qualified=False)
    _relate(engine, "rev_past", "owner_a")
    engine.request_assignment(account_id="rev_busy")

    assert engine.eligible_reviewers(item_id=target["item_id"]) == ["rev_fresh"]


def test_request_assignment_returns_first_eligible_item(make_store, clock):
    engine = make_store()
    first = queue_item(engine, "owner_a", "First")
    clock.advance(minutes=1)
    second = queue_item(engine, "owner_b", "Second")
    _reviewers(engine, "rev_1")
    _relate(engine, "rev_1", "owner_a")

    assignment = engine.request_assignment(account_id="rev_1")

    assert assignment["item_id"] == second["item_id"]
    assert assignment["status"] == "assigned"
    assert assignment["phase"] == "awaiting_install"
    assert assignment["due_at"] == (clock.now + timedelta(days=7)).isoformat()
    assert engine.items[first["item_id"]]["status"] == "queued"
    assert engine.items[second["item_id"]]["status"] == "assigned"
    batch = engine.assignment_batches[assignment["batch_id"]]
    assert batch["status"] == "active"
    assert batch["assignment_type"] == "single"


def test_request_assignment_reports_none_available(make_store):
    engine = make_store()
    _reviewers(engine, "rev_1")

    result = engine.request_assignment(account_id="rev_1")

    assert result["none_available"] is True
    assert engine.assignments == {}


def test_request_assignment_guards(make_store):
    engine = make_store()
    queue_item(engine, "owner_a", "First")
    queue_item(engine, "owner_b", "Second")
    engine.upsert_account(account_id="rev_plain")
    _reviewers(engine, "rev_1")

    with pytest.raises(StateConflictError) as unqualified:
        engine.request_assignment(account_id="rev_plain")
    assert unqualified.value.code == "REVIEWER_NOT_QUALIFIED"

    engine.request_assignment(account_id="rev_1")
    with pytest.raises(StateConflictError) as busy:
        engine.request_assignment(account_id="rev_1")
    assert busy.value.code == "REVIEWER_HAS_ACTIVE_ASSIGNMENT"

    with pytest.raises(NotFoundError):
        engine.request_assignment(account_id="ghost")


def test_failed_assignment_leaves_no_partial_state(make_store, monkeypatch):
    engine = make_store()
    queued = queue_item(engine, "owner_a", "Widget")
    _reviewers(engine, "rev_1")
    audit_count = len(engine.audit_logs)

    def _boom(**kwargs):
        raise RuntimeError("notifier outbox unavailable")

    monkeypatch.setattr(engine, "_emit_event", _boom)

    with pytest.raises(RuntimeError):
        engine.request_assignment(account_id="rev_1")

    assert engine.items[queued["item_id"]]["status"] == "queued"
    assert engine.assignments == {}
    assert engine.assignment_batches == {}
    assert engine.counters["assignment_sequence"] == 0
    assert len(engine.audit_logs) == audit_count


def test_batch_size_is_validated(make_store):
    engine = make_store(matching_batch_max=5)
    with pytest.raises(ValidationError):
        engine.run_matching_batch(max_assignments=0)
    with pytest.raises(ValidationError):
        engine.run_matching_batch(max_assignments=6)


def test_batch_on_empty_queue_creates_nothing(make_store):
    engine = make_store()
    result = engine.run_matching_batch()
    assert result["created"] == 0
    assert result["tier_breakdown"]["candidates"] == 0


def test_seeded_selector_is_reproducible(make_store):
    picks = []
    for _ in range(2):
        engine = make_store()
        queue_item(engine, "owner_a", "Widget")
        _reviewers(engine, "rev_a", "rev_b", "rev_c", "rev_d")
        result = engine.run_matching_batch(max_assignments=1)
        picks.append(result["assignments"][0]["reviewer_account_id"])
    assert picks[0] == picks[1]


def test_selector_handles_empty_pool():
    result = ReviewerSelector.seeded(1).select([])
    assert result.success is False
    assert result.pool_size == 0


def test_assignment_notifies_owner_and_reviewer(make_store):
    engine = make_store()
    queue_item(engine, "owner_a", "Widget")
    _reviewers(engine, "rev_1")

    assignment = engine.request_assignment(account_id="rev_1")

    sent = [(x["event_type"], x["payload"]["recipient_account_id"]) for x in engine.notifier.sent]
    assert ("item_assigned", "owner_a") in sent
    assert ("assignment_created", "rev_1") in sent
    assert engine.list_outbox_events(status="pending") == []
    assert assignment["sequence_number"] == 1
