from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import add_credits, seed_review_history
from review_exchange.errors import CapReachedError


def _standard_owner(engine, account_id: str = "owner_std", *, credits: int = 10) -> None:
    engine.upsert_account(account_id=account_id, tier="standard")
    seed_review_history(engine, account_id)
    add_credits(engine, account_id, credits)


def _submit(engine, account_id: str, name: str) -> dict:
    item = engine.create_item(owner_account_id=account_id, name=name)
    return engine.submit_item_to_queue(account_id=account_id, item_id=item["item_id"])


def test_cycle_window_is_anchored_at_account_creation(make_store, clock):
    engine = make_store()
    created_at = clock.now
    engine.upsert_account(account_id="acct_a")

    clock.advance(days=30)
    window = engine.cycle_window(account_id="acct_a")

    assert window["cycle_start"] == (created_at + timedelta(days=28)).isoformat()
    assert window["cycle_end"] == (created_at + timedelta(days=56)).isoformat()
    assert window["days_left_in_cycle"] == 26


def test_standard_tier_fifth_submission_hits_cap_then_resets(make_store, clock):
    engine = make_store()
    _standard_owner(engine)
    for idx in range(4):
        _submit(engine, "owner_std", f"App {idx}")
        clock.advance(minutes=1)
    balance_before = engine.get_balance(account_id="owner_std")

    fifth = engine.create_item(owner_account_id="owner_std", name="App 5")
    with pytest.raises(CapReachedError) as exc_info:
        engine.submit_item_to_queue(account_id="owner_std", item_id=fifth["item_id"])

    assert exc_info.value.http_status == 429
    assert engine.get_balance(account_id="owner_std") == balance_before
    assert engine.get_item(item_id=fifth["item_id"])["status"] == "unlisted"
    assert engine.accounts["owner_std"]["monthly_submission_count"] == 4

    clock.advance(days=28)
    queued = engine.submit_item_to_queue(account_id="owner_std", item_id=fifth["item_id"])

    assert queued["status"] == "queued"
    assert engine.accounts["owner_std"]["monthly_submission_count"] == 1
    assert engine.accounts["owner_std"]["last_reset_at"] == clock.now.isoformat()


def test_cap_value_is_configurable(make_store):
    engine = make_store(free_tier_cycle_cap=1)
    _standard_owner(engine)
    _submit(engine, "owner_std", "First")
    with pytest.raises(CapReachedError):
        _submit(engine, "owner_std", "Second")


def test_priority_tier_is_not_capped(make_store, clock):
    engine = make_store()
    engine.upsert_account(account_id="owner_pri", tier="priority")
    seed_review_history(engine, "owner_pri")
    add_credits(engine, "owner_pri", 10)

    for idx in range(6):
        _submit(engine, "owner_pri", f"App {idx}")
        clock.advance(seconds=1)

    assert engine.queue_summary() == {"priority": 6, "standard": 0}
    assert engine.submission_allowance(account_id="owner_pri")["cap"] is None


def test_admin_removal_releases_cycle_slot(make_store):
    engine = make_store()
    _standard_owner(engine)
    items = [_submit(engine, "owner_std", f"App {idx}") for idx in range(4)]

    engine.admin_remove_from_queue(item_id=items[0]["item_id"])

    assert engine.accounts["owner_std"]["monthly_submission_count"] == 3
    assert _submit(engine, "owner_std", "Replacement")["status"] == "queued"


def test_submission_allowance_reports_remaining_slots(make_store):
    engine = make_store()
    _standard_owner(engine)
    assert engine.submission_allowance(account_id="owner_std")["remaining"] == 4

    _submit(engine, "owner_std", "App")

    allowance = engine.submission_allowance(account_id="owner_std")
    assert allowance["used"] == 1
    assert allowance["remaining"] == 3
    assert allowance["resets_at"] is not None


def test_cycle_stats_counts_reviews_in_current_cycle(make_store, clock):
    engine = make_store()
    engine.upsert_account(account_id="rev_1", qualified=True)
    seed_review_history(engine, "rev_1")

    stats = engine.cycle_stats(account_id="rev_1")

    assert stats["reviews_given_this_cycle"] == 1
    assert stats["reviews_given_total"] == 1
    assert stats["reviews_received_this_cycle"] == 0
    assert stats["submissions_cap"] == 4
    assert stats["submissions_used"] == 0
    assert stats["balance"] == 1

    clock.advance(days=29)
    later = engine.cycle_stats(account_id="rev_1")
    assert later["reviews_given_this_cycle"] == 0
    assert later["reviews_given_total"] == 1
