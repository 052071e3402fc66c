from __future__ import annotations

from collections import Counter

import pytest

from conftest import seed_review_history
from review_exchange.runtime_profile import true_stack_required
from review_exchange.selection import ReviewerSelector
from review_exchange.settings import EngineSettings


def test_settings_defaults():
    settings = EngineSettings.from_env({})
    assert settings.free_tier_cycle_cap == 4
    assert settings.cycle_length_days == 28
    assert settings.assignment_due_days == 7
    assert settings.review_wait_minutes == 60
    assert settings.min_review_chars == 25
    assert settings.welcome_credits == 1
    assert settings.reminders_enabled is True
    assert settings.outbox_retry_delay_ms == 1000


def test_settings_read_environment_overrides():
    settings = EngineSettings.from_env(
        {
            "REX_FREE_TIER_CYCLE_CAP": "2",
            "REX_REVIEW_WAIT_MINUTES": "5",
            "REX_MATCHING_BATCH_MAX": "20",
            "REX_MATCHING_BATCH_DEFAULT": "50",
            "REX_REMINDERS_ENABLED": "off",
            "REX_WELCOME_CREDITS": "-3",
            "REX_CYCLE_LENGTH_DAYS": "abc",
            "REX_OUTBOX_RETRY_DELAY_MS": "250",
        }
    )
    assert settings.free_tier_cycle_cap == 2
    assert settings.review_wait_minutes == 5
    assert settings.matching_batch_max == 20
    assert settings.matching_batch_default == 20
    assert settings.reminders_enabled is False
    assert settings.welcome_credits == 0
    assert settings.cycle_length_days == 28
    assert settings.outbox_retry_delay_ms == 250


def test_review_wait_follows_settings(make_store, clock):
    engine = make_store(review_wait_minutes=5)
    engine.upsert_account(account_id="owner_a")
    engine.upsert_account(account_id="rev_1", qualified=True)
    seed_review_history(engine, "owner_a")
    item = engine.create_item(owner_account_id="owner_a", name="Widget")
    engine.submit_item_to_queue(account_id="owner_a", item_id=item["item_id"])
    assignment = engine.request_assignment(account_id="rev_1")

    installed = engine.mark_installed(assignment_id=assignment["assignment_id"], account_id="rev_1")

    assert installed["seconds_until_reviewable"] == 300


@pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("no", False), ("", False)])
def test_true_stack_flag(raw, expected):
    assert true_stack_required({"REX_REQUIRE_TRUESTACK": raw}) is expected


def test_selector_ignores_input_order():
    a = ReviewerSelector.seeded(11).select(["rev_c", "rev_a", "rev_b"])
    b = ReviewerSelector.seeded(11).select(["rev_b", "rev_c", "rev_a", "rev_a"])
    assert a.reviewer_account_id == b.reviewer_account_id
    assert a.pool_size == b.pool_size == 3


def test_selector_is_roughly_uniform():
    selector = ReviewerSelector.seeded(3)
    counts = Counter(selector.select(["rev_a", "rev_b", "rev_c"]).reviewer_account_id for _ in range(3000))
    assert set(counts) == {"rev_a", "rev_b", "rev_c"}
    assert all(800 <= x <= 1200 for x in counts.values())
