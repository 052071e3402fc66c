from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineSettings:
    """Business constants for matching, credits and the freemium cycle."""

    free_tier_cycle_cap: int = 4
    cycle_length_days: int = 28
    assignment_due_days: int = 7
    review_wait_minutes: int = 60
    min_review_chars: int = 25
    welcome_credits: int = 1
    matching_batch_default: int = 10
    matching_batch_max: int = 100
    tx_conflict_retries: int = 3
    reminders_enabled: bool = True
    outbox_retry_delay_ms: int = 1000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        batch_max = _env_int(env, "REX_MATCHING_BATCH_MAX", default=100, minimum=1)
        return cls(
            free_tier_cycle_cap=_env_int(env, "REX_FREE_TIER_CYCLE_CAP", default=4, minimum=0),
            cycle_length_days=_env_int(env, "REX_CYCLE_LENGTH_DAYS", default=28, minimum=1),
            assignment_due_days=_env_int(env, "REX_ASSIGNMENT_DUE_DAYS", default=7, minimum=1),
            review_wait_minutes=_env_int(env, "REX_REVIEW_WAIT_MINUTES", default=60, minimum=0),
            min_review_chars=_env_int(env, "REX_MIN_REVIEW_CHARS", default=25, minimum=1),
            welcome_credits=_env_int(env, "REX_WELCOME_CREDITS", default=1, minimum=0),
            matching_batch_default=min(
                batch_max,
                _env_int(env, "REX_MATCHING_BATCH_DEFAULT", default=10, minimum=1),
            ),
            matching_batch_max=batch_max,
            tx_conflict_retries=_env_int(env, "REX_TX_CONFLICT_RETRIES", default=3, minimum=0),
            reminders_enabled=_env_bool(env, "REX_REMINDERS_ENABLED", default=True),
            outbox_retry_delay_ms=_env_int(env, "REX_OUTBOX_RETRY_DELAY_MS", default=1000, minimum=0),
        )
