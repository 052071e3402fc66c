"""Reviewer selection: uniform random choice from an eligible pool.

The randomness source is pluggable so production uses system entropy
while tests pass a seeded PRNG and get a reproducible pick.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Protocol


class RandomSource(Protocol):
    def randrange(self, stop: int) -> int: ...


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of one selection attempt."""

    reviewer_account_id: str | None
    pool_size: int

    @property
    def success(self) -> bool:
        return self.reviewer_account_id is not None


class ReviewerSelector:
    """Picks one reviewer from a candidate pool with equal probability.

    Usage:
        selector = ReviewerSelector.seeded(42)
        result = selector.select(["acct_a", "acct_b"])
    """

    def __init__(self, rng: RandomSource | None = None) -> None:
        self._rng: RandomSource = rng if rng is not None else random.Random()

    @classmethod
    def seeded(cls, seed: int | str) -> "ReviewerSelector":
        return cls(random.Random(seed))

    def select(self, candidates: list[str]) -> SelectionResult:
        # Sorted input: same seed, same pick.
        pool = sorted(set(candidates))
        if not pool:
            return SelectionResult(reviewer_account_id=None, pool_size=0)
        index = self._rng.randrange(len(pool))
        return SelectionResult(reviewer_account_id=pool[index], pool_size=len(pool))
