from __future__ import annotations

from datetime import timedelta
from typing import Any

ACTIVE_REVIEWER_WINDOW_DAYS = 30
RECENT_COMPLETION_WINDOW_DAYS = 7


class StoreStatsMixin:
    def platform_stats(self) -> dict[str, Any]:
        """Platform-wide counters for the admin dashboard."""
        with self._lock:
            self._refresh_state()
            accounts = list(self.accounts.values())
            items = list(self.items.values())
            assignments = list(self.assignments.values())
            entries = list(self.ledger_entries)

        now = self._now()
        active_since = now - timedelta(days=ACTIVE_REVIEWER_WINDOW_DAYS)
        recent_since = now - timedelta(days=RECENT_COMPLETION_WINDOW_DAYS)

        by_tier = {"standard": 0, "priority": 0}
        for account in accounts:
            tier = str(account.get("tier") or "standard")
            by_tier[tier] = by_tier.get(tier, 0) + 1

        active_reviewers: set[str] = set()
        completed_recently = 0
        durations: list[float] = []
        for assignment in assignments:
            if assignment.get("status") != "approved":
                continue
            submitted = self._parse_ts(assignment.get("submitted_at"))
            if submitted is None:
                continue
            if submitted >= active_since:
                active_reviewers.add(str(assignment.get("reviewer_account_id")))
            if submitted >= recent_since:
                completed_recently += 1
            started = self._parse_ts(assignment.get("assigned_at"))
            if started is not None:
                durations.append((submitted - started).total_seconds() / 86400)

        return {
            "total_accounts": len(accounts),
            "accounts_by_tier": by_tier,
            "total_items": len(items),
            "items_in_queue": sum(1 for x in items if x.get("status") == "queued"),
            "assignments_total": len(assignments),
            "reviews_completed": sum(1 for x in assignments if x.get("status") in {"submitted", "approved"}),
            "reviews_in_progress": sum(1 for x in assignments if x.get("status") == "assigned"),
            "credits_earned": sum(int(x.get("amount") or 0) for x in entries if x.get("kind") == "earned"),
            "active_reviewers_30d": len(active_reviewers),
            "reviews_completed_7d": completed_recently,
            # None when nothing has been approved yet.
            "avg_review_completion_days": round(sum(durations) / len(durations), 1) if durations else None,
        }
