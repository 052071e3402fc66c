from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from review_exchange.errors import CapReachedError


class StoreCycleMixin:
    """Rolling freemium cycle anchored at account creation."""

    def cycle_window(self, *, account_id: str, now: datetime | None = None) -> dict[str, Any]:
        account = self._require_account(account_id)
        current = now or self._now()
        length = self.settings.cycle_length_days
        anchor = self._parse_ts(account.get("created_at")) or current
        days_since = max(0, (current - anchor).days)
        cycle_start = anchor + timedelta(days=(days_since // length) * length)
        cycle_end = cycle_start + timedelta(days=length)
        return {
            "cycle_start": cycle_start.isoformat(),
            "cycle_end": cycle_end.isoformat(),
            "days_left_in_cycle": max(0, (cycle_end - current).days),
        }

    def _cycle_reset_due(self, account: dict[str, Any], now: datetime) -> bool:
        last_reset = self._parse_ts(account.get("last_reset_at"))
        if last_reset is None:
            return True
        return now - last_reset >= timedelta(days=self.settings.cycle_length_days)

    def _consume_submission_slot(self, account: dict[str, Any]) -> dict[str, Any]:
        if account.get("tier") == "priority":
            return account
        now = self._now()
        updated = dict(account)
        if self._cycle_reset_due(updated, now):
            updated["monthly_submission_count"] = 0
            updated["last_reset_at"] = now.isoformat()
        used = int(updated.get("monthly_submission_count") or 0)
        cap = self.settings.free_tier_cycle_cap
        if used >= cap:
            raise CapReachedError(f"standard tier allows {cap} submissions per cycle")
        updated["monthly_submission_count"] = used + 1
        updated["updated_at"] = now.isoformat()
        return self._persist_account(account=updated)

    def _release_submission_slot(self, account: dict[str, Any]) -> dict[str, Any]:
        used = int(account.get("monthly_submission_count") or 0)
        if account.get("tier") == "priority" or used <= 0:
            return account
        updated = dict(account)
        updated["monthly_submission_count"] = used - 1
        updated["updated_at"] = self._utcnow_iso()
        return self._persist_account(account=updated)

    def submission_allowance(self, *, account_id: str) -> dict[str, Any]:
        account = self._require_account(account_id)
        if account.get("tier") == "priority":
            return {"tier": "priority", "cap": None, "used": None, "remaining": None, "resets_at": None}
        now = self._now()
        cap = self.settings.free_tier_cycle_cap
        if self._cycle_reset_due(account, now):
            return {"tier": "standard", "cap": cap, "used": 0, "remaining": cap, "resets_at": None}
        used = int(account.get("monthly_submission_count") or 0)
        last_reset = self._parse_ts(account.get("last_reset_at"))
        resets_at = last_reset + timedelta(days=self.settings.cycle_length_days) if last_reset else None
        return {
            "tier": "standard",
            "cap": cap,
            "used": used,
            "remaining": max(0, cap - used),
            "resets_at": resets_at.isoformat() if resets_at else None,
        }

    def cycle_stats(self, *, account_id: str) -> dict[str, Any]:
        window = self.cycle_window(account_id=account_id)
        start = self._parse_ts(window["cycle_start"])
        end = self._parse_ts(window["cycle_end"])

        def _in_cycle(row: dict[str, Any]) -> bool:
            created = self._parse_ts(row.get("created_at"))
            return created is not None and start <= created < end

        given = [x for x in self.relationships.values() if x.get("reviewer_account_id") == account_id]
        received = [x for x in self.relationships.values() if x.get("owner_account_id") == account_id]
        allowance = self.submission_allowance(account_id=account_id)
        return {
            **window,
            "submissions_used": allowance["used"],
            "submissions_cap": allowance["cap"],
            "reviews_given_this_cycle": sum(1 for x in given if _in_cycle(x)),
            "reviews_received_this_cycle": sum(1 for x in received if _in_cycle(x)),
            "reviews_given_total": len(given),
            "reviews_received_total": len(received),
            "balance": self.get_balance(account_id=account_id),
        }
