from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from review_exchange.errors import StateConflictError, ValidationError

ITEM_STATUSES = {"unlisted", "queued", "assigned", "reviewed", "rejected"}
QUEUEABLE_FROM = {"unlisted", "reviewed", "rejected"}

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class StoreQueueMixin:
    """Two-tier submission queue.

    Priority-tier items always precede standard-tier items. Inside a tier,
    items requeued after a cancellation come first, then arrival order.
    """

    def _item_tier(self, item: dict[str, Any]) -> str:
        owner = self.accounts.get(str(item.get("owner_account_id") or ""))
        if owner is not None and owner.get("tier") == "priority":
            return "priority"
        return "standard"

    def _queue_sort_key(self, item: dict[str, Any]) -> tuple[int, datetime, str]:
        entered = self._parse_ts(item.get("queue_entered_at")) or _EPOCH
        return (0 if item.get("front_of_queue") else 1, entered, str(item.get("item_id")))

    def _ordered_queue(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        priority: list[dict[str, Any]] = []
        standard: list[dict[str, Any]] = []
        for item in self.items.values():
            if item.get("status") != "queued":
                continue
            if self._item_tier(item) == "priority":
                priority.append(item)
            else:
                standard.append(item)
        priority.sort(key=self._queue_sort_key)
        standard.sort(key=self._queue_sort_key)
        return priority, standard

    def dequeue_candidates(self, *, max_count: int) -> list[dict[str, Any]]:
        if max_count < 0:
            raise ValidationError("max_count must not be negative")
        priority, standard = self._ordered_queue()
        selected = priority[:max_count]
        # Standard items only once every queued priority item made the cut.
        if len(priority) <= max_count:
            selected += standard[: max_count - len(priority)]
        out = []
        for item in selected:
            row = dict(item)
            row["tier"] = self._item_tier(item)
            out.append(row)
        return out

    def list_queue(self) -> list[dict[str, Any]]:
        priority, standard = self._ordered_queue()
        out = []
        for position, item in enumerate(priority + standard, start=1):
            row = dict(item)
            row["tier"] = self._item_tier(item)
            row["position"] = position
            out.append(row)
        return out

    def queue_summary(self) -> dict[str, int]:
        priority, standard = self._ordered_queue()
        return {"priority": len(priority), "standard": len(standard)}

    def _has_completed_first_review(self, account_id: str) -> bool:
        return self.relationships_repository.count_as_reviewer(reviewer_account_id=account_id) > 0

    def submit_item_to_queue(self, *, account_id: str, item_id: str) -> dict[str, Any]:
        """Spend one credit and place an owned item at the back of its tier."""

        def _op() -> dict[str, Any]:
            account = self._require_account(account_id)
            item = self._require_item_for_owner(item_id, account_id)
            if item.get("status") not in QUEUEABLE_FROM:
                raise StateConflictError(
                    f"item in status {item.get('status')} cannot be queued",
                    code="ITEM_NOT_QUEUEABLE",
                )
            if not self._has_completed_first_review(account_id):
                raise StateConflictError(
                    "complete your first review before submitting items",
                    code="FIRST_REVIEW_REQUIRED",
                )
            self._consume_submission_slot(account)
            self.spend_credits(
                account_id=account_id,
                amount=1,
                description=f'Submitted "{item["name"]}" to review queue',
                reference_id=item_id,
            )
            now = self._utcnow_iso()
            queued = dict(item)
            queued.update({"status": "queued", "queue_entered_at": now, "front_of_queue": False, "updated_at": now})
            self._persist_item(item=queued)
            self._append_audit_log(
                log={"action": "item_queued", "account_id": account_id, "item_id": item_id},
            )
            view = dict(queued)
            view["tier"] = self._item_tier(queued)
            return view

        return self._run_in_transaction(_op)

    def admin_remove_from_queue(self, *, item_id: str, admin_account_id: str = "admin") -> dict[str, Any]:
        """Pull a queued item back to unlisted, refunding the credit and cycle slot."""

        def _op() -> dict[str, Any]:
            item = self._require_item(item_id)
            if item.get("status") != "queued":
                raise StateConflictError("item is not in the queue", code="ITEM_NOT_QUEUED")
            owner_id = str(item["owner_account_id"])
            now = self._utcnow_iso()
            removed = dict(item)
            removed.update({"status": "unlisted", "queue_entered_at": None, "front_of_queue": False, "updated_at": now})
            self._persist_item(item=removed)
            refund = self.append_ledger_entry(
                account_id=owner_id,
                amount=1,
                kind="earned",
                description=f'Credit refund: Admin removed "{item["name"]}" from queue',
                reference_id=item_id,
            )
            self._release_submission_slot(self._require_account(owner_id))
            self._emit_event(
                event_type="item_removed_from_queue",
                recipient_account_id=owner_id,
                aggregate_type="item",
                aggregate_id=item_id,
                payload={"item_name": item["name"], "credit_refunded": 1},
            )
            self._append_audit_log(
                log={
                    "action": "admin_remove_from_queue",
                    "admin_account_id": admin_account_id,
                    "item_id": item_id,
                    "owner_account_id": owner_id,
                },
            )
            return {"item": dict(removed), "refund": refund}

        return self._run_in_transaction(_op)
