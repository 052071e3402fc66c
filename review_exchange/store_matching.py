from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from review_exchange.errors import (
    ConcurrencyConflictError,
    NoEligibleReviewerError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class StoreMatchingMixin:
    """Eligibility filter and the atomic matcher built on it."""

    def _busy_reviewer_ids(self) -> set[str]:
        return {
            str(x["reviewer_account_id"])
            for x in self.assignments.values()
            if x.get("status") == "assigned"
        }

    def _eligible_reviewer_ids(self, item: dict[str, Any]) -> set[str]:
        owner_id = str(item.get("owner_account_id") or "")
        already_reviewed = self.relationships_repository.reviewers_of_owner(owner_account_id=owner_id)
        busy = self._busy_reviewer_ids()
        return {
            account_id
            for account_id, account in self.accounts.items()
            if account.get("qualified")
            and account_id != owner_id
            and account_id not in already_reviewed
            and account_id not in busy
        }

    def _is_eligible(self, reviewer_account_id: str, item: dict[str, Any]) -> bool:
        return reviewer_account_id in self._eligible_reviewer_ids(item)

    def eligible_reviewers(self, *, item_id: str) -> list[str]:
        item = self._require_item(item_id)
        return sorted(self._eligible_reviewer_ids(item))

    def _create_assignment(self, *, item_id: str, reviewer_account_id: str) -> dict[str, Any]:
        """Batch, assignment and item transition as one unit; call inside a transaction."""
        item = self._require_item(item_id)
        if item.get("status") != "queued":
            raise ConcurrencyConflictError("item is no longer queued")
        if self.assignments_repository.active_for_reviewer(reviewer_account_id=reviewer_account_id) is not None:
            raise ConcurrencyConflictError("reviewer already holds an active assignment")
        owner_id = str(item["owner_account_id"])
        if self.relationships_repository.exists(reviewer_account_id=reviewer_account_id, owner_account_id=owner_id):
            raise ConcurrencyConflictError("reviewer already reviewed this owner")

        now = self._now()
        now_iso = now.isoformat()
        batch = {
            "batch_id": self._new_id("bat"),
            "reviewer_account_id": reviewer_account_id,
            "assignment_type": "single",
            "status": "active",
            "credits_earned": 0,
            "created_at": now_iso,
            "completed_at": None,
        }
        self._persist_batch(batch=batch)
        self.counters["assignment_sequence"] = int(self.counters.get("assignment_sequence", 0)) + 1
        assignment = {
            "assignment_id": self._new_id("asg"),
            "batch_id": batch["batch_id"],
            "item_id": item_id,
            "owner_account_id": owner_id,
            "reviewer_account_id": reviewer_account_id,
            "sequence_number": self.counters["assignment_sequence"],
            "status": "assigned",
            "assigned_at": now_iso,
            "due_at": (now + timedelta(days=self.settings.assignment_due_days)).isoformat(),
            "installed_at": None,
            "earliest_review_at": None,
            "review_text": None,
            "rating": None,
            "submitted_date": None,
            "submitted_at": None,
            "approved_at": None,
            "cancelled_at": None,
            "notes": None,
            "reminders_sent": [],
        }
        self._persist_assignment(assignment=assignment)
        assigned_item = dict(item)
        assigned_item.update({"status": "assigned", "front_of_queue": False, "updated_at": now_iso})
        self._persist_item(item=assigned_item)

        self._emit_event(
            event_type="item_assigned",
            recipient_account_id=owner_id,
            aggregate_type="assignment",
            aggregate_id=assignment["assignment_id"],
            payload={"item_id": item_id, "item_name": item["name"]},
        )
        self._emit_event(
            event_type="assignment_created",
            recipient_account_id=reviewer_account_id,
            aggregate_type="assignment",
            aggregate_id=assignment["assignment_id"],
            payload={"item_id": item_id, "item_name": item["name"], "due_at": assignment["due_at"]},
        )
        self._append_audit_log(
            log={
                "action": "assignment_created",
                "assignment_id": assignment["assignment_id"],
                "item_id": item_id,
                "reviewer_account_id": reviewer_account_id,
            },
        )
        return self._assignment_view(assignment)

    def _assign_queued_item(self, item_id: str) -> dict[str, Any] | None:
        item = self.items.get(item_id)
        if item is None or item.get("status") != "queued":
            return None
        candidates = self._eligible_reviewer_ids(item)
        if not candidates:
            raise NoEligibleReviewerError(f"no eligible reviewer for item {item_id}")
        result = self.selector.select(sorted(candidates))
        return self._create_assignment(item_id=item_id, reviewer_account_id=str(result.reviewer_account_id))

    def request_assignment(self, *, account_id: str) -> dict[str, Any]:
        """Assign the first queued item this reviewer may take, or report a wait state."""

        def _op() -> dict[str, Any]:
            account = self._require_account(account_id)
            if not account.get("qualified"):
                raise StateConflictError("account is not qualified to review", code="REVIEWER_NOT_QUALIFIED")
            if self.assignments_repository.active_for_reviewer(reviewer_account_id=account_id) is not None:
                raise StateConflictError(
                    "finish the current assignment before requesting another",
                    code="REVIEWER_HAS_ACTIVE_ASSIGNMENT",
                )
            priority, standard = self._ordered_queue()
            for item in priority + standard:
                if self._is_eligible(account_id, item):
                    return self._create_assignment(item_id=str(item["item_id"]), reviewer_account_id=account_id)
            return {
                "none_available": True,
                "reason": "no queued item is currently available for this reviewer",
            }

        return self._run_in_transaction(_op, retry_on_conflict=True)

    def run_matching_batch(self, *, max_assignments: int | None = None) -> dict[str, Any]:
        limit = self.settings.matching_batch_default if max_assignments is None else int(max_assignments)
        if limit < 1 or limit > self.settings.matching_batch_max:
            raise ValidationError(
                f"max_assignments must be between 1 and {self.settings.matching_batch_max}",
            )
        candidates = self.dequeue_candidates(max_count=limit)
        created: list[dict[str, Any]] = []
        tally = {"priority": 0, "standard": 0, "skipped": 0, "conflicts": 0}
        for candidate in candidates:
            item_id = str(candidate["item_id"])

            def _op(item_id: str = item_id) -> dict[str, Any] | None:
                return self._assign_queued_item(item_id)

            try:
                assignment = self._run_in_transaction(_op, retry_on_conflict=True)
            except NoEligibleReviewerError:
                tally["skipped"] += 1
                continue
            except ConcurrencyConflictError as exc:
                logger.info("matching_conflict item_id=%s reason=%s", item_id, exc.message)
                tally["conflicts"] += 1
                continue
            if assignment is None:
                tally["skipped"] += 1
                continue
            tally[candidate["tier"]] += 1
            created.append(assignment)

        remaining = self.queue_summary()
        logger.info(
            "matching_batch_completed created=%s skipped=%s conflicts=%s candidates=%s",
            len(created),
            tally["skipped"],
            tally["conflicts"],
            len(candidates),
        )
        return {
            "created": len(created),
            "tier_breakdown": {
                **tally,
                "candidates": len(candidates),
                "priority_remaining": remaining["priority"],
                "standard_waiting": remaining["standard"],
            },
            "assignments": created,
        }
