from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from review_exchange.errors import NotFoundError, StateConflictError, ValidationError

REMINDER_KINDS = ("reviewer_24hr_reminder", "reviewer_6hr_reminder", "review_overdue_reminder")


class StoreLifecycleMixin:
    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        "assigned": {"submitted", "cancelled"},
        "submitted": {"approved"},
        "approved": set(),
        "cancelled": set(),
    }

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def assignment_phase(self, assignment: dict[str, Any], now: datetime | None = None) -> str:
        """Status plus the derived install and readiness gates of an active assignment."""
        status = str(assignment.get("status"))
        if status != "assigned":
            return status
        if not assignment.get("installed_at"):
            return "awaiting_install"
        earliest = self._parse_ts(assignment.get("earliest_review_at"))
        current = now or self._now()
        if earliest is not None and current < earliest:
            return "installed_waiting"
        return "ready_to_review"

    def _assignment_view(self, assignment: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        view = dict(assignment)
        view["reminders_sent"] = list(assignment.get("reminders_sent") or [])
        view["phase"] = self.assignment_phase(assignment, now)
        earliest = self._parse_ts(assignment.get("earliest_review_at"))
        if view["phase"] == "installed_waiting" and earliest is not None:
            view["seconds_until_reviewable"] = max(0, math.ceil((earliest - now).total_seconds()))
        else:
            view["seconds_until_reviewable"] = 0
        item = self.items.get(str(assignment.get("item_id")))
        view["item_name"] = item.get("name") if item else None
        return view

    def _require_assignment(self, assignment_id: str) -> dict[str, Any]:
        assignment = self.assignments_repository.get(assignment_id=assignment_id)
        if assignment is None:
            raise NotFoundError("assignment not found", code="ASSIGNMENT_NOT_FOUND")
        return assignment

    def _require_assignment_for_reviewer(self, assignment_id: str, account_id: str) -> dict[str, Any]:
        assignment = self._require_assignment(assignment_id)
        if assignment.get("reviewer_account_id") != account_id:
            raise NotFoundError("assignment not found", code="ASSIGNMENT_NOT_FOUND")
        return assignment

    def get_assignment(self, *, assignment_id: str, account_id: str | None = None) -> dict[str, Any]:
        if account_id is None:
            assignment = self._require_assignment(assignment_id)
        else:
            assignment = self._require_assignment_for_reviewer(assignment_id, account_id)
        return self._assignment_view(assignment)

    def list_assignments_for_reviewer(self, *, account_id: str, status: str | None = None) -> list[dict[str, Any]]:
        rows = self.assignments_repository.list_for_reviewer(reviewer_account_id=account_id)
        if status:
            rows = [x for x in rows if x.get("status") == status]
        return [self._assignment_view(x) for x in rows]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition_assignment(self, assignment: dict[str, Any], new_status: str) -> dict[str, Any]:
        current = str(assignment.get("status"))
        if new_status not in self.ALLOWED_TRANSITIONS.get(current, set()):
            raise StateConflictError(
                f"assignment cannot move from {current} to {new_status}",
                code="ASSIGNMENT_TRANSITION_INVALID",
            )
        updated = dict(assignment)
        updated["status"] = new_status
        return updated

    def _complete_batch(self, batch_id: str, *, credits_earned: int) -> None:
        batch = self.assignment_batches.get(batch_id)
        if batch is None:
            return
        completed = dict(batch)
        completed.update(
            {"status": "completed", "credits_earned": credits_earned, "completed_at": self._utcnow_iso()}
        )
        self._persist_batch(batch=completed)

    def mark_installed(self, *, assignment_id: str, account_id: str) -> dict[str, Any]:
        """Start the review wait gate for an active assignment."""

        def _op() -> dict[str, Any]:
            assignment = self._require_assignment_for_reviewer(assignment_id, account_id)
            if assignment.get("status") != "assigned":
                raise StateConflictError("assignment is not active", code="ASSIGNMENT_NOT_ACTIVE")
            if assignment.get("installed_at"):
                raise StateConflictError("item already marked as installed", code="ASSIGNMENT_ALREADY_INSTALLED")
            now = self._now()
            updated = dict(assignment)
            updated["installed_at"] = now.isoformat()
            updated["earliest_review_at"] = (now + timedelta(minutes=self.settings.review_wait_minutes)).isoformat()
            self._persist_assignment(assignment=updated)
            return self._assignment_view(updated)

        return self._run_in_transaction(_op)

    def submit_review(
        self,
        *,
        assignment_id: str,
        account_id: str,
        review_text: str,
        rating: int,
        confirmed: bool,
        submitted_date: str | None = None,
    ) -> dict[str, Any]:
        """Validate a review, approve it and credit the reviewer in one step."""

        def _op() -> dict[str, Any]:
            assignment = self._require_assignment_for_reviewer(assignment_id, account_id)
            if assignment.get("status") != "assigned":
                raise StateConflictError("assignment is not active", code="ASSIGNMENT_NOT_ACTIVE")
            if not assignment.get("installed_at"):
                raise StateConflictError("mark the item as installed first", code="REVIEW_NOT_INSTALLED")
            now = self._now()
            earliest = self._parse_ts(assignment.get("earliest_review_at"))
            if earliest is not None and now < earliest:
                raise StateConflictError(
                    f"review opens at {earliest.isoformat()}",
                    code="REVIEW_TOO_EARLY",
                )
            if not confirmed:
                raise ValidationError("confirm the review was posted", code="REVIEW_NOT_CONFIRMED")
            if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                raise ValidationError("rating must be between 1 and 5", code="REVIEW_RATING_INVALID")
            text = (review_text or "").strip()
            if len(text) < self.settings.min_review_chars:
                raise ValidationError(
                    f"review text must be at least {self.settings.min_review_chars} characters",
                    code="REVIEW_TEXT_TOO_SHORT",
                )

            submitted = self._transition_assignment(assignment, "submitted")
            submitted.update(
                {
                    "review_text": text,
                    "rating": rating,
                    "submitted_date": submitted_date,
                    "submitted_at": now.isoformat(),
                }
            )
            approved = self._transition_assignment(submitted, "approved")
            approved["approved_at"] = now.isoformat()
            self._persist_assignment(assignment=approved)
            return self._approve_assignment(approved)

        return self._run_in_transaction(_op)

    def _approve_assignment(self, assignment: dict[str, Any]) -> dict[str, Any]:
        reviewer_id = str(assignment["reviewer_account_id"])
        owner_id = str(assignment["owner_account_id"])
        item = self._require_item(str(assignment["item_id"]))
        if self.relationships_repository.exists(reviewer_account_id=reviewer_id, owner_account_id=owner_id):
            raise StateConflictError("reviewer already reviewed this owner", code="RELATIONSHIP_EXISTS")
        self.append_ledger_entry(
            account_id=reviewer_id,
            amount=1,
            kind="earned",
            description=f'Review completed for "{item["name"]}"',
            reference_id=assignment["assignment_id"],
        )
        self._persist_relationship(
            relationship={
                "relationship_id": self._new_id("rel"),
                "reviewer_account_id": reviewer_id,
                "owner_account_id": owner_id,
                "item_id": item["item_id"],
                "assignment_id": assignment["assignment_id"],
                "created_at": assignment["approved_at"],
            }
        )
        reviewed = dict(item)
        reviewed.update({"status": "reviewed", "updated_at": assignment["approved_at"]})
        self._persist_item(item=reviewed)
        self._complete_batch(str(assignment["batch_id"]), credits_earned=1)
        self._emit_event(
            event_type="review_approved",
            recipient_account_id=owner_id,
            aggregate_type="assignment",
            aggregate_id=assignment["assignment_id"],
            payload={"item_id": item["item_id"], "item_name": item["name"], "rating": assignment["rating"]},
        )
        self._append_audit_log(
            log={
                "action": "review_approved",
                "assignment_id": assignment["assignment_id"],
                "reviewer_account_id": reviewer_id,
            },
        )
        return self._assignment_view(assignment)

    def _cancel_assignment(self, assignment: dict[str, Any], *, notes: str, cancelled_by: str) -> dict[str, Any]:
        """Cancel inside a transaction and put the item back at the front of its tier."""
        cancelled = self._transition_assignment(assignment, "cancelled")
        now = self._utcnow_iso()
        cancelled.update({"cancelled_at": now, "notes": notes})
        self._persist_assignment(assignment=cancelled)
        self._complete_batch(str(assignment["batch_id"]), credits_earned=0)

        item = self._require_item(str(assignment["item_id"]))
        requeued = dict(item)
        requeued.update({"status": "queued", "queue_entered_at": now, "front_of_queue": True, "updated_at": now})
        self._persist_item(item=requeued)

        for recipient in (str(assignment["owner_account_id"]), str(assignment["reviewer_account_id"])):
            self._emit_event(
                event_type="assignment_cancelled",
                recipient_account_id=recipient,
                aggregate_type="assignment",
                aggregate_id=assignment["assignment_id"],
                payload={"item_id": item["item_id"], "item_name": item["name"], "notes": notes},
            )
        self._append_audit_log(
            log={
                "action": "assignment_cancelled",
                "assignment_id": assignment["assignment_id"],
                "cancelled_by": cancelled_by,
                "notes": notes,
            },
        )
        return self._assignment_view(cancelled)

    def cancel_assignment(self, *, assignment_id: str, reason: str, cancelled_by: str = "system") -> dict[str, Any]:
        def _op() -> dict[str, Any]:
            assignment = self._require_assignment(assignment_id)
            return self._cancel_assignment(assignment, notes=reason, cancelled_by=cancelled_by)

        return self._run_in_transaction(_op)

    def admin_cancel_assignment(
        self,
        *,
        assignment_id: str,
        reason: str | None = None,
        admin_account_id: str = "admin",
    ) -> dict[str, Any]:
        def _op() -> dict[str, Any]:
            assignment = self._require_assignment(assignment_id)
            if assignment.get("status") != "assigned":
                raise StateConflictError(
                    "only active assignments can be cancelled",
                    code="ASSIGNMENT_NOT_CANCELLABLE",
                )
            if reason and reason.strip():
                notes = f"Assignment cancelled by admin. Reason: {reason.strip()}"
            else:
                notes = "Assignment cancelled by admin due to reviewer delay"
            view = self._cancel_assignment(assignment, notes=notes, cancelled_by=admin_account_id)
            self._append_audit_log(
                log={
                    "action": "admin_cancel_assignment",
                    "admin_account_id": admin_account_id,
                    "assignment_id": assignment_id,
                },
            )
            return view

        return self._run_in_transaction(_op)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    @staticmethod
    def _reminder_kind(hours_left: int) -> str | None:
        if hours_left == 24:
            return "reviewer_24hr_reminder"
        if hours_left == 6:
            return "reviewer_6hr_reminder"
        if hours_left < 0:
            return "review_overdue_reminder"
        return None

    def run_review_reminders(self) -> dict[str, Any]:
        """Emit due-date reminders; each kind at most once per assignment."""

        def _op() -> dict[str, Any]:
            now = self._now()
            sent = {kind: 0 for kind in REMINDER_KINDS}
            checked = 0
            for assignment in list(self.assignments.values()):
                if assignment.get("status") != "assigned":
                    continue
                due_at = self._parse_ts(assignment.get("due_at"))
                if due_at is None:
                    continue
                checked += 1
                hours_left = math.floor((due_at - now).total_seconds() / 3600 + 0.5)
                kind = self._reminder_kind(hours_left)
                already = list(assignment.get("reminders_sent") or [])
                if kind is None or kind in already:
                    continue
                updated = dict(assignment)
                updated["reminders_sent"] = already + [kind]
                self._persist_assignment(assignment=updated)
                self._emit_event(
                    event_type=kind,
                    recipient_account_id=str(assignment["reviewer_account_id"]),
                    aggregate_type="assignment",
                    aggregate_id=assignment["assignment_id"],
                    payload={"item_id": assignment["item_id"], "due_at": assignment["due_at"], "hours_left": hours_left},
                )
                sent[kind] += 1
            return {"checked": checked, "sent": sent}

        return self._run_in_transaction(_op)
