from __future__ import annotations

from typing import Any

from review_exchange.errors import NotFoundError, StateConflictError, ValidationError

ISSUE_TYPES = {
    "item_removed",
    "item_unavailable",
    "invalid_url",
    "permission_issue",
    "technical_error",
    "other",
}
REPORT_STATUSES = {"pending", "resolved"}


class StoreProblemsMixin:
    def report_problem(
        self,
        *,
        assignment_id: str,
        account_id: str,
        issue_type: str,
        description: str,
        cancel: bool = False,
    ) -> dict[str, Any]:
        """Record a reviewer's problem report, optionally cancelling and requeueing."""
        if issue_type not in ISSUE_TYPES:
            raise ValidationError(f"unsupported issue type: {issue_type}", code="PROBLEM_ISSUE_TYPE_INVALID")
        description = (description or "").strip()
        if not description:
            raise ValidationError("description must not be empty")

        def _op() -> dict[str, Any]:
            assignment = self.assignments_repository.get(assignment_id=assignment_id)
            if assignment is None or assignment.get("reviewer_account_id") != account_id:
                raise NotFoundError("assignment not found", code="ASSIGNMENT_NOT_FOUND")
            if assignment.get("status") != "assigned":
                raise StateConflictError(
                    f"problems can only be reported on active assignments, status is {assignment.get('status')}",
                    code="ASSIGNMENT_NOT_ACTIVE",
                )
            if cancel:
                view = self._cancel_assignment(
                    assignment,
                    notes=f"Assignment cancelled by reviewer due to: {issue_type} - {description}",
                    cancelled_by=account_id,
                )
            else:
                view = self._assignment_view(assignment)
            now = self._utcnow_iso()
            report = {
                "report_id": self._new_id("prb"),
                "assignment_id": assignment_id,
                "item_id": assignment["item_id"],
                "reporter_account_id": account_id,
                "issue_type": issue_type,
                "description": description,
                "cancel_requested": bool(cancel),
                "severity": "high" if cancel else "medium",
                "status": "pending",
                "admin_notes": None,
                "created_at": now,
                "updated_at": now,
            }
            self.problem_reports[report["report_id"]] = report
            self._emit_event(
                event_type="assignment_problem_reported",
                recipient_account_id="admin",
                aggregate_type="problem_report",
                aggregate_id=report["report_id"],
                payload={
                    "assignment_id": assignment_id,
                    "issue_type": issue_type,
                    "severity": report["severity"],
                    "cancelled": bool(cancel),
                },
            )
            self._append_audit_log(
                log={
                    "action": "problem_reported",
                    "report_id": report["report_id"],
                    "assignment_id": assignment_id,
                    "severity": report["severity"],
                },
            )
            return {"report": dict(report), "assignment": view}

        return self._run_in_transaction(_op)

    def list_problem_reports(self, *, status: str | None = None) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self.problem_reports.values()]
        if status:
            rows = [x for x in rows if x.get("status") == status]
        return sorted(rows, key=lambda x: str(x.get("created_at") or ""), reverse=True)

    def update_problem_report_status(
        self,
        *,
        report_id: str,
        status: str,
        admin_notes: str | None = None,
        admin_account_id: str = "admin",
    ) -> dict[str, Any]:
        if status not in REPORT_STATUSES:
            raise ValidationError(f"unsupported report status: {status}", code="PROBLEM_STATUS_INVALID")

        def _op() -> dict[str, Any]:
            report = self.problem_reports.get(report_id)
            if report is None:
                raise NotFoundError("problem report not found", code="PROBLEM_REPORT_NOT_FOUND")
            updated = dict(report)
            updated["status"] = status
            if admin_notes is not None:
                updated["admin_notes"] = admin_notes
            updated["updated_at"] = self._utcnow_iso()
            self.problem_reports[report_id] = updated
            self._append_audit_log(
                log={
                    "action": "problem_report_status_updated",
                    "admin_account_id": admin_account_id,
                    "report_id": report_id,
                    "status": status,
                },
            )
            return dict(updated)

        return self._run_in_transaction(_op)
