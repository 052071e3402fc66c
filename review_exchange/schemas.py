from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ItemCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class ReviewSubmitRequest(BaseModel):
    review_text: str
    rating: int = Field(ge=1, le=5)
    confirmed: bool = False
    submitted_date: str | None = None


class ProblemReportRequest(BaseModel):
    issue_type: Literal[
        "item_removed",
        "item_unavailable",
        "invalid_url",
        "permission_issue",
        "technical_error",
        "other",
    ]
    description: str = Field(min_length=1, max_length=2000)
    cancel: bool = False


class AdminCancelRequest(BaseModel):
    reason: str | None = None


class MatchingRunRequest(BaseModel):
    max_assignments: int | None = Field(default=None, ge=1)


class ProblemStatusUpdateRequest(BaseModel):
    status: Literal["pending", "resolved"]
    admin_notes: str | None = None


class AccountUpsertRequest(BaseModel):
    tier: Literal["standard", "priority"] = "standard"
    qualified: bool = False
    email: str | None = None
    display_name: str | None = None
    created_at: str | None = None


class MatchingEnqueueRequest(BaseModel):
    max_assignments: int | None = Field(default=None, ge=1)


class WorkerDrainRequest(BaseModel):
    max_messages: int = Field(default=50, ge=1, le=1000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
