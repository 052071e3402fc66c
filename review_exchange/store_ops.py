from __future__ import annotations

import logging
from typing import Any

from review_exchange.errors import DependencyError, NotFoundError

logger = logging.getLogger(__name__)


class StoreOpsMixin:
    """Transactional outbox feeding the notifier."""

    def append_outbox_event(
        self,
        *,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        event_id = self._new_id("evt")
        event = {
            "event_id": event_id,
            "event_type": event_type,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "payload": payload,
            "status": "pending",
            "attempts": 0,
            "last_error": None,
            "published_at": None,
            "created_at": self._utcnow_iso(),
        }
        self.domain_events_outbox[event_id] = event
        return event

    def _emit_event(
        self,
        *,
        event_type: str,
        recipient_account_id: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        body = dict(payload)
        body["recipient_account_id"] = recipient_account_id
        event = self.append_outbox_event(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=body,
        )
        self._tx_events.append(event["event_id"])
        return event

    def list_outbox_events(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        items = list(self.domain_events_outbox.values())
        if status:
            items = [x for x in items if x.get("status") == status]
        items = sorted(items, key=lambda x: x.get("created_at", ""))
        return [dict(x) for x in items[: max(1, min(limit, 1000))]]

    def mark_outbox_event_published(self, *, event_id: str) -> dict[str, Any]:
        def _op() -> dict[str, Any]:
            event = self.domain_events_outbox.get(event_id)
            if event is None:
                raise NotFoundError("outbox event not found", code="OUTBOX_EVENT_NOT_FOUND")
            updated = dict(event)
            updated["status"] = "published"
            updated["published_at"] = self._utcnow_iso()
            self.domain_events_outbox[event_id] = updated
            return dict(updated)

        return self._run_in_transaction(_op)

    def _record_delivery_failure(self, *, event_id: str, error: str) -> dict[str, Any]:
        def _op() -> dict[str, Any]:
            event = dict(self.domain_events_outbox[event_id])
            event["attempts"] = int(event.get("attempts") or 0) + 1
            event["last_error"] = error
            self.domain_events_outbox[event_id] = event
            return dict(event)

        return self._run_in_transaction(_op)

    def deliver_outbox_event(self, *, event_id: str) -> dict[str, Any]:
        """Hand one event to the notifier; failures stay pending for the relay."""
        event = self.domain_events_outbox.get(event_id)
        if event is None:
            raise NotFoundError("outbox event not found", code="OUTBOX_EVENT_NOT_FOUND")
        if event.get("status") == "published":
            return dict(event)
        try:
            self.notifier.notify(event_type=str(event["event_type"]), payload=dict(event.get("payload") or {}))
        except DependencyError as exc:
            logger.warning("notification_delivery_failed event_id=%s error=%s", event_id, exc.message)
            return self._record_delivery_failure(event_id=event_id, error=exc.message)
        return self.mark_outbox_event_published(event_id=event_id)

    def _dispatch_events(self, event_ids: list[str]) -> None:
        for event_id in event_ids:
            try:
                event = self.deliver_outbox_event(event_id=event_id)
                if event.get("status") != "published":
                    self._schedule_redelivery(event_id)
            except Exception:
                # Post-commit delivery is best effort; the relay picks up leftovers.
                logger.exception("notification_dispatch_error event_id=%s", event_id)

    def _schedule_redelivery(self, event_id: str) -> None:
        if self.job_queue is None:
            return
        job = self.job_queue.push(
            kind="outbox_delivery",
            payload={"event_id": event_id},
            delay_ms=self.settings.outbox_retry_delay_ms,
            dedupe_key=f"outbox_delivery:{event_id}",
        )
        logger.info("notification_redelivery_scheduled event_id=%s job_id=%s", event_id, job.job_id)

    def relay_outbox(self, *, limit: int = 100) -> dict[str, Any]:
        pending = self.list_outbox_events(status="pending", limit=limit)
        published = 0
        failed = 0
        for event in pending:
            result = self.deliver_outbox_event(event_id=str(event["event_id"]))
            if result.get("status") == "published":
                published += 1
            else:
                failed += 1
        return {"attempted": len(pending), "published": published, "failed": failed}
