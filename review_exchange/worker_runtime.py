from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from review_exchange.errors import ConcurrencyConflictError, DependencyError
from review_exchange.settings import _env_int

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def add(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))


class WorkerRuntime:
    """Resident worker draining matching, reminder and outbox jobs from the job queue."""

    def __init__(
        self,
        *,
        store: Any,
        job_queue: Any,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
        max_attempts: int = 5,
        retry_base_delay_ms: int = 500,
        retry_max_delay_ms: int = 60_000,
    ) -> None:
        self.store = store
        self.job_queue = job_queue
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_delay_ms = max(0, int(retry_base_delay_ms))
        self.retry_max_delay_ms = max(self.retry_base_delay_ms, int(retry_max_delay_ms))
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "matching_batch": self._handle_matching_batch,
            "outbox_delivery": self._handle_outbox_delivery,
            "review_reminders": self._handle_review_reminders,
        }

    def _handle_matching_batch(self, payload: dict[str, Any]) -> dict[str, Any]:
        max_assignments = payload.get("max_assignments")
        return self.store.run_matching_batch(
            max_assignments=int(max_assignments) if max_assignments is not None else None,
        )

    def _handle_outbox_delivery(self, payload: dict[str, Any]) -> dict[str, Any]:
        event_id = str(payload.get("event_id") or "")
        if event_id:
            event = self.store.deliver_outbox_event(event_id=event_id)
            if event.get("status") != "published":
                raise DependencyError(str(event.get("last_error") or "notification delivery failed"))
            return event
        return self.store.relay_outbox(limit=int(payload.get("limit") or 100))

    def _handle_review_reminders(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.store.settings.reminders_enabled:
            return {"checked": 0, "sent": {}, "skipped": "reminders_disabled"}
        return self.store.run_review_reminders()

    def retry_delay_ms(self, attempt: int) -> int:
        return min(self.retry_max_delay_ms, self.retry_base_delay_ms * (2 ** max(0, attempt)))

    def _process_job(self, stats: WorkerRunStats) -> bool:
        job = self.job_queue.claim()
        if job is None:
            return False
        stats.processed += 1
        handler = self._handlers.get(job.kind)
        if handler is None:
            logger.warning("worker_unknown_job kind=%s job_id=%s", job.kind, job.job_id)
            self.job_queue.complete(job.job_id)
            stats.acked += 1
            stats.failed += 1
            return True

        try:
            handler(dict(job.payload))
        except (DependencyError, ConcurrencyConflictError) as exc:
            if job.attempt + 1 < self.max_attempts:
                delay_ms = self.retry_delay_ms(job.attempt)
                logger.info(
                    "worker_retry kind=%s job_id=%s attempt=%s delay_ms=%s reason=%s",
                    job.kind,
                    job.job_id,
                    job.attempt + 1,
                    delay_ms,
                    exc.message,
                )
                self.job_queue.retry(job.job_id, delay_ms=delay_ms)
                stats.requeued += 1
                stats.retrying += 1
                return True
            logger.warning("worker_retries_exhausted kind=%s job_id=%s", job.kind, job.job_id)
            self.job_queue.complete(job.job_id)
            stats.acked += 1
            stats.failed += 1
            return True
        except Exception:
            # Unexpected failures are acked and counted; the loop keeps draining.
            logger.exception("worker_job_failed kind=%s job_id=%s", job.kind, job.job_id)
            self.job_queue.complete(job.job_id)
            stats.acked += 1
            stats.failed += 1
            return True

        self.job_queue.complete(job.job_id)
        stats.acked += 1
        stats.succeeded += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            if not self._process_job(stats):
                break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def create_worker_runtime_from_env(
    *,
    store: Any,
    job_queue: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        store=store,
        job_queue=job_queue,
        max_messages_per_iteration=_env_int(env, "REX_WORKER_BATCH_SIZE", default=20, minimum=1),
        poll_interval_ms=_env_int(env, "REX_WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        max_attempts=_env_int(env, "REX_WORKER_MAX_ATTEMPTS", default=5, minimum=1),
        retry_base_delay_ms=_env_int(env, "REX_WORKER_RETRY_BASE_MS", default=500, minimum=0),
    )
