from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from typing import Any, Protocol
from urllib import request
from urllib.error import URLError

from review_exchange.errors import DependencyError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, *, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: records deliveries in the log and in memory."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def notify(self, *, event_type: str, payload: dict[str, Any]) -> None:
        self.sent.append({"event_type": event_type, "payload": dict(payload)})
        logger.info("notification_sent event_type=%s recipient=%s", event_type, payload.get("recipient_account_id"))

    def reset(self) -> None:
        self.sent.clear()


class WebhookNotifier:
    """Posts each event as JSON to an external notification service."""

    def __init__(self, *, endpoint: str, timeout_s: float = 5.0) -> None:
        if not endpoint.strip():
            raise ValueError("REX_NOTIFY_WEBHOOK_URL must not be empty")
        self._endpoint = endpoint.strip()
        self._timeout_s = timeout_s

    @staticmethod
    def _post_json(*, endpoint: str, payload: dict[str, Any], timeout_s: float) -> int:
        body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
        req = request.Request(
            endpoint,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with request.urlopen(req, timeout=timeout_s) as resp:
            return int(resp.status)

    def notify(self, *, event_type: str, payload: dict[str, Any]) -> None:
        try:
            status = self._post_json(
                endpoint=self._endpoint,
                payload={"event_type": event_type, "payload": payload},
                timeout_s=self._timeout_s,
            )
        except (URLError, OSError, ValueError) as exc:
            raise DependencyError(f"notification webhook failed: {exc}") from exc
        if status >= 400:
            raise DependencyError(f"notification webhook returned status {status}")


def create_notifier_from_env(environ: Mapping[str, str] | None = None) -> LoggingNotifier | WebhookNotifier:
    env = os.environ if environ is None else environ
    backend = env.get("REX_NOTIFIER", "log").strip().lower()
    if backend == "webhook":
        endpoint = env.get("REX_NOTIFY_WEBHOOK_URL", "").strip()
        if not endpoint:
            raise ValueError("REX_NOTIFY_WEBHOOK_URL must be set when REX_NOTIFIER=webhook")
        return WebhookNotifier(endpoint=endpoint)
    if backend == "log":
        return LoggingNotifier()
    raise RuntimeError(f"unsupported notifier: {backend}")
