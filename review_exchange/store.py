from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from review_exchange.errors import (
    ApiError,
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)
from review_exchange.notifications import create_notifier_from_env
from review_exchange.repositories.assignments import InMemoryAssignmentsRepository
from review_exchange.repositories.ledger_entries import InMemoryLedgerEntriesRepository
from review_exchange.repositories.relationships import InMemoryRelationshipsRepository
from review_exchange.runtime_profile import true_stack_required
from review_exchange.selection import ReviewerSelector
from review_exchange.settings import EngineSettings
from review_exchange.store_cycle import StoreCycleMixin
from review_exchange.store_ledger import StoreLedgerMixin
from review_exchange.store_lifecycle import StoreLifecycleMixin
from review_exchange.store_matching import StoreMatchingMixin
from review_exchange.store_ops import StoreOpsMixin
from review_exchange.store_problems import StoreProblemsMixin
from review_exchange.store_queue import StoreQueueMixin
from review_exchange.store_stats import StoreStatsMixin

logger = logging.getLogger(__name__)

ACCOUNT_TIERS = {"standard", "priority"}


def _system_clock() -> datetime:
    return datetime.now(UTC)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class InMemoryStore(
    StoreLedgerMixin,
    StoreCycleMixin,
    StoreQueueMixin,
    StoreMatchingMixin,
    StoreLifecycleMixin,
    StoreProblemsMixin,
    StoreStatsMixin,
    StoreOpsMixin,
):
    # Tables captured by a transaction snapshot and by the persistent backends.
    TABLES: tuple[str, ...] = (
        "accounts",
        "items",
        "assignment_batches",
        "assignments",
        "relationships",
        "ledger_entries",
        "problem_reports",
        "audit_logs",
        "domain_events_outbox",
        "counters",
    )

    def __init__(
        self,
        *,
        settings: EngineSettings | None = None,
        notifier: Any = None,
        selector: ReviewerSelector | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.notifier = notifier if notifier is not None else create_notifier_from_env()
        self.selector = selector or ReviewerSelector()
        self.clock = clock or _system_clock
        # Set by the app and worker entrypoints; failed deliveries are retried through it.
        self.job_queue: Any = None
        self._lock = threading.RLock()
        self._tx_owner: int | None = None
        self._tx_events: list[str] = []
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self._idempotency_in_flight: set[tuple[str, str]] = set()
        self._init_tables()
        self._bind_repositories()

    def _init_tables(self) -> None:
        self.accounts: dict[str, dict[str, Any]] = {}
        self.items: dict[str, dict[str, Any]] = {}
        self.assignment_batches: dict[str, dict[str, Any]] = {}
        self.assignments: dict[str, dict[str, Any]] = {}
        self.relationships: dict[str, dict[str, Any]] = {}
        self.ledger_entries: list[dict[str, Any]] = []
        self.problem_reports: dict[str, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self.domain_events_outbox: dict[str, dict[str, Any]] = {}
        self.counters: dict[str, int] = {"assignment_sequence": 0}

    def _bind_repositories(self) -> None:
        self.assignments_repository = InMemoryAssignmentsRepository(self.assignments)
        self.relationships_repository = InMemoryRelationshipsRepository(self.relationships)
        self.ledger_repository = InMemoryLedgerEntriesRepository(self.ledger_entries)

    def reset(self) -> None:
        with self._lock:
            self.idempotency_records.clear()
            self._idempotency_in_flight.clear()
            self._init_tables()
            self._bind_repositories()
            self._tx_events = []
            reset_fn = getattr(self.notifier, "reset", None)
            if callable(reset_fn):
                reset_fn()

    # ------------------------------------------------------------------
    # Clock and ids
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        return now.astimezone(UTC)

    def _utcnow_iso(self) -> str:
        return self._now().isoformat()

    @staticmethod
    def _parse_ts(value: Any) -> datetime | None:
        if not isinstance(value, str) or not value:
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _snapshot_tables(self) -> dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}

    def _restore_tables(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)
        self._bind_repositories()

    def _refresh_state(self) -> None:
        """Pick up rows committed by other processes; persistent backends override."""

    def _execute_transaction(self, fn: Callable[[], Any]) -> tuple[Any, list[str]]:
        with self._lock:
            if self._tx_owner is not None:
                return fn(), []
            snapshot = self._snapshot_tables()
            self._tx_owner = threading.get_ident()
            self._tx_events = []
            try:
                result = fn()
            except Exception:
                self._restore_tables(snapshot)
                self._tx_events = []
                raise
            finally:
                self._tx_owner = None
            events, self._tx_events = self._tx_events, []
            return result, events

    def _run_in_transaction(self, fn: Callable[[], Any], *, retry_on_conflict: bool = False) -> Any:
        """Run fn atomically; every table change is undone if it raises.

        Outbox events written inside fn are handed to the notifier only after
        the outermost transaction commits.
        """
        nested = self._tx_owner == threading.get_ident()
        attempts = self.settings.tx_conflict_retries + 1 if retry_on_conflict and not nested else 1
        for attempt in range(1, attempts + 1):
            try:
                result, events = self._execute_transaction(fn)
            except ConcurrencyConflictError as exc:
                if attempt >= attempts:
                    raise
                logger.info("tx_conflict_retry attempt=%s reason=%s", attempt, exc.message)
                continue
            if events:
                self._dispatch_events(events)
            return result
        raise ConcurrencyConflictError("transaction retries exhausted")

    def run_idempotent(
        self,
        *,
        endpoint: str,
        account_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        """Run execute once per (account, endpoint, key) and replay its result.

        The store lock is only held while the key is checked and claimed, so
        execute and the notifications it triggers run without blocking other
        callers. A second request with a key that is still running gets a
        retryable IDEMPOTENCY_IN_FLIGHT error.
        """
        key = (f"{account_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._lock:
            self._refresh_state()
            record = self.idempotency_records.get(key)
            if record is not None:
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data
            if key in self._idempotency_in_flight:
                raise ApiError(
                    code="IDEMPOTENCY_IN_FLIGHT",
                    message="a request with this idempotency key is still running",
                    error_class="transient",
                    retryable=True,
                    http_status=409,
                )
            self._idempotency_in_flight.add(key)

        try:
            data = execute()
            self._remember_idempotency(key, IdempotencyRecord(fingerprint=current_fingerprint, data=data))
        finally:
            with self._lock:
                self._idempotency_in_flight.discard(key)
        return data

    def _remember_idempotency(self, key: tuple[str, str], record: IdempotencyRecord) -> None:
        self.idempotency_records[key] = record

    # ------------------------------------------------------------------
    # Row persistence
    # ------------------------------------------------------------------

    def _persist_account(self, *, account: dict[str, Any]) -> dict[str, Any]:
        self.accounts[account["account_id"]] = account
        return account

    def _persist_item(self, *, item: dict[str, Any]) -> dict[str, Any]:
        self.items[item["item_id"]] = item
        return item

    def _persist_batch(self, *, batch: dict[str, Any]) -> dict[str, Any]:
        self.assignment_batches[batch["batch_id"]] = batch
        return batch

    def _persist_assignment(self, *, assignment: dict[str, Any]) -> dict[str, Any]:
        return self.assignments_repository.upsert(assignment=assignment)

    def _persist_relationship(self, *, relationship: dict[str, Any]) -> dict[str, Any]:
        return self.relationships_repository.append(relationship=relationship)

    def _persist_ledger_entry(self, *, entry: dict[str, Any]) -> dict[str, Any]:
        return self.ledger_repository.append(entry=entry)

    # ------------------------------------------------------------------
    # Accounts and items
    # ------------------------------------------------------------------

    def _require_account(self, account_id: str) -> dict[str, Any]:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError("account not found", code="ACCOUNT_NOT_FOUND")
        return account

    def _require_item(self, item_id: str) -> dict[str, Any]:
        item = self.items.get(item_id)
        if item is None:
            raise NotFoundError("item not found", code="ITEM_NOT_FOUND")
        return item

    def _require_item_for_owner(self, item_id: str, account_id: str) -> dict[str, Any]:
        item = self._require_item(item_id)
        if item.get("owner_account_id") != account_id:
            raise NotFoundError("item not found", code="ITEM_NOT_FOUND")
        return item

    def get_account(self, *, account_id: str) -> dict[str, Any]:
        account = dict(self._require_account(account_id))
        account["balance"] = self.get_balance(account_id=account_id)
        account["has_completed_first_review"] = self._has_completed_first_review(account_id)
        return account

    def upsert_account(
        self,
        *,
        account_id: str,
        tier: str = "standard",
        qualified: bool = False,
        email: str | None = None,
        display_name: str | None = None,
        created_at: str | None = None,
    ) -> dict[str, Any]:
        """Create or refresh an account synced from the identity subsystem.

        New accounts start with a zero cycle counter and receive the
        configured welcome credits.
        """
        account_id = account_id.strip()
        if not account_id:
            raise ValidationError("account_id must not be empty")
        if tier not in ACCOUNT_TIERS:
            raise ValidationError(f"unsupported tier: {tier}", code="ACCOUNT_TIER_INVALID")
        if created_at is not None and self._parse_ts(created_at) is None:
            raise ValidationError("created_at must be an ISO-8601 timestamp")

        def _op() -> dict[str, Any]:
            now = self._utcnow_iso()
            existing = self.accounts.get(account_id)
            if existing is not None:
                account = dict(existing)
                account.update(
                    {
                        "tier": tier,
                        "qualified": bool(qualified),
                        "email": email if email is not None else existing.get("email"),
                        "display_name": display_name if display_name is not None else existing.get("display_name"),
                        "updated_at": now,
                    }
                )
                return dict(self._persist_account(account=account))

            account = {
                "account_id": account_id,
                "tier": tier,
                "qualified": bool(qualified),
                "email": email,
                "display_name": display_name,
                "monthly_submission_count": 0,
                "last_reset_at": None,
                "created_at": created_at or now,
                "updated_at": now,
            }
            self._persist_account(account=account)
            if self.settings.welcome_credits > 0:
                self.append_ledger_entry(
                    account_id=account_id,
                    amount=self.settings.welcome_credits,
                    kind="earned",
                    description="Welcome credit",
                )
            self._append_audit_log(
                log={"action": "account_created", "account_id": account_id, "tier": tier},
            )
            return dict(account)

        return self._run_in_transaction(_op)

    def create_item(self, *, owner_account_id: str, name: str, item_id: str | None = None) -> dict[str, Any]:
        name = name.strip()
        if not name:
            raise ValidationError("item name must not be empty")

        def _op() -> dict[str, Any]:
            self._require_account(owner_account_id)
            new_id = item_id or self._new_id("item")
            if new_id in self.items:
                raise ValidationError("item already exists", code="ITEM_ALREADY_EXISTS")
            now = self._utcnow_iso()
            item = {
                "item_id": new_id,
                "owner_account_id": owner_account_id,
                "name": name,
                "status": "unlisted",
                "queue_entered_at": None,
                "front_of_queue": False,
                "created_at": now,
                "updated_at": now,
            }
            return dict(self._persist_item(item=item))

        return self._run_in_transaction(_op)

    def get_item(self, *, item_id: str, account_id: str | None = None) -> dict[str, Any]:
        if account_id is None:
            item = self._require_item(item_id)
        else:
            item = self._require_item_for_owner(item_id, account_id)
        view = dict(item)
        view["tier"] = self._item_tier(item)
        return view

    def list_items_for_owner(self, *, account_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self.items.values() if x.get("owner_account_id") == account_id]
        return sorted(rows, key=lambda x: str(x.get("created_at") or ""))

    # ------------------------------------------------------------------
    # Audit chain
    # ------------------------------------------------------------------

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {
            key: value
            for key, value in log.items()
            if key not in {"audit_hash", "prev_hash"}
        }
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _append_audit_log(self, *, log: dict[str, Any]) -> dict[str, Any]:
        entry = dict(log)
        if not entry.get("audit_id"):
            entry["audit_id"] = self._new_id("audit")
        if not entry.get("occurred_at"):
            entry["occurred_at"] = self._utcnow_iso()
        prev_hash = ""
        if self.audit_logs:
            prev_hash = str(self.audit_logs[-1].get("audit_hash") or "")
        entry["prev_hash"] = prev_hash
        entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
        self.audit_logs.append(entry)
        return entry

    def list_audit_logs(self, *, action: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self.audit_logs if action is None or x.get("action") == action]
        return rows[-max(1, min(limit, 1000)) :]

    def verify_audit_integrity(self) -> dict[str, Any]:
        prev_hash = ""
        for idx, row in enumerate(self.audit_logs):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(self.audit_logs),
            "last_hash": prev_hash,
        }

    # ------------------------------------------------------------------
    # Persistence snapshots
    # ------------------------------------------------------------------

    def _state_snapshot(self) -> dict[str, Any]:
        idempotency_records = []
        for (scope, key), record in self.idempotency_records.items():
            idempotency_records.append(
                {
                    "scope": scope,
                    "key": key,
                    "fingerprint": record.fingerprint,
                    "data": record.data,
                }
            )
        snapshot: dict[str, Any] = {"schema_version": 1, "idempotency_records": idempotency_records}
        for name in self.TABLES:
            snapshot[name] = getattr(self, name)
        return snapshot

    def _restore_state(self, payload: dict[str, Any]) -> None:
        self.idempotency_records = {}
        for row in payload.get("idempotency_records", []):
            if not isinstance(row, dict):
                continue
            scope = row.get("scope")
            key = row.get("key")
            fingerprint = row.get("fingerprint")
            data = row.get("data")
            if not isinstance(scope, str) or not isinstance(key, str) or not isinstance(fingerprint, str):
                continue
            if not isinstance(data, dict):
                continue
            self.idempotency_records[(scope, key)] = IdempotencyRecord(fingerprint=fingerprint, data=data)
        self._init_tables()
        for name in self.TABLES:
            value = payload.get(name)
            if isinstance(value, type(getattr(self, name))):
                setattr(self, name, value)
        self.counters.setdefault("assignment_sequence", 0)
        self._bind_repositories()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    from review_exchange.store_backends import PostgresBackedStore, SqliteBackedStore

    env = os.environ if environ is None else environ
    backend = env.get("REX_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("REX_STORE_BACKEND must be postgres when REX_REQUIRE_TRUESTACK=true")
    settings = EngineSettings.from_env(env)
    notifier = create_notifier_from_env(env)
    if backend == "sqlite":
        db_path = env.get("REX_STORE_SQLITE_PATH", ".local/rex-store.sqlite3")
        return SqliteBackedStore(db_path, settings=settings, notifier=notifier)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when REX_STORE_BACKEND=postgres")
        table_name = env.get("REX_STORE_POSTGRES_TABLE", "rex_store_state")
        return PostgresBackedStore(dsn=dsn, table_name=table_name, settings=settings, notifier=notifier)
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return InMemoryStore(settings=settings, notifier=notifier)


store = create_store_from_env()
