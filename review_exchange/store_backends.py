from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from review_exchange.db.postgres import PostgresTxRunner, _import_psycopg, is_conflict_error
from review_exchange.errors import ApiError, ConcurrencyConflictError
from review_exchange.repositories.assignments import PostgresAssignmentsRepository
from review_exchange.repositories.ledger_entries import PostgresLedgerEntriesRepository
from review_exchange.repositories.relationships import PostgresRelationshipsRepository
from review_exchange.store import IdempotencyRecord, InMemoryStore

logger = logging.getLogger(__name__)


class SqliteBackedStore(InMemoryStore):
    """SQLite backend shared by every process pointed at the same file.

    Each transaction takes the database write lock with BEGIN IMMEDIATE,
    reloads the committed state row, applies the change and writes the row
    back before COMMIT, so the API and worker processes never overwrite each
    other's work.
    """

    def __init__(self, db_path: str, *, busy_timeout_s: float = 10.0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_s = busy_timeout_s
        self._initialize_database()
        self._load_state()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened and closed explicitly.
        return sqlite3.connect(str(self._db_path), timeout=self._busy_timeout_s, isolation_level=None)

    def _initialize_database(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
        finally:
            conn.close()

    @staticmethod
    def _read_payload(conn: sqlite3.Connection) -> dict[str, Any] | None:
        row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None or not isinstance(row[0], str):
            return None
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("sqlite_store_state_unreadable")
            return None
        return payload if isinstance(payload, dict) else None

    def _write_payload(self, conn: sqlite3.Connection) -> None:
        blob = json.dumps(self._state_snapshot(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        conn.execute(
            """
            INSERT INTO store_state(id, payload)
            VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
            """,
            (blob,),
        )

    def _load_state(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                payload = self._read_payload(conn)
            finally:
                conn.close()
            if payload is not None:
                self._restore_state(payload)

    def _refresh_state(self) -> None:
        self._load_state()

    def _execute_transaction(self, fn: Callable[[], Any]) -> tuple[Any, list[str]]:
        with self._lock:
            if self._tx_owner is not None:
                return fn(), []
            snapshot = self._snapshot_tables()
            conn = self._connect()
            self._tx_owner = threading.get_ident()
            self._tx_events = []
            try:
                conn.execute("BEGIN IMMEDIATE")
                payload = self._read_payload(conn)
                if payload is not None:
                    self._restore_state(payload)
                result = fn()
                self._write_payload(conn)
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._rollback(conn, snapshot)
                if "locked" in str(exc) or "busy" in str(exc):
                    logger.info("sqlite_tx_conflict error=%s", exc)
                    raise ConcurrencyConflictError(f"sqlite transaction conflict: {exc}") from exc
                raise
            except Exception:
                self._rollback(conn, snapshot)
                raise
            finally:
                self._tx_owner = None
                conn.close()
            events, self._tx_events = self._tx_events, []
            return result, events

    def _rollback(self, conn: sqlite3.Connection, snapshot: dict[str, Any]) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        self._restore_tables(snapshot)
        self._tx_events = []

    def reset(self) -> None:
        super().reset()
        with self._lock:
            conn = self._connect()
            try:
                self._write_payload(conn)
            finally:
                conn.close()

    def _remember_idempotency(self, key: tuple[str, str], record: IdempotencyRecord) -> None:
        def _op() -> None:
            self.idempotency_records[key] = record

        self._run_in_transaction(_op)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresBackedStore(InMemoryStore):
    """Postgres backend: every transaction is SERIALIZABLE and locks the state row.

    Assignments, relationships and ledger entries are mirrored into tables
    whose unique indexes back the double-booking and pair invariants.
    """

    def __init__(
        self,
        *,
        dsn: str,
        table_name: str = "rex_store_state",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._table_name = _validate_identifier(table_name.strip() or "rex_store_state")
        self._tx_runner = PostgresTxRunner(self._dsn)
        self._assignments_pg_repo = PostgresAssignmentsRepository(tx_runner=self._tx_runner)
        self._relationships_pg_repo = PostgresRelationshipsRepository(tx_runner=self._tx_runner)
        self._ledger_pg_repo = PostgresLedgerEntriesRepository(tx_runner=self._tx_runner)
        self._mirror_rows: list[tuple[str, dict[str, Any]]] = []
        self._initialize_database()
        self._load_state()

    def _connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table_name} (
                      id SMALLINT PRIMARY KEY,
                      payload JSONB NOT NULL
                    )
                    """
                )
                cur.execute(
                    f"INSERT INTO {self._table_name} (id, payload) VALUES (1, '{{}}'::jsonb) ON CONFLICT (id) DO NOTHING"
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS review_assignments (
                      assignment_id TEXT PRIMARY KEY,
                      item_id TEXT NOT NULL,
                      owner_account_id TEXT NOT NULL,
                      reviewer_account_id TEXT NOT NULL,
                      sequence_number BIGINT NOT NULL UNIQUE,
                      status TEXT NOT NULL,
                      assigned_at TEXT NOT NULL,
                      due_at TEXT NOT NULL,
                      payload JSONB NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_review_assignments_active_reviewer
                    ON review_assignments (reviewer_account_id)
                    WHERE status = 'assigned'
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS review_relationships (
                      relationship_id TEXT PRIMARY KEY,
                      reviewer_account_id TEXT NOT NULL,
                      owner_account_id TEXT NOT NULL,
                      item_id TEXT,
                      assignment_id TEXT,
                      created_at TEXT NOT NULL,
                      UNIQUE (reviewer_account_id, owner_account_id)
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ledger_entries (
                      entry_id TEXT PRIMARY KEY,
                      account_id TEXT NOT NULL,
                      amount INTEGER NOT NULL CHECK (amount <> 0),
                      kind TEXT NOT NULL CHECK (kind IN ('earned', 'spent')),
                      description TEXT NOT NULL,
                      reference_id TEXT,
                      created_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_account ON ledger_entries (account_id)"
                )
            conn.commit()

    def _load_state(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT payload FROM {self._table_name} WHERE id = 1")
                row = cur.fetchone()
        if row is None:
            return
        payload = row[0]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                return
        if isinstance(payload, dict):
            self._restore_state(payload)

    def _refresh_state(self) -> None:
        self._load_state()

    def _mirrored_balance(self, account_id: str) -> int | None:
        return self._ledger_pg_repo.balance(account_id=account_id)

    def _write_state(self, conn: Any) -> None:
        blob = json.dumps(self._state_snapshot(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self._table_name} (id, payload)
                VALUES (1, %s::jsonb)
                ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload
                """,
                (blob,),
            )

    def _flush_mirror_rows(self, conn: Any) -> None:
        rows, self._mirror_rows = self._mirror_rows, []
        for kind, row in rows:
            if kind == "assignment":
                self._assignments_pg_repo.upsert(assignment=row, conn=conn)
            elif kind == "relationship":
                self._relationships_pg_repo.append(relationship=row, conn=conn)
            elif kind == "ledger_entry":
                self._ledger_pg_repo.append(entry=row, conn=conn)

    def _persist_assignment(self, *, assignment: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_assignment(assignment=assignment)
        self._mirror_rows.append(("assignment", dict(saved)))
        return saved

    def _persist_relationship(self, *, relationship: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_relationship(relationship=relationship)
        self._mirror_rows.append(("relationship", dict(saved)))
        return saved

    def _persist_ledger_entry(self, *, entry: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_ledger_entry(entry=entry)
        self._mirror_rows.append(("ledger_entry", dict(saved)))
        return saved

    def _execute_transaction(self, fn: Callable[[], Any]) -> tuple[Any, list[str]]:
        with self._lock:
            if self._tx_owner is not None:
                return fn(), []
            snapshot = self._snapshot_tables()

            def _op(conn: Any) -> Any:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT payload FROM {self._table_name} WHERE id = 1 FOR UPDATE")
                    row = cur.fetchone()
                if row is not None and isinstance(row[0], dict) and row[0]:
                    self._restore_state(row[0])
                result = fn()
                self._write_state(conn)
                self._flush_mirror_rows(conn)
                return result

            self._tx_owner = threading.get_ident()
            self._tx_events = []
            self._mirror_rows = []
            try:
                result = self._tx_runner.run_in_tx(fn=_op, isolation_level="serializable")
            except ApiError:
                self._restore_tables(snapshot)
                self._tx_events = []
                raise
            except Exception as exc:
                self._restore_tables(snapshot)
                self._tx_events = []
                if is_conflict_error(exc):
                    logger.info("postgres_tx_conflict sqlstate=%s", getattr(exc, "sqlstate", None))
                    raise ConcurrencyConflictError(f"postgres transaction conflict: {exc}") from exc
                raise
            finally:
                self._tx_owner = None
                self._mirror_rows = []
            events, self._tx_events = self._tx_events, []
            return result, events

    def reset(self) -> None:
        super().reset()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM review_assignments")
                cur.execute("DELETE FROM review_relationships")
                cur.execute("DELETE FROM ledger_entries")
            self._write_state(conn)
            conn.commit()

    def _remember_idempotency(self, key: tuple[str, str], record: IdempotencyRecord) -> None:
        def _op() -> None:
            self.idempotency_records[key] = record

        self._run_in_transaction(_op)
