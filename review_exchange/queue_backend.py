from __future__ import annotations

import heapq
import itertools
import json
import os
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_QUEUE = "engine"
JOB_KINDS = frozenset({"matching_batch", "outbox_delivery", "review_reminders"})


@dataclass
class Job:
    """One unit of background work.

    ``run_after`` is a unix timestamp; a job is claimable once the queue clock
    reaches it. ``dedupe_key`` coalesces pushes while an earlier job with the
    same key is still waiting to be claimed.
    """

    job_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    run_after: float = 0.0
    dedupe_key: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "job_id": self.job_id,
                "kind": self.kind,
                "payload": self.payload,
                "attempt": self.attempt,
                "run_after": self.run_after,
                "dedupe_key": self.dedupe_key,
            },
            sort_keys=True,
            ensure_ascii=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        return cls(
            job_id=str(data["job_id"]),
            kind=str(data["kind"]),
            payload=dict(data.get("payload") or {}),
            attempt=int(data.get("attempt") or 0),
            run_after=float(data.get("run_after") or 0.0),
            dedupe_key=data.get("dedupe_key"),
        )


def _check_kind(kind: str) -> str:
    if kind not in JOB_KINDS:
        raise ValueError(f"unknown job kind: {kind}")
    return kind


def _new_job(kind: str, payload: dict[str, Any] | None, run_after: float, dedupe_key: str | None) -> Job:
    return Job(
        job_id=f"job_{uuid.uuid4().hex[:16]}",
        kind=_check_kind(kind),
        payload=dict(payload or {}),
        run_after=run_after,
        dedupe_key=dedupe_key or None,
    )


class InMemoryJobQueue:
    """Heap of ready jobs ordered by run_after, then push order."""

    def __init__(self, *, name: str = DEFAULT_QUEUE, clock: Callable[[], float] = time.time) -> None:
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._ready: list[tuple[float, int, str]] = []
        self._jobs: dict[str, Job] = {}
        self._claimed: set[str] = set()
        self._waiting_by_key: dict[str, str] = {}

    def _schedule(self, job: Job) -> None:
        heapq.heappush(self._ready, (job.run_after, next(self._seq), job.job_id))

    def push(
        self,
        *,
        kind: str,
        payload: dict[str, Any] | None = None,
        delay_ms: int = 0,
        dedupe_key: str | None = None,
    ) -> Job:
        with self._lock:
            if dedupe_key and dedupe_key in self._waiting_by_key:
                return self._jobs[self._waiting_by_key[dedupe_key]]
            job = _new_job(kind, payload, self._clock() + max(0, delay_ms) / 1000.0, dedupe_key)
            self._jobs[job.job_id] = job
            if job.dedupe_key:
                self._waiting_by_key[job.dedupe_key] = job.job_id
            self._schedule(job)
            return job

    def claim(self) -> Job | None:
        with self._lock:
            if not self._ready or self._ready[0][0] > self._clock():
                return None
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs[job_id]
            self._claimed.add(job_id)
            if job.dedupe_key:
                self._waiting_by_key.pop(job.dedupe_key, None)
            return job

    def complete(self, job_id: str) -> None:
        with self._lock:
            if job_id in self._claimed:
                self._claimed.discard(job_id)
                self._jobs.pop(job_id, None)

    def retry(self, job_id: str, *, delay_ms: int = 0) -> Job | None:
        with self._lock:
            if job_id not in self._claimed:
                return None
            self._claimed.discard(job_id)
            job = self._jobs[job_id]
            job.attempt += 1
            job.run_after = self._clock() + max(0, delay_ms) / 1000.0
            self._schedule(job)
            return job

    def depth(self) -> int:
        with self._lock:
            return len(self._ready)

    def reset(self) -> None:
        with self._lock:
            self._ready.clear()
            self._jobs.clear()
            self._claimed.clear()
            self._waiting_by_key.clear()


class SqliteJobQueue:
    """Job table shared by every process that opens the same file.

    Claims run under BEGIN IMMEDIATE so two workers never take the same row.
    """

    _COLUMNS = "job_id, kind, payload, attempt, run_after, dedupe_key"

    def __init__(
        self,
        db_path: str | Path,
        *,
        name: str = DEFAULT_QUEUE,
        clock: Callable[[], float] = time.time,
        busy_timeout_s: float = 10.0,
    ) -> None:
        self.name = name
        self._clock = clock
        self._busy_timeout_s = busy_timeout_s
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=self._busy_timeout_s, isolation_level=None)

    def _initialize_database(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS work_jobs (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  job_id TEXT NOT NULL UNIQUE,
                  queue_name TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  payload TEXT NOT NULL,
                  attempt INTEGER NOT NULL DEFAULT 0,
                  run_after REAL NOT NULL,
                  dedupe_key TEXT,
                  claimed INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_work_jobs_ready ON work_jobs (queue_name, claimed, run_after, seq)"
            )
        finally:
            conn.close()

    def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            result = fn(conn)
            conn.execute("COMMIT")
            return result
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_job(row: tuple) -> Job:
        job_id, kind, payload, attempt, run_after, dedupe_key = row
        return Job(
            job_id=job_id,
            kind=kind,
            payload=json.loads(payload),
            attempt=int(attempt),
            run_after=float(run_after),
            dedupe_key=dedupe_key,
        )

    def push(
        self,
        *,
        kind: str,
        payload: dict[str, Any] | None = None,
        delay_ms: int = 0,
        dedupe_key: str | None = None,
    ) -> Job:
        job = _new_job(kind, payload, self._clock() + max(0, delay_ms) / 1000.0, dedupe_key)

        def _op(conn: sqlite3.Connection) -> Job:
            if job.dedupe_key:
                row = conn.execute(
                    f"SELECT {self._COLUMNS} FROM work_jobs WHERE queue_name = ? AND dedupe_key = ? AND claimed = 0",
                    (self.name, job.dedupe_key),
                ).fetchone()
                if row is not None:
                    return self._row_to_job(row)
            conn.execute(
                """
                INSERT INTO work_jobs (job_id, queue_name, kind, payload, attempt, run_after, dedupe_key)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    job.job_id,
                    self.name,
                    job.kind,
                    json.dumps(job.payload, sort_keys=True, ensure_ascii=True),
                    job.run_after,
                    job.dedupe_key,
                ),
            )
            return job

        return self._run(_op)

    def claim(self) -> Job | None:
        def _op(conn: sqlite3.Connection) -> Job | None:
            row = conn.execute(
                f"""
                SELECT {self._COLUMNS} FROM work_jobs
                WHERE queue_name = ? AND claimed = 0 AND run_after <= ?
                ORDER BY run_after, seq
                LIMIT 1
                """,
                (self.name, self._clock()),
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE work_jobs SET claimed = 1, dedupe_key = NULL WHERE job_id = ?", (row[0],))
            return self._row_to_job(row)

        return self._run(_op)

    def complete(self, job_id: str) -> None:
        self._run(lambda conn: conn.execute("DELETE FROM work_jobs WHERE job_id = ? AND claimed = 1", (job_id,)))

    def retry(self, job_id: str, *, delay_ms: int = 0) -> Job | None:
        run_after = self._clock() + max(0, delay_ms) / 1000.0

        def _op(conn: sqlite3.Connection) -> Job | None:
            updated = conn.execute(
                """
                UPDATE work_jobs SET claimed = 0, attempt = attempt + 1, run_after = ?
                WHERE job_id = ? AND claimed = 1
                """,
                (run_after, job_id),
            )
            if updated.rowcount == 0:
                return None
            row = conn.execute(f"SELECT {self._COLUMNS} FROM work_jobs WHERE job_id = ?", (job_id,)).fetchone()
            return self._row_to_job(row)

        return self._run(_op)

    def depth(self) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM work_jobs WHERE queue_name = ? AND claimed = 0", (self.name,)
            ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    def reset(self) -> None:
        self._run(lambda conn: conn.execute("DELETE FROM work_jobs WHERE queue_name = ?", (self.name,)))


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for REX_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisJobQueue:
    """Delayed job queue on a Redis sorted set scored by run_after.

    Workers claim with ZREM, so only the worker whose ZREM removed the member
    owns the job. Dedupe keys are plain strings written with SET NX.
    """

    def __init__(
        self,
        *,
        dsn: str,
        name: str = DEFAULT_QUEUE,
        prefix: str = "rex",
        client: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self.name = name
        self._clock = clock
        base = f"{prefix.strip() or 'rex'}:jobs:{name}"
        self._ready_key = f"{base}:ready"
        self._claimed_key = f"{base}:claimed"
        self._keys_key = f"{base}:keys"
        self._base = base
        if client is None:
            client = _import_redis().Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    def _dedupe_key(self, key: str) -> str:
        return f"{self._base}:dedupe:{key}"

    def _load(self, job_id: str) -> Job | None:
        raw = self._client.get(self._job_key(job_id))
        if not isinstance(raw, str) or not raw:
            return None
        return Job.from_json(raw)

    def _save(self, job: Job) -> None:
        self._client.set(self._job_key(job.job_id), job.to_json())
        self._client.sadd(self._keys_key, self._job_key(job.job_id))

    def push(
        self,
        *,
        kind: str,
        payload: dict[str, Any] | None = None,
        delay_ms: int = 0,
        dedupe_key: str | None = None,
    ) -> Job:
        job = _new_job(kind, payload, self._clock() + max(0, delay_ms) / 1000.0, dedupe_key)
        if job.dedupe_key:
            marker = self._dedupe_key(job.dedupe_key)
            if not self._client.set(marker, job.job_id, nx=True):
                existing = self._load(str(self._client.get(marker) or ""))
                if existing is not None:
                    return existing
                self._client.set(marker, job.job_id)
            self._client.sadd(self._keys_key, marker)
        self._save(job)
        self._client.zadd(self._ready_key, {job.job_id: job.run_after})
        return job

    def claim(self) -> Job | None:
        for job_id in self._client.zrangebyscore(self._ready_key, "-inf", self._clock(), start=0, num=5):
            if not self._client.zrem(self._ready_key, job_id):
                # Another worker got there first.
                continue
            job = self._load(job_id)
            if job is None:
                continue
            self._client.sadd(self._claimed_key, job_id)
            if job.dedupe_key:
                marker = self._dedupe_key(job.dedupe_key)
                if self._client.get(marker) == job_id:
                    self._client.delete(marker)
            return job
        return None

    def complete(self, job_id: str) -> None:
        if self._client.srem(self._claimed_key, job_id):
            self._client.delete(self._job_key(job_id))
            self._client.srem(self._keys_key, self._job_key(job_id))

    def retry(self, job_id: str, *, delay_ms: int = 0) -> Job | None:
        if not self._client.srem(self._claimed_key, job_id):
            return None
        job = self._load(job_id)
        if job is None:
            return None
        job.attempt += 1
        job.run_after = self._clock() + max(0, delay_ms) / 1000.0
        self._save(job)
        self._client.zadd(self._ready_key, {job.job_id: job.run_after})
        return job

    def depth(self) -> int:
        return int(self._client.zcard(self._ready_key))

    def reset(self) -> None:
        keys = list(self._client.smembers(self._keys_key))
        self._client.delete(self._ready_key, self._claimed_key, self._keys_key, *keys)


JobQueue = InMemoryJobQueue | SqliteJobQueue | RedisJobQueue


def create_job_queue_from_env(environ: Mapping[str, str] | None = None) -> JobQueue:
    env = os.environ if environ is None else environ
    backend = env.get("REX_QUEUE_BACKEND", "memory").strip().lower()
    name = env.get("REX_QUEUE_NAME", DEFAULT_QUEUE).strip() or DEFAULT_QUEUE
    if backend == "memory":
        return InMemoryJobQueue(name=name)
    if backend == "sqlite":
        return SqliteJobQueue(env.get("REX_QUEUE_SQLITE_PATH", ".runtime/rex_jobs.sqlite3"), name=name)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when REX_QUEUE_BACKEND=redis")
        return RedisJobQueue(dsn=dsn, name=name, prefix=env.get("REX_QUEUE_KEY_PREFIX", "rex"))
    raise RuntimeError(f"unsupported queue backend: {backend}")
