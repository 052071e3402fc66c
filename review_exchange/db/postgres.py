from __future__ import annotations

from collections.abc import Callable
from typing import Any

_ISOLATION_LEVELS = {
    "read committed": "READ COMMITTED",
    "repeatable read": "REPEATABLE READ",
    "serializable": "SERIALIZABLE",
}

# SQLSTATE codes that mean "another transaction won; retry from scratch".
CONFLICT_SQLSTATES = frozenset({"40001", "40P01", "23505"})


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def is_conflict_error(exc: BaseException) -> bool:
    return str(getattr(exc, "sqlstate", "") or "") in CONFLICT_SQLSTATES


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction at a chosen isolation level."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        isolation_level: str | None = None,
    ) -> Any:
        level_sql = None
        if isolation_level is not None:
            level_sql = _ISOLATION_LEVELS.get(isolation_level.strip().lower())
            if level_sql is None:
                raise ValueError(f"unsupported isolation level: {isolation_level}")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            if level_sql is not None:
                with conn.cursor() as cur:
                    cur.execute(f"SET TRANSACTION ISOLATION LEVEL {level_sql}")
            result = fn(conn)
            conn.commit()
            return result
