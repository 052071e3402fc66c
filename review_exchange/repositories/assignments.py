from __future__ import annotations

import json
import re
from typing import Any

from review_exchange.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAssignmentsRepository:
    def __init__(self, assignments: dict[str, dict[str, Any]]) -> None:
        self._assignments = assignments

    def upsert(self, *, assignment: dict[str, Any]) -> dict[str, Any]:
        item = dict(assignment)
        self._assignments[item["assignment_id"]] = item
        return item

    def get(self, *, assignment_id: str) -> dict[str, Any] | None:
        row = self._assignments.get(assignment_id)
        return dict(row) if row is not None else None

    def active_for_reviewer(self, *, reviewer_account_id: str) -> dict[str, Any] | None:
        for row in self._assignments.values():
            if row.get("reviewer_account_id") == reviewer_account_id and row.get("status") == "assigned":
                return dict(row)
        return None

    def list_for_reviewer(self, *, reviewer_account_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._assignments.values() if x.get("reviewer_account_id") == reviewer_account_id]
        return sorted(rows, key=lambda x: int(x.get("sequence_number") or 0))


class PostgresAssignmentsRepository:
    """Write-only mirror of assignment rows; the partial unique index rejects double booking."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "review_assignments") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, assignment: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(assignment)
        sql = f"""
            INSERT INTO {self._table_name} (
                assignment_id, item_id, owner_account_id, reviewer_account_id,
                sequence_number, status, assigned_at, due_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(assignment_id) DO UPDATE
            SET status = EXCLUDED.status,
                due_at = EXCLUDED.due_at,
                payload = EXCLUDED.payload
        """

        def _op(tx_conn: Any) -> dict[str, Any]:
            with tx_conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["assignment_id"],
                        item.get("item_id"),
                        item.get("owner_account_id"),
                        item.get("reviewer_account_id"),
                        int(item.get("sequence_number") or 0),
                        item.get("status"),
                        item.get("assigned_at"),
                        item.get("due_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        if conn is not None:
            return _op(conn)
        return self._tx_runner.run_in_tx(fn=_op)
