from __future__ import annotations

import re
from typing import Any

from review_exchange.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryRelationshipsRepository:
    def __init__(self, relationships: dict[str, dict[str, Any]]) -> None:
        self._relationships = relationships

    def append(self, *, relationship: dict[str, Any]) -> dict[str, Any]:
        item = dict(relationship)
        self._relationships[item["relationship_id"]] = item
        return item

    def exists(self, *, reviewer_account_id: str, owner_account_id: str) -> bool:
        return any(
            x.get("reviewer_account_id") == reviewer_account_id and x.get("owner_account_id") == owner_account_id
            for x in self._relationships.values()
        )

    def reviewers_of_owner(self, *, owner_account_id: str) -> set[str]:
        return {
            str(x["reviewer_account_id"])
            for x in self._relationships.values()
            if x.get("owner_account_id") == owner_account_id
        }

    def count_as_reviewer(self, *, reviewer_account_id: str) -> int:
        return sum(1 for x in self._relationships.values() if x.get("reviewer_account_id") == reviewer_account_id)


class PostgresRelationshipsRepository:
    """Write-only pair log; (reviewer, owner) is unique for all time."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "review_relationships") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, relationship: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(relationship)
        sql = f"""
            INSERT INTO {self._table_name} (
                relationship_id, reviewer_account_id, owner_account_id, item_id, assignment_id, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s)
        """

        def _op(tx_conn: Any) -> dict[str, Any]:
            with tx_conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["relationship_id"],
                        item["reviewer_account_id"],
                        item["owner_account_id"],
                        item.get("item_id"),
                        item.get("assignment_id"),
                        item.get("created_at"),
                    ),
                )
            return item

        if conn is not None:
            return _op(conn)
        return self._tx_runner.run_in_tx(fn=_op)
