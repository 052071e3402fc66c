from __future__ import annotations

import re
from typing import Any

from review_exchange.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryLedgerEntriesRepository:
    def __init__(self, entries: list[dict[str, Any]]) -> None:
        self._entries = entries

    def append(self, *, entry: dict[str, Any]) -> dict[str, Any]:
        item = dict(entry)
        self._entries.append(item)
        return item

    def list_for_account(self, *, account_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._entries if x.get("account_id") == account_id]

    def balance(self, *, account_id: str) -> int:
        return sum(int(x.get("amount") or 0) for x in self._entries if x.get("account_id") == account_id)


class PostgresLedgerEntriesRepository:
    """Immutable ledger rows; balances are always recomputed with SUM()."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "ledger_entries") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, entry: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(entry)
        sql = f"""
            INSERT INTO {self._table_name} (
                entry_id, account_id, amount, kind, description, reference_id, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        """

        def _op(tx_conn: Any) -> dict[str, Any]:
            with tx_conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["entry_id"],
                        item["account_id"],
                        int(item["amount"]),
                        item["kind"],
                        item.get("description", ""),
                        item.get("reference_id"),
                        item.get("created_at"),
                    ),
                )
            return item

        if conn is not None:
            return _op(conn)
        return self._tx_runner.run_in_tx(fn=_op)

    def balance(self, *, account_id: str) -> int:
        sql = f"SELECT COALESCE(SUM(amount), 0) FROM {self._table_name} WHERE account_id = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (account_id,))
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(fn=_op)
