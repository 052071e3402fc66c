from __future__ import annotations

from typing import Any

from review_exchange.errors import InsufficientCreditsError, ValidationError

LEDGER_KINDS = {"earned", "spent"}


class StoreLedgerMixin:
    """Append-only credit ledger; a balance is always the sum of its entries."""

    def get_balance(self, *, account_id: str) -> int:
        return self.ledger_repository.balance(account_id=account_id)

    def list_ledger_entries(self, *, account_id: str) -> list[dict[str, Any]]:
        self._require_account(account_id)
        return self.ledger_repository.list_for_account(account_id=account_id)

    def append_ledger_entry(
        self,
        *,
        account_id: str,
        amount: int,
        kind: str,
        description: str,
        reference_id: str | None = None,
    ) -> dict[str, Any]:
        if kind not in LEDGER_KINDS:
            raise ValidationError(f"unsupported ledger kind: {kind}", code="LEDGER_ENTRY_INVALID")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValidationError("ledger amount must be a non-zero integer", code="LEDGER_ENTRY_INVALID")
        if kind == "earned" and amount < 0:
            raise ValidationError("earned entries must be positive", code="LEDGER_ENTRY_INVALID")
        if kind == "spent" and amount > 0:
            raise ValidationError("spent entries must be negative", code="LEDGER_ENTRY_INVALID")

        def _op() -> dict[str, Any]:
            self._require_account(account_id)
            balance = self.get_balance(account_id=account_id)
            if balance + amount < 0:
                raise InsufficientCreditsError(
                    f"balance {balance} cannot cover {abs(amount)} credit(s)",
                )
            entry = {
                "entry_id": self._new_id("led"),
                "account_id": account_id,
                "amount": amount,
                "kind": kind,
                "description": description,
                "reference_id": reference_id,
                "created_at": self._utcnow_iso(),
            }
            return dict(self._persist_ledger_entry(entry=entry))

        return self._run_in_transaction(_op)

    def spend_credits(
        self,
        *,
        account_id: str,
        amount: int = 1,
        description: str,
        reference_id: str | None = None,
    ) -> dict[str, Any]:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("spend amount must be a positive integer", code="LEDGER_ENTRY_INVALID")

        def _op() -> dict[str, Any]:
            balance = self.get_balance(account_id=account_id)
            if balance < amount:
                raise InsufficientCreditsError(f"balance {balance} is below the required {amount} credit(s)")
            return self.append_ledger_entry(
                account_id=account_id,
                amount=-amount,
                kind="spent",
                description=description,
                reference_id=reference_id,
            )

        return self._run_in_transaction(_op)

    def _mirrored_balance(self, account_id: str) -> int | None:
        """Balance from an independent copy of the ledger, when the backend keeps one."""
        return None

    def verify_ledger(self, *, account_id: str | None = None) -> dict[str, Any]:
        """Replay entries in append order and check sign rules and running balances.

        Backends that mirror ledger rows into their own table also have each
        replayed balance compared with the mirror.
        """
        with self._lock:
            self._refresh_state()
            entries = list(self.ledger_entries)
        running: dict[str, int] = {}
        violations: list[dict[str, Any]] = []
        for entry in entries:
            owner = str(entry.get("account_id") or "")
            if account_id is not None and owner != account_id:
                continue
            amount = int(entry.get("amount") or 0)
            kind = entry.get("kind")
            if (kind == "earned" and amount <= 0) or (kind == "spent" and amount >= 0) or kind not in LEDGER_KINDS:
                violations.append({"entry_id": entry.get("entry_id"), "reason": "sign_mismatch"})
            running[owner] = running.get(owner, 0) + amount
            if running[owner] < 0:
                violations.append({"entry_id": entry.get("entry_id"), "reason": "negative_balance"})
        for owner, total in sorted(running.items()):
            mirrored = self._mirrored_balance(owner)
            if mirrored is not None and mirrored != total:
                violations.append(
                    {"account_id": owner, "reason": "mirror_mismatch", "replayed": total, "mirrored": mirrored}
                )
        return {
            "valid": not violations,
            "checked_accounts": len(running),
            "balances": dict(sorted(running.items())),
            "violations": violations,
        }
