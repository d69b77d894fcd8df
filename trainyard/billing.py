"""Token ledger.

Balances are integer tokens (100 tokens = 1 USD). Charge and refund move
tokens; usage entries record accrued USD spend against a job without
moving tokens, so per job ``sum(charge.tokens) - sum(refund.tokens)``
always equals the job's ``tokens_used``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from loguru import logger

from trainyard.errors import InsufficientBalance, OwnerNotFound
from trainyard.store import Store, new_id
from trainyard.types import BillingTransaction, TransactionType


@runtime_checkable
class Billing(Protocol):
    """Charge/refund collaborator consumed by the orchestrator and cost tracker."""

    def balance(self, owner_id: str) -> int: ...

    def charge(
        self,
        owner_id: str,
        tokens: int,
        description: str,
        job_id: str | None = None,
        *,
        amount: float = 0.0,
        vast_cost: float = 0.0,
        platform_fee: float = 0.0,
    ) -> BillingTransaction: ...

    def refund(
        self,
        owner_id: str,
        tokens: int,
        description: str,
        original_transaction_id: str | None = None,
        *,
        job_id: str | None = None,
    ) -> BillingTransaction: ...

    def record_usage(
        self,
        owner_id: str,
        job_id: str,
        *,
        vast_cost: float,
        platform_fee: float,
        description: str,
    ) -> BillingTransaction: ...

    def find_charge(self, job_id: str) -> BillingTransaction | None: ...


class SqliteLedger:
    """``Billing`` backed by the ``users`` and ``transactions`` tables."""

    def __init__(
        self,
        store: Store,
        *,
        tokens_per_usd: int = 100,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._tokens_per_usd = tokens_per_usd
        self._now = now
        self._log = logger.bind(component="billing")

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def open_account(self, owner_id: str, tokens: int = 0) -> int:
        """Create the owner's account if missing and credit ``tokens``."""
        with self._store.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (owner_id, token_balance, created_at) VALUES (?, 0, ?)",
                (owner_id, self._now()),
            )
        if tokens > 0:
            return self.credit(owner_id, tokens, "Token purchase").balance_after or 0
        return self.balance(owner_id)

    def balance(self, owner_id: str) -> int:
        with self._store.connection() as conn:
            row = conn.execute(
                "SELECT token_balance FROM users WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if row is None:
            raise OwnerNotFound(owner_id)
        return int(row["token_balance"])

    def transactions(
        self,
        *,
        owner_id: str | None = None,
        job_id: str | None = None,
    ) -> list[BillingTransaction]:
        clauses, params = [], []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._store.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions{where} ORDER BY created_at ASC, rowid ASC", params
            ).fetchall()
        return [
            BillingTransaction(
                id=r["id"],
                owner_id=r["owner_id"],
                type=TransactionType(r["type"]),
                tokens=r["tokens"],
                amount=r["amount"],
                description=r["description"],
                job_id=r["job_id"],
                vast_cost=r["vast_cost"],
                platform_fee=r["platform_fee"],
                balance_after=r["balance_after"],
                original_transaction_id=r["original_transaction_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # -------------------------------------------------------------------------
    # Movements
    # -------------------------------------------------------------------------

    def _apply(
        self,
        kind: TransactionType,
        owner_id: str,
        tokens: int,
        description: str,
        *,
        job_id: str | None = None,
        amount: float = 0.0,
        vast_cost: float = 0.0,
        platform_fee: float = 0.0,
        original_transaction_id: str | None = None,
    ) -> BillingTransaction:
        if tokens < 0:
            raise ValueError(f"Token amount must be non-negative, got {tokens}")
        delta = -tokens if kind is TransactionType.CHARGE else tokens
        created_at = self._now()
        tx_id = new_id("tx")

        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT token_balance FROM users WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            if row is None:
                raise OwnerNotFound(owner_id)
            available = int(row["token_balance"])
            if available + delta < 0:
                raise InsufficientBalance(owner_id, tokens, available)

            new_balance = available + delta
            conn.execute(
                "UPDATE users SET token_balance = ? WHERE owner_id = ?",
                (new_balance, owner_id),
            )
            conn.execute(
                """INSERT INTO transactions
                   (id, owner_id, job_id, type, tokens, amount, vast_cost, platform_fee,
                    description, balance_after, original_transaction_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    tx_id, owner_id, job_id, kind.value, tokens, amount, vast_cost,
                    platform_fee, description, new_balance, original_transaction_id,
                    created_at,
                ),
            )

        return BillingTransaction(
            id=tx_id,
            owner_id=owner_id,
            type=kind,
            tokens=tokens,
            amount=amount,
            description=description,
            job_id=job_id,
            vast_cost=vast_cost,
            platform_fee=platform_fee,
            balance_after=new_balance,
            original_transaction_id=original_transaction_id,
            created_at=created_at,
        )

    def charge(
        self,
        owner_id: str,
        tokens: int,
        description: str,
        job_id: str | None = None,
        *,
        amount: float = 0.0,
        vast_cost: float = 0.0,
        platform_fee: float = 0.0,
    ) -> BillingTransaction:
        """Debit ``tokens``. Raises ``InsufficientBalance`` and leaves the balance as is."""
        tx = self._apply(
            TransactionType.CHARGE, owner_id, tokens, description,
            job_id=job_id, amount=amount, vast_cost=vast_cost, platform_fee=platform_fee,
        )
        self._log.info(
            "CHARGE {owner} -{tokens} tokens job={job} balance={balance}",
            owner=owner_id, tokens=tokens, job=job_id, balance=tx.balance_after,
        )
        return tx

    def refund(
        self,
        owner_id: str,
        tokens: int,
        description: str,
        original_transaction_id: str | None = None,
        *,
        job_id: str | None = None,
    ) -> BillingTransaction:
        tx = self._apply(
            TransactionType.REFUND, owner_id, tokens, description,
            job_id=job_id,
            amount=tokens / self._tokens_per_usd,
            original_transaction_id=original_transaction_id,
        )
        self._log.info(
            "REFUND {owner} +{tokens} tokens job={job} balance={balance}",
            owner=owner_id, tokens=tokens, job=job_id, balance=tx.balance_after,
        )
        return tx

    def credit(self, owner_id: str, tokens: int, description: str) -> BillingTransaction:
        return self._apply(
            TransactionType.CREDIT, owner_id, tokens, description,
            amount=tokens / self._tokens_per_usd,
        )

    def record_usage(
        self,
        owner_id: str,
        job_id: str,
        *,
        vast_cost: float,
        platform_fee: float,
        description: str,
    ) -> BillingTransaction:
        """Append a zero-token charge carrying accrued USD spend."""
        return self._apply(
            TransactionType.CHARGE, owner_id, 0, description,
            job_id=job_id,
            amount=round(vast_cost + platform_fee, 6),
            vast_cost=vast_cost,
            platform_fee=platform_fee,
        )

    def find_charge(self, job_id: str) -> BillingTransaction | None:
        """The token-moving charge made for ``job_id``, if any."""
        for tx in self.transactions(job_id=job_id):
            if tx.type is TransactionType.CHARGE and tx.tokens > 0:
                return tx
        return None


__all__ = ["Billing", "SqliteLedger"]
