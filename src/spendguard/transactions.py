"""Raw transfer log: every send and receive, used by spending analytics."""

from __future__ import annotations

import secrets
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .money import amount_usd_to_micros, micros_to_usd_float, require_positive
from .storage import Database


DIRECTIONS = {"send", "receive"}
STATUSES = {"pending", "completed", "failed"}

SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    tx_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    direction TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    counterparty_id TEXT,
    counterparty_name TEXT,
    external_ref TEXT,
    status TEXT NOT NULL,
    was_auto_approved INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_user_date
ON transactions (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_transactions_external_ref
ON transactions (external_ref);
"""


@dataclass
class Transaction:
    """A single transfer event."""

    tx_id: str
    user_id: str
    direction: str
    amount_micros: int
    counterparty_id: Optional[str] = None
    counterparty_name: Optional[str] = None
    external_ref: Optional[str] = None
    status: str = "completed"  # pending, completed, failed
    was_auto_approved: bool = False
    created_at: float = 0.0

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "user_id": self.user_id,
            "direction": self.direction,
            "amount_usd": self.amount_usd,
            "counterparty_id": self.counterparty_id,
            "counterparty_name": self.counterparty_name,
            "external_ref": self.external_ref,
            "status": self.status,
            "was_auto_approved": self.was_auto_approved,
            "created_at": self.created_at,
        }


class TransactionLog:
    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    def _row_to_tx(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            tx_id=row["tx_id"],
            user_id=row["user_id"],
            direction=row["direction"],
            amount_micros=row["amount_micros"],
            counterparty_id=row["counterparty_id"],
            counterparty_name=row["counterparty_name"],
            external_ref=row["external_ref"],
            status=row["status"],
            was_auto_approved=bool(row["was_auto_approved"]),
            created_at=row["created_at"],
        )

    def log(
        self,
        user_id: str,
        direction: str,
        amount_usd: Decimal | float | int | str,
        counterparty_id: Optional[str] = None,
        counterparty_name: Optional[str] = None,
        external_ref: Optional[str] = None,
        status: str = "completed",
        was_auto_approved: bool = False,
        created_at: Optional[float] = None,
    ) -> Transaction:
        if direction not in DIRECTIONS:
            raise ValueError(f"Invalid transaction direction: {direction}")
        if status not in STATUSES:
            raise ValueError(f"Invalid transaction status: {status}")

        tx = Transaction(
            tx_id=f"tx-{secrets.token_hex(8)}",
            user_id=user_id,
            direction=direction,
            amount_micros=amount_usd_to_micros(require_positive(amount_usd)),
            counterparty_id=counterparty_id,
            counterparty_name=counterparty_name,
            external_ref=external_ref,
            status=status,
            was_auto_approved=was_auto_approved,
            created_at=time.time() if created_at is None else created_at,
        )
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO transactions (
                    tx_id, user_id, direction, amount_micros, counterparty_id,
                    counterparty_name, external_ref, status, was_auto_approved, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tx.tx_id,
                    tx.user_id,
                    tx.direction,
                    tx.amount_micros,
                    tx.counterparty_id,
                    tx.counterparty_name,
                    tx.external_ref,
                    tx.status,
                    int(tx.was_auto_approved),
                    tx.created_at,
                ),
            )
        return tx

    def update_status(self, tx_id: str, status: str, external_ref: Optional[str] = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"Invalid transaction status: {status}")
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE transactions
                SET status = ?, external_ref = COALESCE(?, external_ref)
                WHERE tx_id = ?
                """,
                (status, external_ref, tx_id),
            )
            changed = cursor.rowcount
        if changed == 0:
            raise KeyError(f"Transaction not found: {tx_id}")

    def recent(self, user_id: str, limit: int = 5) -> list[Transaction]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM transactions
                WHERE user_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_tx(r) for r in rows]

    def completed_sends_since(self, user_id: str, since_ts: float) -> list[Transaction]:
        """Completed outgoing transfers created at or after ``since_ts``."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM transactions
                WHERE user_id = ? AND direction = 'send' AND status = 'completed'
                  AND created_at >= ?
                ORDER BY amount_micros DESC
                """,
                (user_id, since_ts),
            ).fetchall()
        return [self._row_to_tx(r) for r in rows]

    def purge_user(self, user_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM transactions WHERE user_id = ?", (user_id,))
