"""Trusted counterparties per user, with optional auto-approve overrides."""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .money import limit_usd_to_micros, micros_to_usd_float, require_non_negative
from .storage import Database

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS trusted_counterparties (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    counterparty_id TEXT NOT NULL,
    counterparty_name TEXT,
    auto_approve_limit_micros INTEGER,
    created_at REAL NOT NULL,
    UNIQUE (user_id, counterparty_id)
);
CREATE INDEX IF NOT EXISTS idx_trusted_counterparties_user
ON trusted_counterparties (user_id);
"""


@dataclass
class TrustEntry:
    """A counterparty the user trusts. ``None`` override means use the policy limit."""

    user_id: str
    counterparty_id: str
    auto_approve_limit_override_micros: Optional[int] = None
    counterparty_name: Optional[str] = None
    created_at: float = 0.0

    @property
    def auto_approve_limit_override_usd(self) -> Optional[float]:
        if self.auto_approve_limit_override_micros is None:
            return None
        return micros_to_usd_float(self.auto_approve_limit_override_micros)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "counterparty_id": self.counterparty_id,
            "counterparty_name": self.counterparty_name,
            "auto_approve_limit_override": self.auto_approve_limit_override_usd,
            "created_at": self.created_at,
        }


class TrustRegistry:
    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    def _row_to_entry(self, row: sqlite3.Row) -> TrustEntry:
        return TrustEntry(
            user_id=row["user_id"],
            counterparty_id=row["counterparty_id"],
            auto_approve_limit_override_micros=row["auto_approve_limit_micros"],
            counterparty_name=row["counterparty_name"],
            created_at=row["created_at"],
        )

    def is_trusted(self, user_id: str, counterparty_id: str) -> Optional[TrustEntry]:
        """Return the trust entry, or ``None`` when the counterparty is not trusted."""
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM trusted_counterparties
                WHERE user_id = ? AND counterparty_id = ?
                """,
                (user_id, counterparty_id),
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def add(
        self,
        user_id: str,
        counterparty_id: str,
        override_limit_usd: Decimal | float | int | str | None = None,
        counterparty_name: Optional[str] = None,
    ) -> TrustEntry:
        """
        Trust a counterparty.

        Adding an already-trusted counterparty replaces its override limit
        (and name, when one is given) instead of failing.
        """
        override_micros = None
        if override_limit_usd is not None:
            override_micros = limit_usd_to_micros(require_non_negative(override_limit_usd))

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO trusted_counterparties (
                    user_id, counterparty_id, counterparty_name,
                    auto_approve_limit_micros, created_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, counterparty_id) DO UPDATE SET
                    auto_approve_limit_micros = excluded.auto_approve_limit_micros,
                    counterparty_name = COALESCE(excluded.counterparty_name, counterparty_name)
                """,
                (user_id, counterparty_id, counterparty_name, override_micros, time.time()),
            )
            row = conn.execute(
                """
                SELECT * FROM trusted_counterparties
                WHERE user_id = ? AND counterparty_id = ?
                """,
                (user_id, counterparty_id),
            ).fetchone()

        logger.info("Trusted counterparty %s for user %s", counterparty_id, user_id)
        return self._row_to_entry(row)

    def remove(self, user_id: str, counterparty_id: str) -> bool:
        """Stop trusting a counterparty. Returns whether an entry existed."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM trusted_counterparties WHERE user_id = ? AND counterparty_id = ?",
                (user_id, counterparty_id),
            )
            removed = cursor.rowcount > 0
        if removed:
            logger.info("Removed trusted counterparty %s for user %s", counterparty_id, user_id)
        return removed

    def list(self, user_id: str) -> list[TrustEntry]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM trusted_counterparties
                WHERE user_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def purge_counterparty(self, counterparty_id: str) -> int:
        """Drop every user's trust in a counterparty that no longer exists."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM trusted_counterparties WHERE counterparty_id = ?",
                (counterparty_id,),
            )
            purged = cursor.rowcount
        return purged

    def purge_user(self, user_id: str) -> int:
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM trusted_counterparties WHERE user_id = ?",
                (user_id,),
            )
            purged = cursor.rowcount
        return purged
