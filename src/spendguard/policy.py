"""
Per-user spending policy.

Every user has exactly one policy row. It is created with the default
values below the first time anything reads it, so callers never see a
missing policy.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .errors import ConfigurationInconsistentError, InvalidAmountError, PolicyNotFoundError
from .money import (
    limit_usd_to_micros,
    micros_to_usd_float,
    parse_usd,
)
from .storage import Database

logger = logging.getLogger(__name__)


DEFAULT_AUTO_APPROVE_LIMIT_USD = Decimal("5.00")
DEFAULT_DAILY_SPENDING_LIMIT_USD = Decimal("100.00")
DEFAULT_WEEKLY_SPENDING_LIMIT_USD = Decimal("500.00")
DEFAULT_LOW_BALANCE_ALERT_THRESHOLD_USD = Decimal("10.00")
DEFAULT_AUTO_SAVE_PERCENTAGE = Decimal("0")

_LIMIT_FIELDS = (
    "auto_approve_limit",
    "daily_spending_limit",
    "weekly_spending_limit",
    "low_balance_alert_threshold",
)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS user_policies (
    user_id TEXT PRIMARY KEY,
    auto_approve_limit_micros INTEGER NOT NULL
        DEFAULT {limit_usd_to_micros(DEFAULT_AUTO_APPROVE_LIMIT_USD)},
    daily_spending_limit_micros INTEGER NOT NULL
        DEFAULT {limit_usd_to_micros(DEFAULT_DAILY_SPENDING_LIMIT_USD)},
    weekly_spending_limit_micros INTEGER NOT NULL
        DEFAULT {limit_usd_to_micros(DEFAULT_WEEKLY_SPENDING_LIMIT_USD)},
    low_balance_alert_threshold_micros INTEGER NOT NULL
        DEFAULT {limit_usd_to_micros(DEFAULT_LOW_BALANCE_ALERT_THRESHOLD_USD)},
    auto_save_percentage TEXT NOT NULL DEFAULT '{DEFAULT_AUTO_SAVE_PERCENTAGE}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
"""


@dataclass
class PolicyConfig:
    """Spending rules for one user. Money fields are micro-dollars."""

    user_id: str
    auto_approve_limit_micros: int
    daily_spending_limit_micros: int
    weekly_spending_limit_micros: int
    low_balance_alert_threshold_micros: int
    auto_save_percentage: Decimal = DEFAULT_AUTO_SAVE_PERCENTAGE
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def defaults(cls, user_id: str) -> "PolicyConfig":
        return cls(
            user_id=user_id,
            auto_approve_limit_micros=limit_usd_to_micros(DEFAULT_AUTO_APPROVE_LIMIT_USD),
            daily_spending_limit_micros=limit_usd_to_micros(DEFAULT_DAILY_SPENDING_LIMIT_USD),
            weekly_spending_limit_micros=limit_usd_to_micros(DEFAULT_WEEKLY_SPENDING_LIMIT_USD),
            low_balance_alert_threshold_micros=limit_usd_to_micros(
                DEFAULT_LOW_BALANCE_ALERT_THRESHOLD_USD
            ),
        )

    @property
    def auto_approve_limit_usd(self) -> float:
        return micros_to_usd_float(self.auto_approve_limit_micros)

    @property
    def daily_spending_limit_usd(self) -> float:
        return micros_to_usd_float(self.daily_spending_limit_micros)

    @property
    def weekly_spending_limit_usd(self) -> float:
        return micros_to_usd_float(self.weekly_spending_limit_micros)

    @property
    def low_balance_alert_threshold_usd(self) -> float:
        return micros_to_usd_float(self.low_balance_alert_threshold_micros)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "auto_approve_limit": self.auto_approve_limit_usd,
            "daily_spending_limit": self.daily_spending_limit_usd,
            "weekly_spending_limit": self.weekly_spending_limit_usd,
            "low_balance_alert_threshold": self.low_balance_alert_threshold_usd,
            "auto_save_percentage": float(self.auto_save_percentage),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class PolicyStore:
    """Get-or-create access to user policies."""

    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    def _row_to_policy(self, row: sqlite3.Row) -> PolicyConfig:
        return PolicyConfig(
            user_id=row["user_id"],
            auto_approve_limit_micros=row["auto_approve_limit_micros"],
            daily_spending_limit_micros=row["daily_spending_limit_micros"],
            weekly_spending_limit_micros=row["weekly_spending_limit_micros"],
            low_balance_alert_threshold_micros=row["low_balance_alert_threshold_micros"],
            auto_save_percentage=Decimal(row["auto_save_percentage"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _ensure_policy_row(self, conn: sqlite3.Connection, user_id: str) -> None:
        now = time.time()
        conn.execute(
            """
            INSERT OR IGNORE INTO user_policies (user_id, created_at, updated_at)
            VALUES (?, ?, ?)
            """,
            (user_id, now, now),
        )

    def _select(self, conn: sqlite3.Connection, user_id: str) -> PolicyConfig:
        row = conn.execute(
            "SELECT * FROM user_policies WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            raise PolicyNotFoundError(f"Policy not found for user {user_id}")
        return self._row_to_policy(row)

    def get(self, user_id: str) -> PolicyConfig:
        """Return the user's policy, creating it with defaults if absent."""
        with self.db.connect() as conn:
            self._ensure_policy_row(conn, user_id)
            return self._select(conn, user_id)

    def update(self, user_id: str, **changes: Any) -> PolicyConfig:
        """
        Update one or more policy fields (USD values for limits).

        Unknown fields raise ``ValueError``; negative limits and percentages
        outside 0..100 raise ``ConfigurationInconsistentError``.
        """
        assignments: dict[str, Any] = {}
        for name, value in changes.items():
            if value is None:
                continue
            if name in _LIMIT_FIELDS:
                assignments[f"{name}_micros"] = _validated_limit(name, value)
            elif name == "auto_save_percentage":
                assignments[name] = str(_validated_percentage(value))
            else:
                raise ValueError(f"Unknown policy field: {name}")

        with self.db.transaction() as conn:
            self._ensure_policy_row(conn, user_id)
            if assignments:
                columns = ", ".join(f"{column} = ?" for column in assignments)
                conn.execute(
                    f"UPDATE user_policies SET {columns}, updated_at = ? WHERE user_id = ?",
                    (*assignments.values(), time.time(), user_id),
                )
            policy = self._select(conn, user_id)

        if policy.daily_spending_limit_micros > policy.weekly_spending_limit_micros:
            logger.warning(
                "Policy for %s has daily limit $%.2f above weekly limit $%.2f",
                user_id,
                policy.daily_spending_limit_usd,
                policy.weekly_spending_limit_usd,
            )
        logger.info("Updated policy for user %s: %s", user_id, sorted(assignments))
        return policy

    def delete(self, user_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM user_policies WHERE user_id = ?", (user_id,))


def _validated_limit(name: str, value: Any) -> int:
    try:
        dec = parse_usd(value)
    except InvalidAmountError:
        raise ConfigurationInconsistentError(name, value, "must be a finite amount") from None
    if dec < 0:
        raise ConfigurationInconsistentError(name, value, "must not be negative")
    return limit_usd_to_micros(dec)


def _validated_percentage(value: Any) -> Decimal:
    try:
        dec = parse_usd(value)
    except InvalidAmountError:
        raise ConfigurationInconsistentError(
            "auto_save_percentage", value, "must be a finite number"
        ) from None
    if dec < 0 or dec > 100:
        raise ConfigurationInconsistentError("auto_save_percentage", value, "must be within 0..100")
    return dec
