"""
User-facing notifications.

``raise_alert`` always inserts. Deduplication belongs to the callers that
need it: ``check_low_balance`` allows one low-balance alert per user per
local calendar day, while deposit notifications are never deduplicated.
The low-balance check is read-then-write and is not atomic across callers;
a rare duplicate under heavy concurrency is acceptable for an advisory alert.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .money import micros_to_usd_decimal, parse_usd, require_positive
from .policy import PolicyStore
from .storage import Database

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_alerts_user_unread
ON alerts (user_id, is_read);
CREATE INDEX IF NOT EXISTS idx_alerts_user_type_date
ON alerts (user_id, alert_type, created_at);
"""


class AlertType(str, Enum):
    LOW_BALANCE = "low_balance"
    DEPOSIT_RECEIVED = "deposit_received"
    BUDGET_EXCEEDED = "budget_exceeded"
    RECONCILIATION_REQUIRED = "reconciliation_required"


@dataclass
class Alert:
    id: int
    user_id: str
    alert_type: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_type": self.alert_type,
            "title": self.title,
            "message": self.message,
            "metadata": self.metadata,
            "is_read": self.is_read,
            "created_at": self.created_at,
        }


def local_day_bounds(ts: float) -> tuple[float, float]:
    """Epoch seconds of local midnight starting and ending the day of ``ts``."""
    day = datetime.fromtimestamp(ts).date()
    start = datetime(day.year, day.month, day.day)
    return start.timestamp(), (start + timedelta(days=1)).timestamp()


class AlertCenter:
    def __init__(
        self,
        db: Database,
        policies: PolicyStore,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.policies = policies
        self._clock = clock
        self.db.ensure_schema(SCHEMA)

    def _row_to_alert(self, row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            user_id=row["user_id"],
            alert_type=row["alert_type"],
            title=row["title"],
            message=row["message"],
            metadata=json.loads(row["metadata"] or "{}"),
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def raise_alert(
        self,
        user_id: str,
        alert_type: AlertType | str,
        title: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Alert:
        """Create a new alert row. Never deduplicates."""
        type_value = alert_type.value if isinstance(alert_type, AlertType) else str(alert_type)
        payload = metadata or {}
        created_at = self._clock()
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alerts (user_id, alert_type, title, message, metadata, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (user_id, type_value, title, message, json.dumps(payload, sort_keys=True), created_at),
            )
            alert_id = cursor.lastrowid
        logger.info("Created %s alert for user %s", type_value, user_id)
        return Alert(
            id=int(alert_id),
            user_id=user_id,
            alert_type=type_value,
            title=title,
            message=message,
            metadata=payload,
            created_at=created_at,
        )

    def has_alert_today(self, user_id: str, alert_type: AlertType | str) -> bool:
        type_value = alert_type.value if isinstance(alert_type, AlertType) else str(alert_type)
        start, end = local_day_bounds(self._clock())
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT id FROM alerts
                WHERE user_id = ? AND alert_type = ? AND created_at >= ? AND created_at < ?
                LIMIT 1
                """,
                (user_id, type_value, start, end),
            ).fetchone()
        return row is not None

    def check_low_balance(
        self,
        user_id: str,
        current_balance: Decimal | float | int | str,
    ) -> Optional[Alert]:
        """Raise a low-balance alert at most once per day while balance <= threshold."""
        balance = parse_usd(current_balance)
        policy = self.policies.get(user_id)
        threshold = micros_to_usd_decimal(policy.low_balance_alert_threshold_micros)

        if balance > threshold:
            return None
        if self.has_alert_today(user_id, AlertType.LOW_BALANCE):
            logger.debug("Low balance alert already sent today for user %s", user_id)
            return None

        return self.raise_alert(
            user_id,
            AlertType.LOW_BALANCE,
            "Low Balance Alert",
            (
                f"Your balance is ${balance:.2f}, which is below your alert threshold "
                f"of ${threshold:.2f}. Consider topping up soon!"
            ),
            {"balance": float(balance), "threshold": float(threshold)},
        )

    def deposit_received(
        self,
        user_id: str,
        amount_usd: Decimal | float | int | str,
        sender: Optional[str] = None,
    ) -> Alert:
        amount = require_positive(amount_usd)
        source = f" from {sender}" if sender else ""
        return self.raise_alert(
            user_id,
            AlertType.DEPOSIT_RECEIVED,
            "Deposit Received",
            f"You received ${amount:.2f}{source}.",
            {"amount": float(amount), "sender": sender},
        )

    def unread(self, user_id: str) -> list[Alert]:
        """Unread alerts, newest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM alerts
                WHERE user_id = ? AND is_read = 0
                ORDER BY created_at DESC, id DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_alert(r) for r in rows]

    def mark_read(self, user_id: str, alert_ids: Optional[Iterable[int]] = None) -> int:
        """Mark all unread alerts read, or only ``alert_ids``. Returns rows changed."""
        ids = list(alert_ids) if alert_ids is not None else []
        with self.db.connect() as conn:
            if ids:
                placeholders = ", ".join("?" for _ in ids)
                cursor = conn.execute(
                    f"""
                    UPDATE alerts SET is_read = 1
                    WHERE user_id = ? AND is_read = 0 AND id IN ({placeholders})
                    """,
                    (user_id, *ids),
                )
            else:
                cursor = conn.execute(
                    "UPDATE alerts SET is_read = 1 WHERE user_id = ? AND is_read = 0",
                    (user_id,),
                )
            changed = cursor.rowcount
        logger.info("Marked %d alerts read for user %s", changed, user_id)
        return changed

    def purge_user(self, user_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM alerts WHERE user_id = ?", (user_id,))
