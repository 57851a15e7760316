"""
Budget ledger: per-user, per-day spend totals.

Daily totals are only ever changed by a single insert-or-increment
statement, so concurrent commits for the same user and day cannot lose
updates. Weekly spend is derived from the daily rows (weeks start Monday).

Reservations hold budget for a transfer that is in flight. They are taken
under BEGIN IMMEDIATE so two transfers racing for the last of a daily limit
cannot both pass.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import time
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Optional

from .errors import ReservationNotFoundError
from .money import (
    amount_usd_to_micros,
    format_usd_from_micros,
    micros_to_usd_float,
    require_non_negative,
    require_positive,
)
from .storage import Database

logger = logging.getLogger(__name__)


DEFAULT_RESERVATION_TTL_SECONDS = 15 * 60

SCHEMA = """
CREATE TABLE IF NOT EXISTS daily_spending (
    user_id TEXT NOT NULL,
    date TEXT NOT NULL,
    total_spent_micros INTEGER NOT NULL DEFAULT 0,
    transaction_count INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (user_id, date)
);
CREATE TABLE IF NOT EXISTS budget_reservations (
    reservation_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    date TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    status TEXT NOT NULL,
    created_at REAL NOT NULL,
    settled_at REAL
);
CREATE INDEX IF NOT EXISTS idx_budget_reservations_pending
ON budget_reservations (user_id, status, date);
"""


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


@dataclass
class DailySpendingRecord:
    user_id: str
    date: str
    total_spent_micros: int = 0
    transaction_count: int = 0

    @property
    def total_spent_usd(self) -> float:
        return micros_to_usd_float(self.total_spent_micros)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "date": self.date,
            "total_spent": self.total_spent_usd,
            "transaction_count": self.transaction_count,
        }


@dataclass
class Reservation:
    """Budget held for a transfer that has not settled yet."""

    reservation_id: str
    user_id: str
    date: str
    amount_micros: int
    status: str = "pending"  # pending, committed, released
    created_at: float = 0.0
    settled_at: Optional[float] = None

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)


@dataclass
class ReservationResult:
    """Result of a reserve attempt."""

    allowed: bool
    reason: str
    reservation: Optional[Reservation] = None
    exceeded: Optional[str] = None  # daily, weekly


class BudgetLedger:
    """Ground truth for budget enforcement."""

    def __init__(
        self,
        db: Database,
        today: Callable[[], date] = date.today,
        reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS,
    ):
        self.db = db
        self._today = today
        self.reservation_ttl_seconds = reservation_ttl_seconds
        self.db.ensure_schema(SCHEMA)

    def today(self) -> date:
        return self._today()

    def _row_to_record(self, row: sqlite3.Row) -> DailySpendingRecord:
        return DailySpendingRecord(
            user_id=row["user_id"],
            date=row["date"],
            total_spent_micros=row["total_spent_micros"],
            transaction_count=row["transaction_count"],
        )

    def _row_to_reservation(self, row: sqlite3.Row) -> Reservation:
        return Reservation(
            reservation_id=row["reservation_id"],
            user_id=row["user_id"],
            date=row["date"],
            amount_micros=row["amount_micros"],
            status=row["status"],
            created_at=row["created_at"],
            settled_at=row["settled_at"],
        )

    def _increment(self, conn: sqlite3.Connection, user_id: str, day: str, amount_micros: int) -> None:
        now = time.time()
        conn.execute(
            """
            INSERT INTO daily_spending (
                user_id, date, total_spent_micros, transaction_count, created_at, updated_at
            ) VALUES (?, ?, ?, 1, ?, ?)
            ON CONFLICT (user_id, date) DO UPDATE SET
                total_spent_micros = total_spent_micros + excluded.total_spent_micros,
                transaction_count = transaction_count + 1,
                updated_at = excluded.updated_at
            """,
            (user_id, day, amount_micros, now, now),
        )

    def _select_record(self, conn: sqlite3.Connection, user_id: str, day: str) -> DailySpendingRecord:
        row = conn.execute(
            "SELECT * FROM daily_spending WHERE user_id = ? AND date = ?",
            (user_id, day),
        ).fetchone()
        if row is None:
            return DailySpendingRecord(user_id=user_id, date=day)
        return self._row_to_record(row)

    def _committed_micros(self, conn: sqlite3.Connection, user_id: str, since: str, until: str) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(total_spent_micros), 0) AS spent
            FROM daily_spending
            WHERE user_id = ? AND date >= ? AND date <= ?
            """,
            (user_id, since, until),
        ).fetchone()
        return int(row["spent"])

    def _pending_micros(self, conn: sqlite3.Connection, user_id: str, since: str, until: str) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(amount_micros), 0) AS held
            FROM budget_reservations
            WHERE user_id = ? AND status = 'pending' AND date >= ? AND date <= ?
            """,
            (user_id, since, until),
        ).fetchone()
        return int(row["held"])

    # ── Committed spend ──────────────────────────────────────────

    def record_spend(
        self,
        user_id: str,
        amount_usd: Decimal | float | int | str,
        day: Optional[date] = None,
    ) -> DailySpendingRecord:
        """Atomically add a completed spend to the user's daily total."""
        amount_micros = amount_usd_to_micros(require_non_negative(amount_usd))
        day_key = (day or self.today()).isoformat()
        with self.db.transaction() as conn:
            self._increment(conn, user_id, day_key, amount_micros)
            record = self._select_record(conn, user_id, day_key)
        logger.info(
            "Recorded spend for user %s on %s: +%s (total %s)",
            user_id,
            day_key,
            format_usd_from_micros(amount_micros),
            format_usd_from_micros(record.total_spent_micros),
        )
        return record

    def today_spend_micros(self, user_id: str) -> int:
        day_key = self.today().isoformat()
        with self.db.connect() as conn:
            return self._committed_micros(conn, user_id, day_key, day_key)

    def week_spend_micros(self, user_id: str) -> int:
        today = self.today()
        with self.db.connect() as conn:
            return self._committed_micros(
                conn, user_id, week_start(today).isoformat(), today.isoformat()
            )

    def pending_spend_micros(self, user_id: str) -> tuple[int, int]:
        """Amounts held by pending reservations: (today, this week)."""
        today = self.today()
        with self.db.connect() as conn:
            return (
                self._pending_micros(conn, user_id, today.isoformat(), today.isoformat()),
                self._pending_micros(
                    conn, user_id, week_start(today).isoformat(), today.isoformat()
                ),
            )

    def get_record(self, user_id: str, day: Optional[date] = None) -> DailySpendingRecord:
        day_key = (day or self.today()).isoformat()
        with self.db.connect() as conn:
            return self._select_record(conn, user_id, day_key)

    def daily_records(self, user_id: str, since: date, until: Optional[date] = None) -> list[DailySpendingRecord]:
        """Daily rows in [since, until], newest first."""
        until = until or self.today()
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM daily_spending
                WHERE user_id = ? AND date >= ? AND date <= ?
                ORDER BY date DESC
                """,
                (user_id, since.isoformat(), until.isoformat()),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    # ── Reservations ─────────────────────────────────────────────

    def reserve(
        self,
        user_id: str,
        amount_usd: Decimal | float | int | str,
        daily_limit_micros: int,
        weekly_limit_micros: int,
    ) -> ReservationResult:
        """
        Hold budget for a transfer about to be executed.

        The check counts committed spend plus every pending hold, and the hold
        is written in the same transaction.
        """
        amount_micros = amount_usd_to_micros(require_positive(amount_usd))
        today = self.today()
        day_key = today.isoformat()
        week_key = week_start(today).isoformat()
        now = time.time()

        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE budget_reservations
                SET status = 'released', settled_at = ?
                WHERE user_id = ? AND status = 'pending' AND created_at < ?
                """,
                (now, user_id, now - self.reservation_ttl_seconds),
            )
            spent_today = self._committed_micros(conn, user_id, day_key, day_key)
            spent_week = self._committed_micros(conn, user_id, week_key, day_key)
            held_today = self._pending_micros(conn, user_id, day_key, day_key)
            held_week = self._pending_micros(conn, user_id, week_key, day_key)

            if spent_today + held_today + amount_micros > daily_limit_micros:
                return ReservationResult(
                    allowed=False,
                    exceeded="daily",
                    reason=(
                        f"Amount {format_usd_from_micros(amount_micros)} exceeds remaining daily budget "
                        f"{format_usd_from_micros(daily_limit_micros - spent_today - held_today)} "
                        f"(spent {format_usd_from_micros(spent_today)}, "
                        f"held {format_usd_from_micros(held_today)} "
                        f"of {format_usd_from_micros(daily_limit_micros)} today)"
                    ),
                )
            if spent_week + held_week + amount_micros > weekly_limit_micros:
                return ReservationResult(
                    allowed=False,
                    exceeded="weekly",
                    reason=(
                        f"Amount {format_usd_from_micros(amount_micros)} exceeds remaining weekly budget "
                        f"{format_usd_from_micros(weekly_limit_micros - spent_week - held_week)} "
                        f"(spent {format_usd_from_micros(spent_week)}, "
                        f"held {format_usd_from_micros(held_week)} "
                        f"of {format_usd_from_micros(weekly_limit_micros)} this week)"
                    ),
                )

            reservation = Reservation(
                reservation_id=f"rsv-{secrets.token_hex(8)}",
                user_id=user_id,
                date=day_key,
                amount_micros=amount_micros,
                created_at=now,
            )
            conn.execute(
                """
                INSERT INTO budget_reservations (
                    reservation_id, user_id, date, amount_micros, status, created_at
                ) VALUES (?, ?, ?, ?, 'pending', ?)
                """,
                (
                    reservation.reservation_id,
                    user_id,
                    day_key,
                    amount_micros,
                    now,
                ),
            )
        return ReservationResult(allowed=True, reason="Reserved", reservation=reservation)

    def _load_reservation(self, conn: sqlite3.Connection, reservation_id: str) -> Reservation:
        row = conn.execute(
            "SELECT * FROM budget_reservations WHERE reservation_id = ?",
            (reservation_id,),
        ).fetchone()
        if row is None:
            raise ReservationNotFoundError(f"Reservation not found: {reservation_id}")
        return self._row_to_reservation(row)

    def commit_reservation(self, reservation_id: str) -> DailySpendingRecord:
        """
        Turn a hold into committed spend. Committing twice is a no-op.

        A hold that expired or was released before the transfer settled is
        still committed: the money has left, so the spend must be counted.
        """
        with self.db.transaction() as conn:
            reservation = self._load_reservation(conn, reservation_id)
            if reservation.status == "released":
                logger.warning(
                    "Committing released reservation %s for user %s",
                    reservation_id,
                    reservation.user_id,
                )
            if reservation.status != "committed":
                conn.execute(
                    """
                    UPDATE budget_reservations
                    SET status = 'committed', settled_at = ?
                    WHERE reservation_id = ?
                    """,
                    (time.time(), reservation_id),
                )
                self._increment(conn, reservation.user_id, reservation.date, reservation.amount_micros)
            record = self._select_record(conn, reservation.user_id, reservation.date)
        return record

    def release_reservation(self, reservation_id: str) -> Reservation:
        """Give a hold back after the transfer failed. Releasing twice is a no-op."""
        with self.db.transaction() as conn:
            reservation = self._load_reservation(conn, reservation_id)
            if reservation.status == "committed":
                raise ValueError(f"Cannot release committed reservation {reservation_id}")
            if reservation.status == "pending":
                conn.execute(
                    """
                    UPDATE budget_reservations
                    SET status = 'released', settled_at = ?
                    WHERE reservation_id = ?
                    """,
                    (time.time(), reservation_id),
                )
            reservation = self._load_reservation(conn, reservation_id)
        return reservation

    def purge_user(self, user_id: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM daily_spending WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM budget_reservations WHERE user_id = ?", (user_id,))
