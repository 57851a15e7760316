"""Read-only spending summaries over a trailing window."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .budget import BudgetLedger, DailySpendingRecord
from .money import micros_to_cents_float, percent_of
from .policy import PolicyStore
from .transactions import TransactionLog


DEFAULT_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 30
TOP_COUNTERPARTIES = 5


@dataclass
class CounterpartySpend:
    name: str
    counterparty_id: Optional[str]
    total_micros: int = 0
    count: int = 0
    percentage: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "counterparty_id": self.counterparty_id,
            "total": micros_to_cents_float(self.total_micros),
            "count": self.count,
            "percentage": self.percentage,
        }


@dataclass
class BudgetUsage:
    limit_micros: int
    spent_micros: int

    @property
    def remaining_micros(self) -> int:
        return max(0, self.limit_micros - self.spent_micros)

    @property
    def percent_used(self) -> Optional[int]:
        """Rounded percentage of the limit used; ``None`` when the limit is 0."""
        return percent_of(self.spent_micros, self.limit_micros)

    def to_dict(self) -> dict:
        percent = self.percent_used
        return {
            "limit": micros_to_cents_float(self.limit_micros),
            "spent": micros_to_cents_float(self.spent_micros),
            "remaining": micros_to_cents_float(self.remaining_micros),
            "percent_used": percent if percent is not None else "N/A",
        }


@dataclass
class SpendingSummary:
    user_id: str
    window_days: int
    total_spent_micros: int
    total_transactions: int
    top_counterparties: list[CounterpartySpend]
    daily: BudgetUsage
    weekly: BudgetUsage
    daily_breakdown: list[DailySpendingRecord] = field(default_factory=list)

    @property
    def average_per_transaction_micros(self) -> int:
        if self.total_transactions == 0:
            return 0
        return self.total_spent_micros // self.total_transactions

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "period": f"Last {self.window_days} days",
            "total_spent": micros_to_cents_float(self.total_spent_micros),
            "total_transactions": self.total_transactions,
            "average_per_transaction": micros_to_cents_float(self.average_per_transaction_micros),
            "top_counterparties": [c.to_dict() for c in self.top_counterparties],
            "budget": {
                "daily": self.daily.to_dict(),
                "weekly": self.weekly.to_dict(),
            },
            "daily_breakdown": [r.to_dict() for r in self.daily_breakdown],
        }


def clamp_window(window_days: int, max_days: int = MAX_WINDOW_DAYS) -> int:
    return max(1, min(int(window_days), max_days))


def summarize(
    ledger: BudgetLedger,
    transactions: TransactionLog,
    policies: PolicyStore,
    user_id: str,
    window_days: int = DEFAULT_WINDOW_DAYS,
    max_days: int = MAX_WINDOW_DAYS,
) -> SpendingSummary:
    """
    Totals come from the daily ledger; the counterparty ranking comes from
    completed outgoing transfers in the same window.
    """
    days = clamp_window(window_days, max_days)
    today = ledger.today()
    start = today - timedelta(days=days)
    since_ts = datetime(start.year, start.month, start.day).timestamp()

    records = ledger.daily_records(user_id, since=start, until=today)
    total_spent = sum(r.total_spent_micros for r in records)
    total_count = sum(r.transaction_count for r in records)

    grouped: dict[str, CounterpartySpend] = {}
    for tx in transactions.completed_sends_since(user_id, since_ts):
        key = tx.counterparty_id or tx.counterparty_name or "Unknown"
        entry = grouped.get(key)
        if entry is None:
            entry = CounterpartySpend(
                name=tx.counterparty_name or tx.counterparty_id or "Unknown",
                counterparty_id=tx.counterparty_id,
            )
            grouped[key] = entry
        entry.total_micros += tx.amount_micros
        entry.count += 1

    ranked = sorted(grouped.values(), key=lambda c: c.total_micros, reverse=True)[:TOP_COUNTERPARTIES]
    for entry in ranked:
        entry.percentage = percent_of(entry.total_micros, total_spent) or 0

    policy = policies.get(user_id)
    return SpendingSummary(
        user_id=user_id,
        window_days=days,
        total_spent_micros=total_spent,
        total_transactions=total_count,
        top_counterparties=ranked,
        daily=BudgetUsage(policy.daily_spending_limit_micros, ledger.today_spend_micros(user_id)),
        weekly=BudgetUsage(policy.weekly_spending_limit_micros, ledger.week_spend_micros(user_id)),
        daily_breakdown=records,
    )
