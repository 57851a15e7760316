"""
Approval decision engine.

``evaluate`` is a pure function of the user's policy, the trust entry for
the counterparty, the spend already committed and the proposed amount.
Rules are checked in a fixed order and the first match wins:

1. today + amount over the daily limit   -> blocked
2. week + amount over the weekly limit   -> blocked
3. counterparty not trusted              -> requires confirmation
4. amount within the effective limit     -> auto-approved
5. otherwise                             -> requires confirmation

The budget snapshot attached to every decision is taken before the
proposed amount is applied.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .money import format_usd_from_micros, micros_to_usd_float
from .policy import PolicyConfig
from .trust import TrustEntry


VERIFICATION_FAILED_MESSAGE = "Could not verify policies. Please confirm manually."


class DecisionKind(str, Enum):
    AUTO_APPROVED = "auto_approved"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    BLOCKED = "blocked"


class DecisionReason(str, Enum):
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    WEEKLY_LIMIT_EXCEEDED = "weekly_limit_exceeded"
    NOT_TRUSTED = "not_trusted"
    WITHIN_TRUSTED_LIMIT = "within_trusted_limit"
    EXCEEDS_AUTO_APPROVE_LIMIT = "exceeds_auto_approve_limit"
    VERIFICATION_FAILED = "verification_failed"


@dataclass
class BudgetStatus:
    """Spend and limits for both windows, before the proposed transfer."""

    today_spent_micros: int
    week_spent_micros: int
    daily_limit_micros: int
    weekly_limit_micros: int

    @property
    def remaining_today_micros(self) -> int:
        return self.daily_limit_micros - self.today_spent_micros

    @property
    def remaining_week_micros(self) -> int:
        return self.weekly_limit_micros - self.week_spent_micros

    def to_dict(self) -> dict:
        return {
            "today_spent": micros_to_usd_float(self.today_spent_micros),
            "week_spent": micros_to_usd_float(self.week_spent_micros),
            "daily_limit": micros_to_usd_float(self.daily_limit_micros),
            "weekly_limit": micros_to_usd_float(self.weekly_limit_micros),
            "remaining_today": micros_to_usd_float(self.remaining_today_micros),
            "remaining_week": micros_to_usd_float(self.remaining_week_micros),
        }


@dataclass
class Decision:
    kind: DecisionKind
    reason: DecisionReason
    message: str
    amount_micros: int
    budget_status: Optional[BudgetStatus] = None
    effective_limit_micros: Optional[int] = None
    confirmed: bool = False

    @property
    def can_auto_approve(self) -> bool:
        return self.kind is DecisionKind.AUTO_APPROVED

    @property
    def requires_confirmation(self) -> bool:
        return self.kind is DecisionKind.REQUIRES_CONFIRMATION

    @property
    def blocked(self) -> bool:
        return self.kind is DecisionKind.BLOCKED

    @property
    def budget_exceeded(self) -> Optional[str]:
        if self.reason is DecisionReason.DAILY_LIMIT_EXCEEDED:
            return "daily"
        if self.reason is DecisionReason.WEEKLY_LIMIT_EXCEEDED:
            return "weekly"
        return None

    def may_proceed(self, confirmed: Optional[bool] = None) -> bool:
        """
        Whether the caller may execute the transfer.

        Confirmation only lifts a confirmation requirement that came out of a
        full evaluation; it never overrides a budget block, and a fail-closed
        decision has not checked the budget at all.
        """
        if confirmed is None:
            confirmed = self.confirmed
        if self.kind is DecisionKind.AUTO_APPROVED:
            return True
        if self.kind is DecisionKind.REQUIRES_CONFIRMATION:
            return confirmed and self.reason is not DecisionReason.VERIFICATION_FAILED
        return False

    def to_dict(self) -> dict:
        return {
            "decision": self.kind.value,
            "reason": self.reason.value,
            "message": self.message,
            "can_auto_approve": self.can_auto_approve,
            "requires_confirmation": self.requires_confirmation,
            "budget_exceeded": self.budget_exceeded,
            "confirmed": self.confirmed,
            "may_proceed": self.may_proceed(),
            "amount": micros_to_usd_float(self.amount_micros),
            "effective_limit": (
                micros_to_usd_float(self.effective_limit_micros)
                if self.effective_limit_micros is not None
                else None
            ),
            "budget_status": self.budget_status.to_dict() if self.budget_status else None,
        }


def evaluate(
    policy: PolicyConfig,
    trust_entry: Optional[TrustEntry],
    today_spent_micros: int,
    week_spent_micros: int,
    amount_micros: int,
) -> Decision:
    """Classify a proposed transfer. Performs no I/O."""
    status = BudgetStatus(
        today_spent_micros=today_spent_micros,
        week_spent_micros=week_spent_micros,
        daily_limit_micros=policy.daily_spending_limit_micros,
        weekly_limit_micros=policy.weekly_spending_limit_micros,
    )

    if today_spent_micros + amount_micros > policy.daily_spending_limit_micros:
        return Decision(
            kind=DecisionKind.BLOCKED,
            reason=DecisionReason.DAILY_LIMIT_EXCEEDED,
            message=(
                f"This would exceed your daily limit of "
                f"{format_usd_from_micros(policy.daily_spending_limit_micros)}. "
                f"You've spent {format_usd_from_micros(today_spent_micros)} today."
            ),
            amount_micros=amount_micros,
            budget_status=status,
        )

    if week_spent_micros + amount_micros > policy.weekly_spending_limit_micros:
        return Decision(
            kind=DecisionKind.BLOCKED,
            reason=DecisionReason.WEEKLY_LIMIT_EXCEEDED,
            message=(
                f"This would exceed your weekly limit of "
                f"{format_usd_from_micros(policy.weekly_spending_limit_micros)}. "
                f"You've spent {format_usd_from_micros(week_spent_micros)} this week."
            ),
            amount_micros=amount_micros,
            budget_status=status,
        )

    if trust_entry is None:
        return Decision(
            kind=DecisionKind.REQUIRES_CONFIRMATION,
            reason=DecisionReason.NOT_TRUSTED,
            message="This contact is not in your trusted list.",
            amount_micros=amount_micros,
            budget_status=status,
        )

    # An explicit override of 0 means "never auto-approve this counterparty".
    effective_limit = trust_entry.auto_approve_limit_override_micros
    if effective_limit is None:
        effective_limit = policy.auto_approve_limit_micros

    if amount_micros <= effective_limit:
        return Decision(
            kind=DecisionKind.AUTO_APPROVED,
            reason=DecisionReason.WITHIN_TRUSTED_LIMIT,
            message=(
                f"Auto-approved: {format_usd_from_micros(amount_micros)} is within your "
                f"{format_usd_from_micros(effective_limit)} limit for trusted contacts."
            ),
            amount_micros=amount_micros,
            budget_status=status,
            effective_limit_micros=effective_limit,
        )

    return Decision(
        kind=DecisionKind.REQUIRES_CONFIRMATION,
        reason=DecisionReason.EXCEEDS_AUTO_APPROVE_LIMIT,
        message=(
            f"Amount {format_usd_from_micros(amount_micros)} exceeds your auto-approve limit "
            f"of {format_usd_from_micros(effective_limit)}."
        ),
        amount_micros=amount_micros,
        budget_status=status,
        effective_limit_micros=effective_limit,
    )


def verification_failed(amount_micros: int) -> Decision:
    """Fail-closed decision used when policy, trust or spend could not be read."""
    return Decision(
        kind=DecisionKind.REQUIRES_CONFIRMATION,
        reason=DecisionReason.VERIFICATION_FAILED,
        message=VERIFICATION_FAILED_MESSAGE,
        amount_micros=amount_micros,
    )
