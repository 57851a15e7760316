"""Tests for the approval decision rules."""

import pytest

from spendguard.approval import (
    VERIFICATION_FAILED_MESSAGE,
    DecisionKind,
    DecisionReason,
    evaluate,
    verification_failed,
)
from spendguard.money import amount_usd_to_micros
from spendguard.policy import PolicyConfig
from spendguard.trust import TrustEntry


def usd(value) -> int:
    return amount_usd_to_micros(value)


@pytest.fixture
def policy():
    return PolicyConfig.defaults("user-1")


def trusted(override=None):
    return TrustEntry(
        user_id="user-1",
        counterparty_id="alice",
        auto_approve_limit_override_micros=None if override is None else usd(override),
    )


class TestScenarios:
    def test_trusted_small_amount_auto_approved(self, policy):
        decision = evaluate(policy, trusted(), usd(10), usd(40), usd(4))
        assert decision.kind is DecisionKind.AUTO_APPROVED
        assert decision.reason is DecisionReason.WITHIN_TRUSTED_LIMIT
        assert decision.can_auto_approve
        assert decision.effective_limit_micros == usd(5)

    def test_untrusted_requires_confirmation(self, policy):
        decision = evaluate(policy, None, 0, 0, usd(4))
        assert decision.kind is DecisionKind.REQUIRES_CONFIRMATION
        assert decision.reason is DecisionReason.NOT_TRUSTED
        assert decision.message == "This contact is not in your trusted list."

    def test_trusted_over_limit_requires_confirmation(self, policy):
        decision = evaluate(policy, trusted(), 0, 0, usd(6))
        assert decision.reason is DecisionReason.EXCEEDS_AUTO_APPROVE_LIMIT
        assert decision.requires_confirmation

    def test_over_daily_limit_blocked(self, policy):
        decision = evaluate(policy, trusted(), usd(98), usd(98), usd(3))
        assert decision.kind is DecisionKind.BLOCKED
        assert decision.reason is DecisionReason.DAILY_LIMIT_EXCEEDED
        assert decision.budget_exceeded == "daily"
        assert "$100.00" in decision.message
        assert "$98.00" in decision.message

    def test_trusted_override_cannot_beat_daily_limit(self, policy):
        decision = evaluate(policy, trusted(override=20), usd(90), usd(90), usd(15))
        assert decision.kind is DecisionKind.BLOCKED
        assert decision.reason is DecisionReason.DAILY_LIMIT_EXCEEDED
        assert decision.budget_status.remaining_today_micros == usd(10)

    def test_amount_at_default_limit_auto_approved(self, policy):
        decision = evaluate(policy, trusted(), 0, 0, usd(5))
        assert decision.kind is DecisionKind.AUTO_APPROVED
        assert decision.reason is DecisionReason.WITHIN_TRUSTED_LIMIT

    def test_one_cent_over_default_limit_needs_confirmation(self, policy):
        decision = evaluate(policy, trusted(), 0, 0, usd("5.01"))
        assert decision.kind is DecisionKind.REQUIRES_CONFIRMATION
        assert decision.reason is DecisionReason.EXCEEDS_AUTO_APPROVE_LIMIT

    def test_untrusted_under_default_limit_still_needs_confirmation(self, policy):
        decision = evaluate(policy, None, 0, 0, usd(3))
        assert decision.reason is DecisionReason.NOT_TRUSTED


class TestRuleOrder:
    def test_daily_rule_dominates_every_other_rule(self, policy):
        for entry in (None, trusted(), trusted(override=1000)):
            decision = evaluate(policy, entry, usd(100), usd(499), usd(1))
            assert decision.reason is DecisionReason.DAILY_LIMIT_EXCEEDED

    def test_weekly_limit_blocks_when_daily_has_room(self, policy):
        decision = evaluate(policy, trusted(), usd(0), usd(498), usd(3))
        assert decision.reason is DecisionReason.WEEKLY_LIMIT_EXCEEDED
        assert decision.budget_exceeded == "weekly"

    def test_amount_exactly_at_limits_is_allowed(self, policy):
        decision = evaluate(policy, trusted(), usd(95), usd(495), usd(5))
        assert decision.kind is DecisionKind.AUTO_APPROVED

    def test_override_raises_auto_approve_limit(self, policy):
        decision = evaluate(policy, trusted(override=25), 0, 0, usd(20))
        assert decision.kind is DecisionKind.AUTO_APPROVED
        assert decision.effective_limit_micros == usd(25)

    def test_zero_override_never_auto_approves(self, policy):
        decision = evaluate(policy, trusted(override=0), 0, 0, usd("0.01"))
        assert decision.reason is DecisionReason.EXCEEDS_AUTO_APPROVE_LIMIT


class TestBudgetStatus:
    def test_snapshot_is_taken_before_amount(self, policy):
        decision = evaluate(policy, trusted(), usd(10), usd(40), usd(4))
        status = decision.budget_status
        assert status.today_spent_micros == usd(10)
        assert status.remaining_today_micros == usd(90)
        assert status.remaining_week_micros == usd(460)

    def test_remaining_can_go_negative(self, policy):
        decision = evaluate(policy, None, usd(120), usd(120), usd(1))
        assert decision.budget_status.remaining_today_micros == -usd(20)
        assert decision.budget_status.to_dict()["remaining_today"] == -20.0


class TestMayProceed:
    def test_auto_approved_proceeds(self, policy):
        assert evaluate(policy, trusted(), 0, 0, usd(1)).may_proceed()

    def test_confirmation_lifts_confirmation_requirement(self, policy):
        decision = evaluate(policy, None, 0, 0, usd(50))
        assert not decision.may_proceed(False)
        assert decision.may_proceed(True)

    def test_confirmation_never_bypasses_budget(self, policy):
        decision = evaluate(policy, trusted(), usd(100), usd(100), usd(1))
        assert not decision.may_proceed(True)

    def test_fail_closed_decision(self):
        decision = verification_failed(usd(3))
        assert decision.kind is DecisionKind.REQUIRES_CONFIRMATION
        assert decision.reason is DecisionReason.VERIFICATION_FAILED
        assert decision.message == VERIFICATION_FAILED_MESSAGE
        assert decision.budget_status is None
        assert not decision.may_proceed(True)

    def test_confirmed_flag_is_used_by_default(self, policy):
        decision = evaluate(policy, None, 0, 0, usd(50))
        decision.confirmed = True
        assert decision.may_proceed()
        assert decision.to_dict()["may_proceed"] is True
