"""Tests for per-user policy storage."""

from decimal import Decimal

import pytest

from spendguard.errors import ConfigurationInconsistentError
from spendguard.policy import PolicyConfig, PolicyStore
from spendguard.storage import Database


@pytest.fixture
def store(tmp_path):
    return PolicyStore(Database(tmp_path / "guard.sqlite3"))


class TestPolicyStore:
    def test_missing_policy_is_created_with_defaults(self, store):
        policy = store.get("user-1")
        assert policy.auto_approve_limit_usd == 5.0
        assert policy.daily_spending_limit_usd == 100.0
        assert policy.weekly_spending_limit_usd == 500.0
        assert policy.low_balance_alert_threshold_usd == 10.0
        assert policy.auto_save_percentage == Decimal("0")

    def test_get_is_stable(self, store):
        first = store.get("user-1")
        second = store.get("user-1")
        assert first.created_at == second.created_at

    def test_defaults_match_stored_row(self, store):
        stored = store.get("user-1")
        defaults = PolicyConfig.defaults("user-1")
        assert stored.auto_approve_limit_micros == defaults.auto_approve_limit_micros
        assert stored.weekly_spending_limit_micros == defaults.weekly_spending_limit_micros

    def test_update_changes_only_given_fields(self, store):
        policy = store.update("user-1", daily_spending_limit="40", auto_approve_limit=None)
        assert policy.daily_spending_limit_usd == 40.0
        assert policy.auto_approve_limit_usd == 5.0

    def test_update_percentage(self, store):
        policy = store.update("user-1", auto_save_percentage="12.5")
        assert policy.auto_save_percentage == Decimal("12.5")

    def test_negative_limit_rejected(self, store):
        with pytest.raises(ConfigurationInconsistentError, match="daily_spending_limit"):
            store.update("user-1", daily_spending_limit=-1)
        assert store.get("user-1").daily_spending_limit_usd == 100.0

    def test_percentage_out_of_range_rejected(self, store):
        with pytest.raises(ConfigurationInconsistentError):
            store.update("user-1", auto_save_percentage=101)

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError, match="Unknown policy field"):
            store.update("user-1", monthly_limit=10)

    def test_daily_above_weekly_is_allowed_but_logged(self, store, caplog):
        policy = store.update("user-1", daily_spending_limit=600)
        assert policy.daily_spending_limit_usd == 600.0
        assert "above weekly limit" in caplog.text

    def test_users_are_independent(self, store):
        store.update("user-1", auto_approve_limit=20)
        assert store.get("user-2").auto_approve_limit_usd == 5.0

    def test_delete_then_get_restores_defaults(self, store):
        store.update("user-1", auto_approve_limit=20)
        store.delete("user-1")
        assert store.get("user-1").auto_approve_limit_usd == 5.0
