"""Tests for the spendguard CLI."""

import json

import pytest
from click.testing import CliRunner

from spendguard.cli import main


@pytest.fixture
def runner(tmp_path):
    return CliRunner(env={"SPENDGUARD_HOME": str(tmp_path / "home")})


def invoke(runner, *args):
    return runner.invoke(main, list(args), catch_exceptions=False)


class TestPolicyCommands:
    def test_show_defaults(self, runner):
        result = invoke(runner, "policy", "show", "--user", "u1", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["auto_approve_limit"] == 5.0
        assert data["weekly_spending_limit"] == 500.0

    def test_set_and_show(self, runner):
        result = invoke(runner, "policy", "set", "--user", "u1", "--daily-limit", "40")
        assert result.exit_code == 0
        assert "$40.00/day" in result.output
        assert "Daily limit:    $40.00" in invoke(runner, "policy", "show", "--user", "u1").output

    def test_negative_limit_fails(self, runner):
        result = runner.invoke(main, ["policy", "set", "--user", "u1", "--daily-limit", "-3"])
        assert result.exit_code == 1
        assert "must not be negative" in result.output


class TestTrustAndEvaluate:
    def test_trust_then_evaluate(self, runner):
        assert invoke(runner, "trust", "add", "--user", "u1", "--counterparty", "alice", "--limit", "20").exit_code == 0
        listing = invoke(runner, "trust", "list", "--user", "u1")
        assert "alice limit=$20.00" in listing.output

        result = invoke(runner, "evaluate", "--user", "u1", "--counterparty", "alice", "--amount", "15", "--json")
        data = json.loads(result.output)
        assert data["decision"] == "auto_approved"
        assert data["budget_status"]["daily_limit"] == 100.0

    def test_untrusted(self, runner):
        result = invoke(runner, "evaluate", "--user", "u1", "--counterparty", "bob", "--amount", "1")
        assert "requires_confirmation (not_trusted)" in result.output

    def test_invalid_amount(self, runner):
        result = runner.invoke(main, ["evaluate", "--user", "u1", "--counterparty", "bob", "--amount", "abc"])
        assert result.exit_code == 1

    def test_remove(self, runner):
        invoke(runner, "trust", "add", "--user", "u1", "--counterparty", "alice")
        assert "Removed alice" in invoke(runner, "trust", "remove", "--user", "u1", "--counterparty", "alice").output
        assert "was not trusted" in invoke(runner, "trust", "remove", "--user", "u1", "--counterparty", "alice").output


class TestSpendCommands:
    def test_record_and_budget(self, runner):
        invoke(runner, "record", "--user", "u1", "--amount", "12.5")
        result = invoke(runner, "budget", "--user", "u1")
        assert "$12.50 of $100.00" in result.output
        assert "remaining $87.50" in result.output

    def test_dry_run_send(self, runner):
        invoke(runner, "trust", "add", "--user", "u1", "--counterparty", "alice")
        result = invoke(
            runner, "send", "--user", "u1", "--counterparty", "alice", "--amount", "3",
            "--source", "wallet-1", "--destination", "0xabc", "--dry-run",
        )
        assert result.exit_code == 0
        assert "Transfer simulated" in result.output

        summary = json.loads(invoke(runner, "summary", "--user", "u1", "--json").output)
        assert summary["total_spent"] == 3.0
        assert summary["top_counterparties"][0]["counterparty_id"] == "alice"

    def test_send_needing_confirmation_exits_2(self, runner):
        result = runner.invoke(main, [
            "send", "--user", "u1", "--counterparty", "bob", "--amount", "3",
            "--source", "wallet-1", "--destination", "0xabc", "--dry-run",
        ])
        assert result.exit_code == 2
        assert "--confirm" in result.output

    def test_send_without_provider_key_fails(self, runner):
        result = runner.invoke(main, [
            "send", "--user", "u1", "--counterparty", "bob", "--amount", "3",
            "--source", "wallet-1", "--destination", "0xabc",
        ])
        assert result.exit_code == 1


class TestAlertCommands:
    def test_check_balance_and_alerts(self, runner):
        assert "below your alert threshold" in invoke(runner, "check-balance", "--user", "u1", "--balance", "4").output
        assert "No alert raised." in invoke(runner, "check-balance", "--user", "u1", "--balance", "4").output
        assert "Low Balance Alert" in invoke(runner, "alerts", "list", "--user", "u1").output
        assert "Marked 1 alert(s) read" in invoke(runner, "alerts", "read", "--user", "u1").output
        assert "No unread alerts." in invoke(runner, "alerts", "list", "--user", "u1").output


def test_audit_lists_events(runner):
    invoke(runner, "policy", "set", "--user", "u1", "--auto-approve-limit", "7")
    result = invoke(runner, "audit", "--user", "u1")
    assert "policy_updated" in result.output


def test_demo_runs(runner):
    result = invoke(runner, "demo")
    assert result.exit_code == 0
    assert "Demo complete" in result.output
    assert "Confirmation" not in result.output
    assert "daily limit" in result.output


def test_audit_verify_reports_chain(runner):
    invoke(runner, "policy", "set", "--user", "u1", "--auto-approve-limit", "7")
    invoke(runner, "trust", "add", "--user", "u1", "--counterparty", "alice")
    result = invoke(runner, "audit", "--verify")
    assert result.exit_code == 0
    assert "Audit chain intact (2 events)" in result.output


def test_tampered_audit_log_fails_cleanly(runner, tmp_path):
    invoke(runner, "policy", "set", "--user", "u1", "--auto-approve-limit", "7")
    log = tmp_path / "home" / "audit.jsonl"
    log.write_text(log.read_text().replace('"u1"', '"u2"'))

    result = runner.invoke(main, ["audit"])
    assert result.exit_code == 1
    assert "Audit chain broken" in result.output
