"""
SpendGuard CLI — spending guardrails for agent-initiated transfers.

Commands:
    spendguard policy         Show or change a user's spending policy
    spendguard trust          Manage trusted counterparties
    spendguard evaluate       Decide whether a transfer may go ahead
    spendguard send           Run a guarded transfer
    spendguard record         Record a completed spend
    spendguard budget         Show today's and this week's budget
    spendguard summary        Spending summary over recent days
    spendguard alerts         List or acknowledge alerts
    spendguard check-balance  Run the low-balance check
    spendguard audit          View audit trail
    spendguard demo           Run a full demo flow
"""

from __future__ import annotations

import json
import logging
import secrets
import sys
import time
from decimal import Decimal
from typing import Optional

import click

from . import __version__
from .approval import Decision, DecisionKind
from .config import GuardConfig
from .errors import SpendGuardError
from .money import format_usd_from_micros
from .service import GuardrailService
from .transfer import DryRunExecutor, TransferOrchestrator, TransferRequest


DECISION_ICONS = {
    DecisionKind.AUTO_APPROVED: "✅",
    DecisionKind.REQUIRES_CONFIRMATION: "⚠️ ",
    DecisionKind.BLOCKED: "🛑",
}


def _service() -> GuardrailService:
    try:
        return GuardrailService.open(GuardConfig.from_env())
    except (SpendGuardError, ValueError) as exc:
        click.echo(f"❌ Cannot open guardrail store: {exc}", err=True)
        sys.exit(1)


def _fail(exc: Exception) -> None:
    click.echo(f"❌ {exc}", err=True)
    sys.exit(1)


def _echo_decision(decision: Decision) -> None:
    click.echo(f"{DECISION_ICONS[decision.kind]} {decision.kind.value} ({decision.reason.value})")
    click.echo(f"   {decision.message}")
    status = decision.budget_status
    if status is not None:
        click.echo(
            f"   Today:  {format_usd_from_micros(status.today_spent_micros)} of "
            f"{format_usd_from_micros(status.daily_limit_micros)}"
        )
        click.echo(
            f"   Week:   {format_usd_from_micros(status.week_spent_micros)} of "
            f"{format_usd_from_micros(status.weekly_limit_micros)}"
        )


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
def main(verbose: bool):
    """SpendGuard — policy guardrails for funds transfers."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Policy ────────────────────────────────────────────────────────

@main.group("policy")
def policy_group():
    """Show or change spending policy."""
    pass


@policy_group.command("show")
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
def policy_show(user_id: str, as_json: bool):
    """Show a user's policy (created with defaults if missing)."""
    service = _service()
    try:
        policy = service.get_policy(user_id)
    except SpendGuardError as exc:
        _fail(exc)
    if as_json:
        click.echo(json.dumps(policy.to_dict(), indent=2))
        return
    click.echo(f"📋 Policy for {user_id}")
    click.echo(f"   Auto-approve:   {format_usd_from_micros(policy.auto_approve_limit_micros)}")
    click.echo(f"   Daily limit:    {format_usd_from_micros(policy.daily_spending_limit_micros)}")
    click.echo(f"   Weekly limit:   {format_usd_from_micros(policy.weekly_spending_limit_micros)}")
    click.echo(f"   Low balance:    {format_usd_from_micros(policy.low_balance_alert_threshold_micros)}")
    click.echo(f"   Auto-save:      {policy.auto_save_percentage}%")


@policy_group.command("set")
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--auto-approve-limit", default=None, help="Auto-approve limit in USD")
@click.option("--daily-limit", default=None, help="Daily spending limit in USD")
@click.option("--weekly-limit", default=None, help="Weekly spending limit in USD")
@click.option("--low-balance-threshold", default=None, help="Low-balance alert threshold in USD")
@click.option("--auto-save", default=None, help="Auto-save percentage (0-100)")
def policy_set(
    user_id: str,
    auto_approve_limit: Optional[str],
    daily_limit: Optional[str],
    weekly_limit: Optional[str],
    low_balance_threshold: Optional[str],
    auto_save: Optional[str],
):
    """Change one or more policy values."""
    service = _service()
    try:
        policy = service.update_policy(
            user_id,
            auto_approve_limit=auto_approve_limit,
            daily_spending_limit=daily_limit,
            weekly_spending_limit=weekly_limit,
            low_balance_alert_threshold=low_balance_threshold,
            auto_save_percentage=auto_save,
        )
    except (SpendGuardError, ValueError) as exc:
        _fail(exc)
    click.echo(f"✅ Policy updated for {user_id}")
    click.echo(
        f"   Auto-approve {format_usd_from_micros(policy.auto_approve_limit_micros)} | "
        f"{format_usd_from_micros(policy.daily_spending_limit_micros)}/day | "
        f"{format_usd_from_micros(policy.weekly_spending_limit_micros)}/week"
    )


# ── Trust ─────────────────────────────────────────────────────────

@main.group("trust")
def trust_group():
    """Manage trusted counterparties."""
    pass


@trust_group.command("add")
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--counterparty", "counterparty_id", required=True, help="Counterparty ID")
@click.option("--limit", "override_limit", default=None, help="Auto-approve limit override in USD")
@click.option("--name", "counterparty_name", default=None, help="Display name")
def trust_add(user_id: str, counterparty_id: str, override_limit: Optional[str], counterparty_name: Optional[str]):
    """Trust a counterparty."""
    service = _service()
    try:
        entry = service.manage_trust(
            user_id,
            "add",
            counterparty_id,
            override_limit=override_limit,
            counterparty_name=counterparty_name,
        )
    except (SpendGuardError, ValueError) as exc:
        _fail(exc)
    limit = (
        format_usd_from_micros(entry.auto_approve_limit_override_micros)
        if entry.auto_approve_limit_override_micros is not None
        else "policy default"
    )
    click.echo(f"✅ Trusted {counterparty_id} (auto-approve: {limit})")


@trust_group.command("remove")
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--counterparty", "counterparty_id", required=True, help="Counterparty ID")
def trust_remove(user_id: str, counterparty_id: str):
    """Stop trusting a counterparty."""
    service = _service()
    try:
        removed = service.manage_trust(user_id, "remove", counterparty_id)
    except SpendGuardError as exc:
        _fail(exc)
    if removed:
        click.echo(f"✅ Removed {counterparty_id} from trusted contacts")
    else:
        click.echo(f"{counterparty_id} was not trusted")


@trust_group.command("list")
@click.option("--user", "user_id", required=True, help="User ID")
def trust_list(user_id: str):
    """List trusted counterparties."""
    service = _service()
    try:
        entries = service.manage_trust(user_id, "list")
    except SpendGuardError as exc:
        _fail(exc)
    if not entries:
        click.echo("No trusted contacts.")
        return
    for entry in entries:
        limit = (
            format_usd_from_micros(entry.auto_approve_limit_override_micros)
            if entry.auto_approve_limit_override_micros is not None
            else "default"
        )
        name = f" ({entry.counterparty_name})" if entry.counterparty_name else ""
        click.echo(f"- {entry.counterparty_id}{name} limit={limit}")


# ── Decisions & transfers ─────────────────────────────────────────

@main.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--counterparty", "counterparty_id", required=True, help="Counterparty ID")
@click.option("--amount", required=True, help="Amount in USD")
@click.option("--confirmed", is_flag=True, help="The user has already confirmed this transfer")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
def evaluate(user_id: str, counterparty_id: str, amount: str, confirmed: bool, as_json: bool):
    """Decide whether a transfer may go ahead."""
    service = _service()
    try:
        decision = service.evaluate_transfer(user_id, counterparty_id, amount, confirmed=confirmed)
    except SpendGuardError as exc:
        _fail(exc)
    if as_json:
        click.echo(json.dumps(decision.to_dict(), indent=2))
        return
    _echo_decision(decision)


@main.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--counterparty", "counterparty_id", required=True, help="Counterparty ID")
@click.option("--amount", required=True, help="Amount in USD")
@click.option("--source", "source_account", required=True, help="Source wallet ID")
@click.option("--destination", "destination_address", required=True, help="Destination address")
@click.option("--name", "counterparty_name", default=None, help="Counterparty display name")
@click.option("--confirm", "confirmed", is_flag=True, help="Confirm a transfer that needs it")
@click.option("--dry-run", is_flag=True, help="Simulate without executing")
def send(
    user_id: str,
    counterparty_id: str,
    amount: str,
    source_account: str,
    destination_address: str,
    counterparty_name: Optional[str],
    confirmed: bool,
    dry_run: bool,
):
    """Run a guarded transfer through the wallet provider."""
    service = _service()

    if dry_run:
        click.echo("🔍 DRY RUN — no actual transfer will be made")
        executor = DryRunExecutor()
        client = None
    else:
        from .provider import WalletProviderClient

        try:
            client = WalletProviderClient.from_config(service.config)
        except ValueError as exc:
            _fail(exc)
        executor = client

    orchestrator = TransferOrchestrator(service, executor, balances=client)
    request = TransferRequest(
        user_id=user_id,
        counterparty_id=counterparty_id,
        amount_usd=amount,
        source_account=source_account,
        destination_address=destination_address,
        counterparty_name=counterparty_name,
        confirmed=confirmed,
    )
    try:
        result = orchestrator.transfer(request)
    except SpendGuardError as exc:
        _fail(exc)
    finally:
        if client is not None:
            client.close()

    if result.success:
        click.echo(f"✅ Transfer {'simulated' if dry_run else 'submitted'}!")
        click.echo(f"   Amount:    ${result.amount_usd:.2f}")
        click.echo(f"   Tx ID:     {result.tx_id}")
        click.echo(f"   Reference: {result.external_ref}")
        if result.alert is not None:
            click.echo(f"   ⚠️  {result.alert.message}")
    elif result.outcome_unknown:
        click.echo(f"⚠️  {result.reason}")
        click.echo(f"   Tx ID:     {result.tx_id} (pending reconciliation)")
        sys.exit(1)
    elif result.needs_confirmation:
        click.echo(f"⚠️  Confirmation required: {result.reason}")
        click.echo("   Re-run with --confirm to proceed.")
        sys.exit(2)
    else:
        click.echo(f"❌ Transfer refused: {result.reason}")
        sys.exit(1)


@main.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--amount", required=True, help="Amount in USD")
def record(user_id: str, amount: str):
    """Record a transfer that already completed."""
    service = _service()
    try:
        daily = service.record_completed_spend(user_id, amount)
    except SpendGuardError as exc:
        _fail(exc)
    click.echo(f"✅ Recorded ${Decimal(amount):.2f} for {user_id}")
    click.echo(f"   Today: ${daily.total_spent_usd:.2f} across {daily.transaction_count} transfers")


@main.command()
@click.option("--user", "user_id", required=True, help="User ID")
def budget(user_id: str):
    """Show today's and this week's budget."""
    service = _service()
    try:
        status = service.get_budget_status(user_id)
    except SpendGuardError as exc:
        _fail(exc)
    click.echo(f"📊 Budget for {user_id}")
    click.echo(
        f"   Today:     {format_usd_from_micros(status.today_spent_micros)} of "
        f"{format_usd_from_micros(status.daily_limit_micros)} "
        f"(remaining {format_usd_from_micros(status.remaining_today_micros)})"
    )
    click.echo(
        f"   This week: {format_usd_from_micros(status.week_spent_micros)} of "
        f"{format_usd_from_micros(status.weekly_limit_micros)} "
        f"(remaining {format_usd_from_micros(status.remaining_week_micros)})"
    )


@main.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--days", type=int, default=7, help="Window size in days")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
def summary(user_id: str, days: int, as_json: bool):
    """Spending summary over the last few days."""
    service = _service()
    try:
        result = service.get_spending_summary(user_id, days=days)
    except SpendGuardError as exc:
        _fail(exc)
    data = result.to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    click.echo(f"📈 {data['period']} for {user_id}")
    click.echo(f"   Spent:        ${data['total_spent']:.2f} in {data['total_transactions']} transfers")
    click.echo(f"   Average:      ${data['average_per_transaction']:.2f}")
    for usage_name in ("daily", "weekly"):
        usage = data["budget"][usage_name]
        percent = usage["percent_used"]
        percent_text = f"{percent}%" if percent != "N/A" else percent
        click.echo(
            f"   {usage_name.capitalize():<13} ${usage['spent']:.2f} of ${usage['limit']:.2f} ({percent_text})"
        )
    if data["top_counterparties"]:
        click.echo("   Top recipients:")
        for entry in data["top_counterparties"]:
            click.echo(f"   - {entry['name']}: ${entry['total']:.2f} ({entry['percentage']}%)")


# ── Alerts ────────────────────────────────────────────────────────

@main.group("alerts")
def alerts_group():
    """List or acknowledge alerts."""
    pass


@alerts_group.command("list")
@click.option("--user", "user_id", required=True, help="User ID")
def alerts_list(user_id: str):
    """Show unread alerts, newest first."""
    service = _service()
    try:
        alerts = service.get_unread_alerts(user_id)
    except SpendGuardError as exc:
        _fail(exc)
    if not alerts:
        click.echo("No unread alerts.")
        return
    for alert in alerts:
        ts = time.strftime("%Y-%m-%d %H:%M", time.localtime(alert.created_at))
        click.echo(f"[{alert.id}] {ts} {alert.title}: {alert.message}")


@alerts_group.command("read")
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--id", "alert_ids", type=int, multiple=True, help="Alert ID (repeatable; default all)")
def alerts_read(user_id: str, alert_ids: tuple[int, ...]):
    """Mark alerts read."""
    service = _service()
    try:
        changed = service.mark_alerts_read(user_id, list(alert_ids) or None)
    except SpendGuardError as exc:
        _fail(exc)
    click.echo(f"✅ Marked {changed} alert(s) read")


@main.command("check-balance")
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--balance", required=True, help="Current balance in USD")
def check_balance(user_id: str, balance: str):
    """Raise a low-balance alert if the balance is at or below threshold."""
    service = _service()
    try:
        alert = service.check_low_balance(user_id, balance)
    except SpendGuardError as exc:
        _fail(exc)
    if alert is None:
        click.echo("No alert raised.")
    else:
        click.echo(f"⚠️  {alert.message}")


@main.command()
@click.option("--user", "user_id", default=None, help="Filter by user ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", "verify_only", is_flag=True, help="Only check the hash chain")
def audit(user_id: Optional[str], limit: int, verify_only: bool):
    """View the audit trail."""
    service = _service()
    try:
        if verify_only:
            click.echo(f"🔒 Audit chain intact ({service.audit.verify()} events)")
            return
        events = service.audit.read_events(user_id=user_id, limit=limit)
    except SpendGuardError as exc:
        _fail(exc)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" ${event.amount_usd:.2f}" if event.amount_usd else ""
        counterparty = f" → {event.counterparty_id}" if event.counterparty_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{counterparty}{reason}")


@main.command()
def demo():
    """Run a full demo of the guardrail flow."""
    click.echo("🎬 SpendGuard Demo — Guarded Transfers")
    click.echo("=" * 50)

    service = _service()
    user_id = f"demo-{secrets.token_hex(4)}"
    wallet = "demo-wallet"
    executor = DryRunExecutor(balances={wallet: Decimal("45.00")})
    orchestrator = TransferOrchestrator(service, executor, balances=executor)

    click.echo(f"\n1️⃣  Setting policy for {user_id}...")
    service.update_policy(
        user_id,
        auto_approve_limit="5",
        daily_spending_limit="40",
        weekly_spending_limit="100",
        low_balance_alert_threshold="25",
    )
    click.echo("   Auto-approve $5.00 | $40.00/day | $100.00/week | alert at $25.00")

    click.echo("\n2️⃣  Trusting contacts...")
    service.manage_trust(user_id, "add", "alice", counterparty_name="Alice")
    service.manage_trust(user_id, "add", "coffee-shop", override_limit="12", counterparty_name="Coffee Shop")
    click.echo("   ✅ Alice (default limit), Coffee Shop ($12.00 limit)")

    click.echo("\n3️⃣  Sending...")
    transfers = [
        ("alice", "Alice", "4.50", False),
        ("coffee-shop", "Coffee Shop", "11.00", False),
        ("bob", "Bob", "8.00", False),  # Not trusted
        ("bob", "Bob", "8.00", True),
        ("alice", "Alice", "20.00", True),  # Over daily limit
    ]
    for counterparty_id, name, amount, confirmed in transfers:
        result = orchestrator.transfer(
            TransferRequest(
                user_id=user_id,
                counterparty_id=counterparty_id,
                amount_usd=amount,
                source_account=wallet,
                destination_address=f"{counterparty_id}-address",
                counterparty_name=name,
                confirmed=confirmed,
            )
        )
        label = f"${Decimal(amount):.2f} → {name}{' (confirmed)' if confirmed else ''}"
        if result.success:
            click.echo(f"   ✅ {label}")
        elif result.needs_confirmation:
            click.echo(f"   ⚠️  {label}: {result.reason}")
        else:
            click.echo(f"   ❌ {label}: {result.reason}")
        if result.alert is not None:
            click.echo(f"      🔔 {result.alert.message}")

    click.echo("\n4️⃣  Spending summary...")
    data = service.get_spending_summary(user_id).to_dict()
    click.echo(f"   Spent:   ${data['total_spent']:.2f} in {data['total_transactions']} transfers")
    click.echo(f"   Today:   {data['budget']['daily']['percent_used']}% of daily limit")
    for entry in data["top_counterparties"]:
        click.echo(f"   - {entry['name']}: ${entry['total']:.2f} ({entry['percentage']}%)")

    click.echo("\n5️⃣  Audit trail (last 10 events)...")
    for event in service.audit.read_events(user_id=user_id, limit=10):
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" ${event.amount_usd:.2f}" if event.amount_usd else ""
        click.echo(f"   {ts} {status} {event.event_type}{amount}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Policy → Trust → Evaluate → Send → Summarize → Audit")


if __name__ == "__main__":
    main()
