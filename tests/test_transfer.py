"""Tests for the guarded transfer flow."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import httpx
import pytest

from spendguard.approval import DecisionReason
from spendguard.audit import EventType
from spendguard.config import GuardConfig
from spendguard.errors import (
    InvalidAmountError,
    ReconciliationRequiredError,
    StorageUnavailableError,
    TransferOutcomeUnknownError,
)
from spendguard.provider import WalletProviderClient
from spendguard.service import GuardrailService
from spendguard.transfer import DryRunExecutor, TransferOrchestrator, TransferOutcome, TransferRequest

DESTINATION = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BALANCES = {"data": {"tokenBalances": [{"token": {"id": "tok-usdc", "symbol": "USDC"}, "amount": "50"}]}}


class FailingExecutor:
    def __init__(self, raise_error: bool = False):
        self.raise_error = raise_error

    def execute(self, source_account, destination_address, amount_usd, idempotency_key=None):
        if self.raise_error:
            raise ConnectionError("provider unreachable")
        return TransferOutcome(success=False, external_ref="ext-9", final_state="FAILED")


@pytest.fixture
def service(tmp_path):
    service = GuardrailService.open(GuardConfig(home=tmp_path / "home"))
    service.manage_trust("user-1", "add", "alice", counterparty_name="Alice")
    return service


@pytest.fixture
def executor():
    return DryRunExecutor(balances={"wallet-1": Decimal("100")})


def request(amount, counterparty_id="alice", confirmed=False, **kwargs):
    return TransferRequest(
        user_id="user-1",
        counterparty_id=counterparty_id,
        amount_usd=amount,
        source_account="wallet-1",
        destination_address="0xdest",
        counterparty_name=counterparty_id.capitalize(),
        confirmed=confirmed,
        **kwargs,
    )


class TestTransferFlow:
    def test_auto_approved_transfer(self, service, executor):
        result = TransferOrchestrator(service, executor).transfer(request("4.00"))
        assert result.success
        assert result.external_ref.startswith("dry-run-")
        assert service.get_budget_status("user-1").today_spent_micros == 4_000_000

        tx = service.transactions.recent("user-1")[0]
        assert tx.status == "completed"
        assert tx.was_auto_approved
        assert tx.external_ref == result.external_ref

    def test_untrusted_needs_confirmation(self, service, executor):
        orchestrator = TransferOrchestrator(service, executor)
        result = orchestrator.transfer(request(4, counterparty_id="bob"))
        assert not result.success
        assert result.needs_confirmation
        assert executor.executed == []

        confirmed = orchestrator.transfer(request(4, counterparty_id="bob", confirmed=True))
        assert confirmed.success
        assert not service.transactions.recent("user-1")[0].was_auto_approved

    def test_confirmation_cannot_bypass_daily_limit(self, service, executor):
        service.record_completed_spend("user-1", 98)
        result = TransferOrchestrator(service, executor).transfer(request(5, confirmed=True))
        assert not result.success
        assert not result.needs_confirmation
        assert result.decision.reason is DecisionReason.DAILY_LIMIT_EXCEEDED
        assert executor.executed == []
        assert len(service.audit.read_events(event_type=EventType.TRANSFER_DENIED)) == 1

    def test_invalid_amount(self, service, executor):
        with pytest.raises(InvalidAmountError):
            TransferOrchestrator(service, executor).transfer(request("0"))

    def test_fail_closed_blocks_even_when_confirmed(self, service, executor, monkeypatch):
        def storage_down(*args, **kwargs):
            raise StorageUnavailableError("locked")

        monkeypatch.setattr(service.trust, "is_trusted", storage_down)
        result = TransferOrchestrator(service, executor).transfer(request(1, confirmed=True))
        assert not result.success
        assert not result.needs_confirmation
        assert result.decision.reason is DecisionReason.VERIFICATION_FAILED
        assert executor.executed == []


class TestExecutionFailures:
    def test_failed_transfer_releases_hold(self, service):
        result = TransferOrchestrator(service, FailingExecutor()).transfer(request(4))
        assert not result.success
        assert "FAILED" in result.reason
        assert service.get_budget_status("user-1").today_spent_micros == 0
        assert service.ledger.pending_spend_micros("user-1") == (0, 0)
        assert service.transactions.recent("user-1")[0].status == "failed"

    def test_executor_exception_is_a_failed_transfer(self, service):
        result = TransferOrchestrator(service, FailingExecutor(raise_error=True)).transfer(request(4))
        assert not result.success
        assert "ConnectionError" in result.reason
        events = service.audit.read_events(event_type=EventType.TRANSFER_FAILED)
        assert len(events) == 1

    def test_ledger_failure_after_transfer_requires_reconciliation(self, service, executor, monkeypatch):
        def storage_down(*args, **kwargs):
            raise StorageUnavailableError("disk I/O error", retryable=False)

        monkeypatch.setattr(service.ledger, "commit_reservation", storage_down)
        with pytest.raises(ReconciliationRequiredError):
            TransferOrchestrator(service, executor).transfer(request(4))

        assert len(executor.executed) == 1
        events = service.audit.read_events(event_type=EventType.RECONCILIATION_REQUIRED)
        assert len(events) == 1
        assert events[0].details["external_ref"].startswith("dry-run-")

    def test_without_reservations_records_after_execution(self, service, executor, monkeypatch):
        def storage_down(*args, **kwargs):
            raise StorageUnavailableError("locked")

        orchestrator = TransferOrchestrator(service, executor, reserve_budget=False)
        assert orchestrator.transfer(request(4)).success
        assert service.get_budget_status("user-1").today_spent_micros == 4_000_000

        monkeypatch.setattr(service.ledger, "record_spend", storage_down)
        with pytest.raises(ReconciliationRequiredError):
            orchestrator.transfer(request(1))


class TestBudgetRaces:
    def test_concurrent_transfers_never_exceed_daily_limit(self, service, executor):
        service.update_policy("user-1", auto_approve_limit=50, daily_spending_limit=40)
        orchestrator = TransferOrchestrator(service, executor)

        with ThreadPoolExecutor(max_workers=8) as ex:
            results = list(ex.map(lambda _: orchestrator.transfer(request(10)), range(8)))

        assert sum(1 for r in results if r.success) == 4
        assert service.get_budget_status("user-1").today_spent_micros == 40_000_000


class TestLowBalance:
    def test_transfer_raises_low_balance_alert(self, service, executor):
        orchestrator = TransferOrchestrator(service, executor, balances=executor)
        service.update_policy("user-1", auto_approve_limit=100, low_balance_alert_threshold=97)

        first = orchestrator.transfer(request(2))
        second = orchestrator.transfer(request(2))
        third = orchestrator.transfer(request(2))

        assert first.alert is None
        assert second.alert is not None
        assert "$96.00" in second.alert.message
        assert third.alert is None

    def test_balance_lookup_failure_does_not_fail_transfer(self, service, executor):
        class BrokenBalances:
            def current_balance(self, account_id):
                raise ConnectionError("no route")

        result = TransferOrchestrator(service, executor, balances=BrokenBalances()).transfer(request(2))
        assert result.success
        assert result.alert is None


class TestUnknownOutcome:
    @pytest.fixture
    def submitted(self):
        return []

    @pytest.fixture
    def provider(self, submitted):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json=BALANCES)
            submitted.append(request)
            raise httpx.ReadTimeout("no response", request=request)

        client = WalletProviderClient(
            base_url="https://wallets.test",
            api_key="test-key",
            retry_delay=0,
            transport=httpx.MockTransport(handler),
        )
        yield client
        client.close()

    def unknown_request(self, amount):
        return TransferRequest(
            user_id="user-1",
            counterparty_id="alice",
            amount_usd=amount,
            source_account="wallet-1",
            destination_address=DESTINATION,
        )

    def test_read_timeout_after_submit_keeps_spend_counted(self, service, provider, submitted):
        result = TransferOrchestrator(service, provider).transfer(self.unknown_request(4))

        assert len(submitted) == 3
        assert not result.success
        assert result.outcome_unknown
        assert not result.needs_confirmation
        assert "reconciled" in result.reason
        assert service.get_budget_status("user-1").today_spent_micros == 4_000_000
        assert service.ledger.pending_spend_micros("user-1") == (0, 0)
        assert service.transactions.recent("user-1")[0].status == "pending"

        events = service.audit.read_events(event_type=EventType.RECONCILIATION_REQUIRED)
        assert len(events) == 1
        assert events[0].details["tx_id"] == result.tx_id
        assert events[0].details["final_state"] == "UNKNOWN"
        assert service.audit.read_events(event_type=EventType.BUDGET_RELEASED) == []
        assert service.audit.read_events(event_type=EventType.TRANSFER_FAILED) == []

    def test_unknown_outcome_without_reservations_records_spend(self, service, provider):
        orchestrator = TransferOrchestrator(service, provider, reserve_budget=False)
        assert orchestrator.transfer(self.unknown_request(3)).outcome_unknown
        assert service.get_budget_status("user-1").today_spent_micros == 3_000_000

    def test_executor_raising_unknown_outcome(self, service):
        class SilentProvider:
            def execute(self, source_account, destination_address, amount_usd, idempotency_key=None):
                raise TransferOutcomeUnknownError("gateway closed the connection")

        result = TransferOrchestrator(service, SilentProvider()).transfer(request(4))
        assert result.outcome_unknown
        assert service.get_budget_status("user-1").today_spent_micros == 4_000_000

    def test_unknown_spend_still_limits_later_transfers(self, service, provider, executor):
        service.update_policy("user-1", daily_spending_limit=6)
        TransferOrchestrator(service, provider).transfer(self.unknown_request(4))

        result = TransferOrchestrator(service, executor).transfer(request(4))
        assert not result.success
        assert result.decision.reason is DecisionReason.DAILY_LIMIT_EXCEEDED
