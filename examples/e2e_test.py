"""
End-to-end test: guarded transfers against a local wallet provider.
"""

import tempfile
import threading
import time
from pathlib import Path

import uvicorn

from wallet_server import API_KEY, app
from spendguard.config import GuardConfig
from spendguard.provider import WalletProviderClient
from spendguard.service import GuardrailService
from spendguard.transfer import TransferOrchestrator, TransferRequest

DESTINATION = "0x273326453960864FbA4D2F6Cf09D65fA13E45297"


def run_server():
    uvicorn.run(app, host="127.0.0.1", port=8410, log_level="error")


def main():
    print("🚀 SpendGuard E2E Test — Guarded Transfers via Local Wallet Provider")
    print("=" * 55)
    print()

    # 1. Start server
    print("1️⃣  Starting wallet provider...")
    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()
    time.sleep(2)
    print("   ✅ Server running on http://127.0.0.1:8410")
    print()

    # 2. Guardrails in a throwaway home
    home = Path(tempfile.mkdtemp()) / "spendguard"
    config = GuardConfig(
        home=home,
        provider_url="http://127.0.0.1:8410",
        provider_api_key=API_KEY,
    )
    service = GuardrailService.open(config)
    service.update_policy("e2e-user", auto_approve_limit=10, daily_spending_limit=25)
    service.manage_trust("e2e-user", "add", "merchant", counterparty_name="Merchant")
    print(f"2️⃣  Guardrail store at {home}")
    print()

    # 3. Transfers
    print("3️⃣  Sending...")
    with WalletProviderClient.from_config(config, retry_delay=0.2) as client:
        orchestrator = TransferOrchestrator(service, client, balances=client)
        for amount, confirmed in (("8.00", False), ("12.00", False), ("12.00", True), ("9.00", True)):
            result = orchestrator.transfer(
                TransferRequest(
                    user_id="e2e-user",
                    counterparty_id="merchant",
                    amount_usd=amount,
                    source_account="wallet-1",
                    destination_address=DESTINATION,
                    counterparty_name="Merchant",
                    confirmed=confirmed,
                )
            )
            if result.success:
                print(f"   ✅ ${amount} → {result.external_ref}")
            else:
                print(f"   ❌ ${amount}: {result.reason}")
            if result.alert is not None:
                print(f"      🔔 {result.alert.message}")
        print()
        print(f"   Wallet balance now: ${client.current_balance('wallet-1'):.2f}")

    print()
    print("=" * 55)


if __name__ == "__main__":
    main()
