"""
Wallet provider client.

Talks to a Circle-style developer-controlled wallet API over HTTP to read
USDC balances and submit transfers.
"""

from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
from eth_utils import is_address, to_checksum_address

from .config import GuardConfig
from .errors import InvalidDestinationError, ProviderError, TransferOutcomeUnknownError
from .money import require_positive
from .transfer import OUTCOME_UNKNOWN, TransferOutcome

logger = logging.getLogger(__name__)


BALANCES_PATH = "/v1/w3s/wallets/{wallet_id}/balances"
TRANSFER_PATH = "/v1/w3s/developer/transactions/transfer"
RETRYABLE_STATUS = {429, 502, 503, 504}
FAILED_STATES = {"FAILED", "CANCELLED", "DENIED"}
# The request never left this host.
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def normalize_destination(address: str) -> str:
    """Checksummed EVM address, or ``InvalidDestinationError``."""
    if not isinstance(address, str) or not is_address(address):
        raise InvalidDestinationError(f"Invalid destination address: {address!r}")
    return to_checksum_address(address)


class WalletProviderClient:
    """Balance lookups and transfers against the wallet provider API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        token_symbol: str = "USDC",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("Wallet provider API key is required")
        self.token_symbol = token_symbol
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._http = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: GuardConfig, **kwargs: Any) -> "WalletProviderClient":
        if not config.provider_api_key:
            raise ValueError("Set SPENDGUARD_PROVIDER_API_KEY to use the wallet provider")
        return cls(
            base_url=config.provider_url,
            api_key=config.provider_api_key,
            timeout_seconds=config.provider_timeout_seconds,
            **kwargs,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        last_error: Optional[str] = None
        # Set once a request may have reached the provider without an answer.
        maybe_delivered = False

        for attempt in range(self.max_retries + 1):
            try:
                response = self._http.request(method, path, **kwargs)
            except NOT_SENT_ERRORS as e:
                last_error = f"Connection failed: {e}"
            except httpx.TimeoutException as e:
                last_error = f"Request timeout: {e}"
                maybe_delivered = True
            except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
                last_error = f"Connection lost: {e}"
                maybe_delivered = True
            else:
                if response.status_code in RETRYABLE_STATUS:
                    last_error = f"Provider unavailable ({response.status_code})"
                elif response.status_code >= 400:
                    raise ProviderError(
                        f"Provider rejected {method} {path} ({response.status_code}): "
                        f"{response.text[:200]}",
                        status_code=response.status_code,
                    )
                else:
                    try:
                        body = response.json()
                    except ValueError:
                        body = None
                    data = body.get("data") if isinstance(body, dict) else None
                    if isinstance(data, dict):
                        return data
                    message = f"Malformed provider response for {method} {path}"
                    if method == "POST":
                        raise TransferOutcomeUnknownError(message, status_code=response.status_code)
                    raise ProviderError(message, status_code=response.status_code)

            if attempt < self.max_retries:
                logger.info(
                    "Retryable provider error (attempt %d/%d): %s",
                    attempt + 1,
                    self.max_retries + 1,
                    last_error,
                )
                time.sleep(self.retry_delay * (attempt + 1))

        message = f"Failed after {self.max_retries + 1} attempts: {last_error}"
        if maybe_delivered and method == "POST":
            raise TransferOutcomeUnknownError(message)
        raise ProviderError(message)

    def _token_balance(self, wallet_id: str) -> tuple[Decimal, Optional[str]]:
        data = self._request("GET", BALANCES_PATH.format(wallet_id=wallet_id))
        for entry in data.get("tokenBalances", []):
            token = entry.get("token") or {}
            if token.get("symbol") == self.token_symbol:
                try:
                    return Decimal(str(entry.get("amount", "0"))), token.get("id")
                except InvalidOperation:
                    raise ProviderError(f"Unparseable balance for wallet {wallet_id}") from None
        return Decimal("0"), None

    def current_balance(self, account_id: str) -> Decimal:
        balance, _ = self._token_balance(account_id)
        return balance

    def execute(
        self,
        source_account: str,
        destination_address: str,
        amount_usd: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> TransferOutcome:
        destination = normalize_destination(destination_address)
        amount = require_positive(amount_usd)

        balance, token_id = self._token_balance(source_account)
        if token_id is None:
            return TransferOutcome(
                success=False,
                error=f"Wallet {source_account} holds no {self.token_symbol}",
            )
        if balance < amount:
            return TransferOutcome(
                success=False,
                error=f"Insufficient balance: ${balance:.2f} available, ${amount:.2f} requested",
            )

        # The provider requires a UUID; derive it so retries of one intent collide.
        key = (
            str(uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key))
            if idempotency_key
            else str(uuid.uuid4())
        )
        try:
            data = self._request(
                "POST",
                TRANSFER_PATH,
                json={
                    "idempotencyKey": key,
                    "walletId": source_account,
                    "tokenId": token_id,
                    "destinationAddress": destination,
                    "amounts": [str(amount)],
                    "feeLevel": "MEDIUM",
                },
            )
        except TransferOutcomeUnknownError as e:
            logger.warning("Transfer %s from wallet %s has an unknown outcome: %s", key, source_account, e)
            return TransferOutcome(success=False, final_state=OUTCOME_UNKNOWN, error=str(e))
        state = data.get("state")
        if state in FAILED_STATES:
            return TransferOutcome(
                success=False,
                external_ref=data.get("id"),
                final_state=state,
                error=f"Transfer {data.get('id')} ended in state {state}",
            )
        logger.info("Submitted transfer %s (%s) from wallet %s", data.get("id"), state, source_account)
        return TransferOutcome(success=True, external_ref=data.get("id"), final_state=state)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
