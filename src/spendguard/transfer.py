"""
Guarded transfers.

Flow:
1. Validate the amount
2. Evaluate policy, trust and budget
3. Refuse unless the decision allows it (with confirmation if given)
4. Hold the budget
5. Execute through the wallet provider
6. Commit or release the hold, update the transaction log and audit
   When the provider cannot say whether money moved, the spend is counted
   and the transfer is left pending for reconciliation.
7. Check the remaining balance against the low-balance threshold
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from .alerts import Alert
from .approval import Decision, DecisionReason
from .audit import EventType
from .errors import StorageUnavailableError, TransferOutcomeUnknownError
from .money import require_positive
from .service import GuardrailService

logger = logging.getLogger(__name__)

# final_state for a transfer that may or may not have gone through.
OUTCOME_UNKNOWN = "UNKNOWN"


@dataclass
class TransferOutcome:
    """What the wallet provider reported for one transfer."""

    success: bool
    external_ref: Optional[str] = None
    final_state: Optional[str] = None
    error: Optional[str] = None

    @property
    def unknown(self) -> bool:
        return not self.success and self.final_state == OUTCOME_UNKNOWN


class TransferExecutor(Protocol):
    def execute(
        self,
        source_account: str,
        destination_address: str,
        amount_usd: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> TransferOutcome: ...


class BalanceSource(Protocol):
    def current_balance(self, account_id: str) -> Decimal: ...


@dataclass
class TransferRequest:
    """A request to send money to a counterparty."""

    user_id: str
    counterparty_id: str
    amount_usd: Decimal | float | int | str
    source_account: str
    destination_address: str
    counterparty_name: Optional[str] = None
    confirmed: bool = False
    idempotency_key: Optional[str] = None


@dataclass
class TransferResult:
    """Result of a transfer attempt."""

    success: bool
    decision: Optional[Decision] = None
    tx_id: Optional[str] = None
    external_ref: Optional[str] = None
    reason: Optional[str] = None
    amount_usd: float = 0.0
    needs_confirmation: bool = False
    outcome_unknown: bool = False
    alert: Optional[Alert] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "tx_id": self.tx_id,
            "external_ref": self.external_ref,
            "reason": self.reason,
            "amount_usd": self.amount_usd,
            "needs_confirmation": self.needs_confirmation,
            "outcome_unknown": self.outcome_unknown,
            "decision": self.decision.to_dict() if self.decision else None,
            "alert": self.alert.to_dict() if self.alert else None,
        }


class DryRunExecutor:
    """Pretends every transfer settles; balances stay where they were set."""

    def __init__(self, balances: Optional[dict[str, Decimal]] = None):
        self.balances = {k: Decimal(str(v)) for k, v in (balances or {}).items()}
        self.executed: list[tuple[str, str, Decimal]] = []

    def execute(
        self,
        source_account: str,
        destination_address: str,
        amount_usd: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> TransferOutcome:
        self.executed.append((source_account, destination_address, Decimal(str(amount_usd))))
        if source_account in self.balances:
            self.balances[source_account] -= Decimal(str(amount_usd))
        key = idempotency_key or f"{source_account}:{destination_address}:{amount_usd}"
        return TransferOutcome(
            success=True,
            external_ref=f"dry-run-{hashlib.sha256(key.encode()).hexdigest()[:12]}",
            final_state="COMPLETE",
        )

    def current_balance(self, account_id: str) -> Decimal:
        return self.balances.get(account_id, Decimal("0"))


class TransferOrchestrator:
    """Runs the full guarded transfer flow."""

    def __init__(
        self,
        service: GuardrailService,
        executor: TransferExecutor,
        balances: Optional[BalanceSource] = None,
        reserve_budget: Optional[bool] = None,
    ):
        self.service = service
        self.executor = executor
        self.balances = balances
        self.reserve_budget = (
            service.config.reserve_budget if reserve_budget is None else reserve_budget
        )

    def transfer(self, request: TransferRequest) -> TransferResult:
        amount = require_positive(request.amount_usd)
        amount_usd = float(amount)
        service = self.service

        decision = service.evaluate_transfer(
            request.user_id,
            request.counterparty_id,
            amount,
            confirmed=request.confirmed,
            include_pending=self.reserve_budget,
        )
        if not decision.may_proceed():
            needs_confirmation = (
                decision.requires_confirmation
                and decision.reason is not DecisionReason.VERIFICATION_FAILED
            )
            service.audit.log(
                EventType.TRANSFER_DENIED,
                user_id=request.user_id,
                counterparty_id=request.counterparty_id,
                amount_usd=amount_usd,
                success=False,
                reason=decision.reason.value,
            )
            return TransferResult(
                success=False,
                decision=decision,
                reason=decision.message,
                amount_usd=amount_usd,
                needs_confirmation=needs_confirmation,
            )

        reservation_id: Optional[str] = None
        if self.reserve_budget:
            status = decision.budget_status
            held = service.ledger.reserve(
                request.user_id,
                amount,
                daily_limit_micros=status.daily_limit_micros,
                weekly_limit_micros=status.weekly_limit_micros,
            )
            if not held.allowed or held.reservation is None:
                service.audit.log(
                    EventType.TRANSFER_DENIED,
                    user_id=request.user_id,
                    counterparty_id=request.counterparty_id,
                    amount_usd=amount_usd,
                    success=False,
                    reason=held.reason,
                )
                return TransferResult(
                    success=False,
                    decision=decision,
                    reason=f"Budget check failed: {held.reason}",
                    amount_usd=amount_usd,
                )
            reservation_id = held.reservation.reservation_id
            service.audit.log(
                EventType.BUDGET_RESERVED,
                user_id=request.user_id,
                counterparty_id=request.counterparty_id,
                amount_usd=amount_usd,
                details={"reservation_id": reservation_id},
            )

        tx = service.transactions.log(
            request.user_id,
            "send",
            amount,
            counterparty_id=request.counterparty_id,
            counterparty_name=request.counterparty_name,
            status="pending",
            was_auto_approved=decision.can_auto_approve,
        )
        idempotency_key = request.idempotency_key or tx.tx_id
        service.audit.log(
            EventType.TRANSFER_INITIATED,
            user_id=request.user_id,
            counterparty_id=request.counterparty_id,
            amount_usd=amount_usd,
            details={
                "tx_id": tx.tx_id,
                "idempotency_key": idempotency_key,
                "auto_approved": decision.can_auto_approve,
            },
        )

        try:
            outcome = self.executor.execute(
                request.source_account,
                request.destination_address,
                amount,
                idempotency_key=idempotency_key,
            )
        except TransferOutcomeUnknownError as e:
            outcome = TransferOutcome(success=False, final_state=OUTCOME_UNKNOWN, error=str(e))
        except Exception as e:
            logger.exception("Transfer %s raised during execution", tx.tx_id)
            outcome = TransferOutcome(success=False, error=f"{type(e).__name__}: {e}")

        if outcome.unknown:
            return self._settle_unknown(request, decision, tx.tx_id, reservation_id, amount, outcome)

        if not outcome.success:
            error = outcome.error or f"Transfer ended in state {outcome.final_state}"
            if reservation_id is not None:
                service.ledger.release_reservation(reservation_id)
                service.audit.log(
                    EventType.BUDGET_RELEASED,
                    user_id=request.user_id,
                    amount_usd=amount_usd,
                    details={"reservation_id": reservation_id},
                )
            service.transactions.update_status(tx.tx_id, "failed", outcome.external_ref)
            service.audit.log(
                EventType.TRANSFER_FAILED,
                user_id=request.user_id,
                counterparty_id=request.counterparty_id,
                amount_usd=amount_usd,
                success=False,
                reason=error,
                details={"tx_id": tx.tx_id, "idempotency_key": idempotency_key},
            )
            return TransferResult(
                success=False,
                decision=decision,
                tx_id=tx.tx_id,
                external_ref=outcome.external_ref,
                reason=f"Transfer failed: {error}",
                amount_usd=amount_usd,
            )

        # Money has moved; anything that fails from here needs reconciliation.
        if reservation_id is not None:
            service.commit_reservation(
                request.user_id, reservation_id, amount, external_ref=outcome.external_ref
            )
        else:
            service.record_completed_spend(request.user_id, amount, external_ref=outcome.external_ref)

        try:
            service.transactions.update_status(tx.tx_id, "completed", outcome.external_ref)
        except StorageUnavailableError as e:
            logger.error("Transaction %s settled but its log entry was not updated: %s", tx.tx_id, e)

        service.audit.log(
            EventType.TRANSFER_COMPLETED,
            user_id=request.user_id,
            counterparty_id=request.counterparty_id,
            amount_usd=amount_usd,
            details={
                "tx_id": tx.tx_id,
                "external_ref": outcome.external_ref,
                "final_state": outcome.final_state,
            },
        )

        return TransferResult(
            success=True,
            decision=decision,
            tx_id=tx.tx_id,
            external_ref=outcome.external_ref,
            amount_usd=amount_usd,
            alert=self._check_balance(request),
        )

    def _settle_unknown(
        self,
        request: TransferRequest,
        decision: Decision,
        tx_id: str,
        reservation_id: Optional[str],
        amount: Decimal,
        outcome: TransferOutcome,
    ) -> TransferResult:
        """
        Count the spend of a transfer that may have gone through.

        The hold is committed rather than released and the transaction stays
        pending, so the budget errs towards spent until an operator checks the
        provider's records.
        """
        service = self.service
        if reservation_id is not None:
            service.commit_reservation(
                request.user_id, reservation_id, amount, external_ref=outcome.external_ref
            )
        else:
            service.record_completed_spend(request.user_id, amount, external_ref=outcome.external_ref)

        logger.error(
            "Reconciliation required: transfer %s of $%.2f for user %s has an unknown outcome: %s",
            tx_id,
            float(amount),
            request.user_id,
            outcome.error,
        )
        service.audit.log(
            EventType.RECONCILIATION_REQUIRED,
            user_id=request.user_id,
            counterparty_id=request.counterparty_id,
            amount_usd=float(amount),
            success=False,
            reason=outcome.error,
            details={
                "tx_id": tx_id,
                "external_ref": outcome.external_ref,
                "final_state": OUTCOME_UNKNOWN,
            },
        )
        return TransferResult(
            success=False,
            decision=decision,
            tx_id=tx_id,
            external_ref=outcome.external_ref,
            reason=(
                f"Transfer outcome unknown: {outcome.error}. "
                "The amount counts against the budget until it is reconciled."
            ),
            amount_usd=float(amount),
            outcome_unknown=True,
        )

    def _check_balance(self, request: TransferRequest) -> Optional[Alert]:
        if self.balances is None:
            return None
        try:
            balance = self.balances.current_balance(request.source_account)
            return self.service.check_low_balance(request.user_id, balance)
        except Exception:
            logger.exception("Low balance check failed for user %s", request.user_id)
            return None
