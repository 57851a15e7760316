"""
Guardrail service: the operations callers use to drive the engine.

Wires the policy store, trust registry, budget ledger, transaction log,
alert center and audit trail over one SQLite database.
"""

from __future__ import annotations

import logging
import time
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from .alerts import Alert, AlertCenter, AlertType
from .analytics import SpendingSummary, summarize
from .approval import BudgetStatus, Decision, evaluate, verification_failed
from .audit import AuditTrail, EventType
from .budget import BudgetLedger, DailySpendingRecord
from .config import GuardConfig
from .errors import (
    AuditIntegrityError,
    PolicyNotFoundError,
    ReconciliationRequiredError,
    StorageUnavailableError,
)
from .money import amount_usd_to_micros, micros_to_usd_float, require_positive
from .policy import PolicyConfig, PolicyStore
from .storage import Database
from .transactions import TransactionLog
from .trust import TrustEntry, TrustRegistry

logger = logging.getLogger(__name__)


class TrustAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    LIST = "list"


class GuardrailService:
    def __init__(
        self,
        db: Database,
        audit: AuditTrail,
        config: Optional[GuardConfig] = None,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or GuardConfig()
        self.db = db
        self.audit = audit
        self.policies = PolicyStore(db)
        self.trust = TrustRegistry(db)
        self.ledger = BudgetLedger(db, today=today)
        self.transactions = TransactionLog(db)
        self.alerts = AlertCenter(db, self.policies, clock=clock)

    @classmethod
    def open(cls, config: Optional[GuardConfig] = None) -> "GuardrailService":
        """Build a service from configuration (environment by default)."""
        config = config or GuardConfig.from_env()
        db = Database(config.database_path, timeout=config.storage_timeout_seconds)
        audit = AuditTrail(path=config.audit_log_path, key_path=config.audit_key_path)
        return cls(db, audit, config=config)

    # ── Decisions ────────────────────────────────────────────────

    def evaluate_transfer(
        self,
        user_id: str,
        counterparty_id: str,
        amount: Decimal | float | int | str,
        confirmed: bool = False,
        include_pending: bool = False,
    ) -> Decision:
        """
        Decide whether a proposed transfer may go ahead.

        ``confirmed`` is carried on the decision for ``may_proceed``; it does
        not change the rules. With ``include_pending`` budget held by
        in-flight transfers counts as spent. If policy, trust or spend cannot
        be read the decision fails closed.
        """
        amount_micros = amount_usd_to_micros(require_positive(amount))

        try:
            policy = self.policies.get(user_id)
            trust_entry = self.trust.is_trusted(user_id, counterparty_id)
            today_spent = self.ledger.today_spend_micros(user_id)
            week_spent = self.ledger.week_spend_micros(user_id)
            if include_pending:
                held_today, held_week = self.ledger.pending_spend_micros(user_id)
                today_spent += held_today
                week_spent += held_week
        except (StorageUnavailableError, PolicyNotFoundError) as exc:
            logger.warning(
                "Policy verification failed for user %s -> %s: %s",
                user_id,
                counterparty_id,
                exc,
            )
            decision = verification_failed(amount_micros)
            decision.confirmed = confirmed
            self._audit_decision(
                EventType.DECISION_FAILED_CLOSED,
                user_id=user_id,
                counterparty_id=counterparty_id,
                amount_usd=micros_to_usd_float(amount_micros),
                success=False,
                reason=str(exc),
            )
            return decision

        decision = evaluate(policy, trust_entry, today_spent, week_spent, amount_micros)
        decision.confirmed = confirmed
        logger.info(
            "Decision for user %s -> %s ($%.2f): %s (%s)",
            user_id,
            counterparty_id,
            micros_to_usd_float(amount_micros),
            decision.kind.value,
            decision.reason.value,
        )
        self._audit_decision(
            EventType.DECISION_EVALUATED,
            user_id=user_id,
            counterparty_id=counterparty_id,
            amount_usd=micros_to_usd_float(amount_micros),
            success=not decision.blocked,
            reason=decision.reason.value,
            details={"decision": decision.kind.value, "confirmed": confirmed},
        )
        return decision

    def _audit_decision(self, event_type: EventType, user_id: str, **fields) -> None:
        # Decisions stay read-only in effect: an unwritable audit log never blocks one.
        try:
            self.audit.log(event_type, user_id=user_id, **fields)
        except (OSError, AuditIntegrityError) as exc:
            logger.error("Could not audit %s for user %s: %s", event_type.value, user_id, exc)

    # ── Budget ───────────────────────────────────────────────────

    def record_completed_spend(
        self,
        user_id: str,
        amount: Decimal | float | int | str,
        external_ref: Optional[str] = None,
    ) -> DailySpendingRecord:
        """Count a transfer that already happened against today's budget."""
        try:
            record = self.ledger.record_spend(user_id, amount)
        except StorageUnavailableError as exc:
            raise self.reconciliation_required(user_id, amount, external_ref, exc) from exc
        self.audit.log(
            EventType.SPEND_RECORDED,
            user_id=user_id,
            amount_usd=float(amount),
            details={"date": record.date, "external_ref": external_ref},
        )
        return record

    def commit_reservation(
        self,
        user_id: str,
        reservation_id: str,
        amount: Decimal | float | int | str,
        external_ref: Optional[str] = None,
    ) -> DailySpendingRecord:
        """Settle a budget hold after its transfer went through."""
        try:
            record = self.ledger.commit_reservation(reservation_id)
        except StorageUnavailableError as exc:
            raise self.reconciliation_required(user_id, amount, external_ref, exc) from exc
        self.audit.log(
            EventType.SPEND_RECORDED,
            user_id=user_id,
            amount_usd=float(amount),
            details={"date": record.date, "reservation_id": reservation_id, "external_ref": external_ref},
        )
        return record

    def reconciliation_required(
        self,
        user_id: str,
        amount: Decimal | float | int | str,
        external_ref: Optional[str],
        cause: Exception,
    ) -> ReconciliationRequiredError:
        """Log and audit a transfer whose spend could not be recorded."""
        amount_usd = float(amount)
        logger.error(
            "Reconciliation required: transfer %s of $%.2f for user %s not recorded: %s",
            external_ref,
            amount_usd,
            user_id,
            cause,
        )
        self.audit.log(
            EventType.RECONCILIATION_REQUIRED,
            user_id=user_id,
            amount_usd=amount_usd,
            success=False,
            reason=str(cause),
            details={"external_ref": external_ref},
        )
        return ReconciliationRequiredError(user_id, amount_usd, external_ref, cause)

    def get_budget_status(self, user_id: str) -> BudgetStatus:
        policy = self.policies.get(user_id)
        return BudgetStatus(
            today_spent_micros=self.ledger.today_spend_micros(user_id),
            week_spent_micros=self.ledger.week_spend_micros(user_id),
            daily_limit_micros=policy.daily_spending_limit_micros,
            weekly_limit_micros=policy.weekly_spending_limit_micros,
        )

    def get_spending_summary(self, user_id: str, days: int = 7) -> SpendingSummary:
        return summarize(
            self.ledger,
            self.transactions,
            self.policies,
            user_id,
            window_days=days,
            max_days=self.config.summary_max_days,
        )

    # ── Alerts ───────────────────────────────────────────────────

    def get_unread_alerts(self, user_id: str) -> list[Alert]:
        return self.alerts.unread(user_id)

    def mark_alerts_read(self, user_id: str, ids: Optional[Iterable[int]] = None) -> int:
        return self.alerts.mark_read(user_id, ids)

    def check_low_balance(
        self,
        user_id: str,
        balance: Decimal | float | int | str,
    ) -> Optional[Alert]:
        alert = self.alerts.check_low_balance(user_id, balance)
        if alert is not None:
            self._audit_alert(alert)
        return alert

    def notify_deposit(
        self,
        user_id: str,
        amount: Decimal | float | int | str,
        sender: Optional[str] = None,
        external_ref: Optional[str] = None,
    ) -> Alert:
        """Log an incoming transfer and tell the user about it."""
        self.transactions.log(
            user_id,
            "receive",
            amount,
            counterparty_name=sender,
            external_ref=external_ref,
            status="completed",
        )
        alert = self.alerts.deposit_received(user_id, amount, sender)
        self._audit_alert(alert)
        return alert

    def _audit_alert(self, alert: Alert) -> None:
        self.audit.log(
            EventType.ALERT_RAISED,
            user_id=alert.user_id,
            reason=alert.alert_type,
            details={"alert_id": alert.id, "title": alert.title},
        )

    # ── Trust & policy ───────────────────────────────────────────

    def manage_trust(
        self,
        user_id: str,
        action: TrustAction | str,
        counterparty_id: Optional[str] = None,
        override_limit: Decimal | float | int | str | None = None,
        counterparty_name: Optional[str] = None,
    ) -> TrustEntry | bool | list[TrustEntry]:
        """
        ``add`` returns the entry, ``remove`` whether one existed, ``list``
        every entry for the user.
        """
        action = TrustAction(action)
        if action is TrustAction.LIST:
            return self.trust.list(user_id)
        if not counterparty_id:
            raise ValueError(f"counterparty_id is required to {action.value} trust")

        if action is TrustAction.ADD:
            entry = self.trust.add(
                user_id,
                counterparty_id,
                override_limit_usd=override_limit,
                counterparty_name=counterparty_name,
            )
            self.audit.log(
                EventType.TRUST_ADDED,
                user_id=user_id,
                counterparty_id=counterparty_id,
                details={"auto_approve_limit_override": entry.auto_approve_limit_override_usd},
            )
            return entry

        removed = self.trust.remove(user_id, counterparty_id)
        self.audit.log(
            EventType.TRUST_REMOVED,
            user_id=user_id,
            counterparty_id=counterparty_id,
            success=removed,
            reason=None if removed else "not trusted",
        )
        return removed

    def get_policy(self, user_id: str) -> PolicyConfig:
        return self.policies.get(user_id)

    def update_policy(self, user_id: str, **changes) -> PolicyConfig:
        policy = self.policies.update(user_id, **changes)
        self.audit.log(
            EventType.POLICY_UPDATED,
            user_id=user_id,
            details={k: str(v) for k, v in changes.items() if v is not None},
        )
        return policy

    def forget_user(self, user_id: str) -> None:
        """Delete every row held for a user."""
        self.alerts.purge_user(user_id)
        self.transactions.purge_user(user_id)
        self.ledger.purge_user(user_id)
        self.trust.purge_user(user_id)
        self.policies.delete(user_id)
        logger.info("Deleted all guardrail data for user %s", user_id)
