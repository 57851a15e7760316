"""
SpendGuard — policy guardrails for funds transfers.

User-configurable spending rules decide every transfer:
Policy + trust + budget → Decision → Guarded transfer → Full audit trail.
"""

__version__ = "0.1.0"

from .errors import (
    AuditIntegrityError,
    ConfigurationInconsistentError,
    InvalidAmountError,
    PolicyNotFoundError,
    ReconciliationRequiredError,
    SpendGuardError,
    StorageUnavailableError,
    TransferOutcomeUnknownError,
)
from .config import GuardConfig
from .storage import Database
from .policy import PolicyConfig, PolicyStore
from .trust import TrustEntry, TrustRegistry
from .budget import BudgetLedger, DailySpendingRecord, Reservation
from .transactions import Transaction, TransactionLog
from .alerts import Alert, AlertCenter, AlertType
from .approval import BudgetStatus, Decision, DecisionKind, DecisionReason, evaluate
from .analytics import SpendingSummary, summarize
from .audit import AuditTrail, EventType
from .service import GuardrailService, TrustAction
from .transfer import (
    DryRunExecutor,
    TransferOrchestrator,
    TransferOutcome,
    TransferRequest,
    TransferResult,
)

__all__ = [
    "SpendGuardError", "InvalidAmountError", "PolicyNotFoundError",
    "ConfigurationInconsistentError", "StorageUnavailableError", "ReconciliationRequiredError",
    "TransferOutcomeUnknownError", "AuditIntegrityError",
    "GuardConfig", "Database",
    "PolicyConfig", "PolicyStore", "TrustEntry", "TrustRegistry",
    "BudgetLedger", "DailySpendingRecord", "Reservation", "Transaction", "TransactionLog",
    "Alert", "AlertCenter", "AlertType",
    "BudgetStatus", "Decision", "DecisionKind", "DecisionReason", "evaluate",
    "SpendingSummary", "summarize", "AuditTrail", "EventType",
    "GuardrailService", "TrustAction",
    "DryRunExecutor", "TransferOrchestrator", "TransferOutcome", "TransferRequest", "TransferResult",
]
