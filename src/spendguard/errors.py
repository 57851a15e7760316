"""
SpendGuard error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, reconcile, etc.).
"""

from __future__ import annotations

from typing import Optional


class SpendGuardError(Exception):
    """Base error for all SpendGuard operations."""
    pass


class InvalidAmountError(SpendGuardError, ValueError):
    """Amount is negative, zero where not allowed, or not a finite number."""
    def __init__(self, value: object, message: str = "Amount must be a positive, finite number"):
        self.value = value
        super().__init__(f"{message}: {value!r}")


class PolicyNotFoundError(SpendGuardError):
    """No policy row exists for a user.

    The policy store materialises defaults on first access, so this only
    escapes when a row disappears between insert and read.
    """
    pass


class ConfigurationInconsistentError(SpendGuardError, ValueError):
    """Policy update carries a value outside its allowed range."""
    def __init__(self, field: str, value: object, message: str):
        self.field = field
        self.value = value
        super().__init__(f"{field}={value!r}: {message}")


# Storage errors
class StorageUnavailableError(SpendGuardError):
    """Backing store could not be reached, timed out, or failed the statement."""
    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class AuditIntegrityError(SpendGuardError):
    """Audit log failed hash-chain verification or holds an unreadable record."""
    pass


class ReservationNotFoundError(SpendGuardError, KeyError):
    """Reservation ID not found in the ledger."""
    pass


# Transfer errors
class TransferError(SpendGuardError):
    """Base error for transfer execution failures."""
    pass


class ProviderError(TransferError):
    """Wallet provider rejected the request or returned an unusable response."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransferOutcomeUnknownError(ProviderError):
    """A transfer request may have reached the provider but no answer came back.

    The money may or may not have moved. Treat the spend as made until the
    provider's records say otherwise.
    """
    pass


class InvalidDestinationError(TransferError, ValueError):
    """Destination is not a valid account address."""
    pass


class ReconciliationRequiredError(TransferError):
    """The external transfer succeeded but the spend could not be recorded.

    Budget state is now behind the real ledger; an operator must reconcile.
    """
    def __init__(self, user_id: str, amount_usd: float, external_ref: Optional[str], cause: Exception):
        self.user_id = user_id
        self.amount_usd = amount_usd
        self.external_ref = external_ref
        self.cause = cause
        super().__init__(
            f"Transfer {external_ref or '<unknown>'} of ${amount_usd:.2f} for {user_id} "
            f"completed but spend was not recorded: {cause}"
        )
