"""
Error taxonomy for the payment core.

Handlers map these onto HTTP responses; nothing below this layer converts
them into status codes or user-facing text.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional


# ============================================================
# VALIDATION / CONFIG
# ============================================================

class ValidationError(Exception):
    """Malformed or out-of-bounds request input. Caller can fix and retry."""
    pass


class InvalidAmount(ValidationError):
    pass


class ConfigurationError(Exception):
    """Missing or malformed startup configuration. Fatal at process start."""
    pass


# ============================================================
# AUTHORIZATION
# ============================================================

class AuthorizationError(Exception):
    """Terminal for the request. Never retried automatically."""
    pass


class SessionFailure(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


class SessionInvalid(AuthorizationError):

    def __init__(self, reason: SessionFailure):
        self.reason = reason
        super().__init__(f"Session key validation failed: {reason.value}")


class NoActiveCredential(AuthorizationError):

    def __init__(self, handle: str = ""):
        self.handle = handle
        super().__init__("No active session key to refresh")


class BudgetExceeded(AuthorizationError):
    """Carries enough detail for the caller to decide when to retry."""

    def __init__(self, daily_budget: Decimal, daily_spent: Decimal,
                 requested: Decimal, available: Decimal):
        self.daily_budget = daily_budget
        self.daily_spent = daily_spent
        self.requested = requested
        self.available = available
        super().__init__(
            f"Daily budget exceeded: budget={daily_budget} spent={daily_spent} "
            f"requested={requested} available={available}"
        )


class InsufficientBalance(AuthorizationError):

    def __init__(self, balance: Decimal, requested: Decimal):
        self.balance = balance
        self.requested = requested
        super().__init__(f"Insufficient balance: have {balance}, need {requested}")


# ============================================================
# LOOKUPS
# ============================================================

class NotFound(Exception):
    pass


class TreasuryNotFound(NotFound):
    pass


class WalletNotFound(NotFound):
    pass


class EscrowNotFound(NotFound):
    pass


# ============================================================
# DISPATCHER / CHAIN
# ============================================================

class DispatcherError(Exception):
    """Chain-side failure. Wraps the underlying message, keeps the tx hash if any."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class SignerDerivationError(DispatcherError):
    pass


class AllowanceApprovalFailed(DispatcherError):
    pass


class TransferFailed(DispatcherError):
    pass


class EscrowCreationFailed(DispatcherError):
    pass


class EscrowCompletionFailed(DispatcherError):
    pass


class EscrowActionFailed(DispatcherError):
    pass


class ChainUnavailable(DispatcherError):
    pass


class ConfirmationTimeout(DispatcherError):
    """Submitted but not mined before the deadline. Outcome unknown: poll tx_hash."""
    pass


class AllowanceApprovalTimeout(AllowanceApprovalFailed, ConfirmationTimeout):
    pass


class TransferTimeout(TransferFailed, ConfirmationTimeout):
    pass


class EscrowCompletionTimeout(EscrowCompletionFailed, ConfirmationTimeout):
    pass


class EscrowActionTimeout(EscrowActionFailed, ConfirmationTimeout):
    pass
