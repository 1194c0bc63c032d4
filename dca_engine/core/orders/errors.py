"""
Error Classification

Per-cycle failures raised by the execution pipeline. Each error carries a
category, a stable machine-readable code (stored on the Execution record and
on the order's ``last_error_code``) and whether the cycle may simply be
retried on the next sweep.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories of errors for cycle handling decisions."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    AUTHORIZATION = "authorization"       # Delegated credential problems
    PROVIDER = "provider"                 # Quote sources unavailable
    SECURITY = "security"                 # Allow-list violations
    TIMEOUT = "timeout"                   # Submission/confirmation wait
    TRANSACTION_REVERTED = "transaction_reverted"
    STORAGE = "storage"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    retryable: bool = True
    suggested_action: Optional[str] = None
    provider: Optional[str] = None
    tx_reference: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class DCAEngineError(Exception):
    """Base class for all engine errors."""

    code = "internal_error"
    category = ErrorCategory.UNKNOWN
    retryable = True

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext(category=self.category, retryable=self.retryable)


class RecoverableCycleError(DCAEngineError):
    """
    The cycle failed but the next sweep may simply try again.

    Progress fields and ``next_execution_at`` stay untouched.
    """


class FatalCycleError(DCAEngineError):
    """
    The cycle cannot make progress without outside action.

    Examples: the owner must re-authorize a credential, or a quote source
    handed back an address that is not on the allow-list.
    """

    retryable = False


# =============================================================================
# Recoverable errors
# =============================================================================


class InsufficientBalanceError(RecoverableCycleError):
    """Funding account holds less than this cycle's amount."""

    code = "insufficient_balance"
    category = ErrorCategory.INSUFFICIENT_FUNDS

    def __init__(self, required: Decimal, available: Decimal, token: str = ""):
        self.required = required
        self.available = available
        self.token = token
        super().__init__(
            f"Insufficient {token or 'source'} balance: need {required}, have {available}",
            context=ErrorContext(
                category=self.category,
                retryable=True,
                suggested_action="Fund the account; the order resumes on the next sweep",
                details={"required": str(required), "available": str(available), "token": token},
            ),
        )


class QuoteUnavailableError(RecoverableCycleError):
    """No quote source produced a usable quote."""

    code = "quote_unavailable"
    category = ErrorCategory.PROVIDER

    def __init__(self, message: str = "No quote source returned a valid quote", failures: Optional[Dict[str, str]] = None):
        self.failures = failures or {}
        super().__init__(
            message,
            context=ErrorContext(category=self.category, retryable=True, details={"failures": self.failures}),
        )


class SubmissionTimeoutError(RecoverableCycleError):
    """The batch was not confirmed in time, or the network call failed."""

    code = "submission_timeout"
    category = ErrorCategory.TIMEOUT

    def __init__(self, message: str = "Batch was not confirmed in time", tx_reference: Optional[str] = None):
        self.tx_reference = tx_reference
        super().__init__(
            message,
            context=ErrorContext(category=self.category, retryable=True, tx_reference=tx_reference),
        )


class ChainRevertError(RecoverableCycleError):
    """The batch was included but reverted. Nothing landed on-chain."""

    code = "chain_revert"
    category = ErrorCategory.TRANSACTION_REVERTED

    def __init__(
        self,
        message: str = "Batch reverted on-chain",
        tx_reference: Optional[str] = None,
        revert_reason: Optional[str] = None,
        gas_used: Optional[int] = None,
    ):
        self.tx_reference = tx_reference
        self.revert_reason = revert_reason
        self.gas_used = gas_used
        super().__init__(
            message,
            context=ErrorContext(
                category=self.category,
                retryable=True,
                tx_reference=tx_reference,
                details={"revertReason": revert_reason},
            ),
        )


# =============================================================================
# Fatal errors
# =============================================================================


class CredentialExpiredError(FatalCycleError):
    """Delegated credential is outside its validity window or missing."""

    code = "credential_expired"
    category = ErrorCategory.AUTHORIZATION

    def __init__(self, message: str = "Delegated credential has expired", key_id: Optional[str] = None):
        self.key_id = key_id
        super().__init__(
            message,
            context=ErrorContext(
                category=self.category,
                retryable=False,
                suggested_action="Owner must re-authorize a new credential",
                details={"keyId": key_id},
            ),
        )


class CredentialScopeError(CredentialExpiredError):
    """The batch needs an operation the credential does not cover."""

    code = "credential_scope"


class UnauthorizedTargetError(FatalCycleError):
    """Quote targets a contract outside the allow-list."""

    code = "unauthorized_target"
    category = ErrorCategory.SECURITY

    def __init__(self, address: str, source: str = ""):
        self.address = address
        self.source = source
        super().__init__(
            f"Quote from {source or 'unknown source'} targets non-allow-listed contract {address}",
            context=ErrorContext(category=self.category, retryable=False, provider=source, details={"address": address}),
        )


class SuspiciousQuoteError(UnauthorizedTargetError):
    """Quote call data references an address outside the allow-list."""

    code = "suspicious_quote"

    def __init__(self, address: str, source: str = ""):
        super().__init__(address, source)
        self.message = f"Quote from {source or 'unknown source'} embeds non-allow-listed address {address}"
        self.args = (self.message,)


# =============================================================================
# Non-cycle errors
# =============================================================================


class RepositoryError(DCAEngineError):
    """Storage layer failure. Aborts the whole sweep."""

    code = "repository_error"
    category = ErrorCategory.STORAGE


class OrderNotFoundError(DCAEngineError):
    """No order with the requested id."""

    code = "order_not_found"
    category = ErrorCategory.VALIDATION
    retryable = False

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")
