"""
Recurring Order Module

Order, execution and credential models, the error taxonomy, and the status
state machine. The service layer lives in ``service`` and is imported
directly to keep this package free of storage imports.
"""

from .errors import (
    ChainRevertError,
    CredentialExpiredError,
    CredentialScopeError,
    DCAEngineError,
    FatalCycleError,
    InsufficientBalanceError,
    OrderNotFoundError,
    QuoteUnavailableError,
    RecoverableCycleError,
    RepositoryError,
    SubmissionTimeoutError,
    SuspiciousQuoteError,
    UnauthorizedTargetError,
)
from .models import (
    Credential,
    CredentialScope,
    Execution,
    ExecutionStatus,
    Frequency,
    Order,
    OrderStatus,
    PendingSubmission,
    Quote,
    TokenInfo,
)
from .state_machine import InvalidTransitionError, can_transition, transition

__all__ = [
    # Models
    "Credential",
    "CredentialScope",
    "Execution",
    "ExecutionStatus",
    "Frequency",
    "Order",
    "OrderStatus",
    "PendingSubmission",
    "Quote",
    "TokenInfo",
    # Errors
    "ChainRevertError",
    "CredentialExpiredError",
    "CredentialScopeError",
    "DCAEngineError",
    "FatalCycleError",
    "InsufficientBalanceError",
    "OrderNotFoundError",
    "QuoteUnavailableError",
    "RecoverableCycleError",
    "RepositoryError",
    "SubmissionTimeoutError",
    "SuspiciousQuoteError",
    "UnauthorizedTargetError",
    # State machine
    "InvalidTransitionError",
    "can_transition",
    "transition",
]
