"""Payment orchestration, ledger and recovery logic."""
from .errors import (
    DuplicateSubscriptionError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidTransitionError,
    KycRequiredError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
    ProviderUnavailableError,
    RateLimitedError,
    RiskLimitExceededError,
    RoutingError,
    UnauthorizedError,
    VerificationFailedError,
    WalletFrozenError,
)

__all__ = [
    "DuplicateSubscriptionError",
    "ForbiddenError",
    "InsufficientBalanceError",
    "InvalidTransitionError",
    "KycRequiredError",
    "NotFoundError",
    "PaymentError",
    "PaymentValidationError",
    "ProviderUnavailableError",
    "RateLimitedError",
    "RiskLimitExceededError",
    "RoutingError",
    "UnauthorizedError",
    "VerificationFailedError",
    "WalletFrozenError",
]
