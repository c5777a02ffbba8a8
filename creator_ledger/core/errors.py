"""
Error taxonomy for payment, ledger and payout operations.

Every error carries the HTTP status it maps to, a stable machine code and a
public message that is safe to return to callers. Diagnostic detail stays in
the exception message and the logs.
"""
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    status_code: int = 500
    code: str = "payment_error"
    default_public_message: str = "Payment processing failed"

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        """
        Initialize payment error.

        Args:
            message: Diagnostic message (logged, never returned to callers)
            public_message: Message safe to return to callers
        """
        super().__init__(message or self.default_public_message)
        self.public_message = public_message or self.default_public_message


class PaymentValidationError(PaymentError):
    """Raised when request input validation fails."""

    status_code = 400
    code = "validation_error"
    default_public_message = "Invalid request"

    def __init__(self, message: str, public_message: Optional[str] = None):
        # Validation messages describe the caller's own input.
        super().__init__(message, public_message or message)


class RoutingError(PaymentError):
    """Raised when no provider supports the method/currency/country combination."""

    status_code = 400
    code = "routing_error"
    default_public_message = "No payment provider supports this payment method and currency"


class UnauthorizedError(PaymentError):
    """Raised when the request carries no actor identity."""

    status_code = 401
    code = "unauthorized"
    default_public_message = "Authentication required"


class ForbiddenError(PaymentError):
    """Raised when the actor lacks the role for an operation."""

    status_code = 403
    code = "forbidden"
    default_public_message = "Not allowed"


class NotFoundError(PaymentError):
    """Raised when a referenced entity does not exist."""

    status_code = 404
    code = "not_found"
    default_public_message = "Not found"


class InsufficientBalanceError(PaymentError):
    """Raised when a wallet cannot cover the requested amount."""

    status_code = 400
    code = "insufficient_balance"
    default_public_message = "Insufficient balance"


class WalletFrozenError(PaymentError):
    """Raised when a frozen wallet is asked to reserve or pay out funds."""

    status_code = 403
    code = "wallet_frozen"
    default_public_message = "Wallet is frozen. Please contact support."


class KycRequiredError(PaymentError):
    """Raised when an operation needs approved KYC."""

    status_code = 403
    code = "kyc_required"
    default_public_message = "KYC verification required"


class RiskLimitExceededError(PaymentError):
    """Raised when a payout exceeds the actor's risk-based limits."""

    status_code = 403
    code = "risk_limit_exceeded"
    default_public_message = "Payout exceeds your current limits"


class DuplicateSubscriptionError(PaymentError):
    """Raised when a fan already holds an active subscription to a creator."""

    status_code = 409
    code = "duplicate_subscription"
    default_public_message = "Already subscribed to this creator"


class InvalidTransitionError(PaymentError):
    """Raised when a state transition is not allowed from the current state."""

    status_code = 409
    code = "invalid_transition"
    default_public_message = "Invalid status transition"


class RateLimitedError(PaymentError):
    """Raised when an actor exceeds the request rate limit."""

    status_code = 429
    code = "rate_limited"
    default_public_message = "Too many requests"


class VerificationFailedError(PaymentError):
    """Raised when a provider cannot confirm a payment or webhook."""

    status_code = 502
    code = "verification_failed"
    default_public_message = "Payment verification failed"


class ProviderUnavailableError(PaymentError):
    """Raised when a provider is unreachable or refuses the request."""

    status_code = 503
    code = "provider_unavailable"
    default_public_message = "Payment provider unavailable. Please try again."
