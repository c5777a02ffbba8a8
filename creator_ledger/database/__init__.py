"""Database package for the creator ledger."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Chargeback,
    DunningAttempt,
    Earnings,
    KycVerification,
    Payment,
    PaymentEvent,
    PayoutRequest,
    PlatformConfig,
    Referral,
    ReferralCredit,
    RiskProfile,
    Subscription,
    Wallet,
    utcnow,
)

__all__ = [
    "Base",
    "Chargeback",
    "DunningAttempt",
    "Earnings",
    "KycVerification",
    "Payment",
    "PaymentEvent",
    "PayoutRequest",
    "PlatformConfig",
    "Referral",
    "ReferralCredit",
    "RiskProfile",
    "Subscription",
    "Wallet",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
    "utcnow",
]
