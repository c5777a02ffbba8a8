"""SQLAlchemy database models for the creator ledger."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all timestamps are stored in UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment records table.

    One row per provider charge. The fee split is resolved when the row is
    created and never recomputed afterwards.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    creator_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default="pending")
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    fee_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creator_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="positive_amount"),
        CheckConstraint(
            "platform_fee + creator_earnings = amount_minor", name="fee_split_sums_to_amount"
        ),
        CheckConstraint("status IN ('pending', 'success', 'failed')", name="valid_status"),
        CheckConstraint(
            "type IN ('subscription', 'tip', 'ppv', 'ai_upgrade')", name="valid_payment_type"
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class Subscription(Base):
    """
    Fan subscriptions to creators.

    A fan holds at most one active subscription per creator.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fan_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tier_name: Mapped[str] = mapped_column(String(50), nullable=False)
    tier_price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    interval: Mapped[str] = mapped_column(String(10), nullable=False, default="month")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    latest_payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    referral_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_billing_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'past_due', 'cancelled')",
            name="valid_subscription_status",
        ),
        CheckConstraint("interval IN ('month', 'year')", name="valid_interval"),
        Index(
            "uq_subscriptions_active_fan_creator",
            "fan_id",
            "creator_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_subscriptions_status_billing", "status", "next_billing_date"),
    )

    def __repr__(self) -> str:
        """String representation of Subscription."""
        return (
            f"<Subscription(id={self.id}, fan_id={self.fan_id}, "
            f"creator_id={self.creator_id}, status={self.status})>"
        )


class Wallet(Base):
    """
    Creator wallet.

    Balances are held in settlement-currency minor units. Every mutation is a
    single conditional UPDATE that also bumps ``version``.
    """

    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    balance_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_payouts_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    debt_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("balance_minor >= 0", name="non_negative_balance"),
        CheckConstraint("pending_payouts_minor >= 0", name="non_negative_pending"),
        CheckConstraint("debt_minor >= 0", name="non_negative_debt"),
        CheckConstraint(
            "balance_minor >= pending_payouts_minor", name="pending_within_balance"
        ),
    )

    @property
    def available_minor(self) -> int:
        """Balance that can still be reserved for payouts."""
        return self.balance_minor - self.pending_payouts_minor

    def __repr__(self) -> str:
        """String representation of Wallet."""
        return (
            f"<Wallet(user_id={self.user_id}, balance={self.balance_minor}, "
            f"pending={self.pending_payouts_minor}, frozen={self.frozen})>"
        )


class Earnings(Base):
    """Creator earnings credited from a settled payment (one row per payment)."""

    __tablename__ = "earnings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    debt_applied_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PayoutRequest(Base):
    """Creator payout requests, advanced only by administrative actors."""

    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    requested_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requested_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    account_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="positive_payout_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="valid_payout_status",
        ),
        CheckConstraint(
            "method IN ('mobile_money', 'bank_transfer')", name="valid_payout_method"
        ),
    )


class DunningAttempt(Base):
    """Scheduled and executed retry attempts for a failed subscription renewal."""

    __tablename__ = "dunning_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "payment_id", "attempt_number", name="uq_dunning_attempt_number"
        ),
        CheckConstraint("attempt_number >= 1", name="positive_attempt_number"),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed')", name="valid_dunning_status"
        ),
    )


class Chargeback(Base):
    """Payment disputes raised by providers."""

    __tablename__ = "chargebacks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="open")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "transaction_id", name="uq_chargeback_provider_txn"),
        CheckConstraint("status IN ('open', 'won', 'lost')", name="valid_chargeback_status"),
    )


class RiskProfile(Base):
    """Most recently computed risk score and payout limits per user."""

    __tablename__ = "risk_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_limit_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    daily_limit_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flags: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="bounded_risk_score"),
    )


class Referral(Base):
    """Referral link between a referrer and the user they brought in."""

    __tablename__ = "referrals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    referred_user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False, default=Decimal("0.10")
    )
    total_commission_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class ReferralCredit(Base):
    """Commission awarded to a referrer for one settled subscription payment."""

    __tablename__ = "referral_credits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    referral_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("referrals.id"), nullable=False
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class KycVerification(Base):
    """KYC review outcome per user (documents live in an external system)."""

    __tablename__ = "kyc_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('approved', 'pending', 'rejected')", name="valid_kyc_status"
        ),
    )


class PlatformConfig(Base):
    """Runtime-configurable platform settings stored as key/value pairs."""

    __tablename__ = "platform_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
