"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorResponse(BaseModel):
    """Public error body."""

    error: str = Field(..., description="Message safe to show to the caller")
    code: str = Field(..., description="Stable machine-readable error code")


class GuardError(BaseModel):
    """Reason a withdrawal would be rejected."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str = Field(..., description="Message safe to show to the caller")


class CheckoutRequest(BaseModel):
    """Request schema for a one-time payment (tip, pay-per-view, AI upgrade)."""

    payment_type: Literal["tip", "ppv", "ai_upgrade"] = Field(..., description="Payment type")
    amount_minor: int = Field(..., gt=0, description="Amount in minor units of the currency")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code")
    country: str = Field(..., min_length=2, max_length=2, description="Payer country code")
    payer_email: str = Field(..., min_length=3, description="Payer email")
    creator_id: Optional[str] = Field(default=None, description="Receiving creator")
    method: Literal["card", "mobile_money"] = Field(default="card", description="Payment method")
    phone_number: Optional[str] = Field(default=None, description="Mobile money phone number")
    preferred_providers: Optional[List[str]] = Field(
        default=None, description="Explicit provider preference order"
    )
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Type-specific metadata (message, post_id, plan)"
    )

    @field_validator("currency", "country")
    @classmethod
    def normalize_codes(cls, v: str) -> str:
        """Currency and country codes are upper case."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "payment_type": "tip",
                    "amount_minor": 50000,
                    "currency": "KES",
                    "country": "KE",
                    "payer_email": "fan@example.com",
                    "creator_id": "creator_123",
                    "method": "mobile_money",
                    "phone_number": "+254712345678",
                    "metadata": {"message": "Great stream!"},
                }
            ]
        }
    }


class SubscriptionRequest(BaseModel):
    """Request schema for starting a subscription."""

    creator_id: str = Field(..., description="Creator to subscribe to")
    tier_name: str = Field(..., min_length=1, description="Tier name (basic, premium, ...)")
    tier_price_minor: int = Field(..., gt=0, description="Tier price in minor units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code")
    country: str = Field(..., min_length=2, max_length=2, description="Payer country code")
    payer_email: str = Field(..., min_length=3, description="Payer email")
    interval: Literal["month", "year"] = Field(default="month", description="Billing interval")
    method: Literal["card", "mobile_money"] = Field(default="card", description="Payment method")
    phone_number: Optional[str] = Field(default=None, description="Mobile money phone number")
    preferred_providers: Optional[List[str]] = Field(
        default=None, description="Explicit provider preference order"
    )

    @field_validator("currency", "country")
    @classmethod
    def normalize_codes(cls, v: str) -> str:
        """Currency and country codes are upper case."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "creator_id": "creator_123",
                    "tier_name": "premium",
                    "tier_price_minor": 999,
                    "currency": "USD",
                    "country": "US",
                    "payer_email": "fan@example.com",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for a started checkout."""

    success: bool = Field(..., description="Whether the provider session was created")
    provider: Optional[str] = Field(default=None, description="Selected provider")
    reference: Optional[str] = Field(default=None, description="Provider payment reference")
    redirect_url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    client_secret: Optional[str] = Field(
        default=None, description="Client-side confirmation secret"
    )
    payment_id: Optional[str] = Field(default=None, description="Payment ID")
    subscription_id: Optional[str] = Field(default=None, description="Subscription ID")
    error: Optional[str] = Field(default=None, description="Public error message")


class SubscriptionResponse(BaseModel):
    """Response schema for a subscription."""

    id: str
    fan_id: str
    creator_id: str
    tier_name: str
    status: str
    auto_renew: bool
    next_billing_date: Optional[str] = None
    cancelled_at: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    id: str = Field(..., description="Payment ID")
    user_id: str = Field(..., description="Paying user")
    creator_id: Optional[str] = Field(default=None, description="Receiving creator")
    provider: str = Field(..., description="Provider")
    reference: Optional[str] = Field(default=None, description="Provider reference")
    amount_minor: int = Field(..., description="Amount in minor units")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="pending, success or failed")
    type: str = Field(..., description="Payment type")
    fee_percent: str = Field(..., description="Platform fee percent applied")
    platform_fee: int = Field(..., description="Platform share in minor units")
    creator_earnings: int = Field(..., description="Creator share in minor units")
    error_message: Optional[str] = Field(default=None, description="Error message if failed")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    settled_at: Optional[str] = Field(default=None, description="Final status timestamp")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: Optional[str] = Field(default=None, description="Provider event ID")

    model_config = ConfigDict(extra="allow")


class WalletResponse(BaseModel):
    """Response schema for a creator wallet."""

    user_id: str
    balance_minor: int = Field(..., description="Settled balance")
    pending_payouts_minor: int = Field(..., description="Balance reserved for payouts")
    available_minor: int = Field(..., description="Balance available to withdraw")
    debt_minor: int = Field(..., description="Chargeback debt repaid from future earnings")
    currency: str
    frozen: bool
    frozen_reason: Optional[str] = None


class PayoutCreateRequest(BaseModel):
    """Request schema for a payout."""

    amount_minor: int = Field(..., gt=0, description="Amount in minor units of the currency")
    currency: str = Field(default="USD", min_length=3, max_length=3, description="Currency code")
    method: Literal["mobile_money", "bank_transfer"] = Field(..., description="Payout method")
    account_details: Dict[str, Any] = Field(
        default_factory=dict,
        description="phone_number for mobile money; account_number and bank_code for banks",
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are upper case."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount_minor": 5000,
                    "currency": "USD",
                    "method": "mobile_money",
                    "account_details": {"phone_number": "+254712345678", "network": "MPESA"},
                }
            ]
        }
    }


class PayoutResponse(BaseModel):
    """Response schema for a payout request."""

    id: str
    user_id: str
    amount_minor: int = Field(..., description="Amount in settlement minor units")
    currency: str
    requested_amount_minor: int
    requested_currency: str
    method: str
    status: str
    provider: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: str
    processed_at: Optional[str] = None


class WithdrawalGuardRequest(BaseModel):
    """Request schema for a withdrawal pre-check."""

    amount_minor: int = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are upper case."""
        return v.upper()


class WithdrawalGuardResponse(BaseModel):
    """Response schema for a withdrawal pre-check."""

    allowed: bool
    error: Optional[GuardError] = None


class PayoutTransitionRequest(BaseModel):
    """Request schema for an administrative payout transition."""

    status: Literal["processing", "completed", "failed", "cancelled"]
    notes: Optional[str] = Field(default=None, max_length=1000)


class PayoutRouteResponse(BaseModel):
    """Response schema for routing a payout through a provider."""

    success: bool
    provider: str
    status: str
    payout_id: str
    error: Optional[str] = None


class ChargebackResolveRequest(BaseModel):
    """Request schema for resolving a chargeback."""

    outcome: Literal["won", "lost"]


class ChargebackResponse(BaseModel):
    """Response schema for a chargeback."""

    id: str
    creator_id: str
    payment_id: str
    provider: str
    amount_minor: int
    currency: str
    status: str
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None


class PlatformFeeRequest(BaseModel):
    """Request schema for updating the platform fee."""

    fee_percent: Decimal = Field(..., ge=0, le=100, description="New platform fee percent")


class PlatformFeeResponse(BaseModel):
    """Response schema for the platform fee."""

    fee_percent: str


class RiskProfileResponse(BaseModel):
    """Response schema for a risk profile."""

    user_id: str
    risk_score: int
    monthly_limit_minor: int
    daily_limit_minor: int
    blocked: bool
    flags: Dict[str, Any] = Field(default_factory=dict)


class DunningRunResponse(BaseModel):
    """Response schema for a dunning sweep."""

    scheduled: int
    recovered: int
    failed: int
    past_due: int
    cancelled: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
