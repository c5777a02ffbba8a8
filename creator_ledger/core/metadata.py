"""Typed payment metadata, discriminated on the payment type."""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from creator_ledger.core.errors import PaymentValidationError


class SubscriptionMetadata(BaseModel):
    """Metadata for subscription payments (initial and renewal)."""

    type: Literal["subscription"] = "subscription"
    tier_name: str = Field(..., min_length=1)
    interval: Literal["month", "year"] = "month"
    renewal: bool = False
    referral_id: Optional[str] = None


class TipMetadata(BaseModel):
    """Metadata for tips."""

    type: Literal["tip"] = "tip"
    message: Optional[str] = Field(default=None, max_length=500)


class PpvMetadata(BaseModel):
    """Metadata for pay-per-view unlocks."""

    type: Literal["ppv"] = "ppv"
    post_id: str = Field(..., min_length=1)


class AiUpgradeMetadata(BaseModel):
    """Metadata for a creator's AI tools upgrade."""

    type: Literal["ai_upgrade"] = "ai_upgrade"
    plan: str = "pro"


PaymentMetadata = Annotated[
    Union[SubscriptionMetadata, TipMetadata, PpvMetadata, AiUpgradeMetadata],
    Field(discriminator="type"),
]

_metadata_adapter: TypeAdapter[Any] = TypeAdapter(PaymentMetadata)


def parse_payment_metadata(data: Dict[str, Any]) -> Any:
    """
    Validate raw metadata into its typed variant.

    Raises:
        PaymentValidationError: If the type is unknown or fields are invalid
    """
    try:
        return _metadata_adapter.validate_python(data)
    except ValidationError as e:
        raise PaymentValidationError(f"Invalid payment metadata: {e.errors()[0]['msg']}")
