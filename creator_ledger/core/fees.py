"""
Platform fee calculation and fee-percent resolution.

The fee percent is runtime-configurable through the ``platform_config`` table
and falls back to settings. It is resolved once per operation and frozen into
the payment row, so later changes never touch settled payments.
"""
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.errors import PaymentValidationError
from creator_ledger.database.models import PlatformConfig, utcnow

logger = structlog.get_logger(__name__)

PLATFORM_FEE_CONFIG_KEY = "platform_fee_percent"

# Payment types whose full amount goes to the platform
PLATFORM_ONLY_TYPES = frozenset({"ai_upgrade"})


@dataclass(frozen=True)
class FeeSplit:
    """Resolved split of one payment amount."""

    fee_percent: Decimal
    platform_fee: int
    creator_earnings: int


def _validate_fee_percent(fee_percent: Decimal) -> Decimal:
    value = Decimal(fee_percent)
    if value < 0 or value > 100:
        raise PaymentValidationError("Fee percent must be between 0 and 100")
    return value


def calculate_platform_fee(amount_minor: int, fee_percent: Decimal) -> int:
    """
    Platform share of ``amount_minor``, rounded half up to a whole minor unit.

    Args:
        amount_minor: Payment amount in minor units
        fee_percent: Fee percent in [0, 100]

    Returns:
        int: Platform fee in minor units
    """
    if amount_minor < 0:
        raise PaymentValidationError("Amount must not be negative")
    pct = _validate_fee_percent(fee_percent)
    fee = (Decimal(amount_minor) * pct / Decimal(100)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(fee)


def calculate_creator_payout(amount_minor: int, fee_percent: Decimal) -> int:
    """Creator share of ``amount_minor``; always ``amount - platform fee``."""
    return amount_minor - calculate_platform_fee(amount_minor, fee_percent)


def split_payment(amount_minor: int, payment_type: str, fee_percent: Decimal) -> FeeSplit:
    """
    Split a payment between platform and creator according to its type.

    AI upgrades are platform revenue in full; every other type uses the
    platform percentage.
    """
    if payment_type in PLATFORM_ONLY_TYPES:
        return FeeSplit(fee_percent=Decimal(100), platform_fee=amount_minor, creator_earnings=0)
    platform_fee = calculate_platform_fee(amount_minor, fee_percent)
    return FeeSplit(
        fee_percent=Decimal(fee_percent),
        platform_fee=platform_fee,
        creator_earnings=amount_minor - platform_fee,
    )


class FeePercentResolver:
    """
    Resolves the current platform fee percent with a short-lived cache.

    The cache is per process; ``invalidate`` is called after an update so the
    new value is picked up by the next operation.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        settings = get_settings()
        self.default_percent = settings.platform_fee_percent
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.platform_fee_cache_ttl_seconds
        )
        self._cached: Optional[Decimal] = None
        self._cached_at: float = 0.0

    def invalidate(self) -> None:
        """Drop the cached value."""
        self._cached = None
        self._cached_at = 0.0

    async def resolve(self, db: AsyncSession) -> Decimal:
        """
        Current fee percent.

        Args:
            db: Database session

        Returns:
            Decimal: Fee percent in [0, 100]
        """
        now = time.monotonic()
        if self._cached is not None and now - self._cached_at < self.ttl_seconds:
            return self._cached

        value = self.default_percent
        row = await db.scalar(
            select(PlatformConfig).where(PlatformConfig.key == PLATFORM_FEE_CONFIG_KEY)
        )
        if row is not None:
            try:
                value = _validate_fee_percent(Decimal(row.value))
            except (InvalidOperation, PaymentValidationError):
                logger.warning(
                    "platform_fee_config_invalid",
                    stored_value=row.value,
                    fallback=str(self.default_percent),
                )
                value = self.default_percent

        self._cached = value
        self._cached_at = now
        return value

    async def update(self, db: AsyncSession, fee_percent: Decimal, actor_id: str) -> Decimal:
        """
        Store a new fee percent and invalidate the cache.

        Only affects payments created afterwards.
        """
        value = _validate_fee_percent(fee_percent)
        row = await db.get(PlatformConfig, PLATFORM_FEE_CONFIG_KEY)
        if row is None:
            db.add(
                PlatformConfig(
                    key=PLATFORM_FEE_CONFIG_KEY,
                    value=str(value),
                    updated_by=actor_id,
                    updated_at=utcnow(),
                )
            )
        else:
            row.value = str(value)
            row.updated_by = actor_id
        await db.commit()
        self.invalidate()

        logger.info("platform_fee_updated", fee_percent=str(value), updated_by=actor_id)
        return value
