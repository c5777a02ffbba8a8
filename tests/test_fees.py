"""
Unit tests for platform fee calculation and fee-percent resolution.
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from creator_ledger.core.errors import PaymentValidationError
from creator_ledger.core.fees import (
    PLATFORM_FEE_CONFIG_KEY,
    FeePercentResolver,
    calculate_creator_payout,
    calculate_platform_fee,
    split_payment,
)
from creator_ledger.database.models import PlatformConfig


class TestFeeCalculation:
    """Test suite for fee arithmetic."""

    @pytest.mark.unit
    def test_platform_fee_default_percent(self) -> None:
        """Ten percent of 1000 minor units is 100."""
        assert calculate_platform_fee(1000, Decimal("10")) == 100
        assert calculate_creator_payout(1000, Decimal("10")) == 900

    @pytest.mark.unit
    def test_platform_fee_rounds_half_up(self) -> None:
        """A fee of exactly half a minor unit rounds up."""
        assert calculate_platform_fee(1005, Decimal("10")) == 101
        assert calculate_creator_payout(1005, Decimal("10")) == 904
        assert calculate_platform_fee(1004, Decimal("10")) == 100

    @pytest.mark.unit
    def test_fee_and_payout_always_sum_to_amount(self) -> None:
        """Platform fee plus creator payout equals the charged amount."""
        for amount in (1, 7, 99, 1005, 123_457):
            for pct in (Decimal("0"), Decimal("12.5"), Decimal("33.33"), Decimal("100")):
                fee = calculate_platform_fee(amount, pct)
                assert fee + calculate_creator_payout(amount, pct) == amount
                assert 0 <= fee <= amount

    @pytest.mark.unit
    def test_zero_and_full_percent(self) -> None:
        """0% leaves everything to the creator, 100% to the platform."""
        assert calculate_platform_fee(2500, Decimal("0")) == 0
        assert calculate_platform_fee(2500, Decimal("100")) == 2500

    @pytest.mark.unit
    def test_percent_out_of_range_rejected(self) -> None:
        """Fee percent must lie in 0..100."""
        with pytest.raises(PaymentValidationError, match="between 0 and 100"):
            calculate_platform_fee(1000, Decimal("100.5"))
        with pytest.raises(PaymentValidationError):
            calculate_platform_fee(1000, Decimal("-1"))

    @pytest.mark.unit
    def test_negative_amount_rejected(self) -> None:
        """Negative amounts are invalid."""
        with pytest.raises(PaymentValidationError, match="must not be negative"):
            calculate_platform_fee(-1, Decimal("10"))

    @pytest.mark.unit
    def test_ai_upgrade_is_platform_revenue(self) -> None:
        """AI upgrades give the creator nothing."""
        split = split_payment(2000, "ai_upgrade", Decimal("10"))
        assert split.platform_fee == 2000
        assert split.creator_earnings == 0
        assert split.fee_percent == Decimal(100)

    @pytest.mark.unit
    def test_tip_uses_configured_percent(self) -> None:
        """Other payment types use the platform percentage."""
        split = split_payment(2000, "tip", Decimal("15"))
        assert split.platform_fee == 300
        assert split.creator_earnings == 1700
        assert split.fee_percent == Decimal("15")


class TestFeePercentResolver:
    """Test suite for runtime fee configuration."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_falls_back_to_settings(self, test_db: any) -> None:
        """Without a stored value the settings default applies."""
        resolver = FeePercentResolver(ttl_seconds=0)
        assert await resolver.resolve(test_db) == Decimal("10")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_takes_effect_immediately(self, test_db: any) -> None:
        """An update invalidates the cache."""
        resolver = FeePercentResolver(ttl_seconds=300)
        assert await resolver.resolve(test_db) == Decimal("10")

        await resolver.update(test_db, Decimal("15"), "admin_1")

        assert await resolver.resolve(test_db) == Decimal("15")
        row = await test_db.get(PlatformConfig, PLATFORM_FEE_CONFIG_KEY)
        assert row.updated_by == "admin_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cached_value_served_within_ttl(self, test_db: any) -> None:
        """Changes made behind the resolver's back wait for the TTL."""
        resolver = FeePercentResolver(ttl_seconds=300)
        await resolver.update(test_db, Decimal("12"), "admin_1")
        assert await resolver.resolve(test_db) == Decimal("12")

        await test_db.execute(
            update(PlatformConfig)
            .where(PlatformConfig.key == PLATFORM_FEE_CONFIG_KEY)
            .values(value="20")
        )
        await test_db.commit()

        assert await resolver.resolve(test_db) == Decimal("12")
        resolver.invalidate()
        assert await resolver.resolve(test_db) == Decimal("20")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_stored_value_falls_back(self, test_db: any) -> None:
        """A corrupt stored value never breaks checkout."""
        test_db.add(PlatformConfig(key=PLATFORM_FEE_CONFIG_KEY, value="not-a-number"))
        await test_db.commit()

        resolver = FeePercentResolver(ttl_seconds=0)
        assert await resolver.resolve(test_db) == Decimal("10")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_rejects_out_of_range(self, test_db: any) -> None:
        """Updates outside 0..100 are refused."""
        resolver = FeePercentResolver()
        with pytest.raises(PaymentValidationError):
            await resolver.update(test_db, Decimal("150"), "admin_1")
