"""Referral commission on settled subscription payments."""
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.core.currency import convert_minor
from creator_ledger.database.models import Payment, Referral, ReferralCredit, Subscription, utcnow
from creator_ledger.database.repositories import insert_ignore

logger = structlog.get_logger(__name__)

TIER_MULTIPLIERS = {
    "basic": Decimal("1.0"),
    "premium": Decimal("1.5"),
    "pro": Decimal("2.0"),
    "elite": Decimal("2.5"),
}


def tier_multiplier(tier_name: str) -> Decimal:
    """Commission multiplier for a tier name, 1.0 for unknown tiers."""
    return TIER_MULTIPLIERS.get(tier_name.strip().lower(), Decimal("1.0"))


def calculate_commission(value_minor: int, rate: Decimal, tier_name: str) -> int:
    """``value × rate × tier multiplier``, rounded half up to a minor unit."""
    commission = Decimal(value_minor) * rate * tier_multiplier(tier_name)
    return int(commission.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def find_referral_for(db: AsyncSession, user_id: str) -> Optional[Referral]:
    """Referral that brought ``user_id`` in, if any."""
    return await db.scalar(select(Referral).where(Referral.referred_user_id == user_id))


async def award_referral_commission(
    db: AsyncSession, subscription: Subscription, payment: Payment, settlement_currency: str
) -> Optional[ReferralCredit]:
    """
    Credit the referrer for a settled subscription payment, once per payment.

    Returns:
        Optional[ReferralCredit]: The new credit, or None if not applicable
    """
    if subscription.referral_id is None:
        return None
    referral = await db.get(Referral, subscription.referral_id)
    if referral is None:
        logger.warning(
            "referral_not_found",
            referral_id=str(subscription.referral_id),
            subscription_id=str(subscription.id),
        )
        return None

    value_minor = convert_minor(payment.amount_minor, payment.currency, settlement_currency)
    commission = calculate_commission(value_minor, referral.commission_rate, subscription.tier_name)
    if commission <= 0:
        return None

    inserted = await insert_ignore(
        db,
        ReferralCredit,
        {
            "id": uuid.uuid4(),
            "referrer_id": referral.referrer_id,
            "referral_id": referral.id,
            "payment_id": payment.id,
            "amount_minor": commission,
            "description": f"Referral commission for {subscription.tier_name} subscription",
            "created_at": utcnow(),
        },
        index_elements=["payment_id"],
    )
    if not inserted:
        return None

    await db.execute(
        update(Referral)
        .where(Referral.id == referral.id)
        .values(
            status="active",
            total_commission_minor=Referral.total_commission_minor + commission,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "referral_commission_awarded",
        referrer_id=referral.referrer_id,
        payment_id=str(payment.id),
        commission_minor=commission,
    )
    return await db.scalar(select(ReferralCredit).where(ReferralCredit.payment_id == payment.id))
