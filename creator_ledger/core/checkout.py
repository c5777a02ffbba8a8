"""
Payment session initiation.

Orchestrates a checkout:
1. Validate input and route to a provider
2. Reject duplicate active subscriptions
3. Resolve the fee split and create a pending payment
4. Call the provider to start the session
5. Persist the provider reference (and the pending subscription)
6. Commit transaction

A provider failure leaves the payment explicitly ``failed`` and creates no
subscription.

Fans may also cancel their own subscriptions; cancellation turns off renewal
so dunning never retries them.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.audit import record_payment_event
from creator_ledger.core.currency import convert_minor
from creator_ledger.core.errors import (
    DuplicateSubscriptionError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PaymentValidationError,
)
from creator_ledger.core.fees import FeePercentResolver, split_payment
from creator_ledger.core.metadata import SubscriptionMetadata, parse_payment_metadata
from creator_ledger.core.referrals import find_referral_for
from creator_ledger.core.routing import ProviderSelector, RouteRequest
from creator_ledger.database.models import Payment, Subscription, utcnow
from creator_ledger.database.repositories import get_active_subscription
from creator_ledger.integrations.base import ProviderError
from creator_ledger.integrations.registry import ProviderRegistry
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ONE_TIME_PAYMENT_TYPES = frozenset({"tip", "ppv", "ai_upgrade"})

CHECKOUT_FAILED_MESSAGE = "Payment could not be started. Please try again."


def new_payment_reference() -> str:
    """Our own reference, used until the provider assigns one."""
    return f"cl_{uuid.uuid4().hex}"


class CheckoutService:
    """Starts one-time payments and subscriptions with the routed provider."""

    def __init__(
        self,
        registry: ProviderRegistry,
        fee_resolver: Optional[FeePercentResolver] = None,
        selector: Optional[ProviderSelector] = None,
    ):
        self.settings = get_settings()
        self.registry = registry
        self.fee_resolver = fee_resolver or FeePercentResolver()
        self.selector = selector or ProviderSelector(registry)

    async def start_one_time_payment(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        payment_type: str,
        amount_minor: int,
        currency: str,
        country: str,
        payer_email: str,
        creator_id: Optional[str] = None,
        method: str = "card",
        phone_number: Optional[str] = None,
        preferred_providers: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Start a tip, pay-per-view or AI upgrade payment.

        Args:
            db: Database session
            user_id: Paying user
            payment_type: ``tip``, ``ppv`` or ``ai_upgrade``
            amount_minor: Amount in minor units of ``currency``
            currency: ISO currency code
            country: Payer's country code
            payer_email: Payer's email for the provider
            creator_id: Receiving creator (not used for AI upgrades)
            method: ``card`` or ``mobile_money``
            phone_number: Required for mobile money
            preferred_providers: Explicit provider preference list
            metadata: Type-specific metadata

        Returns:
            Dict[str, Any]: Checkout response

        Raises:
            PaymentValidationError: If input validation fails
            RoutingError: If no provider supports the request
        """
        if payment_type not in ONE_TIME_PAYMENT_TYPES:
            raise PaymentValidationError(f"Unsupported payment type: {payment_type}")
        if payment_type != "ai_upgrade" and not creator_id:
            raise PaymentValidationError("creator_id is required")

        typed_metadata = parse_payment_metadata({**(metadata or {}), "type": payment_type})
        return await self._start(
            db,
            user_id=user_id,
            creator_id=creator_id if payment_type != "ai_upgrade" else None,
            payment_type=payment_type,
            amount_minor=amount_minor,
            currency=currency,
            country=country,
            payer_email=payer_email,
            method=method,
            phone_number=phone_number,
            preferred_providers=preferred_providers,
            metadata=typed_metadata.model_dump(),
        )

    async def start_subscription(
        self,
        db: AsyncSession,
        *,
        fan_id: str,
        creator_id: str,
        tier_name: str,
        tier_price_minor: int,
        currency: str,
        country: str,
        payer_email: str,
        interval: str = "month",
        method: str = "card",
        phone_number: Optional[str] = None,
        preferred_providers: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """
        Start the first payment of a subscription.

        The subscription is created ``pending`` and becomes ``active`` when the
        payment is confirmed.

        Raises:
            PaymentValidationError: If input validation fails
            RoutingError: If no provider supports the request
            DuplicateSubscriptionError: If the fan already subscribes to the creator
        """
        if fan_id == creator_id:
            raise PaymentValidationError("Cannot subscribe to yourself")
        if await get_active_subscription(db, fan_id, creator_id) is not None:
            raise DuplicateSubscriptionError(
                f"Fan {fan_id} already has an active subscription to {creator_id}"
            )

        referral = await find_referral_for(db, fan_id)
        typed_metadata = SubscriptionMetadata(
            tier_name=tier_name,
            interval=interval,
            referral_id=str(referral.id) if referral else None,
        )
        return await self._start(
            db,
            user_id=fan_id,
            creator_id=creator_id,
            payment_type="subscription",
            amount_minor=tier_price_minor,
            currency=currency,
            country=country,
            payer_email=payer_email,
            method=method,
            phone_number=phone_number,
            preferred_providers=preferred_providers,
            metadata=typed_metadata.model_dump(),
            subscription_fields={
                "tier_name": tier_name,
                "interval": interval,
                "referral_id": referral.id if referral else None,
            },
        )

    async def cancel_subscription(
        self, db: AsyncSession, subscription_id: uuid.UUID, fan_id: str
    ) -> Subscription:
        """
        Cancel a subscription at the fan's request.

        The subscription becomes ``cancelled`` with renewal turned off, so no
        further billing or dunning happens for it.

        Raises:
            NotFoundError: If the subscription does not exist
            ForbiddenError: If the subscription belongs to another fan
            InvalidTransitionError: If it is already cancelled
        """
        subscription = await db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found", "Subscription not found"
            )
        if subscription.fan_id != fan_id:
            raise ForbiddenError(
                f"Subscription {subscription_id} does not belong to {fan_id}",
                "Not your subscription",
            )
        previous = subscription.status

        result = await db.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status != "cancelled")
            .values(status="cancelled", auto_renew=False, cancelled_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise InvalidTransitionError(
                f"Subscription {subscription_id} is already cancelled",
                "Subscription is already cancelled",
            )
        await db.commit()

        metrics.record_subscription_cancelled("fan_request")
        logger.info(
            "subscription_cancelled_by_fan",
            subscription_id=str(subscription_id),
            fan_id=fan_id,
            previous_status=previous,
        )
        return await db.get(Subscription, subscription_id, populate_existing=True)

    async def _start(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        creator_id: Optional[str],
        payment_type: str,
        amount_minor: int,
        currency: str,
        country: str,
        payer_email: str,
        method: str,
        phone_number: Optional[str],
        preferred_providers: Optional[Sequence[str]],
        metadata: Dict[str, Any],
        subscription_fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        correlation_id = uuid.uuid4()
        currency = currency.upper()
        if not payer_email:
            raise PaymentValidationError("Payer email is required")

        client = self.selector.select(
            RouteRequest(
                amount_minor=amount_minor,
                currency=currency,
                country=country,
                method=method,
                phone_number=phone_number,
                preferred_providers=preferred_providers,
            )
        )

        fee_percent = await self.fee_resolver.resolve(db)
        split = split_payment(amount_minor, payment_type, fee_percent)
        subscription_id = uuid.uuid4() if subscription_fields is not None else None

        payment = Payment(
            id=uuid.uuid4(),
            user_id=user_id,
            creator_id=creator_id,
            subscription_id=subscription_id,
            provider=client.name,
            reference=new_payment_reference(),
            amount_minor=amount_minor,
            currency=currency,
            status="pending",
            type=payment_type,
            fee_percent=split.fee_percent,
            platform_fee=split.platform_fee,
            creator_earnings=split.creator_earnings,
            payment_metadata=metadata,
        )
        db.add(payment)
        record_payment_event(
            db,
            payment.id,
            "payment.created",
            {"provider": client.name, "amount_minor": amount_minor, "currency": currency},
            correlation_id,
        )
        await db.flush()

        logger.info(
            "checkout_started",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            provider=client.name,
            payment_type=payment_type,
            amount_minor=amount_minor,
            currency=currency,
        )

        provider_metadata: Dict[str, Any] = {
            "payment_id": str(payment.id),
            "type": payment_type,
            "user_id": user_id,
        }
        if creator_id:
            provider_metadata["creator_id"] = creator_id
        if subscription_id is not None:
            provider_metadata["subscription_id"] = str(subscription_id)
        if phone_number:
            provider_metadata["phone_number"] = phone_number

        try:
            session = await client.create_session(
                amount_minor, currency, payer_email, payment.reference, provider_metadata
            )
        except ProviderError as e:
            payment.status = "failed"
            payment.error_message = str(e)
            payment.settled_at = utcnow()
            payment.subscription_id = None
            record_payment_event(
                db,
                payment.id,
                "payment.failed",
                {"error": str(e), "error_type": e.error_type.value},
                correlation_id,
            )
            await db.commit()

            metrics.record_checkout(client.name, payment_type, "failed")
            logger.error(
                "checkout_provider_failed",
                correlation_id=str(correlation_id),
                payment_id=str(payment.id),
                provider=client.name,
                error=str(e),
                error_type=e.error_type.value,
            )
            return {
                "success": False,
                "provider": client.name,
                "payment_id": str(payment.id),
                "reference": payment.reference,
                "error": CHECKOUT_FAILED_MESSAGE,
            }

        payment.reference = session.reference

        if subscription_fields is not None:
            now = utcnow()
            period_days = (
                self.settings.yearly_billing_period_days
                if subscription_fields["interval"] == "year"
                else self.settings.billing_period_days
            )
            db.add(
                Subscription(
                    id=subscription_id,
                    fan_id=user_id,
                    creator_id=creator_id,
                    tier_name=subscription_fields["tier_name"],
                    tier_price_minor=amount_minor,
                    currency=currency,
                    interval=subscription_fields["interval"],
                    status="pending",
                    provider=client.name,
                    reference=session.reference,
                    payment_id=payment.id,
                    latest_payment_id=payment.id,
                    referral_id=subscription_fields["referral_id"],
                    auto_renew=True,
                    next_billing_date=now + timedelta(days=period_days),
                )
            )

        record_payment_event(
            db,
            payment.id,
            "payment.session_created",
            {"reference": session.reference},
            correlation_id,
        )
        await db.commit()

        metrics.record_checkout(
            client.name,
            payment_type,
            "started",
            convert_minor(amount_minor, currency, "USD"),
        )
        logger.info(
            "checkout_session_created",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            reference=session.reference,
        )

        response: Dict[str, Any] = {
            "success": True,
            "provider": client.name,
            "reference": session.reference,
            "redirect_url": session.redirect_url,
            "client_secret": session.client_secret,
            "payment_id": str(payment.id),
        }
        if subscription_id is not None:
            response["subscription_id"] = str(subscription_id)
        return response
