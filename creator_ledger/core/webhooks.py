"""
Webhook ingestion and payment confirmation.

Implements:
- Provider signature verification and normalization (delegated to the client)
- Event de-duplication through Redis as a fast path
- Re-verification of the authoritative status with the provider
- Idempotent payment transitions and their side effects

Delivery is at-least-once and may arrive out of order. Payment transitions
are conditional UPDATEs, so a replay or a stale failure arriving after a
success changes nothing. A payment never leaves ``success``.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.audit import record_payment_event
from creator_ledger.core.chargebacks import ChargebackHandler
from creator_ledger.core.currency import convert_minor, from_minor_units
from creator_ledger.core.errors import NotFoundError, VerificationFailedError
from creator_ledger.core.fees import FeePercentResolver, split_payment
from creator_ledger.core.ledger import LedgerManager
from creator_ledger.core.metadata import SubscriptionMetadata
from creator_ledger.core.notifications import Notifier, safe_notify
from creator_ledger.core.referrals import award_referral_commission
from creator_ledger.database.models import Payment, Subscription, utcnow
from creator_ledger.database.repositories import (
    get_active_subscription,
    get_payment_by_reference,
    insert_ignore,
)
from creator_ledger.integrations.base import (
    NormalizedEvent,
    PaymentProviderClient,
    ProviderError,
    VerificationResult,
)
from creator_ledger.integrations.registry import ProviderRegistry
from creator_ledger.integrations.webhook_dedup import WebhookDeduplicator
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# (user_id, kind, title, body, link)
Notification = Tuple[str, str, str, str, Optional[str]]


@dataclass
class SettlementOutcome:
    """What a verification did to a payment, plus notifications to send after commit."""

    payment_id: uuid.UUID
    status: str  # success, failed, pending, unchanged
    notifications: List[Notification] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"payment_id": str(self.payment_id), "status": self.status}


def billing_period(subscription: Subscription) -> timedelta:
    """Length of one billing period for the subscription's interval."""
    settings = get_settings()
    days = (
        settings.yearly_billing_period_days
        if subscription.interval == "year"
        else settings.billing_period_days
    )
    return timedelta(days=days)


class PaymentSettlementService:
    """Applies a provider's authoritative payment status to our records."""

    def __init__(
        self,
        ledger: LedgerManager,
        notifier: Notifier,
        fee_resolver: FeePercentResolver,
    ):
        self.settings = get_settings()
        self.ledger = ledger
        self.notifier = notifier
        self.fee_resolver = fee_resolver

    async def deliver(self, outcome: SettlementOutcome) -> None:
        """Send the outcome's notifications (call after commit)."""
        for user_id, kind, title, body, link in outcome.notifications:
            await safe_notify(self.notifier, user_id, kind, title, body, link)

    async def apply_verification(
        self,
        db: AsyncSession,
        payment: Payment,
        verification: VerificationResult,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> SettlementOutcome:
        """
        Apply a verification result to ``payment`` without committing.

        Args:
            db: Database session
            payment: Payment being confirmed
            verification: Provider's authoritative status
            correlation_id: Correlation ID for the audit trail

        Returns:
            SettlementOutcome: Resulting status and pending notifications
        """
        correlation_id = correlation_id or uuid.uuid4()
        if verification.status == "successful":
            return await self._confirm_success(db, payment, correlation_id)
        if verification.status == "failed":
            return await self._confirm_failure(
                db, payment, verification.failure_reason or "Payment failed", correlation_id
            )
        logger.info("payment_still_pending", payment_id=str(payment.id))
        return SettlementOutcome(payment_id=payment.id, status="pending")

    async def _confirm_success(
        self, db: AsyncSession, payment: Payment, correlation_id: uuid.UUID
    ) -> SettlementOutcome:
        now = utcnow()
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status != "success")
            .values(status="success", settled_at=now, error_message=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("payment_already_successful", payment_id=str(payment.id))
            return SettlementOutcome(payment_id=payment.id, status="unchanged")

        await db.refresh(payment)
        record_payment_event(
            db,
            payment.id,
            "payment.succeeded",
            {"provider": payment.provider, "reference": payment.reference},
            correlation_id,
        )
        outcome = SettlementOutcome(payment_id=payment.id, status="success")

        if payment.creator_id and payment.creator_earnings > 0:
            earnings_minor = convert_minor(
                payment.creator_earnings, payment.currency, self.settings.settlement_currency
            )
            await self.ledger.credit_earnings(db, payment.creator_id, payment.id, earnings_minor)
            currency = self.settings.settlement_currency
            outcome.notifications.append(
                (
                    payment.creator_id,
                    "payment_received",
                    "New payment received",
                    f"You earned {from_minor_units(earnings_minor, currency)} {currency} "
                    f"from a {payment.type} payment.",
                    "/creator/earnings",
                )
            )

        if payment.subscription_id is not None:
            subscription = await db.get(Subscription, payment.subscription_id)
            if subscription is not None:
                await self._activate_subscription(db, subscription, payment, outcome)

        logger.info(
            "payment_confirmed",
            payment_id=str(payment.id),
            provider=payment.provider,
            creator_earnings=payment.creator_earnings,
        )
        return outcome

    async def _activate_subscription(
        self,
        db: AsyncSession,
        subscription: Subscription,
        payment: Payment,
        outcome: SettlementOutcome,
    ) -> None:
        now = utcnow()
        if subscription.status == "cancelled":
            logger.warning(
                "payment_for_cancelled_subscription",
                subscription_id=str(subscription.id),
                payment_id=str(payment.id),
            )
            return

        if subscription.status == "pending":
            existing = await get_active_subscription(
                db, subscription.fan_id, subscription.creator_id
            )
            if existing is not None and existing.id != subscription.id:
                subscription.status = "cancelled"
                subscription.cancelled_at = now
                metrics.record_subscription_cancelled("duplicate_active")
                logger.warning(
                    "duplicate_subscription_cancelled",
                    subscription_id=str(subscription.id),
                    active_subscription_id=str(existing.id),
                )
                return
            subscription.start_date = now
            subscription.next_billing_date = now + billing_period(subscription)
        else:
            # Renewal or dunning recovery of an existing subscription
            subscription.next_billing_date = subscription.next_billing_date + billing_period(
                subscription
            )

        subscription.status = "active"
        subscription.latest_payment_id = payment.id
        subscription.grace_period_ends_at = None
        await db.flush()

        await award_referral_commission(
            db, subscription, payment, self.settings.settlement_currency
        )
        logger.info(
            "subscription_activated",
            subscription_id=str(subscription.id),
            next_billing_date=subscription.next_billing_date.isoformat(),
        )

    async def _confirm_failure(
        self,
        db: AsyncSession,
        payment: Payment,
        reason: str,
        correlation_id: uuid.UUID,
    ) -> SettlementOutcome:
        now = utcnow()
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == "pending")
            .values(status="failed", error_message=reason, settled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(
                "payment_failure_ignored",
                payment_id=str(payment.id),
                current_status=payment.status,
            )
            return SettlementOutcome(payment_id=payment.id, status="unchanged")

        await db.refresh(payment)
        record_payment_event(
            db, payment.id, "payment.failed", {"error": reason}, correlation_id
        )

        if payment.subscription_id is not None:
            subscription = await db.get(Subscription, payment.subscription_id)
            if subscription is not None and subscription.status == "active":
                if subscription.auto_renew and subscription.latest_payment_id == payment.id:
                    logger.info(
                        "renewal_failed_dunning_pending",
                        subscription_id=str(subscription.id),
                        payment_id=str(payment.id),
                    )
                else:
                    subscription.status = "cancelled"
                    subscription.cancelled_at = now
                    metrics.record_subscription_cancelled("payment_failed")
                    logger.info("subscription_cancelled", subscription_id=str(subscription.id))

        logger.warning("payment_failed", payment_id=str(payment.id), reason=reason)
        return SettlementOutcome(payment_id=payment.id, status="failed")

    async def record_renewal_payment(
        self, db: AsyncSession, event: NormalizedEvent
    ) -> Optional[Payment]:
        """
        Record a provider-initiated renewal charge for a known subscription.

        Returns:
            Optional[Payment]: The renewal payment, or None if the subscription is unknown
        """
        raw_id = event.metadata.get("subscription_id")
        if not raw_id or not event.reference:
            return None
        try:
            subscription = await db.get(Subscription, uuid.UUID(str(raw_id)))
        except ValueError:
            return None
        if subscription is None or subscription.status == "cancelled":
            return None

        amount_minor = event.amount_minor or subscription.tier_price_minor
        currency = event.currency or subscription.currency
        fee_percent = await self.fee_resolver.resolve(db)
        split = split_payment(amount_minor, "subscription", fee_percent)
        metadata = SubscriptionMetadata(
            tier_name=subscription.tier_name, interval=subscription.interval, renewal=True
        )
        now = utcnow()

        await insert_ignore(
            db,
            Payment,
            {
                "id": uuid.uuid4(),
                "user_id": subscription.fan_id,
                "creator_id": subscription.creator_id,
                "subscription_id": subscription.id,
                "provider": event.provider,
                "reference": event.reference,
                "amount_minor": amount_minor,
                "currency": currency,
                "status": "pending",
                "type": "subscription",
                "fee_percent": split.fee_percent,
                "platform_fee": split.platform_fee,
                "creator_earnings": split.creator_earnings,
                "payment_metadata": metadata.model_dump(),
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["reference"],
        )
        payment = await get_payment_by_reference(db, event.reference)
        if payment is not None:
            subscription.latest_payment_id = payment.id
            await db.flush()
            logger.info(
                "renewal_payment_recorded",
                payment_id=str(payment.id),
                subscription_id=str(subscription.id),
            )
        return payment


class WebhookIngestor:
    """Entry point for provider webhooks."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settlement: PaymentSettlementService,
        chargebacks: ChargebackHandler,
        deduplicator: Optional[WebhookDeduplicator] = None,
    ):
        self.registry = registry
        self.settlement = settlement
        self.chargebacks = chargebacks
        self.deduplicator = deduplicator or WebhookDeduplicator()

    async def ingest(
        self,
        db: AsyncSession,
        provider: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        """
        Verify, de-duplicate and process one webhook delivery.

        Args:
            db: Database session
            provider: Provider name from the webhook URL
            payload: Raw request body
            headers: Request headers

        Returns:
            Dict[str, Any]: Processing result (always an acknowledgement)

        Raises:
            NotFoundError: If the provider is not enabled
            WebhookSignatureError: If the signature is invalid
            VerificationFailedError: If the provider cannot confirm the status (retry later)
        """
        start = time.time()
        if not self.registry.is_enabled(provider):
            raise NotFoundError(f"Webhook for disabled provider {provider}")
        client = self.registry.get(provider)
        event = client.parse_webhook(payload, headers)

        logger.info(
            "webhook_received",
            provider=client.name,
            event_id=event.event_id,
            event_type=event.event_type,
            kind=event.kind,
        )

        if await self.deduplicator.is_event_processed(client.name, event.event_id):
            logger.info("webhook_event_already_processed", event_id=event.event_id)
            metrics.record_webhook_event(client.name, event.kind, "duplicate", time.time() - start)
            return {"status": "duplicate", "event_id": event.event_id}

        if event.kind == "payment":
            result = await self.handle_payment_event(db, client, event)
        elif event.kind == "dispute":
            result = await self.chargebacks.handle_dispute(db, event)
        else:
            result = {"status": "ignored", "event_type": event.event_type}

        await self.deduplicator.mark_event_processed(client.name, event.event_id)
        metrics.record_webhook_event(
            client.name, event.kind, result.get("status", "ok"), time.time() - start
        )
        return {"event_id": event.event_id, **result}

    async def handle_payment_event(
        self, db: AsyncSession, client: PaymentProviderClient, event: NormalizedEvent
    ) -> Dict[str, Any]:
        """Resolve, re-verify and settle the payment an event refers to."""
        payment = None
        if event.reference:
            payment = await get_payment_by_reference(db, event.reference)
        if payment is None:
            payment = await self.settlement.record_renewal_payment(db, event)
        if payment is None:
            logger.warning(
                "webhook_payment_not_found",
                provider=client.name,
                reference=event.reference,
                event_id=event.event_id,
            )
            await db.rollback()
            return {"status": "acknowledged", "reason": "unknown_reference"}

        try:
            verification = await client.verify(payment.reference or event.reference or "")
        except ProviderError as e:
            await db.rollback()
            logger.error(
                "webhook_verification_failed",
                payment_id=str(payment.id),
                provider=client.name,
                error=str(e),
            )
            raise VerificationFailedError(f"Could not verify {payment.reference}: {e}") from e

        outcome = await self.settlement.apply_verification(db, payment, verification)
        await db.commit()
        await self.settlement.deliver(outcome)
        return outcome.as_dict()
