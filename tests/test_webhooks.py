"""
Webhook ingestion and payment confirmation tests.

Covers at-least-once delivery: duplicates, replays under a new event id,
out-of-order failures and provider re-verification.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from creator_ledger.core.errors import NotFoundError, VerificationFailedError
from creator_ledger.database.models import (
    Earnings,
    Payment,
    Referral,
    ReferralCredit,
    Subscription,
    utcnow,
)
from creator_ledger.integrations.base import WebhookSignatureError
from tests.conftest import SIGNED_HEADERS, webhook_body


class TestPaymentWebhooks:
    """Test suite for payment confirmation through webhooks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_credits_creator_once(
        self, test_db: any, services: any, seed: any, notifier: any
    ) -> None:
        """A confirmed payment credits the creator's wallet exactly once."""
        payment = await seed.payment(amount_minor=1000)
        body = webhook_body(id="evt_1", reference=payment.reference, status="successful")

        result = await services.ingestor.ingest(test_db, "STRIPE", body, SIGNED_HEADERS)

        assert result["status"] == "success"
        assert result["event_id"] == "evt_1"
        wallet = await seed.get_wallet("creator_1")
        assert wallet.balance_minor == 900
        stored = await seed.get(Payment, payment.id)
        assert stored.status == "success"
        assert stored.settled_at is not None
        assert "payment_received" in notifier.kinds_for("creator_1")
        received = [n for n in notifier.sent if n["kind"] == "payment_received"]
        assert received[0]["body"] == "You earned 9.00 USD from a tip payment."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_id_short_circuits(
        self, test_db: any, services: any, seed: any, stripe_provider: any
    ) -> None:
        """The same event id is only processed once."""
        payment = await seed.payment()
        body = webhook_body(id="evt_dup", reference=payment.reference)

        await services.ingestor.ingest(test_db, "STRIPE", body, SIGNED_HEADERS)
        second = await services.ingestor.ingest(test_db, "STRIPE", body, SIGNED_HEADERS)

        assert second == {"status": "duplicate", "event_id": "evt_dup"}
        assert len(stripe_provider.verified) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_under_new_event_id_is_harmless(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Redelivery with a fresh event id changes nothing."""
        payment = await seed.payment(amount_minor=2000)

        await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=payment.reference), SIGNED_HEADERS
        )
        replay = await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=payment.reference), SIGNED_HEADERS
        )

        assert replay["status"] == "unchanged"
        wallet = await seed.get_wallet("creator_1")
        assert wallet.balance_minor == 1800
        assert await test_db.scalar(select(func.count(Earnings.id))) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_failure_never_reverts_success(
        self, test_db: any, services: any, seed: any, stripe_provider: any
    ) -> None:
        """A failure arriving after success leaves the payment successful."""
        payment = await seed.payment()
        await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=payment.reference), SIGNED_HEADERS
        )

        stripe_provider.verify_status[payment.reference] = "failed"
        result = await services.ingestor.ingest(
            test_db,
            "STRIPE",
            webhook_body(reference=payment.reference, status="failed"),
            SIGNED_HEADERS,
        )

        assert result["status"] == "unchanged"
        assert (await seed.get(Payment, payment.id)).status == "success"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_status_is_authoritative(
        self, test_db: any, services: any, seed: any, stripe_provider: any
    ) -> None:
        """The webhook's claimed status is re-verified with the provider."""
        payment = await seed.payment()
        stripe_provider.verify_status[payment.reference] = "failed"

        result = await services.ingestor.ingest(
            test_db,
            "STRIPE",
            webhook_body(reference=payment.reference, status="successful"),
            SIGNED_HEADERS,
        )

        assert result["status"] == "failed"
        stored = await seed.get(Payment, payment.id)
        assert stored.status == "failed"
        assert stored.error_message == "Insufficient funds"
        assert await seed.get_wallet("creator_1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_verification_leaves_payment_pending(
        self, test_db: any, services: any, seed: any, stripe_provider: any
    ) -> None:
        """Nothing is settled while the provider still reports pending."""
        payment = await seed.payment()
        stripe_provider.verify_status[payment.reference] = "pending"

        result = await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=payment.reference), SIGNED_HEADERS
        )

        assert result["status"] == "pending"
        assert (await seed.get(Payment, payment.id)).status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference_acknowledged(self, test_db: any, services: any) -> None:
        """Unknown payments are acknowledged so the provider stops retrying."""
        result = await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference="pi_unknown"), SIGNED_HEADERS
        )
        assert result["status"] == "acknowledged"
        assert result["reason"] == "unknown_reference"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, test_db: any, services: any) -> None:
        """Unsigned payloads are refused before any processing."""
        with pytest.raises(WebhookSignatureError):
            await services.ingestor.ingest(
                test_db, "STRIPE", webhook_body(reference="x"), {"x-test-signature": "forged"}
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_provider_not_found(self, test_db: any, services: any) -> None:
        """Webhooks for providers that are not enabled are rejected."""
        with pytest.raises(NotFoundError):
            await services.ingestor.ingest(
                test_db, "SQUARE", webhook_body(reference="x"), SIGNED_HEADERS
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verification_outage_asks_for_redelivery(
        self, test_db: any, services: any, seed: any, stripe_provider: any, fake_redis: any
    ) -> None:
        """If the provider cannot be reached the event is not marked processed."""
        payment = await seed.payment()
        stripe_provider.fail_verify = True
        body = webhook_body(id="evt_outage", reference=payment.reference)

        with pytest.raises(VerificationFailedError):
            await services.ingestor.ingest(test_db, "STRIPE", body, SIGNED_HEADERS)

        assert (await seed.get(Payment, payment.id)).status == "pending"
        assert "webhook:processed:STRIPE:evt_outage" not in fake_redis.store

        stripe_provider.fail_verify = False
        result = await services.ingestor.ingest(test_db, "STRIPE", body, SIGNED_HEADERS)
        assert result["status"] == "success"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignored_event_types(self, test_db: any, services: any) -> None:
        """Events the ledger does not act on are acknowledged."""
        result = await services.ingestor.ingest(
            test_db,
            "STRIPE",
            webhook_body(kind="ignored", type="customer.created"),
            SIGNED_HEADERS,
        )
        assert result["status"] == "ignored"


class TestSubscriptionSettlement:
    """Test suite for subscription activation and renewal."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_payment_activates_subscription(
        self, test_db: any, services: any
    ) -> None:
        """A confirmed first payment activates the subscription for one period."""
        started = await services.checkout.start_subscription(
            test_db,
            fan_id="fan_1",
            creator_id="creator_1",
            tier_name="basic",
            tier_price_minor=1000,
            currency="USD",
            country="US",
            payer_email="fan@example.com",
        )

        before = utcnow()
        await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=started["reference"]), SIGNED_HEADERS
        )

        subscription = await services_subscription(test_db, started["subscription_id"])
        assert subscription.status == "active"
        assert subscription.start_date >= before - timedelta(seconds=1)
        period = subscription.next_billing_date - subscription.start_date
        assert period == timedelta(days=30)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_first_payment_keeps_subscription_pending(
        self, test_db: any, services: any, stripe_provider: any
    ) -> None:
        """A subscription is never active without a confirmed payment."""
        started = await services.checkout.start_subscription(
            test_db,
            fan_id="fan_1",
            creator_id="creator_1",
            tier_name="basic",
            tier_price_minor=1000,
            currency="USD",
            country="US",
            payer_email="fan@example.com",
        )
        stripe_provider.verify_status[started["reference"]] = "failed"

        await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=started["reference"]), SIGNED_HEADERS
        )

        subscription = await services_subscription(test_db, started["subscription_id"])
        assert subscription.status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_referrer_earns_commission(self, test_db: any, services: any) -> None:
        """Referral commission scales with the tier multiplier."""
        referral = Referral(id=uuid.uuid4(), referrer_id="referrer_1", referred_user_id="fan_1")
        test_db.add(referral)
        await test_db.commit()

        started = await services.checkout.start_subscription(
            test_db,
            fan_id="fan_1",
            creator_id="creator_1",
            tier_name="premium",
            tier_price_minor=1000,
            currency="USD",
            country="US",
            payer_email="fan@example.com",
        )
        await services.ingestor.ingest(
            test_db, "STRIPE", webhook_body(reference=started["reference"]), SIGNED_HEADERS
        )

        credit = await test_db.scalar(
            select(ReferralCredit).where(ReferralCredit.referrer_id == "referrer_1")
        )
        # 1000 x 0.10 x 1.5 (premium)
        assert credit.amount_minor == 150
        await test_db.refresh(referral)
        assert referral.status == "active"
        assert referral.total_commission_minor == 150

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_initiated_renewal(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """A renewal charge for a known subscription extends it by one period."""
        due = utcnow().replace(microsecond=0)
        subscription = await seed.subscription(next_billing_date=due)

        result = await services.ingestor.ingest(
            test_db,
            "STRIPE",
            webhook_body(
                reference="pi_renewal_1",
                amount_minor=1000,
                currency="USD",
                metadata={"subscription_id": str(subscription.id)},
            ),
            SIGNED_HEADERS,
        )

        assert result["status"] == "success"
        renewed = await services_subscription(test_db, str(subscription.id))
        assert renewed.next_billing_date == due + timedelta(days=30)
        payment = await test_db.scalar(select(Payment).where(Payment.reference == "pi_renewal_1"))
        assert payment.subscription_id == subscription.id
        assert payment.payment_metadata["renewal"] is True
        assert renewed.latest_payment_id == payment.id
        assert (await seed.get_wallet("creator_1")).balance_minor == 900

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_activation_for_same_pair_is_cancelled(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Two pending subscriptions confirmed for one pair leave one active."""
        first = await services.checkout.start_subscription(
            test_db,
            fan_id="fan_1",
            creator_id="creator_1",
            tier_name="basic",
            tier_price_minor=1000,
            currency="USD",
            country="US",
            payer_email="fan@example.com",
        )
        second = await services.checkout.start_subscription(
            test_db,
            fan_id="fan_1",
            creator_id="creator_1",
            tier_name="basic",
            tier_price_minor=1000,
            currency="USD",
            country="US",
            payer_email="fan@example.com",
        )

        for started in (first, second):
            await services.ingestor.ingest(
                test_db, "STRIPE", webhook_body(reference=started["reference"]), SIGNED_HEADERS
            )

        statuses = sorted((await test_db.scalars(select(Subscription.status))).all())
        assert statuses == ["active", "cancelled"]


async def services_subscription(db: any, subscription_id: str) -> Subscription:
    return await db.get(Subscription, uuid.UUID(subscription_id), populate_existing=True)
